# simkube/services/admission_service.py
import logging
from typing import Any

from pydantic import ValidationError

from simkube.models.admission import AdmissionReview, AdmissionResponse
from simkube.services.mutation_service import DriverContext, mutate_pod

logger = logging.getLogger(__name__)


def request_uid(body: Any) -> str:
    """Best-effort uid of a raw admission review body; empty if it can't be found."""
    if isinstance(body, dict):
        req = body.get("request")
        if isinstance(req, dict) and isinstance(req.get("uid"), str):
            return req["uid"]
    return ""


def invalid_review(reason: str, body: Any = None) -> AdmissionReview:
    return AdmissionReview(response=AdmissionResponse.invalid(reason, uid=request_uid(body)))


def handle_admission(ctx: DriverContext, body: Any) -> AdmissionReview:
    """
    Entry point for every pod admission. Always returns a well-formed review:
    the API server blocks on this call, so internal failures become denials.
    """
    if not isinstance(body, dict):
        logger.error(f"Admission review body is a {type(body).__name__}, not an object; denying")
        return invalid_review("malformed admission review")

    try:
        review = AdmissionReview(**body)
    except (ValidationError, TypeError) as e:
        logger.error(f"Malformed admission review; denying: {e}")
        return invalid_review("malformed admission review", body)

    req = review.request
    if req is None or req.object is None:
        logger.error("Admission review carried no request or no object; denying")
        resp = AdmissionResponse.invalid("no request or object in admission review", uid=req.uid if req else "")
        return AdmissionReview(response=resp)

    resp = AdmissionResponse.from_request(req)
    try:
        resp = mutate_pod(ctx, resp, req.object, dry_run=req.dry_run)
    except Exception as e:
        logger.error(f"Could not mutate pod {req.namespace}/{req.name} (uid {req.uid}): {e}", exc_info=True)
        resp = resp.deny(f"could not perform mutation: {e}")

    return AdmissionReview(response=resp)
