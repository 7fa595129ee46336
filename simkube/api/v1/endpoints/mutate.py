# simkube/api/v1/endpoints/mutate.py
import logging
from fastapi import APIRouter, Body, Request, Depends
from typing import Any, Optional
from simkube.models.admission import AdmissionReview
from simkube.services.admission_service import handle_admission, invalid_review
from simkube.services.mutation_service import DriverContext

logger = logging.getLogger(__name__)
router = APIRouter()

def get_driver_context(request: Request) -> Optional[DriverContext]:
    """Dependency returning the DriverContext built at startup, or None if startup failed."""
    ctx = getattr(request.app.state, "driver_ctx", None)
    if ctx is None:
        logger.critical("Driver context not initialized; denying admission request.")
    return ctx

@router.post(
    "/mutate",
    response_model=AdmissionReview,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Mutate simulated pods",
    description="""
Admission webhook for pod CREATE. Pods descending from this simulation's root are
patched to schedule onto virtual nodes and to expire after their recorded lifetime;
everything else passes through untouched. Every failure is answered with a denial.
    """,
)
def mutate(
    body: Any = Body(None),
    ctx: Optional[DriverContext] = Depends(get_driver_context),
) -> AdmissionReview:
    # Plain def: the kubernetes client blocks, so FastAPI runs this in its threadpool
    if ctx is None:
        return invalid_review("driver is not ready", body)
    try:
        return handle_admission(ctx, body)
    except Exception as e:
        logger.error(f"Unexpected error handling admission review: {e}", exc_info=True)
        return invalid_review(f"internal error: {e}", body)
