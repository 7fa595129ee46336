# simkube/services/mutation_service.py
import copy
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

import jsonpatch

from simkube.constants import (
    LIFETIME_ANNOTATION_KEY,
    ORIG_NAMESPACE_ANNOTATION_KEY,
    SIMULATION_LABEL_KEY,
    VIRTUAL_LABEL_KEY,
    VIRTUAL_NODE_SELECTOR,
    VIRTUAL_NODE_TOLERATION_KEY,
)
from simkube.core.errors import OwnerNotFound, PodSpecMissing
from simkube.models.admission import AdmissionResponse
from simkube.models.lifecycle import Running, lifetime_annotation_value
from simkube.services.owners_cache import OwnersCache, OwnerReference, namespaced_name
from simkube.services.trace_store import TraceStore

logger = logging.getLogger(__name__)

# Container fields that distinguish one pod template variant from another
HASHED_CONTAINER_FIELDS = ("image", "resources", "command", "args")


def pod_spec_hash(spec: Dict[str, Any]) -> int:
    """Structural fingerprint of a pod's containers, stable across processes."""
    containers = [
        {k: c.get(k) for k in HASHED_CONTAINER_FIELDS}
        for c in (spec.get("containers") or [])
    ]
    digest = hashlib.sha256(json.dumps(containers, sort_keys=True).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


EMPTY_POD_SPEC_HASH = pod_spec_hash({})


class MutationData:
    """Counts pods admitted per (owner, spec hash) to hand out replica ordinals."""

    def __init__(self):
        self._counts: Dict[Tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def next_ordinal(self, owner_ns_name: str, hash_: int) -> int:
        with self._lock:
            ordinal = self._counts.get((owner_ns_name, hash_), 0)
            self._counts[(owner_ns_name, hash_)] = ordinal + 1
            return ordinal

    def peek_ordinal(self, owner_ns_name: str, hash_: int) -> int:
        with self._lock:
            return self._counts.get((owner_ns_name, hash_), 0)


@dataclass
class DriverContext:
    name: str
    sim_root: str
    virtual_ns_prefix: str
    owners_cache: OwnersCache
    store: TraceStore
    max_owner_depth: int = 10
    mutation_data: MutationData = field(default_factory=MutationData)


def original_namespace(ctx: DriverContext, pod: Dict[str, Any]) -> str:
    metadata = pod.get("metadata") or {}
    orig_ns = (metadata.get("annotations") or {}).get(ORIG_NAMESPACE_ANNOTATION_KEY)
    if orig_ns:
        return orig_ns
    namespace = metadata.get("namespace") or ""
    prefix = f"{ctx.virtual_ns_prefix}-"
    return namespace[len(prefix):] if namespace.startswith(prefix) else namespace


def find_trace_owner(ctx: DriverContext, pod: Dict[str, Any], owners: List[OwnerReference]) -> Optional[str]:
    """Returns "<original ns>/<name>" of the nearest ancestor the trace knows about."""
    orig_ns = original_namespace(ctx, pod)
    for owner in owners:
        owner_ns_name = namespaced_name(orig_ns, owner.get("name", ""))
        if ctx.store.has_obj(owner_ns_name):
            return owner_ns_name
    return None


def _add_virtual_placement(ctx: DriverContext, pod: Dict[str, Any]):
    labels = pod["metadata"].setdefault("labels", {})
    labels[SIMULATION_LABEL_KEY] = ctx.name
    labels[VIRTUAL_LABEL_KEY] = "true"

    spec = pod["spec"]
    spec.setdefault("nodeSelector", {}).update(VIRTUAL_NODE_SELECTOR)
    tolerations = spec.setdefault("tolerations", [])
    if not any(t.get("key") == VIRTUAL_NODE_TOLERATION_KEY for t in tolerations):
        tolerations.append({
            "key": VIRTUAL_NODE_TOLERATION_KEY,
            "operator": "Exists",
            "effect": "NoSchedule",
        })


def _add_lifecycle_annotation(ctx: DriverContext, pod: Dict[str, Any], owner_ns_name: str, pod_name: str,
                              dry_run: bool = False):
    hash_ = pod_spec_hash(pod["spec"])
    # Dry runs never create the pod, so they must not consume a replica slot
    if dry_run:
        ordinal = ctx.mutation_data.peek_ordinal(owner_ns_name, hash_)
    else:
        ordinal = ctx.mutation_data.next_ordinal(owner_ns_name, hash_)
    lifecycle = ctx.store.lookup_pod_lifecycle(owner_ns_name, hash_, ordinal)

    value = lifetime_annotation_value(lifecycle)
    if value is not None:
        logger.info(f"Pod {pod_name} ({owner_ns_name} #{ordinal}) will live for {value}s")
        pod["metadata"].setdefault("annotations", {})[LIFETIME_ANNOTATION_KEY] = value
    elif isinstance(lifecycle, Running):
        logger.info(f"Pod {pod_name} ({owner_ns_name} #{ordinal}) was still running at end of trace; no lifetime set")
    else:
        logger.info(f"No lifecycle data for pod {pod_name} ({owner_ns_name} #{ordinal}, hash {hash_}); no lifetime set")


def mutate_pod(ctx: DriverContext, resp: AdmissionResponse, pod: Dict[str, Any],
               dry_run: bool = False) -> AdmissionResponse:
    """
    Rewrites a pod created by the simulation so it lands on virtual nodes and
    expires after its historical run length.

    Returns `resp` untouched for pods that don't descend from this simulation's
    root, and a copy carrying a JSON patch otherwise.

    Raises:
        PodSpecMissing: if the pod is owned by the simulation but has no spec.
    """
    metadata = pod.get("metadata") or {}
    pod_name = namespaced_name(metadata.get("namespace"), metadata.get("name") or metadata.get("generateName", ""))

    try:
        owners = ctx.owners_cache.compute_owner_chain(pod, ctx.max_owner_depth)
    except OwnerNotFound as e:
        # An owner vanished mid-walk; let the pod through rather than block creation
        logger.warning(f"Could not resolve owners of pod {pod_name}: {e}; no mutation performed")
        return resp

    if not any(o.get("name") == ctx.sim_root for o in owners):
        logger.debug(f"Pod {pod_name} not owned by simulation {ctx.name}; no mutation performed")
        return resp

    if pod.get("spec") is None:
        raise PodSpecMissing(pod_name)

    mutated = copy.deepcopy(pod)
    mutated.setdefault("metadata", {})
    _add_virtual_placement(ctx, mutated)

    owner_ns_name = find_trace_owner(ctx, pod, owners)
    if owner_ns_name is None:
        logger.info(f"Pod {pod_name} has no owner recorded in the trace; skipping lifecycle lookup")
    else:
        _add_lifecycle_annotation(ctx, mutated, owner_ns_name, pod_name, dry_run)

    ops = jsonpatch.make_patch(pod, mutated).patch
    logger.info(f"Mutated pod {pod_name} with {len(ops)} patch operations")
    return resp.with_patch(ops)
