# simkube/services/owners_cache.py
import logging
import threading
from collections import OrderedDict, deque
from typing import Dict, Any, List, Optional, Callable

from kubernetes.client.exceptions import ApiException

from simkube.core.errors import OwnerNotFound
from simkube.services.kubernetes_service import is_not_found

logger = logging.getLogger(__name__)

OwnerReference = Dict[str, Any]
# (api_version, kind, name, namespace) -> raw object dict
ObjectFetcher = Callable[[str, str, str, Optional[str]], Dict[str, Any]]


def namespaced_name(namespace: Optional[str], name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


def cache_key(kind: str, namespace: Optional[str], name: str) -> str:
    return f"{kind}:{namespaced_name(namespace, name)}"


class OwnersCache:
    """
    Maps "<kind>:<namespace>/<name>" to the owner references last seen on that object.

    Entries are never refreshed, so they may be stale; a miss fetches the object
    live. One lock covers both the lookup and the fetch, which serializes misses
    across concurrent admission requests. Sharding by namespace would be the
    next step if that ever becomes the bottleneck.
    """

    def __init__(self, fetch_object: ObjectFetcher, max_entries: int = 10000,
                 owners: Optional[Dict[str, List[OwnerReference]]] = None):
        self._fetch_object = fetch_object
        self._max_entries = max_entries
        self._owners: "OrderedDict[str, List[OwnerReference]]" = OrderedDict(owners or {})
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._owners)

    def resolve(self, namespace: Optional[str], owner_ref: OwnerReference) -> List[OwnerReference]:
        """Returns the owner references of the object `owner_ref` points at."""
        with self._lock:
            return self._resolve_locked(namespace, owner_ref)

    def compute_owner_chain(self, obj: Dict[str, Any], max_depth: int = 10) -> List[OwnerReference]:
        """
        Walks the ownership graph upward from `obj` breadth-first and returns every
        ancestor reference, nearest first. Stops after `max_depth` levels.

        Raises:
            OwnerNotFound: if an ancestor has been deleted mid-walk.
        """
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace")
        name = metadata.get("name") or metadata.get("generateName", "")
        pod_ns_name = namespaced_name(namespace, name)

        with self._lock:
            first = self._owners.get(cache_key(obj.get("kind", "Pod"), namespace, name))
            if first is None:
                # The object is being admitted, so it can't be fetched; trust its own refs
                first = list(metadata.get("ownerReferences") or [])

            chain: List[OwnerReference] = []
            seen = set()
            frontier = deque((ref, 1) for ref in first)
            while frontier:
                ref, depth = frontier.popleft()
                ref_key = cache_key(ref.get("kind", ""), namespace, ref.get("name", ""))
                if ref_key in seen:
                    continue
                seen.add(ref_key)
                chain.append(ref)
                if depth >= max_depth:
                    logger.warning(f"Owner chain for {pod_ns_name} exceeds max depth {max_depth}; truncating at {ref_key}")
                    continue
                for parent in self._resolve_locked(namespace, ref):
                    frontier.append((parent, depth + 1))
        return chain

    def _resolve_locked(self, namespace: Optional[str], owner_ref: OwnerReference) -> List[OwnerReference]:
        name = owner_ref.get("name", "")
        key = cache_key(owner_ref.get("kind", ""), namespace, name)
        if key in self._owners:
            self._owners.move_to_end(key)
            return self._owners[key]

        logger.debug(f"Owner cache miss for {key}; fetching live")
        try:
            obj = self._fetch_object(owner_ref.get("apiVersion", ""), owner_ref.get("kind", ""), name, namespace)
        except ApiException as e:
            if is_not_found(e):
                raise OwnerNotFound(namespaced_name(namespace, name)) from e
            raise

        owners = list((obj.get("metadata") or {}).get("ownerReferences") or [])
        self._owners[key] = owners
        if len(self._owners) > self._max_entries:
            evicted, _ = self._owners.popitem(last=False)
            logger.debug(f"Owner cache full; evicted {evicted}")
        return owners
