# simkube/services/trace_store.py
import json
import logging
import os
from typing import Dict, Any, List, Protocol
from urllib.parse import urlparse

from simkube.models.lifecycle import PodLifecycleData, Finished, Running, Unknown

logger = logging.getLogger(__name__)


class TraceStore(Protocol):
    """The two questions the mutation engine asks of a recorded trace."""

    def has_obj(self, ns_name: str) -> bool:
        ...

    def lookup_pod_lifecycle(self, owner_ns_name: str, pod_spec_hash: int, ordinal: int) -> PodLifecycleData:
        ...


class JsonTraceStore:
    """
    Read-only trace store backed by a JSON document of the form

        {
          "index": ["<ns>/<name>", ...],
          "pod_lifecycles": {
            "<ns>/<name>": {"<spec hash>": [{"start_ts": 1, "end_ts": 2}, {"start_ts": 5}]}
          }
        }

    Lifecycles for one (owner, hash) pair are ordered by replica ordinal.
    """

    def __init__(self, index: List[str], pod_lifecycles: Dict[str, Dict[str, List[Dict[str, Any]]]]):
        self._index = set(index)
        self._pod_lifecycles = pod_lifecycles

    @classmethod
    def from_path(cls, location: str) -> "JsonTraceStore":
        path = urlparse(location).path if location.startswith("file://") else location
        if not os.path.exists(path):
            raise FileNotFoundError(f"Trace file not found at: {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        store = cls(data.get("index", []), data.get("pod_lifecycles", {}))
        logger.info(f"Loaded trace from {path}: {len(store._index)} tracked objects")
        return store

    def has_obj(self, ns_name: str) -> bool:
        return ns_name in self._index

    def lookup_pod_lifecycle(self, owner_ns_name: str, pod_spec_hash: int, ordinal: int) -> PodLifecycleData:
        replicas = self._pod_lifecycles.get(owner_ns_name, {}).get(str(pod_spec_hash), [])
        if ordinal >= len(replicas):
            return Unknown()

        entry = replicas[ordinal]
        if "start_ts" not in entry:
            return Unknown()
        if entry.get("end_ts") is None:
            return Running(entry["start_ts"])
        return Finished(entry["start_ts"], entry["end_ts"])
