# simkube/models/lifecycle.py
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Finished:
    start_ts: int
    end_ts: int

    def lifetime_seconds(self) -> int:
        return self.end_ts - self.start_ts


@dataclass(frozen=True)
class Running:
    start_ts: int


@dataclass(frozen=True)
class Unknown:
    pass


# What the trace recorded about a historical pod's run
PodLifecycleData = Union[Finished, Running, Unknown]


def lifetime_annotation_value(lifecycle: PodLifecycleData) -> Optional[str]:
    """Returns the lifetime annotation value, or None when no expiry should be stamped."""
    if isinstance(lifecycle, Finished):
        return str(lifecycle.lifetime_seconds())
    return None
