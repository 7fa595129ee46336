# simkube/models/simulation.py
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class SimulationState(str, Enum):
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    FINISHED = "Finished"
    FAILED = "Failed"


class ObjectMeta(BaseModel):
    name: str
    uid: Optional[str] = None
    namespace: Optional[str] = None
    deletion_timestamp: Optional[str] = Field(None, alias="deletionTimestamp")
    finalizers: List[str] = []
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}

    class Config:
        populate_by_name = True
        extra = 'ignore'


class SimulationSpec(BaseModel):
    driver_namespace: str = Field(..., alias="driverNamespace", description="Namespace the driver job runs in")
    trace: str = Field(..., description="URI of the trace to replay")

    class Config:
        populate_by_name = True
        extra = 'ignore'


class SimulationStatus(BaseModel):
    state: Optional[SimulationState] = None

    class Config:
        extra = 'ignore'


class Simulation(BaseModel):
    """
    A user-declared request to replay a trace. Cluster-scoped.
    Parsed from the raw dict the CustomObjectsApi returns.
    """
    api_version: str = Field("simkube.io/v1", alias="apiVersion")
    kind: str = "Simulation"
    metadata: ObjectMeta
    spec: SimulationSpec
    status: SimulationStatus = SimulationStatus()

    class Config:
        populate_by_name = True
        extra = 'ignore'

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


class SimulationRoot(BaseModel):
    """Marker object; everything the reconciler creates for one simulation hangs off it."""
    api_version: str = Field("simkube.io/v1", alias="apiVersion")
    kind: str = "SimulationRoot"
    metadata: ObjectMeta

    class Config:
        populate_by_name = True
        extra = 'ignore'

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
        }
