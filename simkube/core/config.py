# simkube/core/config.py
from pydantic_settings import BaseSettings
from pydantic import Field, validator
from typing import Optional
import logging

from simkube.constants import (
    DEFAULT_METRICS_NS,
    DEFAULT_METRICS_SVC_ACCOUNT,
    DRIVER_ADMISSION_WEBHOOK_PORT,
)

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    APP_NAME: str = "SimKube"
    API_V1_STR: str = ""
    LOG_LEVEL: str = "INFO"

    # Kubernetes Config - leave blank to use in-cluster or default kubeconfig
    KUBE_CONFIG_PATH: Optional[str] = None

    # Controller Settings
    DRIVER_IMAGE: str = Field("quay.io/appliedcomputing/sk-driver:latest", description="Image used for the simulation driver job")
    DRIVER_PORT: int = Field(DRIVER_ADMISSION_WEBHOOK_PORT, description="Port the driver's admission webhook listens on")
    USE_CERT_MANAGER: bool = Field(False, description="Annotate the webhook for cert-manager CA injection")
    CERT_MANAGER_ISSUER: str = Field("", description="cert-manager ClusterIssuer used for the driver certificate")
    METRICS_NAMESPACE: str = Field(DEFAULT_METRICS_NS, description="Shared namespace holding the Prometheus stack")
    METRICS_SVC_ACCOUNT: str = Field(DEFAULT_METRICS_SVC_ACCOUNT, description="Service account the Prometheus instance runs as")
    POD_SVC_ACCOUNT: str = Field("sk-ctrl-service-account", description="Service account whose token secret the driver mounts")
    REQUEUE_SECONDS: float = Field(5.0, description="Fixed delay before re-reconciling while waiting on readiness")
    ERROR_REQUEUE_SECONDS: float = Field(30.0, description="Fixed delay before retrying a reconcile that raised")
    CONTROLLER_WORKERS: int = Field(4, description="Number of simulations reconciled in parallel")

    # Driver (webhook) Settings
    SIM_NAME: str = Field("", description="Name of the simulation this driver belongs to")
    SIM_ROOT: str = Field("", description="Name of the SimulationRoot anchoring the simulation's objects")
    VIRTUAL_NS_PREFIX: str = Field("virtual", description="Prefix of the namespaces simulated pods run in")
    TRACE_PATH: str = Field("", description="Location of the trace file (path or file:// URI)")
    MAX_OWNER_DEPTH: int = Field(10, description="Maximum number of owner-reference hops walked per pod")
    OWNERS_CACHE_MAX_ENTRIES: int = Field(10000, description="Owner cache size before least-recently-used eviction")
    CERT_PATH: Optional[str] = Field(None, description="TLS certificate served by the webhook")
    KEY_PATH: Optional[str] = Field(None, description="TLS key served by the webhook")

    @validator('LOG_LEVEL')
    def validate_log_level(cls, v):
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return v.upper()

    @validator('MAX_OWNER_DEPTH')
    def validate_max_owner_depth(cls, v):
        if v < 1:
            raise ValueError("MAX_OWNER_DEPTH must be at least 1")
        return v

    class Config:
        env_file = '.env' # Load environment variables from .env file
        env_file_encoding = 'utf-8'
        extra = 'ignore' # Ignore extra fields from environment

settings = Settings()

if settings.USE_CERT_MANAGER and not settings.CERT_MANAGER_ISSUER:
    logger.warning("USE_CERT_MANAGER is set but CERT_MANAGER_ISSUER is empty. The webhook CA will not be injected.")
