# simkube/services/kubernetes_service.py
import logging
from kubernetes import client, config, dynamic
from kubernetes.client.exceptions import ApiException
from simkube.core.config import settings
import os
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

class KubernetesService:
    """Holds the typed API clients shared by the reconciler and the webhook."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client: Optional[client.ApiClient] = api_client
        self.core_api: Optional[client.CoreV1Api] = None
        self.batch_api: Optional[client.BatchV1Api] = None
        self.custom_api: Optional[client.CustomObjectsApi] = None
        self.admission_api: Optional[client.AdmissionregistrationV1Api] = None
        self._dynamic: Optional[dynamic.DynamicClient] = None
        if api_client is None:
            self._load_config()
        else:
            self._init_clients(api_client)

    def _load_config(self):
        """Loads Kubernetes configuration."""
        try:
            # Prioritize in-cluster config
            if os.getenv("KUBERNETES_SERVICE_HOST"):
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config.")
            # Then check explicit path from settings
            elif settings.KUBE_CONFIG_PATH and os.path.exists(settings.KUBE_CONFIG_PATH):
                config.load_kube_config(config_file=settings.KUBE_CONFIG_PATH)
                logger.info(f"Loaded Kubernetes config from: {settings.KUBE_CONFIG_PATH}")
            # Fallback to default kubeconfig location
            else:
                config.load_kube_config()
                logger.info("Loaded default Kubernetes config (kubeconfig).")

            self._init_clients(client.ApiClient())

        except config.ConfigException as e:
            logger.warning(f"Could not load Kubernetes config (normal if not in-cluster or no kubeconfig): {e}")
        except Exception as e:
            logger.error(f"Unexpected error configuring Kubernetes client: {e}", exc_info=True)

    def _init_clients(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core_api = client.CoreV1Api(api_client)
        self.batch_api = client.BatchV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)
        self.admission_api = client.AdmissionregistrationV1Api(api_client)
        logger.info("Kubernetes API clients initialized.")

    def is_available(self) -> bool:
        """Check if K8s clients are initialized."""
        return self.core_api is not None

    def get_object(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        """
        Fetches an arbitrary object by apiVersion/kind through the dynamic client.
        Cluster-scoped kinds ignore `namespace`.

        Raises:
            ApiException: with status 404 if the object does not exist.
        """
        if self._dynamic is None:
            # Discovery is lazy; building the client hits the API server
            self._dynamic = dynamic.DynamicClient(self.api_client)
        resource = self._dynamic.resources.get(api_version=api_version, kind=kind)
        if resource.namespaced:
            obj = resource.get(name=name, namespace=namespace)
        else:
            obj = resource.get(name=name)
        return obj.to_dict()


def is_not_found(e: ApiException) -> bool:
    return e.status == 404


def make_kubernetes_service() -> KubernetesService:
    service = KubernetesService()
    if not service.is_available():
        raise RuntimeError("Kubernetes client could not be configured; see previous log messages.")
    return service
