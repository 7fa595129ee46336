import copy
from typing import Dict, Any, Tuple
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from simkube.constants import SVC_ACCOUNT_NAME_ANNOTATION_KEY
from simkube.controller.context import SimulationContext
from simkube.core.config import Settings
from simkube.models.simulation import Simulation, SimulationRoot

TEST_SIM_NAME = "test-sim"
TEST_NAMESPACE = "test"


def not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


class FakeCluster:
    """
    In-memory stand-in for the API server. Every call the reconciler makes goes
    through a MagicMock so tests can count reads and writes.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.jobs: Dict[Tuple[str, str], client.V1Job] = {}
        self.secrets: Dict[str, list] = {}

        self.core_api = MagicMock()
        self.core_api.read_namespace.side_effect = lambda name: self._read("Namespace", "", name)
        self.core_api.create_namespace.side_effect = lambda body: self._create("Namespace", body)
        self.core_api.read_namespaced_service.side_effect = \
            lambda name, namespace: self._read("Service", namespace, name)
        self.core_api.create_namespaced_service.side_effect = lambda namespace, body: self._create("Service", body)
        self.core_api.list_namespaced_secret.side_effect = \
            lambda namespace, field_selector=None: client.V1SecretList(items=self.secrets.get(namespace, []))

        self.custom_api = MagicMock()
        self.custom_api.get_namespaced_custom_object.side_effect = \
            lambda group, version, namespace, plural, name: self._read(plural, namespace, name)
        self.custom_api.create_namespaced_custom_object.side_effect = \
            lambda group, version, namespace, plural, body: self._create(plural, body)
        self.custom_api.get_cluster_custom_object.side_effect = \
            lambda group, version, plural, name: self._read(plural, "", name)
        self.custom_api.create_cluster_custom_object.side_effect = \
            lambda group, version, plural, body: self._create(plural, self._with_uid(body))

        self.admission_api = MagicMock()
        self.admission_api.read_mutating_webhook_configuration.side_effect = \
            lambda name: self._read("MutatingWebhookConfiguration", "", name)
        self.admission_api.create_mutating_webhook_configuration.side_effect = \
            lambda body: self._create("MutatingWebhookConfiguration", body)

        self.batch_api = MagicMock()
        self.batch_api.read_namespaced_job.side_effect = self._read_job
        self.batch_api.create_namespaced_job.side_effect = self._create_job

        self.k8s = MagicMock()
        self.k8s.core_api = self.core_api
        self.k8s.custom_api = self.custom_api
        self.k8s.admission_api = self.admission_api
        self.k8s.batch_api = self.batch_api

    def _with_uid(self, body):
        body = copy.deepcopy(body)
        body["metadata"].setdefault("uid", f"uid-{body['metadata']['name']}")
        return body

    def _read(self, kind: str, namespace: str, name: str):
        key = (kind, namespace or "", name)
        if key not in self.objects:
            raise not_found()
        return copy.deepcopy(self.objects[key])

    def _create(self, kind: str, body: Dict[str, Any]):
        meta = body["metadata"]
        key = (kind, meta.get("namespace", ""), meta["name"])
        self.objects[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def _read_job(self, name, namespace):
        if (namespace, name) not in self.jobs:
            raise not_found()
        return self.jobs[(namespace, name)]

    def _create_job(self, namespace, body):
        job = client.V1Job(metadata=client.V1ObjectMeta(name=body["metadata"]["name"], namespace=namespace))
        self.jobs[(namespace, body["metadata"]["name"])] = job
        return job

    def add(self, kind: str, name: str, namespace: str = "", **extra):
        body = {"metadata": {"name": name, "namespace": namespace}}
        body.update(extra)
        self.objects[(kind, namespace, name)] = body

    def add_token_secret(self, namespace: str, svc_account: str, name: str = "sk-token"):
        self.secrets.setdefault(namespace, []).append(client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, annotations={SVC_ACCOUNT_NAME_ANNOTATION_KEY: svc_account}),
            type="kubernetes.io/service-account-token",
        ))

    def set_job_conditions(self, namespace: str, name: str, *types: str):
        conditions = [client.V1JobCondition(type=t, status="True") for t in types]
        status = client.V1JobStatus(conditions=conditions) if types else None
        self.jobs[(namespace, name)] = client.V1Job(metadata=client.V1ObjectMeta(name=name), status=status)

    def write_calls(self) -> int:
        return (
            self.core_api.create_namespace.call_count
            + self.core_api.create_namespaced_service.call_count
            + self.custom_api.create_namespaced_custom_object.call_count
            + self.custom_api.create_cluster_custom_object.call_count
            + self.admission_api.create_mutating_webhook_configuration.call_count
            + self.batch_api.create_namespaced_job.call_count
        )


@pytest.fixture
def opts() -> Settings:
    return Settings(
        DRIVER_IMAGE="driver:latest",
        DRIVER_PORT=1234,
        USE_CERT_MANAGER=False,
        CERT_MANAGER_ISSUER="",
        LOG_LEVEL="info",
        POD_SVC_ACCOUNT="asdf",
        REQUEUE_SECONDS=5,
    )


@pytest.fixture
def sim() -> Simulation:
    return Simulation(**{
        "apiVersion": "simkube.io/v1",
        "kind": "Simulation",
        "metadata": {"name": TEST_SIM_NAME, "uid": "1234-asdf"},
        "spec": {"driverNamespace": TEST_NAMESPACE, "trace": "file:///foo/bar"},
    })


@pytest.fixture
def root() -> SimulationRoot:
    return SimulationRoot(**{
        "metadata": {"name": f"sk-{TEST_SIM_NAME}-root", "uid": "qwerty-5678"},
    })


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def ctx(cluster: FakeCluster, opts: Settings, sim: Simulation) -> SimulationContext:
    return SimulationContext.with_sim(cluster.k8s, opts, sim)
