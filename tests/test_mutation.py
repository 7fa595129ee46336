import copy
from unittest.mock import MagicMock, call

import jsonpatch
import pytest

from simkube.constants import (
    LIFETIME_ANNOTATION_KEY,
    ORIG_NAMESPACE_ANNOTATION_KEY,
    SIMULATION_LABEL_KEY,
    VIRTUAL_LABEL_KEY,
    VIRTUAL_NODE_TOLERATION_KEY,
)
from simkube.core.errors import PodSpecMissing
from simkube.models.admission import AdmissionResponse
from simkube.models.lifecycle import Finished, Running, Unknown
from simkube.services.mutation_service import (
    EMPTY_POD_SPEC_HASH,
    DriverContext,
    MutationData,
    mutate_pod,
    pod_spec_hash,
)
from simkube.services.owners_cache import OwnersCache

from .conftest import TEST_NAMESPACE, TEST_SIM_NAME, not_found

TEST_SIM_ROOT_NAME = f"sk-{TEST_SIM_NAME}-root"
TEST_DEPLOYMENT = "the-depl"
VIRTUAL_NS = f"virtual-{TEST_NAMESPACE}"


def _ref(name):
    return {"apiVersion": "apps/v1", "kind": "Deployment", "name": name, "uid": f"uid-{name}"}


@pytest.fixture
def test_pod():
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "the-pod", "namespace": VIRTUAL_NS},
        "spec": {"containers": []},
    }


@pytest.fixture
def store():
    store = MagicMock()
    store.has_obj.side_effect = lambda ns_name: ns_name == f"{TEST_NAMESPACE}/{TEST_DEPLOYMENT}"
    store.lookup_pod_lifecycle.return_value = Finished(1, 2)
    return store


def make_ctx(pod, pod_owners, store, fetch=None):
    owners = {f"Pod:{VIRTUAL_NS}/{pod['metadata']['name']}": pod_owners}
    for ref in pod_owners:
        owners[f"{ref['kind']}:{VIRTUAL_NS}/{ref['name']}"] = []
    cache = OwnersCache(fetch or MagicMock(side_effect=AssertionError("unexpected fetch")), owners=owners)
    return DriverContext(
        name=TEST_SIM_NAME,
        sim_root=TEST_SIM_ROOT_NAME,
        virtual_ns_prefix="virtual",
        owners_cache=cache,
        store=store,
    )


@pytest.fixture
def adm_resp():
    return AdmissionResponse(uid="12345-12345")


def _apply(pod, resp):
    return jsonpatch.apply_patch(copy.deepcopy(pod), resp.decoded_patch())


class TestMutatePod:
    def test_not_owned_by_sim(self, test_pod, store, adm_resp):
        ctx = make_ctx(test_pod, [_ref("foo")], store)

        resp = mutate_pod(ctx, adm_resp, test_pod)

        assert resp.patch is None
        assert resp.allowed
        store.lookup_pod_lifecycle.assert_not_called()

    def test_mutate_pod(self, test_pod, store, adm_resp):
        test_pod["metadata"]["annotations"] = {ORIG_NAMESPACE_ANNOTATION_KEY: TEST_NAMESPACE}
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME), _ref(TEST_DEPLOYMENT)], store)

        resp = mutate_pod(ctx, adm_resp, test_pod)

        store.lookup_pod_lifecycle.assert_called_once_with(
            f"{TEST_NAMESPACE}/{TEST_DEPLOYMENT}", EMPTY_POD_SPEC_HASH, 0)
        assert resp.allowed
        assert resp.patch_type == "JSONPatch"
        assert resp.uid == "12345-12345"

        patched = _apply(test_pod, resp)
        assert patched["metadata"]["annotations"][LIFETIME_ANNOTATION_KEY] == "1"
        assert patched["metadata"]["labels"][VIRTUAL_LABEL_KEY] == "true"
        assert patched["metadata"]["labels"][SIMULATION_LABEL_KEY] == TEST_SIM_NAME
        assert patched["spec"]["nodeSelector"] == {"type": "virtual"}
        assert patched["spec"]["tolerations"] == [
            {"key": VIRTUAL_NODE_TOLERATION_KEY, "operator": "Exists", "effect": "NoSchedule"},
        ]

    def test_original_namespace_falls_back_to_virtual_prefix(self, test_pod, store, adm_resp):
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME), _ref(TEST_DEPLOYMENT)], store)

        mutate_pod(ctx, adm_resp, test_pod)

        store.has_obj.assert_any_call(f"{TEST_NAMESPACE}/{TEST_DEPLOYMENT}")
        store.lookup_pod_lifecycle.assert_called_once()

    @pytest.mark.parametrize("lifecycle", [Running(1), Unknown()])
    def test_no_lifetime_without_finished_run(self, test_pod, store, adm_resp, lifecycle):
        store.lookup_pod_lifecycle.return_value = lifecycle
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME), _ref(TEST_DEPLOYMENT)], store)

        patched = _apply(test_pod, mutate_pod(ctx, adm_resp, test_pod))

        assert LIFETIME_ANNOTATION_KEY not in patched["metadata"].get("annotations", {})
        assert patched["metadata"]["labels"][VIRTUAL_LABEL_KEY] == "true"

    def test_no_trace_owner_still_virtualizes(self, test_pod, store, adm_resp):
        store.has_obj.side_effect = None
        store.has_obj.return_value = False
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME)], store)

        patched = _apply(test_pod, mutate_pod(ctx, adm_resp, test_pod))

        store.lookup_pod_lifecycle.assert_not_called()
        assert patched["spec"]["tolerations"][0]["key"] == VIRTUAL_NODE_TOLERATION_KEY

    def test_replica_ordinals(self, test_pod, store, adm_resp):
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME), _ref(TEST_DEPLOYMENT)], store)

        mutate_pod(ctx, adm_resp, test_pod)
        mutate_pod(ctx, adm_resp, test_pod)

        owner = f"{TEST_NAMESPACE}/{TEST_DEPLOYMENT}"
        assert store.lookup_pod_lifecycle.call_args_list == [
            call(owner, EMPTY_POD_SPEC_HASH, 0),
            call(owner, EMPTY_POD_SPEC_HASH, 1),
        ]

    def test_dry_run_does_not_consume_ordinal(self, test_pod, store, adm_resp):
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME), _ref(TEST_DEPLOYMENT)], store)

        dry = _apply(test_pod, mutate_pod(ctx, adm_resp, test_pod, dry_run=True))
        mutate_pod(ctx, adm_resp, test_pod)

        owner = f"{TEST_NAMESPACE}/{TEST_DEPLOYMENT}"
        assert store.lookup_pod_lifecycle.call_args_list == [
            call(owner, EMPTY_POD_SPEC_HASH, 0),
            call(owner, EMPTY_POD_SPEC_HASH, 0),
        ]
        assert dry["metadata"]["annotations"][LIFETIME_ANNOTATION_KEY] == "1"

    def test_owned_pod_without_spec(self, test_pod, store, adm_resp):
        del test_pod["spec"]
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME)], store)

        with pytest.raises(PodSpecMissing):
            mutate_pod(ctx, adm_resp, test_pod)

    def test_deleted_owner_fails_open(self, test_pod, store, adm_resp):
        test_pod["metadata"]["ownerReferences"] = [_ref("vanished")]
        ctx = make_ctx(test_pod, [], store, fetch=MagicMock(side_effect=not_found()))
        # Drop the pre-seeded entry so the walk starts from the pod's own refs
        ctx.owners_cache._owners.clear()

        resp = mutate_pod(ctx, adm_resp, test_pod)

        assert resp.patch is None
        assert resp.allowed

    def test_existing_toleration_not_duplicated(self, test_pod, store, adm_resp):
        toleration = {"key": VIRTUAL_NODE_TOLERATION_KEY, "operator": "Exists", "effect": "NoSchedule"}
        test_pod["spec"]["tolerations"] = [toleration]
        ctx = make_ctx(test_pod, [_ref(TEST_SIM_ROOT_NAME)], store)

        patched = _apply(test_pod, mutate_pod(ctx, adm_resp, test_pod))

        assert patched["spec"]["tolerations"] == [toleration]


class TestPodSpecHash:
    def test_empty(self):
        assert pod_spec_hash({}) == pod_spec_hash({"containers": []}) == EMPTY_POD_SPEC_HASH

    def test_ignores_fields_outside_template_identity(self):
        a = {"containers": [{"name": "a", "image": "nginx:1", "env": [{"name": "X", "value": "1"}]}]}
        b = {"containers": [{"name": "b", "image": "nginx:1"}], "nodeName": "n1"}
        assert pod_spec_hash(a) == pod_spec_hash(b)

    @pytest.mark.parametrize("field,value", [
        ("image", "nginx:2"),
        ("command", ["sleep"]),
        ("args", ["10"]),
        ("resources", {"requests": {"cpu": "1"}}),
    ])
    def test_distinguishes_template_variants(self, field, value):
        base = {"containers": [{"image": "nginx:1"}]}
        variant = copy.deepcopy(base)
        variant["containers"][0][field] = value
        assert pod_spec_hash(base) != pod_spec_hash(variant)


def test_mutation_data_counts_per_owner_and_hash():
    data = MutationData()
    assert data.next_ordinal("ns/a", 1) == 0
    assert data.next_ordinal("ns/a", 1) == 1
    assert data.next_ordinal("ns/a", 2) == 0
    assert data.next_ordinal("ns/b", 1) == 0
