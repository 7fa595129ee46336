# simkube/controller/reconciler.py
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Any, Iterable, Optional, Tuple

from kubernetes.client.exceptions import ApiException

from simkube.constants import (
    PROMETHEUS_GROUP,
    PROMETHEUS_PLURAL,
    PROMETHEUS_VERSION,
    SERVICE_MONITOR_PLURAL,
    SIMKUBE_GROUP,
    SIMKUBE_VERSION,
    SIMULATION_FINALIZER,
    SIMULATION_PLURAL,
    SIMULATION_ROOT_PLURAL,
    SVC_ACCOUNT_NAME_ANNOTATION_KEY,
    SVC_ACCOUNT_TOKEN_SECRET_TYPE,
)
from simkube.controller.context import SimulationContext
from simkube.controller.objects import (
    build_driver_job,
    build_driver_namespace,
    build_driver_service,
    build_ksm_service_monitor,
    build_mutating_webhook,
    build_prometheus,
    build_prometheus_service,
    build_simulation_root,
)
from simkube.core.config import Settings
from simkube.core.errors import NamespaceNotFound
from simkube.models.simulation import Simulation, SimulationRoot, SimulationState
from simkube.services.kubernetes_service import KubernetesService, is_not_found

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Action:
    """What the runner should do after a reconcile: retry after a delay, or wait for a watch event."""
    requeue_after: Optional[float] = None

    @classmethod
    def requeue(cls, delay: float) -> "Action":
        return cls(requeue_after=delay)

    @classmethod
    def await_change(cls) -> "Action":
        return cls(requeue_after=None)


def classify_job_conditions(conditions: Optional[Iterable[Any]]) -> SimulationState:
    """
    Maps the driver job's conditions to a simulation state. Terminal conditions
    win over Running no matter where they appear in the list.
    """
    types = {
        getattr(c, "type", None)
        for c in (conditions or [])
        if getattr(c, "status", "True") != "False"
    }
    if "Failed" in types:
        return SimulationState.FAILED
    if "Complete" in types or "Completed" in types:
        return SimulationState.FINISHED
    # Either an explicit Running condition or nothing recognizable yet
    return SimulationState.RUNNING


def fetch_driver_status(ctx: SimulationContext) -> SimulationState:
    try:
        job = ctx.k8s.batch_api.read_namespaced_job(name=ctx.driver_name, namespace=ctx.driver_ns)
    except ApiException as e:
        if is_not_found(e):
            return SimulationState.INITIALIZING
        raise

    status = job.status
    return classify_job_conditions(status.conditions if status is not None else None)


def _get_or_create(what: str, read: Callable[[], Any], create: Callable[[], Any]) -> Tuple[Any, bool]:
    try:
        return read(), False
    except ApiException as e:
        if not is_not_found(e):
            raise
    logger.info(f"Creating {what}")
    return create(), True


def _find_token_secret(ctx: SimulationContext) -> Optional[str]:
    secrets = ctx.k8s.core_api.list_namespaced_secret(
        namespace=ctx.driver_ns,
        field_selector=f"type={SVC_ACCOUNT_TOKEN_SECRET_TYPE}",
    )
    for secret in secrets.items:
        annotations = (secret.metadata.annotations if secret.metadata else None) or {}
        if annotations.get(SVC_ACCOUNT_NAME_ANNOTATION_KEY) == ctx.opts.POD_SVC_ACCOUNT:
            return secret.metadata.name
    return None


def _prometheus_ready(prom: Dict[str, Any]) -> bool:
    return (((prom or {}).get("status") or {}).get("availableReplicas") or 0) >= 1


def setup_driver(ctx: SimulationContext, sim: Simulation, root: SimulationRoot) -> Action:
    """
    Brings up the metrics stack and then the driver, one phase per pass. Every
    object is read before it is created, so calling this again against an
    unchanged cluster does nothing and returns the same Action.

    Raises:
        NamespaceNotFound: if the shared metrics namespace does not exist.
    """
    opts = ctx.opts
    core, custom = ctx.k8s.core_api, ctx.k8s.custom_api
    requeue = Action.requeue(opts.REQUEUE_SECONDS)

    try:
        core.read_namespace(name=opts.METRICS_NAMESPACE)
    except ApiException as e:
        if is_not_found(e):
            raise NamespaceNotFound(opts.METRICS_NAMESPACE) from e
        raise

    _, created = _get_or_create(
        f"driver namespace {ctx.driver_ns}",
        lambda: core.read_namespace(name=ctx.driver_ns),
        lambda: core.create_namespace(body=build_driver_namespace(ctx, root)),
    )
    if created:
        return requeue

    _, created = _get_or_create(
        f"service monitor {opts.METRICS_NAMESPACE}/{ctx.service_monitor_name}",
        lambda: custom.get_namespaced_custom_object(
            PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, SERVICE_MONITOR_PLURAL,
            ctx.service_monitor_name),
        lambda: custom.create_namespaced_custom_object(
            PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, SERVICE_MONITOR_PLURAL,
            build_ksm_service_monitor(ctx.service_monitor_name, ctx)),
    )
    if created:
        return requeue

    prom, created = _get_or_create(
        f"prometheus {opts.METRICS_NAMESPACE}/{ctx.prometheus_name}",
        lambda: custom.get_namespaced_custom_object(
            PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, PROMETHEUS_PLURAL,
            ctx.prometheus_name),
        lambda: custom.create_namespaced_custom_object(
            PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, PROMETHEUS_PLURAL,
            build_prometheus(ctx.prometheus_name, ctx.service_monitor_name, ctx)),
    )
    if created:
        return requeue

    _, created = _get_or_create(
        f"prometheus service {opts.METRICS_NAMESPACE}/{ctx.prometheus_svc}",
        lambda: core.read_namespaced_service(name=ctx.prometheus_svc, namespace=opts.METRICS_NAMESPACE),
        lambda: core.create_namespaced_service(
            namespace=opts.METRICS_NAMESPACE, body=build_prometheus_service(ctx.prometheus_svc, ctx, root)),
    )
    if created:
        return requeue

    if not _prometheus_ready(prom):
        logger.info(f"Waiting for prometheus {ctx.prometheus_name} to become ready")
        return requeue

    _, svc_created = _get_or_create(
        f"driver service {ctx.driver_ns}/{ctx.driver_svc}",
        lambda: core.read_namespaced_service(name=ctx.driver_svc, namespace=ctx.driver_ns),
        lambda: core.create_namespaced_service(namespace=ctx.driver_ns, body=build_driver_service(ctx, root)),
    )

    token_secret = _find_token_secret(ctx)
    if token_secret is None:
        logger.info(f"No token secret for service account {opts.POD_SVC_ACCOUNT} in {ctx.driver_ns} yet")
        return requeue

    _, webhook_created = _get_or_create(
        f"mutating webhook {ctx.webhook_name}",
        lambda: ctx.k8s.admission_api.read_mutating_webhook_configuration(name=ctx.webhook_name),
        lambda: ctx.k8s.admission_api.create_mutating_webhook_configuration(
            body=build_mutating_webhook(ctx, root)),
    )

    _, job_created = _get_or_create(
        f"driver job {ctx.driver_ns}/{ctx.driver_name}",
        lambda: ctx.k8s.batch_api.read_namespaced_job(name=ctx.driver_name, namespace=ctx.driver_ns),
        lambda: ctx.k8s.batch_api.create_namespaced_job(
            namespace=ctx.driver_ns, body=build_driver_job(ctx, root, token_secret, sim.spec.trace)),
    )

    if svc_created or webhook_created or job_created:
        logger.info(f"Driver resources for simulation {ctx.name} created; waiting for the job to start")
    return Action.await_change()


def cleanup(ctx: SimulationContext, sim: Simulation):
    """
    Deletes the objects that neither namespace deletion nor owner references will
    remove. Failures are logged and ignored; this never raises.
    """
    opts = ctx.opts
    custom = ctx.k8s.custom_api
    targets = [
        (f"simulation root {ctx.root}",
         lambda: custom.delete_cluster_custom_object(
             SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_ROOT_PLURAL, ctx.root)),
        (f"service monitor {opts.METRICS_NAMESPACE}/{ctx.service_monitor_name}",
         lambda: custom.delete_namespaced_custom_object(
             PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, SERVICE_MONITOR_PLURAL,
             ctx.service_monitor_name)),
        (f"prometheus {opts.METRICS_NAMESPACE}/{ctx.prometheus_name}",
         lambda: custom.delete_namespaced_custom_object(
             PROMETHEUS_GROUP, PROMETHEUS_VERSION, opts.METRICS_NAMESPACE, PROMETHEUS_PLURAL,
             ctx.prometheus_name)),
    ]

    logger.info(f"Cleaning up simulation {sim.name}")
    for what, delete in targets:
        try:
            delete()
            logger.info(f"Deleted {what}")
        except ApiException as e:
            if is_not_found(e):
                logger.warning(f"{what} not found during cleanup. Assuming already deleted.")
            else:
                logger.error(f"Kubernetes API error deleting {what}: {e.status} - {e.reason}")
        except Exception as e:
            logger.error(f"Unexpected error deleting {what}: {e}", exc_info=True)


def ensure_root(ctx: SimulationContext, sim: Simulation) -> SimulationRoot:
    custom = ctx.k8s.custom_api
    obj, _ = _get_or_create(
        f"simulation root {ctx.root}",
        lambda: custom.get_cluster_custom_object(SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_ROOT_PLURAL, ctx.root),
        lambda: custom.create_cluster_custom_object(
            SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_ROOT_PLURAL, build_simulation_root(ctx, sim)),
    )
    return SimulationRoot(**obj)


def update_status(ctx: SimulationContext, sim: Simulation, state: SimulationState):
    ctx.k8s.custom_api.patch_cluster_custom_object_status(
        SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_PLURAL, sim.name, {"status": {"state": state.value}},
    )
    logger.info(f"Simulation {sim.name} is now {state.value}")


def _set_finalizers(ctx: SimulationContext, sim: Simulation, finalizers):
    ctx.k8s.custom_api.patch_cluster_custom_object(
        SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_PLURAL, sim.name, {"metadata": {"finalizers": finalizers}},
    )


def reconcile(sim: Simulation, k8s: KubernetesService, opts: Settings) -> Action:
    """One pass of the simulation control loop."""
    ctx = SimulationContext.with_sim(k8s, opts, sim)
    finalizers = list(sim.metadata.finalizers)

    if sim.is_deleting:
        if SIMULATION_FINALIZER in finalizers:
            cleanup(ctx, sim)
            finalizers.remove(SIMULATION_FINALIZER)
            _set_finalizers(ctx, sim, finalizers)
        return Action.await_change()

    if SIMULATION_FINALIZER not in finalizers:
        _set_finalizers(ctx, sim, finalizers + [SIMULATION_FINALIZER])

    root = ensure_root(ctx, sim)
    state = fetch_driver_status(ctx)
    if state != sim.status.state:
        update_status(ctx, sim, state)

    if state == SimulationState.INITIALIZING:
        return setup_driver(ctx, sim, root)
    if state in (SimulationState.FINISHED, SimulationState.FAILED):
        logger.info(f"Simulation {sim.name} is done ({state.value}); nothing left to reconcile")
    return Action.await_change()
