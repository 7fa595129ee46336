# simkube/controller/context.py
from dataclasses import dataclass

from simkube.constants import KSM_SVC_MON_NAME
from simkube.core.config import Settings
from simkube.models.simulation import Simulation
from simkube.services.kubernetes_service import KubernetesService


@dataclass(frozen=True)
class SimulationContext:
    """
    Names of everything the reconciler creates for one simulation. Derived only
    from the Simulation's identity, so a restarted controller finds the same objects.
    """
    k8s: KubernetesService
    opts: Settings
    name: str
    root: str
    driver_ns: str
    driver_name: str
    driver_svc: str
    driver_cert_secret: str
    webhook_name: str
    prometheus_name: str
    prometheus_svc: str
    service_monitor_name: str = KSM_SVC_MON_NAME

    @classmethod
    def with_sim(cls, k8s: KubernetesService, opts: Settings, sim: Simulation) -> "SimulationContext":
        name = sim.name
        return cls(
            k8s=k8s,
            opts=opts,
            name=name,
            root=f"sk-{name}-root",
            driver_ns=sim.spec.driver_namespace,
            driver_name=f"sk-{name}-driver",
            driver_svc=f"sk-{name}-driver-svc",
            driver_cert_secret=f"sk-{name}-driver-cert",
            webhook_name=f"sk-{name}-mutatepods",
            prometheus_name=f"sk-{name}-prom",
            prometheus_svc=f"sk-{name}-prom-svc",
        )
