# simkube/controller/objects.py
# Manifest builders for everything the reconciler creates. Pure functions: the
# same inputs always produce the same dict.
from typing import Dict, Any, Optional

from simkube.constants import (
    APP_KUBERNETES_IO_COMPONENT_KEY,
    APP_KUBERNETES_IO_NAME_KEY,
    PROMETHEUS_GROUP,
    PROMETHEUS_PORT,
    PROMETHEUS_VERSION,
    SIMKUBE_GROUP,
    SIMKUBE_VERSION,
    SIMULATION_LABEL_KEY,
    WEBHOOK_PATH,
)
from simkube.controller.context import SimulationContext
from simkube.models.simulation import Simulation, SimulationRoot

Manifest = Dict[str, Any]


def _metadata(name: str, namespace: Optional[str], sim_name: str, owner: Optional[Dict[str, Any]],
              component: Optional[str] = None) -> Dict[str, Any]:
    labels = {SIMULATION_LABEL_KEY: sim_name}
    if component:
        labels[APP_KUBERNETES_IO_COMPONENT_KEY] = component
    meta = {"name": name, "labels": labels}
    if owner:
        meta["ownerReferences"] = [owner]
    if namespace:
        meta["namespace"] = namespace
    return meta


def _driver_selector(ctx: SimulationContext) -> Dict[str, str]:
    return {SIMULATION_LABEL_KEY: ctx.name, APP_KUBERNETES_IO_COMPONENT_KEY: "driver"}


def build_simulation_root(ctx: SimulationContext, sim: Simulation) -> Manifest:
    return {
        "apiVersion": f"{SIMKUBE_GROUP}/{SIMKUBE_VERSION}",
        "kind": "SimulationRoot",
        "metadata": {"name": ctx.root, "labels": {SIMULATION_LABEL_KEY: sim.name}},
        "spec": {},
    }


def build_driver_namespace(ctx: SimulationContext, root: SimulationRoot) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": _metadata(ctx.driver_ns, None, ctx.name, root.owner_reference()),
    }


def build_ksm_service_monitor(name: str, ctx: SimulationContext) -> Manifest:
    # Shared by every simulation, so nothing owns it
    metadata = _metadata(name, ctx.opts.METRICS_NAMESPACE, ctx.name, None, "metrics")
    metadata["labels"][APP_KUBERNETES_IO_NAME_KEY] = name
    return {
        "apiVersion": f"{PROMETHEUS_GROUP}/{PROMETHEUS_VERSION}",
        "kind": "ServiceMonitor",
        "metadata": metadata,
        "spec": {
            "selector": {"matchLabels": {APP_KUBERNETES_IO_NAME_KEY: "kube-state-metrics"}},
            "namespaceSelector": {"matchNames": [ctx.opts.METRICS_NAMESPACE]},
            "endpoints": [{
                "port": "https-main",
                "scheme": "https",
                "interval": "1s",
                "bearerTokenFile": "/var/run/secrets/kubernetes.io/serviceaccount/token",
                "tlsConfig": {"insecureSkipVerify": True},
                "honorLabels": True,
            }],
        },
    }


def build_prometheus(name: str, service_monitor_name: str, ctx: SimulationContext) -> Manifest:
    return {
        "apiVersion": f"{PROMETHEUS_GROUP}/{PROMETHEUS_VERSION}",
        "kind": "Prometheus",
        "metadata": _metadata(name, ctx.opts.METRICS_NAMESPACE, ctx.name, None, "metrics"),
        "spec": {
            "replicas": 1,
            "serviceAccountName": ctx.opts.METRICS_SVC_ACCOUNT,
            "podMetadata": {"labels": {SIMULATION_LABEL_KEY: ctx.name}},
            "serviceMonitorSelector": {"matchLabels": {APP_KUBERNETES_IO_NAME_KEY: service_monitor_name}},
            "serviceMonitorNamespaceSelector": {},
            "evaluationInterval": "1s",
            "scrapeInterval": "1s",
            "externalLabels": {"simulation": ctx.name},
        },
    }


def build_prometheus_service(name: str, ctx: SimulationContext, root: SimulationRoot) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, ctx.opts.METRICS_NAMESPACE, ctx.name, root.owner_reference(), "metrics"),
        "spec": {
            "selector": {SIMULATION_LABEL_KEY: ctx.name},
            "ports": [{"name": "web", "port": PROMETHEUS_PORT, "targetPort": PROMETHEUS_PORT}],
        },
    }


def build_driver_service(ctx: SimulationContext, root: SimulationRoot) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(ctx.driver_svc, ctx.driver_ns, ctx.name, root.owner_reference(), "driver"),
        "spec": {
            "selector": _driver_selector(ctx),
            "ports": [{"port": 443, "targetPort": ctx.opts.DRIVER_PORT}],
        },
    }


def build_mutating_webhook(ctx: SimulationContext, root: SimulationRoot) -> Manifest:
    metadata = _metadata(ctx.webhook_name, None, ctx.name, root.owner_reference(), "driver")
    if ctx.opts.USE_CERT_MANAGER and ctx.opts.CERT_MANAGER_ISSUER:
        metadata["annotations"] = {"cert-manager.io/inject-ca-from": f"{ctx.driver_ns}/{ctx.driver_cert_secret}"}

    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": metadata,
        "webhooks": [{
            "name": f"{ctx.webhook_name}.{SIMKUBE_GROUP}",
            "admissionReviewVersions": ["v1"],
            "sideEffects": "None",
            "failurePolicy": "Ignore",
            "clientConfig": {
                "service": {
                    "namespace": ctx.driver_ns,
                    "name": ctx.driver_svc,
                    "port": 443,
                    "path": WEBHOOK_PATH,
                },
            },
            "rules": [{
                "apiGroups": [""],
                "apiVersions": ["v1"],
                "operations": ["CREATE"],
                "resources": ["pods"],
                "scope": "Namespaced",
            }],
        }],
    }


def build_driver_job(ctx: SimulationContext, root: SimulationRoot, token_secret: str, trace: str) -> Manifest:
    env = [
        {"name": "SIM_NAME", "value": ctx.name},
        {"name": "SIM_ROOT", "value": ctx.root},
        {"name": "TRACE_PATH", "value": trace},
        {"name": "DRIVER_PORT", "value": str(ctx.opts.DRIVER_PORT)},
        {"name": "LOG_LEVEL", "value": ctx.opts.LOG_LEVEL},
    ]
    volumes = [{"name": "token", "secret": {"secretName": token_secret}}]
    mounts = [{"name": "token", "mountPath": "/var/run/secrets/kubernetes.io/serviceaccount", "readOnly": True}]
    if ctx.opts.USE_CERT_MANAGER:
        volumes.append({"name": "webhook-cert", "secret": {"secretName": ctx.driver_cert_secret}})
        mounts.append({"name": "webhook-cert", "mountPath": "/usr/local/etc/ssl", "readOnly": True})
        env.extend([
            {"name": "CERT_PATH", "value": "/usr/local/etc/ssl/tls.crt"},
            {"name": "KEY_PATH", "value": "/usr/local/etc/ssl/tls.key"},
        ])

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _metadata(ctx.driver_name, ctx.driver_ns, ctx.name, root.owner_reference(), "driver"),
        "spec": {
            "backoffLimit": 0,
            "template": {
                "metadata": {"labels": _driver_selector(ctx)},
                "spec": {
                    "restartPolicy": "Never",
                    "automountServiceAccountToken": False,
                    "containers": [{
                        "name": "driver",
                        "image": ctx.opts.DRIVER_IMAGE,
                        "env": env,
                        "ports": [{"containerPort": ctx.opts.DRIVER_PORT}],
                        "volumeMounts": mounts,
                    }],
                    "volumes": volumes,
                },
            },
        },
    }
