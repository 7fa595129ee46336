# simkube/constants.py
DRIVER_ADMISSION_WEBHOOK_PORT = 8888

# Common annotations and labels
LIFETIME_ANNOTATION_KEY = "simkube.io/lifetime-seconds"
ORIG_NAMESPACE_ANNOTATION_KEY = "simkube.io/original-namespace"
SIMULATION_LABEL_KEY = "simkube.io/simulation"
VIRTUAL_LABEL_KEY = "simkube.io/virtual"
APP_KUBERNETES_IO_NAME_KEY = "app.kubernetes.io/name"
APP_KUBERNETES_IO_COMPONENT_KEY = "app.kubernetes.io/component"

# Taint/toleration key
VIRTUAL_NODE_TOLERATION_KEY = "kwok-provider"
VIRTUAL_NODE_SELECTOR = {"type": "virtual"}

# Defaults
DEFAULT_METRICS_NS = "monitoring"
DEFAULT_METRICS_SVC_ACCOUNT = "prometheus-k8s"

# Custom resources
SIMKUBE_GROUP = "simkube.io"
SIMKUBE_VERSION = "v1"
SIMULATION_PLURAL = "simulations"
SIMULATION_ROOT_PLURAL = "simulationroots"
SIMULATION_FINALIZER = "simkube.io/simulation-finalizer"

PROMETHEUS_GROUP = "monitoring.coreos.com"
PROMETHEUS_VERSION = "v1"
PROMETHEUS_PLURAL = "prometheuses"
SERVICE_MONITOR_PLURAL = "servicemonitors"

KSM_SVC_MON_NAME = "sk-ksm-svc-mon"
PROMETHEUS_PORT = 9090
WEBHOOK_PATH = "/mutate"

SVC_ACCOUNT_TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"
SVC_ACCOUNT_NAME_ANNOTATION_KEY = "kubernetes.io/service-account.name"
