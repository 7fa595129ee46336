# simkube/controller/main.py
import logging
import signal

from simkube.controller.runner import SimulationController
from simkube.core.config import settings
from simkube.core.logging_config import setup_logging
from simkube.services.kubernetes_service import make_kubernetes_service

logger = logging.getLogger(__name__)


def run():
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} controller...")
    logger.info(f"Driver image: {settings.DRIVER_IMAGE}")
    logger.info(f"Metrics namespace: {settings.METRICS_NAMESPACE}")
    logger.info(f"Requeue delay: {settings.REQUEUE_SECONDS}s")

    controller = SimulationController(make_kubernetes_service(), settings)
    signal.signal(signal.SIGTERM, lambda *_: controller.stop())
    signal.signal(signal.SIGINT, lambda *_: controller.stop())
    controller.run()


if __name__ == "__main__":
    run()
