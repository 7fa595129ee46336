# simkube/core/logging_config.py
import logging
from .config import settings

def setup_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # The kubernetes client logs every request body at DEBUG
    logging.getLogger("kubernetes.client.rest").setLevel(logging.INFO)
