import sys
from functools import lru_cache
from typing import Optional

from loguru import logger

from comfyexec.utils.introspection import get_absolute_path

PACKAGE_NAME = "comfyexec"


def configure_logging(level: str = "DEBUG", log_file: Optional[str] = None):
    # Remove the default handler
    logger.remove()

    # Console handler for everything
    logger.add(sys.stderr, level=level)

    # Optional file handler for the records of the ComfyUI client only
    if log_file:
        logger.add(
            get_absolute_path(log_file),
            level=level,
            rotation="10 MB",
            enqueue=True,
            filter=lambda record: record["extra"].get("module") == "comfyui"
        )


def disable_logging():
    """Silence every record emitted from inside the package."""
    logger.disable(PACKAGE_NAME)


def enable_logging():
    logger.enable(PACKAGE_NAME)


@lru_cache(maxsize=1)
def get_client_logger():
    return logger.bind(module="comfyui")
