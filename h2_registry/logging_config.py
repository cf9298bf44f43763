import logging
import sys

from h2_registry.settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def set_logger_and_children_level(logger_instance: logging.Logger, level: int) -> None:
    """Set the level of a logger, its handlers and every child logger below it."""
    logger_instance.setLevel(level)
    for handler in logger_instance.handlers:
        handler.setLevel(level)

    # The root logger has no name and is the parent of everything
    if not logger_instance.name or logger_instance.name == "root":
        return

    prefix = f"{logger_instance.name}."
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(prefix):
            child_logger = logging.getLogger(name)
            child_logger.setLevel(level)
            for handler in child_logger.handlers:
                handler.setLevel(level)


def configure_logger(name: str, level: str = settings.LOG_LEVEL) -> logging.Logger:
    configured_logger = logging.getLogger(name)

    if not configured_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        configured_logger.addHandler(handler)

    configured_logger.setLevel(level)
    configured_logger.propagate = False

    return configured_logger


logger = configure_logger("h2_registry")

uvicorn_logger = logging.getLogger("uvicorn")
uvicorn_access_logger = logging.getLogger("uvicorn.access")
fastapi_logger = logging.getLogger("fastapi")
