"""Logging helpers for the async reply service."""

import logging

ROOT_LOGGER_NAME = "AsyncReplyService"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the service logger, or one of its children when ``name`` is given.

    Child loggers (``AsyncReplyService.<name>``) propagate to the service
    logger, so a single ``logging.basicConfig()`` call in ``main.py`` covers
    every component without adding handlers here.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
