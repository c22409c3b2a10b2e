"""Standardized logger utility for the entire application."""

from __future__ import annotations

import logging
from typing import Any, Optional

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class WorkflowLogger(logging.LoggerAdapter):
    """Logger adapter adding a ``success`` level used for step outcomes."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def success(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(SUCCESS, msg, *args, **kwargs)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (defaults to caller's __name__)

    Returns:
        Configured logger instance

    Usage:
        from ciflow.utils.logger import get_logger
        logger = get_logger(__name__)
    """
    if name is None:
        import inspect

        frame = inspect.currentframe()
        if frame and frame.f_back:
            name = frame.f_back.f_globals.get("__name__", "ciflow")
        else:
            name = "ciflow"

    return logging.getLogger(name)


def get_workflow_logger(name: str) -> WorkflowLogger:
    """Get a ``WorkflowLogger`` wrapping the named logger."""
    return WorkflowLogger(logging.getLogger(name))
