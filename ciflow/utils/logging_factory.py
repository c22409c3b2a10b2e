"""Centralized logging factory for consistent logger creation.

The factory configures the ``ciflow`` logger hierarchy once per process:
a console handler plus an optional ``workflow.log`` file under the log
directory. Later calls to ``initialize()`` are ignored.

Usage:
    LoggingFactory.initialize(log_dir=Path("logs"), level=logging.INFO)
    logger = LoggingFactory.get_logger(__name__)
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .logger import DEFAULT_FORMAT

if TYPE_CHECKING:
    from ..config import Config

ROOT_LOGGER = "ciflow"
LOG_FILENAME = "workflow.log"


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _log_dir: Directory holding the log file, None for console only
    """

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def initialize(
        cls,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        format_string: Optional[str] = None,
        console: bool = True,
    ) -> None:
        """Initialize the ``ciflow`` logger hierarchy once.

        Args:
            log_dir: Directory for ``workflow.log``; no file handler when None
            level: Level for the ``ciflow`` logger
            format_string: Custom format string for log messages
            console: Attach a stderr stream handler
        """
        if cls._initialized:
            return

        formatter = logging.Formatter(format_string or DEFAULT_FORMAT)
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level)

        if log_dir is not None:
            cls._log_dir = Path(log_dir)
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(cls._log_dir / LOG_FILENAME)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        if console:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(formatter)
            root.addHandler(stream_handler)

        cls._initialized = True

    @classmethod
    def initialize_from_config(cls, config: "Config", console: bool = True) -> None:
        """Initialize using ``config.log_level`` and ``config.log_dir``."""
        cls.initialize(
            log_dir=config.log_dir,
            level=logging.getLevelName(config.log_level),
            console=console,
        )

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger, initializing the factory with defaults on first use."""
        if not cls._initialized:
            cls.initialize()
        return logging.getLogger(name)

    @classmethod
    def set_level(cls, name: str, level: int) -> None:
        logging.getLogger(name).setLevel(level)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """Switch the ``ciflow`` hierarchy between DEBUG and INFO."""
        logging.getLogger(ROOT_LOGGER).setLevel(logging.DEBUG if verbose else logging.INFO)

    @classmethod
    def reset(cls) -> None:
        """Remove handlers installed by ``initialize`` (used by tests)."""
        root = logging.getLogger(ROOT_LOGGER)
        for handler in root.handlers[:]:
            handler.close()
            root.removeHandler(handler)
        cls._initialized = False
        cls._log_dir = None


def get_logger(name: str) -> logging.Logger:
    """Convenience wrapper around ``LoggingFactory.get_logger``."""
    return LoggingFactory.get_logger(name)
