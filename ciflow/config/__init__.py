"""Configuration loaded from environment variables and an optional ``.env`` file."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _parse_bool(value: str | bool | None) -> bool:
    """Parse boolean value from various formats."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


def _getenv(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.getenv(key, default)


def _getenv_int(key: str, default: int) -> int:
    """Get integer environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as integer
    """
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid integer value for {key}='{value}'. Expected integer, got: {value}"
        ) from e


def _getenv_float(key: str, default: float) -> float:
    """Get float environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as float
    """
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid float value for {key}='{value}'. Expected float, got: {value}"
        ) from e


@dataclass
class Config:
    """Orchestrator configuration loaded from ``CIFLOW_*`` environment variables."""

    # ========== Paths ==========
    state_dir: Path = field(default_factory=lambda: Path(_getenv("CIFLOW_STATE_DIR", "temp")))
    cache_dir: Path = field(
        default_factory=lambda: Path(_getenv("CIFLOW_CACHE_DIR", ".workflow-cache"))
    )

    # ========== Caching ==========
    enable_caching: bool = field(
        default_factory=lambda: _parse_bool(_getenv("CIFLOW_ENABLE_CACHING", "true"))
    )
    cache_ttl: float = field(default_factory=lambda: _getenv_float("CIFLOW_CACHE_TTL", 86400.0))

    # ========== Parallel execution ==========
    max_concurrent: int = field(default_factory=lambda: _getenv_int("CIFLOW_MAX_CONCURRENT", 4))
    parallel_timeout: float = field(
        default_factory=lambda: _getenv_float("CIFLOW_PARALLEL_TIMEOUT", 300.0)
    )
    task_timeout: float = field(default_factory=lambda: _getenv_float("CIFLOW_TASK_TIMEOUT", 120.0))

    # ========== Step monitoring ==========
    step_warning_threshold: float = field(
        default_factory=lambda: _getenv_float("CIFLOW_STEP_WARNING_THRESHOLD", 30.0)
    )
    step_critical_threshold: float = field(
        default_factory=lambda: _getenv_float("CIFLOW_STEP_CRITICAL_THRESHOLD", 60.0)
    )

    # ========== Recovery ==========
    recover_interrupted: bool = field(
        default_factory=lambda: _parse_bool(_getenv("CIFLOW_RECOVER_INTERRUPTED", "true"))
    )

    # ========== Logging ==========
    log_level: str = field(default_factory=lambda: _getenv("CIFLOW_LOG_LEVEL", "INFO").upper())
    log_dir: Optional[Path] = field(
        default_factory=lambda: Path(_getenv("CIFLOW_LOG_DIR")) if _getenv("CIFLOW_LOG_DIR") else None
    )
    json_output: bool = field(
        default_factory=lambda: _parse_bool(_getenv("CIFLOW_JSON_OUTPUT", "false"))
    )

    def __post_init__(self) -> None:
        """Validate values and create working directories."""
        self.state_dir = Path(self.state_dir)
        self.cache_dir = Path(self.cache_dir)

        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        for name in ("cache_ttl", "parallel_timeout", "task_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.step_critical_threshold < self.step_warning_threshold:
            raise ValueError("step_critical_threshold must be >= step_warning_threshold")
        if self.log_level not in ("DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.log_level}")

        self.state_dir.mkdir(parents=True, exist_ok=True)
        if self.enable_caching:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls, env_file: Optional[Path] = None, **overrides) -> "Config":
        """Load a ``.env`` file, then build a Config.

        Variables already present in the environment win over the file.

        Args:
            env_file: Explicit env file; otherwise ``.env`` in the working
                directory or its parent is used when present
            **overrides: Field values taking precedence over the environment
        """
        env_paths = [Path(env_file)] if env_file else [Path(".env"), Path("../.env")]
        for env_path in env_paths:
            if env_path.exists():
                load_dotenv(env_path, override=False)
                logger.debug(f"Loaded environment from {env_path}")
                break
        else:
            if env_file:
                logger.warning(f"Environment file not found: {env_file}")
        return cls(**overrides)


_config: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Process-wide configuration, loaded on first use."""
    global _config
    with _config_lock:
        if _config is None:
            _config = Config.load()
        return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    with _config_lock:
        _config = None


__all__ = ["Config", "get_config", "reset_config"]
