"""Step duration tracking."""
from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 30.0
DEFAULT_CRITICAL_THRESHOLD = 60.0
MAX_SAMPLES = 10


class PerformanceMonitor:
    """Keeps the most recent duration samples per step and flags slow steps."""

    def __init__(
        self,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
        max_samples: int = MAX_SAMPLES,
    ):
        if critical_threshold < warning_threshold:
            raise ValueError("critical_threshold must be >= warning_threshold")
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.max_samples = max_samples
        self._samples: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def track_step_performance(self, step: str, duration: float) -> None:
        """Record a duration sample (seconds) for ``step``."""
        with self._lock:
            samples = self._samples.setdefault(step, deque(maxlen=self.max_samples))
            samples.append(duration)

        if duration >= self.critical_threshold:
            logger.error(f"Step {step} took {duration:.1f}s (critical threshold {self.critical_threshold:.0f}s)")
        elif duration >= self.warning_threshold:
            logger.warning(f"Step {step} took {duration:.1f}s (warning threshold {self.warning_threshold:.0f}s)")

    def get_step_stats(self, step: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            samples = list(self._samples.get(step, ()))
        if not samples:
            return None
        return {
            "samples": len(samples),
            "last": samples[-1],
            "average": sum(samples) / len(samples),
            "min": min(samples),
            "max": max(samples),
        }

    def get_performance_summary(self) -> Dict[str, Dict[str, Any]]:
        """Stats for every tracked step, keyed by step name."""
        with self._lock:
            steps = list(self._samples)
        return {step: self.get_step_stats(step) for step in steps}

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
