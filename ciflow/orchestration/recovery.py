"""Error classification and retry planning.

An error raised by a step is mapped onto one of four recovery strategies. Each
strategy fixes a retry budget and an exponential backoff curve. The planner
reads the per-step attempt counter from the state store, sleeps for the
computed delay and runs the strategy's recovery hook before allowing a retry.
"""
from __future__ import annotations

import asyncio
import dataclasses
import errno
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)

RecoveryHook = Callable[[str, BaseException], Awaitable[bool]]
SleepFunc = Callable[[float], Awaitable[Any]]


class RecoveryStrategyName(Enum):
    """Recovery strategy selected for an error."""

    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    BUILD_ERROR = "BUILD_ERROR"
    DEPLOYMENT_ERROR = "DEPLOYMENT_ERROR"


@dataclass(frozen=True)
class RecoveryStrategy:
    """Retry budget and backoff curve for one class of errors.

    Attributes:
        max_retries: Retries allowed per step before recovery gives up
        retry_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier applied per attempt
        max_backoff: Ceiling for any single delay, in seconds
    """

    max_retries: int
    retry_delay: float
    backoff_factor: float
    max_backoff: float

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_backoff < self.retry_delay:
            raise ValueError("max_backoff must be >= retry_delay")

    def calculate_backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), capped at max_backoff."""
        return min(self.retry_delay * (self.backoff_factor ** attempt), self.max_backoff)


STRATEGIES: Dict[RecoveryStrategyName, RecoveryStrategy] = {
    RecoveryStrategyName.NETWORK_ERROR: RecoveryStrategy(3, 5.0, 2.0, 30.0),
    RecoveryStrategyName.AUTH_ERROR: RecoveryStrategy(2, 2.0, 1.5, 10.0),
    RecoveryStrategyName.BUILD_ERROR: RecoveryStrategy(2, 3.0, 1.5, 15.0),
    RecoveryStrategyName.DEPLOYMENT_ERROR: RecoveryStrategy(2, 5.0, 2.0, 30.0),
}


def _word_pattern(*words: str) -> "re.Pattern[str]":
    return re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b")


_NETWORK_PATTERN = _word_pattern(
    "network",
    "econnreset",
    "econnrefused",
    "etimedout",
    "connection reset",
    "connection refused",
    "connection aborted",
    "could not resolve host",
    "name or service not known",
    "temporary failure in name resolution",
)
_AUTH_PATTERN = _word_pattern(
    "auth",
    "authentication",
    "authenticate",
    "unauthenticated",
    "authorization",
    "unauthorized",
    "forbidden",
    "401",
    "403",
)
_NETWORK_ERRNOS = {errno.ECONNRESET, errno.ECONNREFUSED, errno.ECONNABORTED, errno.ETIMEDOUT}
_NETWORK_CODES = {"ECONNRESET", "ECONNREFUSED", "ECONNABORTED", "ETIMEDOUT", "ENOTFOUND"}


def _is_connectivity_error(error: BaseException | str, message: str) -> bool:
    if isinstance(error, ConnectionError):
        return True
    if getattr(error, "errno", None) in _NETWORK_ERRNOS:
        return True
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in _NETWORK_CODES:
        return True
    return _NETWORK_PATTERN.search(message) is not None


def classify_error(error: BaseException | str, step_name: Optional[str] = None) -> RecoveryStrategyName:
    """Map an error raised by ``step_name`` onto a recovery strategy.

    Checks run in order: connectivity, authentication, build, deploy. Anything
    unrecognized is treated as a network error. Connectivity and authentication
    keywords only match whole words.
    """
    message = str(error).lower()
    step = (step_name or "").lower()

    if _is_connectivity_error(error, message):
        return RecoveryStrategyName.NETWORK_ERROR
    if _AUTH_PATTERN.search(message):
        return RecoveryStrategyName.AUTH_ERROR
    if "build" in step or "build" in message:
        return RecoveryStrategyName.BUILD_ERROR
    if "deploy" in step or "deploy" in message:
        return RecoveryStrategyName.DEPLOYMENT_ERROR
    return RecoveryStrategyName.NETWORK_ERROR


def _noop_hook(strategy: RecoveryStrategyName) -> RecoveryHook:
    async def hook(step: str, error: BaseException) -> bool:
        logger.info(f"Running {strategy.value} recovery for step {step}")
        return True

    return hook


class RecoveryPlanner:
    """Decides whether a failed step may be retried and waits out the backoff."""

    def __init__(
        self,
        state: WorkflowStateStore,
        strategies: Optional[Mapping[RecoveryStrategyName, RecoveryStrategy]] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize the planner.

        Args:
            state: State store owning the per-step recovery counters
            strategies: Strategy table override, defaults to ``STRATEGIES``
            sleep: Coroutine used to wait out backoff delays
        """
        self.state = state
        self.strategies: Dict[RecoveryStrategyName, RecoveryStrategy] = dict(strategies or STRATEGIES)
        self._sleep = sleep
        self._hooks: Dict[RecoveryStrategyName, RecoveryHook] = {
            name: _noop_hook(name) for name in RecoveryStrategyName
        }

    def register_recovery_hook(self, strategy: RecoveryStrategyName, hook: RecoveryHook) -> None:
        """Replace the remediation hook run before retrying ``strategy`` errors."""
        self._hooks[strategy] = hook

    def classify(self, error: BaseException | str, step_name: Optional[str] = None) -> RecoveryStrategyName:
        return classify_error(error, step_name)

    def get_strategy(
        self,
        error: BaseException | str,
        step_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[RecoveryStrategyName, RecoveryStrategy]:
        """Classify ``error`` and apply per-call parameter overrides."""
        name = self.classify(error, step_name)
        strategy = self.strategies[name]
        if overrides:
            strategy = dataclasses.replace(strategy, **dict(overrides))
        return name, strategy

    def next_delay(self, step: str, strategy: RecoveryStrategy) -> float:
        """Backoff delay for the step's next retry."""
        attempt = self.state.get_recovery_state(step).recovery_attempt
        return strategy.calculate_backoff_delay(attempt)

    async def attempt_recovery(
        self,
        error: BaseException,
        step: str,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Try to recover ``step`` from ``error``.

        Args:
            error: Exception raised by the failed attempt
            step: Step name
            overrides: Replacement strategy parameters for this call

        Returns:
            True if the caller should retry the step
        """
        name, strategy = self.get_strategy(error, step, overrides)

        if not self.state.can_retry_step(step, strategy.max_retries):
            logger.warning(f"No retries left for step {step} ({name.value})")
            return False
        if not self.state.start_recovery(step, strategy.max_retries):
            return False

        success = False
        try:
            attempt = self.state.get_recovery_state(step).recovery_attempt
            delay = strategy.calculate_backoff_delay(attempt)
            logger.info(
                f"Attempting {name.value} recovery for {step} "
                f"(attempt {attempt + 1}/{strategy.max_retries}, waiting {delay:.1f}s)"
            )
            await self._sleep(delay)
            success = bool(await self._hooks[name](step, error))
        except Exception as e:
            logger.error(f"Recovery failed for {step}: {e}")
            success = False
        finally:
            self.state.end_recovery(step, success)
        return success
