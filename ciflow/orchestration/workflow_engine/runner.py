"""
Single step execution with retries and timing.

``StepRunner.execute_step`` never raises for a step's own failures: validation
problems, exceptions, timeouts and unsuccessful results all come back as a
``StepResult`` with ``success=False``. Retries happen inside one call and are
decided by the ``RecoveryPlanner``; only the final outcome is returned.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ...utils.logger import get_workflow_logger
from ..errors import RetryExhaustedError, ValidationError, WorkflowError, format_traceback
from ..models import StepResult
from ..performance import PerformanceMonitor
from ..recovery import RecoveryPlanner
from ..state_store import WorkflowStateStore
from .steps import StepContext, StepDefinition, build_step

logger = get_workflow_logger(__name__)


class StepRunner:
    """Runs one step against a context, retrying through the recovery planner."""

    def __init__(
        self,
        state: WorkflowStateStore,
        planner: Optional[RecoveryPlanner] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        """Initialize the runner.

        Args:
            state: State store holding the retry counters
            planner: Recovery planner, defaults to one bound to ``state``
            monitor: Performance monitor receiving one sample per execution
        """
        self.state = state
        self.planner = planner or RecoveryPlanner(state)
        self.monitor = monitor or PerformanceMonitor()

    async def execute_step(
        self,
        step: Union[StepDefinition, Mapping[str, Any]],
        context: StepContext,
    ) -> StepResult:
        """Execute ``step``, retrying recoverable failures.

        Args:
            step: Step definition (or mapping resolved through ``build_step``)
            context: Context passed to the step body

        Returns:
            Final StepResult with measured duration and attempt count
        """
        try:
            step = build_step(step)
        except ValidationError as e:
            logger.error(f"Invalid step definition: {e}")
            return StepResult.failure(e, duration=0.0, attempts=0, stack=format_traceback(e))

        self.state.reset_recovery(step.name)
        started = time.perf_counter()
        attempts = 0
        logger.info(f"Executing step: {step.name}")

        while True:
            attempts += 1
            timed_out = False
            last_output: Any = None
            try:
                raw = await self._run_once(step, context)
                result = self._coerce_result(step, raw)
            except ValidationError as e:
                logger.error(str(e))
                result = StepResult.failure(e, stack=format_traceback(e))
                break
            except asyncio.TimeoutError as e:
                timed_out = True
                error: BaseException = WorkflowError(
                    f"Step {step.name} timed out after {step.timeout}s",
                    step=step.name,
                    category="timeout",
                    cause=e,
                )
            except Exception as e:
                error = e
            else:
                if result.success:
                    break
                timed_out = result.timed_out
                last_output = result.output
                error = WorkflowError(result.error or f"Step {step.name} reported failure", step=step.name)

            logger.warning(f"Step {step.name} attempt {attempts} failed: {error}")
            if not await self._should_retry(error, step.name):
                if attempts > 1:
                    logger.error(str(RetryExhaustedError(step.name, attempts, error)))
                result = StepResult.failure(
                    error, timed_out=timed_out, output=last_output, stack=format_traceback(error)
                )
                break

        duration = time.perf_counter() - started
        result = result.model_copy(update={"duration": duration, "attempts": attempts})
        self.monitor.track_step_performance(step.name, duration)

        if result.success:
            logger.success(f"Step {step.name} completed in {duration:.2f}s")
        else:
            logger.error(f"Step {step.name} failed after {attempts} attempt(s): {result.error}")
        return result

    async def _run_once(self, step: StepDefinition, context: StepContext) -> Any:
        if step.timeout is not None and not step.handles_timeout:
            return await asyncio.wait_for(step.run(context), timeout=step.timeout)
        return await step.run(context)

    @staticmethod
    def _coerce_result(step: StepDefinition, raw: Any) -> StepResult:
        if isinstance(raw, StepResult):
            return raw
        if not isinstance(raw, Mapping):
            raise ValidationError(
                f"Step {step.name} returned {type(raw).__name__}, expected a result mapping",
                step=step.name,
            )
        try:
            return StepResult.model_validate(dict(raw))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Step {step.name} returned a malformed result: {e.error_count()} validation error(s)",
                step=step.name,
                cause=e,
            ) from e

    async def _should_retry(self, error: BaseException, step: str) -> bool:
        try:
            return await self.planner.attempt_recovery(error, step)
        except Exception as meta_error:
            logger.error(f"meta-error while recovering step {step}: {meta_error}")
            return False
