"""
Workflow engine.

Runs an ordered step list against the state store: one step at a time, in
declaration order, skipping steps whose dependencies did not complete. A
failing critical step aborts the run; a failing non-critical step is recorded
and the run moves on.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ...cache import WorkflowCache, save_to_cache, try_use_cache
from ...config import Config, get_config
from ..errors import WorkflowError
from ..models import RunSnapshot, RunStatus, StepResult
from ..performance import PerformanceMonitor
from ..recovery import RecoveryPlanner
from ..state_store import WorkflowStateStore
from ..storage import JsonFileStateStorage
from .runner import StepRunner
from .steps import StepContext, StepDefinition, WorkflowDefinition, build_step, find_definition_problems

logger = logging.getLogger(__name__)

StepLike = Union[StepDefinition, Mapping[str, Any]]
EngineCallback = Callable[[str, Dict[str, Any]], Any]


class WorkflowEngine:
    """Sequential workflow engine with criticality-aware failure handling."""

    def __init__(
        self,
        state: Optional[WorkflowStateStore] = None,
        config: Optional[Config] = None,
        cache: Optional[WorkflowCache] = None,
        runner: Optional[StepRunner] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        """Initialize the engine.

        Args:
            state: State store; defaults to JSON files under ``config.state_dir``
            config: Configuration; defaults to ``get_config()``
            cache: Result cache for steps that opt into caching
            runner: Step runner; defaults to one sharing ``state`` and ``monitor``
            monitor: Performance monitor; thresholds default from ``config``
        """
        self.config = config or get_config()
        self.state = state or WorkflowStateStore(JsonFileStateStorage(self.config.state_dir))
        self.cache = cache or WorkflowCache(
            self.config.cache_dir, ttl=self.config.cache_ttl, enabled=self.config.enable_caching
        )
        self.monitor = monitor or PerformanceMonitor(
            warning_threshold=self.config.step_warning_threshold,
            critical_threshold=self.config.step_critical_threshold,
        )
        self.runner = runner or StepRunner(
            self.state, planner=RecoveryPlanner(self.state), monitor=self.monitor
        )
        self._callbacks: Dict[str, List[EngineCallback]] = {}

    def add_callback(self, event: str, callback: EngineCallback) -> None:
        """Register a callback for an engine event.

        Events: ``step_started``, ``step_completed``, ``step_failed``,
        ``step_skipped`` and ``workflow_finished``.
        """
        self._callbacks.setdefault(event, []).append(callback)

    def _notify_callbacks(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(event, payload)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def prepare_steps(self, steps: Sequence[StepLike], strict: bool = False) -> List[StepDefinition]:
        """Resolve step definitions.

        Raises:
            ValidationError: If a definition is malformed, or with ``strict``
                if names repeat or dependencies are unknown, forward or cyclic
        """
        if strict:
            return list(WorkflowDefinition.from_steps(steps).steps)
        return [build_step(step) for step in steps]

    async def run(
        self,
        steps: Sequence[StepLike],
        options: Optional[Mapping[str, Any]] = None,
        strict: bool = False,
    ) -> RunSnapshot:
        """Run ``steps`` in order and return the final snapshot.

        Args:
            steps: Step definitions in execution order
            options: Invocation options stored with the run; ``no_cache``
                bypasses the result cache
            strict: Validate the whole definition before starting

        Returns:
            Snapshot of the finished run

        Raises:
            ValidationError: If a step definition is malformed
        """
        resolved = self.prepare_steps(steps, strict=strict)
        options = dict(options or {})

        if self.state.is_recoverable():
            if self.config.recover_interrupted:
                self.state.recover()
            else:
                self.state.reset()

        self.state.initialize(options)
        errors_before = len(self.state.get_errors())
        for problem in find_definition_problems(resolved):
            logger.warning(problem)
            self.state.add_warning(problem, category="definition")

        context = StepContext(state=self.state, options=options, config=self.config, cache=self.cache)
        failed: List[str] = []
        skipped: List[str] = []
        durations: Dict[str, float] = {}
        abort: Optional[tuple] = None

        try:
            for step in resolved:
                completed = set(self.state.get_completed_step_names())
                if step.name in completed:
                    logger.info(f"Skipping step {step.name}: already completed")
                    continue

                missing = [dep for dep in step.dependencies if dep not in completed]
                if missing:
                    message = f"Skipped step {step.name}: unmet dependencies {', '.join(missing)}"
                    logger.warning(message)
                    self.state.add_warning(message, step=step.name, category="dependency")
                    skipped.append(step.name)
                    self._notify_callbacks("step_skipped", {"step": step.name, "missing": missing})
                    continue

                self.state.set_current_step(step.name)
                self._notify_callbacks("step_started", {"step": step.name})
                result = await self._execute(step, context)
                durations[step.name] = result.duration or 0.0

                if result.success:
                    self.state.complete_step(step.name, result)
                    context.outputs[step.name] = result.output
                    self._notify_callbacks("step_completed", {"step": step.name, "result": result})
                    continue

                failed.append(step.name)
                error = WorkflowError(result.error or f"Step {step.name} failed", step=step.name)
                self.state.track_error(error, step.name, critical=step.critical, stack=result.stack)
                self._notify_callbacks("step_failed", {"step": step.name, "result": result})

                if step.critical:
                    logger.error(f"Critical step {step.name} failed, aborting workflow")
                    abort = (step.name, error)
                    break

                logger.warning(f"Non-critical step {step.name} failed, continuing")
                self.state.add_warning(
                    f"Non-critical step {step.name} failed: {error.message}",
                    step=step.name,
                    category="step_failure",
                )
                self.state.set_current_step(None)
        except Exception as e:
            logger.error(f"Workflow failed: {e}")
            abort = (self.state.get_current_step(), e)

        return self._finalize(resolved, failed, skipped, durations, abort, errors_before)

    async def _execute(self, step: StepDefinition, context: StepContext) -> StepResult:
        """Run a step through the cache (when it opts in) and the step runner."""
        lookup = None
        if step.cache is not None:
            lookup = await try_use_cache(
                self.cache,
                step.cache.cache_type or step.name,
                step.cache.inputs,
                no_cache=bool(context.options.get("no_cache", False)),
            )
            if lookup.from_cache:
                return StepResult(success=True, output=lookup.data, duration=0.0, from_cache=True)

        result = await self.runner.execute_step(step, context)
        if lookup is not None and result.success:
            await save_to_cache(self.cache, lookup, result.output)
        return result

    def _finalize(
        self,
        steps: List[StepDefinition],
        failed: List[str],
        skipped: List[str],
        durations: Dict[str, float],
        abort: Optional[tuple],
        errors_before: int,
    ) -> RunSnapshot:
        """Write summary metrics and seal the run."""
        completed = self.state.get_completed_step_names()
        summary = {
            "total_steps": len(steps),
            "completed": len(completed),
            "failed": len(failed),
            "skipped": len(skipped),
            "completed_steps": completed,
            "failed_steps": failed,
            "skipped_steps": skipped,
            "duration": self.state.get_state().get_duration(),
        }
        self.state.update_metrics(
            {
                "workflow_summary": summary,
                "phase_durations": durations,
                "step_performance": self.monitor.get_performance_summary(),
            }
        )

        if abort is not None:
            step_name, error = abort
            self.state.fail(error, step=step_name)
        elif failed or len(self.state.get_errors()) > errors_before:
            self.state.complete(summary, status=RunStatus.COMPLETED_WITH_ERRORS)
        else:
            self.state.complete(summary)

        snapshot = self.state.get_state()
        self._notify_callbacks("workflow_finished", {"status": snapshot.status.value, "summary": summary})
        logger.info(
            f"Workflow finished with status {snapshot.status.value}: "
            f"{len(completed)}/{len(steps)} steps completed"
        )
        return snapshot
