"""Bounded-concurrency execution of independent async tasks.

``run_tasks_in_parallel`` admits tasks from a FIFO queue while fewer than
``max_concurrent`` are in flight. Each task runs under its own timeout, and
the whole batch runs under a global one. A task failure of any kind (raised
exception, returned error, timeout) becomes a failed ``TaskResult``. It never
escapes the batch.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from .errors import ParallelTimeoutError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]

DEFAULT_MAX_CONCURRENT = 4
DEFAULT_TIMEOUT = 300.0
DEFAULT_TASK_TIMEOUT = 120.0


@dataclass
class ParallelTask:
    """A unit of work submitted to the parallel executor.

    ``func`` may be a coroutine function or a plain callable; a returned
    awaitable is awaited.
    """

    name: str
    func: Callable[..., Any]
    args: tuple = field(default_factory=tuple)
    kwargs: dict = field(default_factory=dict)


@dataclass
class TaskResult:
    """Outcome of one parallel task."""

    name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "success": self.success, "duration": self.duration}
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        if self.timed_out:
            data["timed_out"] = True
        return data


async def _invoke(task: ParallelTask) -> Any:
    value = task.func(*task.args, **task.kwargs)
    if inspect.isawaitable(value):
        value = await value
    return value


async def _run_one(task: ParallelTask, task_timeout: Optional[float]) -> TaskResult:
    started = time.perf_counter()
    work = asyncio.ensure_future(_invoke(task))
    try:
        done, _ = await asyncio.wait({work}, timeout=task_timeout)
    except asyncio.CancelledError:
        # The batch itself is being cancelled
        work.cancel()
        raise
    duration = time.perf_counter() - started

    if not done:
        work.cancel()
        logger.warning(f"Task {task.name} timed out after {task_timeout}s")
        return TaskResult(
            name=task.name,
            success=False,
            error=f"Task {task.name} timed out after {task_timeout}s",
            duration=duration,
            timed_out=True,
        )
    if work.cancelled():
        logger.error(f"Task {task.name} was cancelled")
        return TaskResult(
            name=task.name, success=False, error=f"Task {task.name} was cancelled", duration=duration
        )
    error = work.exception()
    if error is not None:
        logger.error(f"Task {task.name} failed: {error}")
        return TaskResult(
            name=task.name,
            success=False,
            error=str(error) or type(error).__name__,
            duration=duration,
        )
    return TaskResult(name=task.name, success=True, result=work.result(), duration=duration)


def _notify_progress(on_progress: Optional[ProgressCallback], completed: int, total: int) -> None:
    if on_progress is None:
        return
    try:
        on_progress(completed, total)
    except Exception as e:
        logger.error(f"Progress callback error: {e}")


async def run_tasks_in_parallel(
    tasks: Sequence[ParallelTask],
    *,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    fail_fast: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    task_timeout: Optional[float] = DEFAULT_TASK_TIMEOUT,
) -> List[TaskResult]:
    """Run ``tasks`` with at most ``max_concurrent`` in flight.

    Args:
        tasks: Tasks to run, admitted in order
        max_concurrent: Concurrency cap
        fail_fast: Stop admitting queued tasks once any task fails
        on_progress: Called as ``on_progress(completed, total)`` after each settle
        timeout: Global timeout for the batch in seconds (None disables it)
        task_timeout: Timeout for each task in seconds (None disables it)

    Returns:
        One result per settled task, in settle order. With ``fail_fast``,
        tasks that were never admitted have no result.

    Raises:
        ParallelTimeoutError: If the global timeout fires; ``results`` on the
            exception holds settled results plus timed-out entries for the rest
    """
    if max_concurrent < 1:
        raise ValueError("max_concurrent must be at least 1")
    if not tasks:
        return []

    total = len(tasks)
    queue: Deque[ParallelTask] = deque(tasks)
    in_flight: Dict[asyncio.Task, ParallelTask] = {}
    results: List[TaskResult] = []
    stop_admitting = False
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    batch_started = time.perf_counter()

    def admit() -> None:
        while queue and len(in_flight) < max_concurrent and not stop_admitting:
            task = queue.popleft()
            in_flight[asyncio.create_task(_run_one(task, task_timeout))] = task

    logger.debug(f"Running {total} task(s) with max_concurrent={max_concurrent}")
    admit()

    try:
        while in_flight:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            done, _ = await asyncio.wait(
                in_flight.keys(), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for finished in done:
                in_flight.pop(finished)
                result = finished.result()
                results.append(result)
                if not result.success and fail_fast and not stop_admitting:
                    stop_admitting = True
                    logger.warning(
                        f"Task {result.name} failed, not starting {len(queue)} queued task(s)"
                    )
                _notify_progress(on_progress, len(results), total)
            admit()
    except asyncio.CancelledError:
        for pending in in_flight:
            pending.cancel()
        raise

    if not in_flight:
        return results

    # Global timeout: abandon whatever has not settled.
    elapsed = time.perf_counter() - batch_started
    for pending, task in in_flight.items():
        pending.cancel()
        results.append(
            TaskResult(
                name=task.name,
                success=False,
                error=f"Task {task.name} did not finish before the {timeout}s batch timeout",
                duration=elapsed,
                timed_out=True,
            )
        )
    for task in queue:
        results.append(
            TaskResult(
                name=task.name,
                success=False,
                error=f"Task {task.name} was not started before the {timeout}s batch timeout",
                timed_out=True,
            )
        )
    logger.error(f"Parallel batch timed out after {timeout}s ({len(in_flight)} task(s) in flight)")
    raise ParallelTimeoutError(timeout, results)
