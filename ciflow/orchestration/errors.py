"""Exception taxonomy for workflow execution.

- ``WorkflowError``: a step failed; eligible for recovery when classified as transient
- ``ValidationError``: malformed step definition or step result; never retried
- ``ParallelTimeoutError``: the global batch timer of the parallel executor fired
- ``RetryExhaustedError``: recovery gave up on a failing step
"""
from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .parallel import TaskResult


def format_traceback(error: BaseException) -> Optional[str]:
    """Formatted traceback of ``error``, or of its ``cause``; None if neither was raised."""
    for candidate in (error, getattr(error, "cause", None)):
        if candidate is not None and candidate.__traceback__ is not None:
            return "".join(
                traceback.format_exception(type(candidate), candidate, candidate.__traceback__)
            )
    return None


class WorkflowError(Exception):
    """Base error for workflow failures.

    Attributes:
        message: Human readable description
        step: Step that produced the error, if known
        category: Coarse error category (workflow, validation, timeout, ...)
        severity: ``error``, ``warning`` or ``info``
        cause: Underlying exception, if any
        suggestion: Optional remediation hint shown to the operator
        timestamp: When the error was created
    """

    default_category = "workflow"

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        category: Optional[str] = None,
        severity: str = "error",
        cause: Optional[BaseException] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.category = category or self.default_category
        self.severity = severity
        self.cause = cause
        self.suggestion = suggestion
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for logs and state records."""
        return {
            "message": self.message,
            "step": self.step,
            "category": self.category,
            "severity": self.severity,
            "cause": str(self.cause) if self.cause else None,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp.isoformat(),
        }

    def format(self) -> str:
        """Render a multi-line, operator facing description."""
        lines = [f"[{self.category}] {self.message}"]
        if self.step:
            lines.append(f"  step: {self.step}")
        if self.cause is not None:
            lines.append(f"  cause: {self.cause}")
        if self.suggestion:
            lines.append(f"  suggestion: {self.suggestion}")
        return "\n".join(lines)


class ValidationError(WorkflowError):
    """Raised for malformed step definitions or step results."""

    default_category = "validation"


class RetryExhaustedError(WorkflowError):
    """Raised when recovery refuses further attempts for a step.

    Attributes:
        attempts: Number of executions made, including the first one
        last_error: Exception from the final attempt
    """

    default_category = "retry"

    def __init__(self, step: str, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step {step} failed after {attempts} attempt(s): {last_error}",
            step=step,
            cause=last_error,
        )


class ParallelTimeoutError(WorkflowError):
    """Raised when a parallel batch exceeds its global timeout.

    ``results`` holds every task of the batch: settled tasks keep their
    outcome, unsettled ones are reported as failed with ``timed_out=True``.
    """

    default_category = "timeout"

    def __init__(self, timeout: float, results: "List[TaskResult]") -> None:
        self.timeout = timeout
        self.results = results
        super().__init__(f"Parallel execution timed out after {timeout}s")
