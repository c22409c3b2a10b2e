"""
Workflow run data models.

The persisted run state is a tree of pydantic models rooted at ``RunSnapshot``.
``RecoveryState`` is process-local bookkeeping and is never written to disk.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic_core import to_jsonable_python


def utc_now() -> datetime:
    """Timezone-aware current time used for every record timestamp."""
    return datetime.now(timezone.utc)


def json_safe(value: Any) -> Any:
    """Deep copy of ``value`` made of JSON types; unknown objects become ``str(obj)``."""
    return to_jsonable_python(value, serialize_unknown=True)


class RunStatus(Enum):
    """Lifecycle status of a workflow run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class Severity(Enum):
    """Severity of a warning record."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class StepResult(BaseModel):
    """Outcome of executing one step.

    Step implementations may return extra keys; they are kept alongside the
    known fields so reporting collaborators can read them.
    ``stack`` holds the traceback of the exception behind a failure, if any.
    """

    model_config = ConfigDict(extra="allow")

    success: StrictBool
    duration: Optional[float] = None
    output: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    timed_out: bool = False
    attempts: int = 1
    from_cache: bool = False

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, v):
        """Accept exception instances as the error payload."""
        if isinstance(v, BaseException):
            return str(v) or type(v).__name__
        return v

    @classmethod
    def failure(cls, error: Any, **kwargs: Any) -> "StepResult":
        """Shortcut for a failed result."""
        return cls(success=False, error=error, **kwargs)


class StepRecord(BaseModel):
    """A step that reached completion in the current run."""

    name: str
    result: StepResult
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorRecord(BaseModel):
    """An error tracked against the run, unique per (message, step)."""

    message: str
    stack: Optional[str] = None
    step: Optional[str] = None
    critical: bool = False
    category: str = "workflow"
    timestamp: datetime = Field(default_factory=utc_now)

    def identity(self) -> tuple:
        return (self.message, self.step)


class WarningRecord(BaseModel):
    """A warning tracked against the run, unique per (message, step, category)."""

    message: str
    step: Optional[str] = None
    category: str = "general"
    severity: Severity = Severity.WARNING
    timestamp: datetime = Field(default_factory=utc_now)

    def identity(self) -> tuple:
        return (self.message, self.step, self.category)


def _empty_preview_urls() -> Dict[str, Optional[str]]:
    return {"hours": None, "admin": None}


class RunSnapshot(BaseModel):
    """Full state of a workflow run, as returned by ``get_state()``."""

    status: RunStatus = RunStatus.IDLE
    current_step: Optional[str] = None
    completed_steps: List[StepRecord] = Field(default_factory=list)
    errors: List[ErrorRecord] = Field(default_factory=list)
    warnings: List[WarningRecord] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    channel_id: Optional[str] = None
    preview_urls: Dict[str, Optional[str]] = Field(default_factory=_empty_preview_urls)
    last_successful_preview: Optional[Dict[str, Any]] = None
    result: Any = None
    error: Optional[str] = None

    def completed_step_names(self) -> List[str]:
        """Names of completed steps in completion order."""
        return [record.name for record in self.completed_steps]

    def get_duration(self) -> Optional[float]:
        """Run duration in seconds, measured up to now for a live run."""
        if not self.start_time:
            return None
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds()


@dataclass
class RecoveryState:
    """Per-step retry bookkeeping owned by the state store."""

    recovery_attempt: int = 0
    in_recovery: bool = False
