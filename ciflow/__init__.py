"""ciflow: a small CI/CD workflow orchestration kernel."""

__version__ = "1.0.0"

from .orchestration import (
    CommandStep,
    NativeStep,
    RunSnapshot,
    RunStatus,
    StepResult,
    WorkflowEngine,
    WorkflowStateStore,
)

__all__ = [
    "__version__",
    "CommandStep",
    "NativeStep",
    "RunSnapshot",
    "RunStatus",
    "StepResult",
    "WorkflowEngine",
    "WorkflowStateStore",
]
