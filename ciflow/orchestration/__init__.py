"""Workflow orchestration: state, steps, retries and parallel execution."""

from __future__ import annotations

from .errors import ParallelTimeoutError, RetryExhaustedError, ValidationError, WorkflowError
from .models import (
    ErrorRecord,
    RecoveryState,
    RunSnapshot,
    RunStatus,
    Severity,
    StepRecord,
    StepResult,
    WarningRecord,
)
from .parallel import ParallelTask, TaskResult, run_tasks_in_parallel
from .performance import PerformanceMonitor
from .recovery import (
    STRATEGIES,
    RecoveryPlanner,
    RecoveryStrategy,
    RecoveryStrategyName,
    classify_error,
)
from .state_store import WorkflowStateStore
from .storage import InMemoryStateStorage, JsonFileStateStorage, StateStorage
from .workflow_engine import (
    CacheSpec,
    CommandStep,
    NativeStep,
    StepContext,
    StepDefinition,
    StepRunner,
    WorkflowDefinition,
    WorkflowEngine,
    build_step,
)

__all__ = [
    # Errors
    "ParallelTimeoutError",
    "RetryExhaustedError",
    "ValidationError",
    "WorkflowError",
    # Models
    "ErrorRecord",
    "RecoveryState",
    "RunSnapshot",
    "RunStatus",
    "Severity",
    "StepRecord",
    "StepResult",
    "WarningRecord",
    # Parallel execution
    "ParallelTask",
    "TaskResult",
    "run_tasks_in_parallel",
    # Recovery
    "STRATEGIES",
    "RecoveryPlanner",
    "RecoveryStrategy",
    "RecoveryStrategyName",
    "classify_error",
    # State
    "PerformanceMonitor",
    "WorkflowStateStore",
    "InMemoryStateStorage",
    "JsonFileStateStorage",
    "StateStorage",
    # Engine
    "CacheSpec",
    "CommandStep",
    "NativeStep",
    "StepContext",
    "StepDefinition",
    "StepRunner",
    "WorkflowDefinition",
    "WorkflowEngine",
    "build_step",
]
