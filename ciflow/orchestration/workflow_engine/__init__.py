"""
Workflow engine components.

- steps: Step variants, context and definition validation
- runner: Single-step execution with retries
- core: Sequential engine with criticality-aware failure handling
"""

from __future__ import annotations

from .core import WorkflowEngine
from .runner import StepRunner
from .steps import (
    CacheSpec,
    CommandStep,
    NativeStep,
    StepContext,
    StepDefinition,
    WorkflowDefinition,
    build_step,
    dependency_graph,
    find_definition_problems,
)

__all__ = [
    # Steps
    "CacheSpec",
    "CommandStep",
    "NativeStep",
    "StepContext",
    "StepDefinition",
    "WorkflowDefinition",
    "build_step",
    "dependency_graph",
    "find_definition_problems",

    # Execution
    "StepRunner",
    "WorkflowEngine",
]
