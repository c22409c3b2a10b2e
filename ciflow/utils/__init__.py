"""Utility modules for the workflow orchestrator."""

from .commands import CommandResult, run_command, run_command_async
from .logger import SUCCESS, WorkflowLogger, get_logger, get_workflow_logger
from .paths import read_json, safe_write_json, write_text

__all__ = [
    "CommandResult",
    "run_command",
    "run_command_async",
    "SUCCESS",
    "WorkflowLogger",
    "get_logger",
    "get_workflow_logger",
    "read_json",
    "safe_write_json",
    "write_text",
]
