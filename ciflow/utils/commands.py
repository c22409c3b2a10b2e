"""External command execution.

The workflow core reaches external processes (version control, package
managers, hosting CLIs, linters) only through these helpers. They never raise
for a failing command: the outcome is reported in a ``CommandResult``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    """Outcome of an external command."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    code: Optional[int] = None
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "code": self.code,
        }


def _describe(command: Command) -> str:
    return command if isinstance(command, str) else " ".join(command)


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    return {**os.environ, **env}


def _decode(data: Optional[bytes]) -> str:
    return data.decode("utf-8", errors="replace").strip() if data else ""


def run_command(
    command: Command,
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        command: Shell string, or an argument list run without a shell
        cwd: Working directory
        env: Extra environment variables layered over the current environment
        timeout: Seconds before the process is killed

    Returns:
        CommandResult describing the outcome
    """
    label = _describe(command)
    logger.debug(f"Running command: {label}")
    try:
        completed = subprocess.run(
            command,
            shell=isinstance(command, str),
            cwd=cwd,
            env=_merged_env(env),
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {label}")
        return CommandResult(
            success=False, error=f"Command timed out after {timeout}s", timed_out=True
        )
    except (FileNotFoundError, PermissionError, OSError) as e:
        logger.error(f"Command could not be started: {label}: {e}")
        return CommandResult(success=False, error=str(e))

    output = _decode(completed.stdout)
    stderr = _decode(completed.stderr)
    if completed.returncode != 0:
        logger.debug(f"Command exited with {completed.returncode}: {label}")
        return CommandResult(
            success=False,
            output=output,
            error=stderr or f"Command exited with code {completed.returncode}",
            code=completed.returncode,
        )
    return CommandResult(success=True, output=output, code=0)


async def run_command_async(
    command: Command,
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Async variant of ``run_command``; the process is killed on timeout."""
    label = _describe(command)
    logger.debug(f"Running command: {label}")
    try:
        if isinstance(command, str):
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=_merged_env(env),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=_merged_env(env),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except (FileNotFoundError, PermissionError, OSError) as e:
        logger.error(f"Command could not be started: {label}: {e}")
        return CommandResult(success=False, error=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.error(f"Command timed out after {timeout}s: {label}")
        return CommandResult(
            success=False, error=f"Command timed out after {timeout}s", timed_out=True
        )

    output = _decode(stdout)
    error_text = _decode(stderr)
    if proc.returncode != 0:
        return CommandResult(
            success=False,
            output=output,
            error=error_text or f"Command exited with code {proc.returncode}",
            code=proc.returncode,
        )
    return CommandResult(success=True, output=output, code=0)
