"""Console output with Rich integration.

``ConsoleManager`` renders workflow output in one of two modes:
- Rich-rendered log lines, tables and progress bars for interactive use
- JSON lines on stdout for machine-readable logs (CI/CD)

It only reads run state; nothing here mutates a workflow.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..orchestration.models import RunSnapshot, RunStatus

if TYPE_CHECKING:
    from ..config import Config

STATUS_STYLES = {
    RunStatus.IDLE: "white",
    RunStatus.RUNNING: "blue",
    RunStatus.COMPLETED: "green",
    RunStatus.COMPLETED_WITH_ERRORS: "yellow",
    RunStatus.FAILED: "red",
}


class ConsoleManager:
    """Manages console output for workflow runs."""

    def __init__(
        self,
        verbose: bool = False,
        json_output: bool = False,
        console: Optional[Console] = None,
    ):
        self.verbose = verbose
        self.json_output = json_output
        self.console = console or Console(stderr=True)
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: "Config", verbose: bool = False) -> "ConsoleManager":
        """Build a manager honouring ``config.json_output`` and a DEBUG log level."""
        return cls(verbose=verbose or config.log_level == "DEBUG", json_output=config.json_output)

    def setup_logging(self, logger: logging.Logger) -> None:
        """Attach a Rich handler (or a plain one for JSON output) to ``logger``.

        Calling it twice does not add a second handler.
        """

        def _has_handler_of_type(h_type):
            return any(type(h) is h_type for h in logger.handlers)

        if self.json_output:
            if not _has_handler_of_type(logging.StreamHandler):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(logging.Formatter("%(message)s"))
                logger.addHandler(handler)
        elif not _has_handler_of_type(RichHandler):
            logger.addHandler(
                RichHandler(
                    console=self.console,
                    show_time=True,
                    show_path=self.verbose,
                    rich_tracebacks=True,
                )
            )
        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    def print_run_summary(self, snapshot: RunSnapshot) -> None:
        """Render the outcome of a run: status, steps, errors and warnings."""
        if self.json_output:
            print(
                json.dumps(
                    {
                        "timestamp": datetime.now().isoformat(),
                        "type": "summary",
                        "run": snapshot.model_dump(mode="json"),
                    }
                )
            )
            return

        duration = snapshot.get_duration()
        style = STATUS_STYLES.get(snapshot.status, "white")
        headline = f"[bold]Workflow {snapshot.status.value}[/bold]"
        if duration is not None:
            headline += f" in {duration:.1f}s"

        steps = Table(title="Steps")
        steps.add_column("Step", style="cyan")
        steps.add_column("Duration", style="green")
        steps.add_column("Attempts")
        steps.add_column("Cached")
        for record in snapshot.completed_steps:
            steps.add_row(
                record.name,
                f"{record.result.duration or 0:.1f}s",
                str(record.result.attempts),
                "yes" if record.result.from_cache else "",
            )

        with self._lock:
            self.console.print(Panel(headline, style=style, padding=(0, 1)))
            self.console.print(steps)
            if snapshot.errors:
                errors = Table(title="Errors", style="red")
                errors.add_column("Step")
                errors.add_column("Critical")
                errors.add_column("Message")
                for error in snapshot.errors:
                    errors.add_row(error.step or "-", "yes" if error.critical else "", error.message)
                self.console.print(errors)
            if snapshot.warnings:
                warnings = Table(title="Warnings", style="yellow")
                warnings.add_column("Step")
                warnings.add_column("Category")
                warnings.add_column("Message")
                for warning in snapshot.warnings:
                    warnings.add_row(warning.step or "-", warning.category, warning.message)
                self.console.print(warnings)

    @contextmanager
    def progress_context(self, description: str) -> Iterator[Callable[[int, int], None]]:
        """Yield an ``on_progress(completed, total)`` callback backed by a progress bar."""
        if self.json_output:

            def report(completed: int, total: int) -> None:
                print(
                    json.dumps({"type": "progress", "task": description, "completed": completed, "total": total}),
                    file=sys.stderr,
                )

            yield report
            return

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=self.console,
        )
        task_id = progress.add_task(description, total=None)

        def update(completed: int, total: int) -> None:
            with self._lock:
                progress.update(task_id, completed=completed, total=total)

        progress.start()
        try:
            yield update
        finally:
            progress.stop()
