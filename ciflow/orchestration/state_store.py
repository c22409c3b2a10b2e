"""Durable workflow state store.

``WorkflowStateStore`` is the single source of truth for a workflow run. Every
mutation is applied to the in-memory ``RunSnapshot`` and then flushed through a
``StateStorage`` before the call returns. Storage failures are logged and
swallowed: the in-memory state stays authoritative for the life of the process.

Lifecycle::

    store = WorkflowStateStore(JsonFileStateStorage("temp"))
    if store.is_recoverable():
        store.recover()
    store.initialize({"environment": "preview"})
    ...
    store.complete({"deployed": True})
"""
from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Mapping
from threading import RLock
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import WorkflowError, format_traceback
from .models import (
    ErrorRecord,
    RecoveryState,
    RunSnapshot,
    RunStatus,
    Severity,
    StepRecord,
    StepResult,
    WarningRecord,
    json_safe,
    utc_now,
)
from .storage import JsonFileStateStorage, StateStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
PREVIEW_URL_KEYS = ("hours", "admin")

# Metric blobs that are merged into the existing value instead of replacing it
DEPLOYMENT_STATUS_KEY = "deployment_status"
CHANNEL_CLEANUP_KEY = "channel_cleanup"

_PASS_THROUGH_FIELDS = {"options", "channel_id", "preview_urls", "result", "error"}


class WorkflowStateStore:
    """Run state with write-through persistence and per-step retry bookkeeping."""

    def __init__(self, storage: Optional[StateStorage] = None):
        """Create the store and load project history from storage.

        Args:
            storage: Persistence backend, defaults to JSON files under ``temp/``
        """
        self.storage = storage or JsonFileStateStorage("temp")
        self._lock = RLock()
        self._recovery: Dict[str, RecoveryState] = {}
        self._state = RunSnapshot()
        self._interrupted: Optional[RunSnapshot] = None
        self._load_state()

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> None:
        """Restore project-level history: metrics, warnings, errors and preview."""
        data = self.storage.load()
        if data:
            try:
                prior = RunSnapshot.model_validate(data)
            except PydanticValidationError as e:
                logger.warning(f"Ignoring unreadable workflow state: {e}")
                prior = None

            if prior is not None:
                self._state.metrics = prior.metrics
                self._state.warnings = prior.warnings
                self._state.errors = prior.errors
                self._state.last_successful_preview = prior.last_successful_preview
                if prior.status == RunStatus.RUNNING:
                    self._interrupted = prior
                    logger.warning(
                        f"Found unfinished workflow run (last step: {prior.current_step or 'none'})"
                    )

        preview = self.storage.load_preview()
        if preview:
            self._state.last_successful_preview = preview

    def _persist(self) -> bool:
        try:
            data = self._state.model_dump(mode="json")
        except Exception as e:
            logger.error(f"Failed to serialize workflow state: {e}")
            return False
        return self.storage.save(data)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def initialize(self, options: Optional[Mapping[str, Any]] = None) -> RunSnapshot:
        """Start a new run.

        Warnings, errors, metrics and the last successful preview carry over
        from earlier runs; everything else starts fresh.

        Args:
            options: Invocation configuration, stored as a JSON-safe copy

        Returns:
            Snapshot of the new run
        """
        with self._lock:
            self._state = RunSnapshot(
                status=RunStatus.RUNNING,
                start_time=utc_now(),
                options=json_safe(dict(options or {})),
                warnings=self._state.warnings,
                errors=self._state.errors,
                metrics=self._state.metrics,
                last_successful_preview=self._state.last_successful_preview,
            )
            self._recovery.clear()
            self._interrupted = None
            self._persist()
            logger.info("Workflow run initialized")
            return self.get_state()

    def is_recoverable(self) -> bool:
        """True when storage held a run that never reached a terminal status."""
        return self._interrupted is not None

    def recover(self) -> bool:
        """Keep the interrupted run's history and note the interruption.

        Returns:
            True if there was an interrupted run to recover
        """
        with self._lock:
            if self._interrupted is None:
                return False
            interrupted = self._interrupted
            self._interrupted = None
            completed = ", ".join(interrupted.completed_step_names()) or "none"
            self.add_warning(
                f"Recovered interrupted workflow run (completed steps: {completed})",
                step=interrupted.current_step,
                category="recovery",
                severity=Severity.INFO,
            )
            logger.info("Recovered bookkeeping from interrupted workflow run")
            return True

    def reset(self) -> None:
        """Discard any prior run, including its history."""
        with self._lock:
            self._interrupted = None
            self.clear_state()
            logger.info("Workflow state reset")

    def clear_state(self) -> None:
        """Return to a fresh idle run; the preview sidecar survives."""
        with self._lock:
            self._state = RunSnapshot(last_successful_preview=self.storage.load_preview())
            self._recovery.clear()
            self._persist()

    def complete(
        self, result: Any = None, status: RunStatus = RunStatus.COMPLETED
    ) -> None:
        """Seal the run as completed.

        Args:
            result: Optional run result; unserializable values are stored as their str()
            status: ``COMPLETED`` or ``COMPLETED_WITH_ERRORS``
        """
        if status not in (RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS):
            raise ValueError(f"complete() cannot set status {status.value}")
        with self._lock:
            self._state.status = status
            self._state.end_time = utc_now()
            self._state.current_step = None
            self._state.result = json_safe(result)
            self._persist()
            logger.info(f"Workflow finished with status {status.value}")

    def fail(self, error: Union[BaseException, str], step: Optional[str] = None) -> None:
        """Seal the run as failed and record the error as critical."""
        with self._lock:
            self.track_error(error, step or self._state.current_step, critical=True)
            self._state.status = RunStatus.FAILED
            self._state.end_time = utc_now()
            self._state.current_step = None
            self._state.error = str(error)
            self._persist()
            logger.error(f"Workflow failed: {error}")

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def set_current_step(self, name: Optional[str]) -> None:
        """Record which step is executing (None when between steps)."""
        with self._lock:
            if name is not None and self._state.status != RunStatus.RUNNING:
                logger.warning(
                    f"Ignoring current step {name}: run is {self._state.status.value}"
                )
                return
            self._state.current_step = name
            self._persist()

    def complete_step(self, name: str, result: Union[StepResult, Mapping[str, Any]]) -> None:
        """Append a StepRecord and clear the step's retry bookkeeping.

        The record keeps a JSON-safe copy of the result: objects that cannot be
        serialized are stored as their ``str()``.

        Raises:
            pydantic.ValidationError: If ``result`` is not a valid step result
        """
        if not isinstance(result, StepResult):
            result = StepResult.model_validate(dict(result))
        result = StepResult.model_validate(json_safe(result.model_dump()))
        with self._lock:
            self._state.completed_steps.append(StepRecord(name=name, result=result))
            if self._state.current_step == name:
                self._state.current_step = None
            self._recovery.pop(name, None)
            self._persist()

    def track_error(
        self,
        error: Union[BaseException, str],
        step: Optional[str] = None,
        critical: bool = False,
        stack: Optional[str] = None,
    ) -> bool:
        """Record an error unless one with the same (message, step) exists.

        ``stack`` overrides the traceback taken from ``error``, for errors that
        were rebuilt after the original exception was caught elsewhere.

        Returns:
            True if a new record was appended
        """
        try:
            record = self._build_error_record(error, step, critical)
            if stack is not None:
                record.stack = stack
        except Exception as meta_error:
            logger.error(f"meta-error while tracking error for step {step}: {meta_error}")
            return False

        with self._lock:
            if any(existing.identity() == record.identity() for existing in self._state.errors):
                return False
            self._state.errors.append(record)
            self._persist()
            logger.debug(f"Tracked error for step {step}: {record.message}")
            return True

    @staticmethod
    def _build_error_record(
        error: Union[BaseException, str], step: Optional[str], critical: bool
    ) -> ErrorRecord:
        if isinstance(error, BaseException):
            message = error.message if isinstance(error, WorkflowError) else str(error)
            category = error.category if isinstance(error, WorkflowError) else "workflow"
            return ErrorRecord(
                message=message or type(error).__name__,
                stack=format_traceback(error),
                step=step,
                critical=critical,
                category=category,
            )
        return ErrorRecord(message=str(error), step=step, critical=critical)

    def add_warning(
        self,
        message: Union[str, Mapping[str, Any], WarningRecord],
        step: Optional[str] = None,
        category: str = "general",
        severity: Union[Severity, str] = Severity.WARNING,
    ) -> bool:
        """Record a warning unless one with the same (message, step, category) exists.

        ``message`` may be a plain string or a mapping/WarningRecord carrying
        its own ``step``, ``category`` and ``severity``.

        Returns:
            True if a new record was appended
        """
        if isinstance(message, WarningRecord):
            record = message
        elif isinstance(message, Mapping):
            record = WarningRecord(
                message=str(message.get("message", "")),
                step=message.get("step", step),
                category=message.get("category") or category,
                severity=message.get("severity") or severity,
            )
        else:
            record = WarningRecord(
                message=str(message), step=step, category=category, severity=severity
            )

        with self._lock:
            if any(existing.identity() == record.identity() for existing in self._state.warnings):
                return False
            self._state.warnings.append(record)
            self._persist()
            return True

    def update_metrics(self, partial: Mapping[str, Any]) -> None:
        """Merge a partial metrics update into the run metrics.

        Top-level keys replace existing values, except ``deployment_status``
        and ``channel_cleanup`` which merge into what is already there.
        """
        if not isinstance(partial, Mapping):
            logger.warning(f"Ignoring invalid metrics update: {partial!r}")
            return

        with self._lock:
            metrics = self._state.metrics
            for key, value in partial.items():
                existing = metrics.get(key)
                existing = dict(existing) if isinstance(existing, Mapping) else {}
                if key == DEPLOYMENT_STATUS_KEY and isinstance(value, Mapping):
                    metrics[key] = {**existing, **json_safe(dict(value))}
                elif key == CHANNEL_CLEANUP_KEY and isinstance(value, Mapping):
                    metrics[key] = _merge_channel_cleanup(existing, json_safe(dict(value)))
                else:
                    metrics[key] = json_safe(value)
            self._persist()

    def update_advanced_checks(self, check_type: str, results: Mapping[str, Any]) -> None:
        """Store results of an auxiliary check under ``metrics["advanced_checks"]``."""
        with self._lock:
            checks = self._state.metrics.setdefault("advanced_checks", {})
            checks[check_type] = {**json_safe(dict(results)), "timestamp": utc_now().isoformat()}
            self._persist()

    # ------------------------------------------------------------------
    # Pass-through fields
    # ------------------------------------------------------------------

    def set_channel_id(self, channel_id: Optional[str]) -> None:
        with self._lock:
            self._state.channel_id = channel_id
            self._persist()

    def set_preview_urls(self, urls: Mapping[str, Optional[str]]) -> None:
        """Record preview URLs; only the ``hours`` and ``admin`` keys are accepted."""
        unknown = set(urls) - set(PREVIEW_URL_KEYS)
        if unknown:
            logger.warning(f"Ignoring unknown preview URL keys: {sorted(unknown)}")
        with self._lock:
            for key in PREVIEW_URL_KEYS:
                if key in urls:
                    self._state.preview_urls[key] = urls[key]
            self._state.metrics["preview_urls"] = dict(self._state.preview_urls)
            self._persist()

    def update_state(self, **fields: Any) -> None:
        """Update pass-through fields (options, channel_id, preview_urls, result, error)."""
        unknown = set(fields) - _PASS_THROUGH_FIELDS
        if unknown:
            logger.warning(f"Ignoring unsupported state fields: {sorted(unknown)}")
        updates = {k: json_safe(v) for k, v in fields.items() if k in _PASS_THROUGH_FIELDS}
        with self._lock:
            self._state = RunSnapshot.model_validate({**self._state.model_dump(), **updates})
            self._persist()

    # ------------------------------------------------------------------
    # Sticky preview artifact
    # ------------------------------------------------------------------

    def save_last_successful_preview(self, artifact: Optional[Mapping[str, Any]]) -> bool:
        """Persist the last successful preview in its own sidecar file.

        Empty artifacts, or artifacts without any URL, never overwrite an
        existing record.

        Returns:
            True if the artifact was saved
        """
        if not artifact or not any(artifact.get(key) for key in PREVIEW_URL_KEYS):
            logger.warning("Skipping save of last successful preview: no preview URLs")
            return False

        record = {**json_safe(dict(artifact)), "timestamp": utc_now().isoformat()}
        with self._lock:
            saved = self.storage.save_preview(record)
            self._state.last_successful_preview = record
            self._persist()
            return saved

    def inject_previous_preview_into_metrics(self) -> bool:
        """Expose the last successful preview as ``metrics["previous_preview"]``."""
        with self._lock:
            previous = self._state.last_successful_preview
            if not previous:
                return False
            self._state.metrics["previous_preview"] = copy.deepcopy(previous)
            self._persist()
            return True

    # ------------------------------------------------------------------
    # Recovery bookkeeping
    # ------------------------------------------------------------------

    def can_retry_step(self, step: str, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
        with self._lock:
            state = self._recovery.get(step)
            attempts = state.recovery_attempt if state else 0
            return attempts < max_retries

    def start_recovery(self, step: str, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
        """Enter recovery for ``step``.

        Returns:
            False if the retry budget is exhausted
        """
        with self._lock:
            if not self.can_retry_step(step, max_retries):
                logger.warning(f"Retry budget exhausted for step {step}")
                return False
            self._recovery.setdefault(step, RecoveryState()).in_recovery = True
            return True

    def end_recovery(self, step: str, success: bool) -> None:
        """Leave recovery for ``step``, consuming one attempt of its budget.

        The counter itself is cleared when the step completes
        (``complete_step``) or through ``reset_recovery``.
        """
        with self._lock:
            state = self._recovery.setdefault(step, RecoveryState())
            state.in_recovery = False
            state.recovery_attempt += 1
            outcome = "succeeded" if success else "failed"
            logger.debug(f"Recovery attempt {state.recovery_attempt} for {step} {outcome}")

    def get_recovery_state(self, step: str) -> RecoveryState:
        with self._lock:
            return dataclasses.replace(self._recovery.get(step, RecoveryState()))

    def reset_recovery(self, step: str) -> None:
        with self._lock:
            self._recovery.pop(step, None)

    # ------------------------------------------------------------------
    # Read accessors (copies)
    # ------------------------------------------------------------------

    def get_state(self) -> RunSnapshot:
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_status(self) -> RunStatus:
        return self._state.status

    def get_current_step(self) -> Optional[str]:
        return self._state.current_step

    def get_completed_step_names(self) -> List[str]:
        with self._lock:
            return self._state.completed_step_names()

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state.metrics)

    def get_errors(self) -> List[ErrorRecord]:
        with self._lock:
            return [record.model_copy() for record in self._state.errors]

    def get_warnings(self) -> List[WarningRecord]:
        with self._lock:
            return [record.model_copy() for record in self._state.warnings]

    def get_preview_urls(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return dict(self._state.preview_urls)

    def get_last_successful_preview(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._state.last_successful_preview)


def _merge_channel_cleanup(existing: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    merged = {**existing, **copy.deepcopy(update)}
    if existing.get("stats") is not None:
        merged["stats"] = existing["stats"]
    merged["status"] = update.get("status") or existing.get("status") or "pending"
    for counter in ("cleaned_channels", "failed_channels"):
        value = update.get(counter, existing.get(counter))
        merged[counter] = value or 0
    return merged
