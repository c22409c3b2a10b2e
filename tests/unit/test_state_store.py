"""Tests for ciflow.orchestration.state_store and its storage backends."""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from ciflow.orchestration import (
    InMemoryStateStorage,
    JsonFileStateStorage,
    RunStatus,
    Severity,
    StepResult,
    WorkflowError,
    WorkflowStateStore,
)


def _read_state(storage: JsonFileStateStorage) -> dict:
    return json.loads(storage.state_file.read_text(encoding="utf-8"))


class TestInitialize:
    """Tests for starting a run."""

    def test_fresh_store_is_idle(self, state_store):
        snapshot = state_store.get_state()
        assert snapshot.status == RunStatus.IDLE
        assert snapshot.completed_steps == []
        assert snapshot.warnings == []

    def test_initialize_starts_running_run(self, state_store, file_storage):
        snapshot = state_store.initialize({"environment": "preview"})

        assert snapshot.status == RunStatus.RUNNING
        assert snapshot.completed_steps == []
        assert snapshot.warnings == []
        assert snapshot.start_time is not None
        assert snapshot.options == {"environment": "preview"}
        assert _read_state(file_storage)["status"] == "running"

    def test_initialize_preserves_project_history(self, state_store):
        state_store.initialize()
        state_store.track_error(RuntimeError("boom"), "build")
        state_store.add_warning("slow install", step="install")
        state_store.update_metrics({"build_performance": {"seconds": 12}})
        state_store.complete_step("lint", {"success": True})
        state_store.set_channel_id("chan-1")
        state_store.set_preview_urls({"hours": "https://h", "admin": "https://a"})

        snapshot = state_store.initialize({"second": True})

        assert [e.message for e in snapshot.errors] == ["boom"]
        assert [w.message for w in snapshot.warnings] == ["slow install"]
        assert snapshot.metrics["build_performance"] == {"seconds": 12}
        assert snapshot.completed_steps == []
        assert snapshot.channel_id is None
        assert snapshot.preview_urls == {"hours": None, "admin": None}

    def test_history_survives_restart(self, file_storage):
        first = WorkflowStateStore(file_storage)
        first.initialize()
        first.track_error("deploy rejected", "deploy")
        first.add_warning("cache cold")
        first.complete()

        second = WorkflowStateStore(JsonFileStateStorage(file_storage.state_dir))
        snapshot = second.get_state()

        assert snapshot.status == RunStatus.IDLE
        assert [e.message for e in snapshot.errors] == ["deploy rejected"]
        assert [w.message for w in snapshot.warnings] == ["cache cold"]
        assert not second.is_recoverable()


class TestDeduplication:
    """Tests for idempotent error and warning tracking."""

    def test_duplicate_error_is_not_appended(self, state_store, file_storage):
        state_store.initialize()
        assert state_store.track_error(RuntimeError("network down"), "deploy") is True
        on_disk = file_storage.state_file.read_text(encoding="utf-8")

        assert state_store.track_error(RuntimeError("network down"), "deploy") is False
        assert len(state_store.get_errors()) == 1
        assert file_storage.state_file.read_text(encoding="utf-8") == on_disk

    def test_same_message_different_step_is_kept(self, state_store):
        state_store.initialize()
        state_store.track_error("failed", "build")
        state_store.track_error("failed", "deploy")
        assert len(state_store.get_errors()) == 2

    def test_error_record_carries_stack_and_category(self, state_store):
        state_store.initialize()
        try:
            raise WorkflowError("bad artifact", category="build")
        except WorkflowError as e:
            state_store.track_error(e, "build", critical=True)

        record = state_store.get_errors()[0]
        assert record.message == "bad artifact"
        assert record.category == "build"
        assert record.critical is True
        assert "WorkflowError" in record.stack

    def test_duplicate_warning_is_not_appended(self, state_store):
        state_store.initialize()
        assert state_store.add_warning("large bundle", step="build", category="size") is True
        assert state_store.add_warning("large bundle", step="build", category="size") is False
        assert state_store.add_warning("large bundle", step="build", category="perf") is True
        assert len(state_store.get_warnings()) == 2

    def test_warning_from_mapping_uses_defaults(self, state_store):
        state_store.initialize()
        state_store.add_warning({"message": "deprecated flag"}, step="lint")

        warning = state_store.get_warnings()[0]
        assert warning.step == "lint"
        assert warning.category == "general"
        assert warning.severity == Severity.WARNING

    def test_meta_error_is_logged_not_raised(self, state_store, caplog):
        state_store.initialize()
        with patch.object(
            WorkflowStateStore, "_build_error_record", side_effect=RuntimeError("formatter broke")
        ):
            assert state_store.track_error(RuntimeError("original"), "build") is False

        assert state_store.get_errors() == []
        assert any("meta-error" in record.message for record in caplog.records)


class TestStepBookkeeping:
    """Tests for current step and completed step tracking."""

    def test_complete_step_appends_record_and_clears_current(self, state_store):
        state_store.initialize()
        state_store.set_current_step("build")
        state_store.complete_step("build", StepResult(success=True, duration=1.5, output={"files": 3}))

        snapshot = state_store.get_state()
        assert snapshot.current_step is None
        assert snapshot.completed_step_names() == ["build"]
        assert snapshot.completed_steps[0].result.output == {"files": 3}

    def test_current_step_requires_running_run(self, state_store):
        state_store.set_current_step("build")
        assert state_store.get_current_step() is None

    def test_complete_and_fail_are_terminal(self, state_store):
        state_store.initialize()
        state_store.set_current_step("deploy")
        state_store.fail(RuntimeError("deploy rejected"))

        snapshot = state_store.get_state()
        assert snapshot.status == RunStatus.FAILED
        assert snapshot.current_step is None
        assert snapshot.end_time is not None
        assert snapshot.errors[0].step == "deploy"
        assert snapshot.errors[0].critical is True

    def test_complete_with_errors_status(self, state_store):
        state_store.initialize()
        state_store.complete({"ok": 2}, status=RunStatus.COMPLETED_WITH_ERRORS)

        snapshot = state_store.get_state()
        assert snapshot.status == RunStatus.COMPLETED_WITH_ERRORS
        assert snapshot.result == {"ok": 2}

    def test_complete_rejects_failed_status(self, state_store):
        state_store.initialize()
        with pytest.raises(ValueError):
            state_store.complete(status=RunStatus.FAILED)


class TestMetrics:
    """Tests for metrics merging."""

    def test_top_level_keys_replace(self, state_store):
        state_store.initialize()
        state_store.update_metrics({"package_metrics": {"size": 1, "files": 2}})
        state_store.update_metrics({"package_metrics": {"size": 5}})
        assert state_store.get_metrics()["package_metrics"] == {"size": 5}

    def test_deployment_status_merges(self, state_store):
        state_store.initialize()
        state_store.update_metrics({"deployment_status": {"hours": "ok"}})
        state_store.update_metrics({"deployment_status": {"admin": "pending"}})
        assert state_store.get_metrics()["deployment_status"] == {"hours": "ok", "admin": "pending"}

    def test_channel_cleanup_merge_keeps_stats_and_status(self, state_store):
        state_store.initialize()
        state_store.update_metrics(
            {"channel_cleanup": {"stats": {"total": 4}, "status": "running", "cleaned_channels": 1}}
        )
        state_store.update_metrics({"channel_cleanup": {"stats": {"total": 9}, "failed_channels": 2}})

        cleanup = state_store.get_metrics()["channel_cleanup"]
        assert cleanup["stats"] == {"total": 4}
        assert cleanup["status"] == "running"
        assert cleanup["cleaned_channels"] == 1
        assert cleanup["failed_channels"] == 2

    def test_channel_cleanup_defaults(self, state_store):
        state_store.initialize()
        state_store.update_metrics({"channel_cleanup": {}})
        cleanup = state_store.get_metrics()["channel_cleanup"]
        assert cleanup["status"] == "pending"
        assert cleanup["cleaned_channels"] == 0
        assert cleanup["failed_channels"] == 0

    def test_invalid_update_is_ignored(self, state_store, caplog):
        state_store.initialize()
        state_store.update_metrics(["not", "a", "mapping"])
        assert state_store.get_metrics() == {}
        assert any("invalid metrics" in r.message.lower() for r in caplog.records)

    def test_get_metrics_returns_copy(self, state_store):
        state_store.initialize()
        state_store.update_metrics({"phase_durations": {"build": 1.0}})
        state_store.get_metrics()["phase_durations"]["build"] = 99
        assert state_store.get_metrics()["phase_durations"]["build"] == 1.0

    def test_advanced_checks(self, state_store):
        state_store.initialize()
        state_store.update_advanced_checks("bundle_size", {"passed": True})
        checks = state_store.get_metrics()["advanced_checks"]
        assert checks["bundle_size"]["passed"] is True
        assert "timestamp" in checks["bundle_size"]


class TestPassThroughFields:
    """Tests for fields written by step implementations."""

    def test_preview_urls_filters_unknown_keys(self, state_store):
        state_store.initialize()
        state_store.set_preview_urls({"hours": "https://h", "other": "x"})

        assert state_store.get_preview_urls() == {"hours": "https://h", "admin": None}
        assert state_store.get_metrics()["preview_urls"]["hours"] == "https://h"

    def test_update_state_ignores_unsupported_fields(self, state_store):
        state_store.initialize()
        state_store.update_state(channel_id="c-9", status="completed")

        snapshot = state_store.get_state()
        assert snapshot.channel_id == "c-9"
        assert snapshot.status == RunStatus.RUNNING


class TestLastSuccessfulPreview:
    """Tests for the sticky preview sidecar."""

    def test_empty_artifact_does_not_overwrite(self, state_store, file_storage):
        state_store.save_last_successful_preview({"hours": "https://h1", "admin": None})

        assert state_store.save_last_successful_preview(None) is False
        assert state_store.save_last_successful_preview({"hours": None, "admin": None}) is False
        assert file_storage.load_preview()["hours"] == "https://h1"

    def test_preview_survives_clear_state(self, state_store):
        state_store.initialize()
        state_store.save_last_successful_preview({"hours": "https://h1", "admin": "https://a1"})
        state_store.track_error("x", "y")

        state_store.clear_state()

        snapshot = state_store.get_state()
        assert snapshot.errors == []
        assert snapshot.last_successful_preview["admin"] == "https://a1"

    def test_inject_previous_preview(self, state_store):
        assert state_store.inject_previous_preview_into_metrics() is False
        state_store.save_last_successful_preview({"hours": "https://h1"})
        state_store.initialize()

        assert state_store.inject_previous_preview_into_metrics() is True
        assert state_store.get_metrics()["previous_preview"]["hours"] == "https://h1"


class TestRecoveryBookkeeping:
    """Tests for per-step retry counters."""

    def test_budget_is_consumed_per_attempt(self, memory_store):
        for _ in range(2):
            assert memory_store.start_recovery("deploy", max_retries=2) is True
            assert memory_store.get_recovery_state("deploy").in_recovery is True
            memory_store.end_recovery("deploy", success=True)

        assert memory_store.can_retry_step("deploy", max_retries=2) is False
        assert memory_store.start_recovery("deploy", max_retries=2) is False
        assert memory_store.get_recovery_state("deploy").recovery_attempt == 2

    def test_completing_step_resets_counter(self, memory_store):
        memory_store.initialize()
        memory_store.start_recovery("build")
        memory_store.end_recovery("build", success=False)
        memory_store.complete_step("build", {"success": True})

        assert memory_store.get_recovery_state("build").recovery_attempt == 0

    def test_recovery_state_is_not_persisted(self, memory_store):
        memory_store.initialize()
        memory_store.start_recovery("build")
        memory_store.end_recovery("build", success=False)

        assert "recovery" not in json.dumps(memory_store.storage.load())


class TestCrashRecovery:
    """Tests for detecting and recovering unfinished runs."""

    def test_unfinished_run_is_recoverable(self, file_storage):
        crashed = WorkflowStateStore(file_storage)
        crashed.initialize()
        crashed.complete_step("install", {"success": True})
        crashed.set_current_step("build")
        crashed.add_warning("flaky network")

        restarted = WorkflowStateStore(JsonFileStateStorage(file_storage.state_dir))
        assert restarted.is_recoverable() is True
        assert restarted.recover() is True
        assert restarted.is_recoverable() is False

        warnings = restarted.get_warnings()
        assert [w.category for w in warnings] == ["general", "recovery"]
        assert warnings[1].step == "build"
        assert "install" in warnings[1].message

    def test_reset_discards_history(self, file_storage):
        crashed = WorkflowStateStore(file_storage)
        crashed.initialize()
        crashed.track_error("boom", "build")

        restarted = WorkflowStateStore(JsonFileStateStorage(file_storage.state_dir))
        restarted.reset()

        assert restarted.is_recoverable() is False
        assert restarted.get_errors() == []
        assert restarted.get_status() == RunStatus.IDLE

    def test_corrupt_state_file_is_ignored(self, file_storage):
        file_storage.state_dir.mkdir(parents=True)
        file_storage.state_file.write_text("{not json", encoding="utf-8")

        store = WorkflowStateStore(file_storage)
        assert store.get_status() == RunStatus.IDLE
        assert store.is_recoverable() is False


class TestPersistence:
    """Tests for the JSON file backend."""

    def test_every_overwrite_is_backed_up(self, state_store, file_storage):
        state_store.initialize()
        state_store.set_current_step("build")
        state_store.complete_step("build", {"success": True})

        backups = file_storage.list_backups()
        assert len(backups) == 2
        previous = json.loads(backups[-1].read_text(encoding="utf-8"))
        assert previous["current_step"] == "build"
        assert _read_state(file_storage)["current_step"] is None

    def test_write_failure_is_swallowed(self, state_store, file_storage, caplog):
        with patch("ciflow.orchestration.storage.safe_write_json", side_effect=OSError("disk full")):
            snapshot = state_store.initialize()

        assert snapshot.status == RunStatus.RUNNING
        assert state_store.get_status() == RunStatus.RUNNING
        assert any("Failed to save workflow state" in r.message for r in caplog.records)

    def test_unserializable_output_does_not_block_later_writes(self, state_store, file_storage, caplog):
        class Artifact:
            def __str__(self):
                return "artifact-7"

        state_store.initialize()
        state_store.complete_step("package", {"success": True, "output": Artifact(), "bundle": Artifact()})
        state_store.complete_step("lint", {"success": True, "output": {"files": 3}})
        state_store.update_metrics({"package_metrics": {"artifact": Artifact()}})
        state_store.complete({"artifact": Artifact()})

        on_disk = _read_state(file_storage)
        assert on_disk["status"] == "completed"
        assert [s["name"] for s in on_disk["completed_steps"]] == ["package", "lint"]
        assert on_disk["completed_steps"][0]["result"]["output"] == "artifact-7"
        assert on_disk["completed_steps"][0]["result"]["bundle"] == "artifact-7"
        assert on_disk["metrics"]["package_metrics"] == {"artifact": "artifact-7"}
        assert on_disk["result"] == {"artifact": "artifact-7"}
        assert not any("Failed to serialize" in r.message for r in caplog.records)

    def test_in_memory_storage_keeps_backups(self):
        storage = InMemoryStateStorage()
        store = WorkflowStateStore(storage)
        store.initialize()
        store.add_warning("w")

        assert len(storage.list_backups()) == 1
        assert storage.load()["warnings"][0]["message"] == "w"

    def test_files_use_fixed_names(self, state_store, file_storage):
        state_store.initialize()
        state_store.save_last_successful_preview({"hours": "https://h"})

        assert file_storage.state_file == Path(file_storage.state_dir) / "workflow-state.json"
        assert file_storage.preview_file.exists()
        assert file_storage.backup_dir.name == "backups"
