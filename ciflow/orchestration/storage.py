"""Storage backends for the workflow state store.

The state store only talks to ``StateStorage``; the JSON file backend keeps a
canonical state file, a timestamped backup of every overwritten version, and a
"last successful preview" sidecar that lives outside the run lifecycle.
"""
from __future__ import annotations

import copy
import itertools
import logging
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from ..utils.paths import read_json, safe_write_json

logger = logging.getLogger(__name__)

STATE_FILENAME = "workflow-state.json"
BACKUP_DIRNAME = "backups"
PREVIEW_FILENAME = "last-successful-preview.json"


class StateStorage(ABC):
    """Abstract base class for run state persistence.

    Implementations must never raise from ``save``/``load``: failures are
    logged and reported through the return value.
    """

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """Load the canonical run state.

        Returns:
            Serialized state or None if absent/unreadable
        """

    @abstractmethod
    def save(self, data: Dict[str, Any]) -> bool:
        """Back up the current canonical state, then overwrite it.

        Args:
            data: Serialized state

        Returns:
            True if the state was written
        """

    @abstractmethod
    def load_preview(self) -> Optional[Dict[str, Any]]:
        """Load the last successful preview sidecar."""

    @abstractmethod
    def save_preview(self, artifact: Dict[str, Any]) -> bool:
        """Persist the last successful preview sidecar."""

    @abstractmethod
    def list_backups(self) -> List[Any]:
        """List backups, oldest first."""


class InMemoryStateStorage(StateStorage):
    """In-memory storage for development/testing."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state: Optional[Dict[str, Any]] = copy.deepcopy(initial)
        self._preview: Optional[Dict[str, Any]] = None
        self._backups: List[Dict[str, Any]] = []
        self._lock = Lock()

    def load(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._state)

    def save(self, data: Dict[str, Any]) -> bool:
        with self._lock:
            if self._state is not None:
                self._backups.append(self._state)
            self._state = copy.deepcopy(data)
            return True

    def load_preview(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._preview)

    def save_preview(self, artifact: Dict[str, Any]) -> bool:
        with self._lock:
            self._preview = copy.deepcopy(artifact)
            return True

    def list_backups(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._backups)


class JsonFileStateStorage(StateStorage):
    """JSON file storage with backup-by-copy before each overwrite."""

    def __init__(self, state_dir: Path | str):
        """Initialize file storage.

        Args:
            state_dir: Directory holding the state file, backups and sidecar
        """
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / STATE_FILENAME
        self.backup_dir = self.state_dir / BACKUP_DIRNAME
        self.preview_file = self.state_dir / PREVIEW_FILENAME
        self._backup_seq = itertools.count()
        self._lock = Lock()

    def load(self) -> Optional[Dict[str, Any]]:
        """Load state from disk.

        Returns:
            State dictionary or None
        """
        return self._read(self.state_file, "workflow state")

    def save(self, data: Dict[str, Any]) -> bool:
        """Save state to disk, backing up the previous file first.

        Args:
            data: Serialized state

        Returns:
            True if successful
        """
        with self._lock:
            try:
                if self.state_file.exists():
                    self._backup_current()
                safe_write_json(self.state_file, data)
                logger.debug(f"Saved workflow state to {self.state_file}")
                return True
            except Exception as e:
                logger.error(f"Failed to save workflow state: {e}")
                return False

    def load_preview(self) -> Optional[Dict[str, Any]]:
        return self._read(self.preview_file, "last successful preview")

    def save_preview(self, artifact: Dict[str, Any]) -> bool:
        try:
            safe_write_json(self.preview_file, artifact)
            return True
        except Exception as e:
            logger.error(f"Failed to save last successful preview: {e}")
            return False

    def list_backups(self) -> List[Path]:
        """List backup files, oldest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("workflow-state-*.json"))

    def _backup_current(self) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        millis = int(time.time() * 1000)
        target = self.backup_dir / f"workflow-state-{millis}-{next(self._backup_seq):04d}.json"
        shutil.copy2(self.state_file, target)
        return target

    @staticmethod
    def _read(path: Path, label: str) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load {label} from {path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {label} in {path}: expected an object")
            return None
        return data
