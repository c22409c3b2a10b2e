"""Path utilities for safe file IO and directory handling.

Writes here go through a temporary sibling file followed by ``os.replace`` so a
reader never observes a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _atomic_write(path: Path, content: str, encoding: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_text(path: Path | str, content: str, *, encoding: str = "utf-8") -> Path:
    """Write text to ``path``, creating parent directories.

    Propagates OSError/PermissionError to caller for handling.
    """
    path = Path(path)
    _atomic_write(path, content, encoding)
    return path


def safe_write_json(path: Path, data: Any, *, encoding: str = "utf-8", indent: int = 2) -> None:
    """Safely write JSON to file with parent creation.

    Propagates OSError/PermissionError and serialization errors to caller.
    """
    _atomic_write(Path(path), json.dumps(data, indent=indent), encoding)


def read_json(path: Path, *, encoding: str = "utf-8") -> Any:
    """Load JSON from ``path``. Raises OSError or ValueError on failure."""
    with open(path, "r", encoding=encoding) as f:
        return json.load(f)
