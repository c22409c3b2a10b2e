"""Input fingerprints used as cache keys.

A fingerprint hashes the cache type together with the path, modification
time and size of every input file. File contents are never read, so a
fingerprint is cheap to compute even for large build outputs.
"""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

DEFAULT_FINGERPRINT_FILES: Tuple[str, ...] = ("pyproject.toml",)

PathLike = Union[str, Path]


def _file_signature(path: Path) -> str:
    try:
        stat = path.stat()
        mtime, size = stat.st_mtime_ns, stat.st_size
    except OSError:
        mtime, size = 0, 0
    return f"{path}:{mtime}:{size}"


def generate_cache_key(cache_type: str, file_paths: Optional[Iterable[PathLike]] = None) -> str:
    """Derive a cache key for ``cache_type`` from the given input files.

    Args:
        cache_type: Namespace for the key (e.g. "build", "validation")
        file_paths: Input files; defaults to ``pyproject.toml`` in the
            working directory. Missing files count as mtime 0, size 0.

    Returns:
        Hex digest identifying this combination of inputs
    """
    paths = [Path(p) for p in (file_paths or DEFAULT_FINGERPRINT_FILES)]
    payload = "|".join(f"{cache_type}:{_file_signature(p)}" for p in paths)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
