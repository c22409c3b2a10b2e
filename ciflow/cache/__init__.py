"""Fingerprint-keyed result caching for workflow steps."""

from .fingerprint import DEFAULT_FINGERPRINT_FILES, generate_cache_key
from .workflow_cache import (
    CacheLookup,
    CacheStats,
    WorkflowCache,
    save_to_cache,
    try_use_cache,
    with_caching,
)

__all__ = [
    "DEFAULT_FINGERPRINT_FILES",
    "generate_cache_key",
    "CacheLookup",
    "CacheStats",
    "WorkflowCache",
    "save_to_cache",
    "try_use_cache",
    "with_caching",
]
