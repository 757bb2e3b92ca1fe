"""Runtime module system for mod packages.

 - ModPlugin: lifecycle interface implemented by code modules
 - ModContext: services handed to a plugin during initialize
 - LoadedPackageRecord / LifecycleState: per-package runtime state
 - ModRuntimeLoader: ordered load, isolated failures, unload/reload
"""
from __future__ import annotations

from .lifecycle import ModContext, ModPlugin  # noqa: F401
from .loader import LoadResult, ModRuntimeLoader  # noqa: F401
from .records import LifecycleState, LoadedPackageRecord  # noqa: F401

__all__ = [
    "ModContext",
    "ModPlugin",
    "LoadResult",
    "ModRuntimeLoader",
    "LifecycleState",
    "LoadedPackageRecord",
]
