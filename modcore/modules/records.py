"""Lifecycle state + per-package runtime record."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from modcore.registry.manifest import PackageDescriptor


class LifecycleState(str, Enum):
    DISCOVERED = "discovered"
    LOADED = "loaded"
    INITIALIZED = "initialized"
    FAILED = "failed"
    UNLOADED = "unloaded"


# allowed transitions; FAILED/UNLOADED -> DISCOVERED is a fresh attempt
TRANSITIONS: Dict[LifecycleState, set] = {
    LifecycleState.DISCOVERED: {LifecycleState.LOADED, LifecycleState.FAILED},
    LifecycleState.LOADED: {
        LifecycleState.INITIALIZED,
        LifecycleState.FAILED,
        LifecycleState.UNLOADED,
    },
    LifecycleState.INITIALIZED: {LifecycleState.UNLOADED},
    LifecycleState.FAILED: {
        LifecycleState.DISCOVERED,
        LifecycleState.UNLOADED,
    },
    LifecycleState.UNLOADED: {LifecycleState.DISCOVERED},
}


class LoadedPackageRecord:
    """Runtime view of one package. Mutated only by ModRuntimeLoader."""

    __slots__ = (
        "descriptor",
        "state",
        "plugin",
        "module_name",
        "failure",
        "failure_phase",
        "api",
        "contributions",
        "patch_handles",
        "load_index",
        "loaded_at",
    )

    def __init__(self, descriptor: PackageDescriptor, load_index: int = 0):
        self.descriptor = descriptor
        self.state = LifecycleState.DISCOVERED
        self.plugin: Any | None = None
        self.module_name: str | None = None
        self.failure: BaseException | None = None
        self.failure_phase: str | None = None
        self.api: Any | None = None
        self.contributions: Dict[str, Any] = {}
        self.patch_handles: List[int] = []
        self.load_index = load_index
        self.loaded_at: float | None = None

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def error_type(self) -> str | None:
        if self.failure is None:
            return None
        return getattr(self.failure, "error_type", "internal")

    def snapshot(self) -> "LoadedPackageRecord":
        copy = LoadedPackageRecord(self.descriptor, self.load_index)
        for name in self.__slots__:
            setattr(copy, name, getattr(self, name))
        copy.contributions = dict(self.contributions)
        copy.patch_handles = list(self.patch_handles)
        return copy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.descriptor.name,
            "version": self.descriptor.version,
            "state": self.state.value,
            "load_index": self.load_index,
            "has_code": self.plugin is not None,
            "has_api": self.api is not None,
            "patches": len(self.patch_handles),
            "error_type": self.error_type,
            "error": str(self.failure) if self.failure else None,
            "failure_phase": self.failure_phase,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<LoadedPackageRecord {self.id} {self.state.value}>"


__all__ = ["LifecycleState", "LoadedPackageRecord", "TRANSITIONS"]
