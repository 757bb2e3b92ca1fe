"""ModHost: the single explicitly-owned context for a mod pipeline.

Wires scanner -> resolver -> loader -> patch coordinator -> conflict
resolver and exposes the query API. Nothing here is process-global except
the optional cached accessor ``get_mod_host``.

Failure policy: a missing/incompatible package at resolution time is fatal
for the whole pass (``last_error`` is set and the error re-raised); a
package failing at load time is isolated by the loader.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Type, TypeVar

from modcore.cancellation import CancellationToken
from modcore.config import get_config
from modcore.conflicts import ConflictResolver, MergeResult
from modcore.events import emit, LoadCompleted
from modcore.exceptions import ModError, ResolutionError
from modcore.log import get_logger
from modcore.modules import LoadedPackageRecord, ModRuntimeLoader
from modcore.patching import PatchCoordinator
from modcore.registry import ManifestScanner, PackageDescriptor
from modcore.registry.report import ValidationReport
from modcore.resolver import (
    DependencyGraphResolver,
    LoadOrder,
    dependents_of,
    validate_descriptors,
)

log = get_logger("host")

T = TypeVar("T")


@dataclass
class LoadMetrics:
    discovered: int = 0
    rejected: int = 0
    loaded: int = 0
    failed: int = 0
    duration_ms: int = 0
    status: str = "idle"  # idle|ok|cancelled|failed

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ModHost:
    def __init__(
        self,
        root_dir: str | Path | None = None,
        scanner: ManifestScanner | None = None,
        resolver: DependencyGraphResolver | None = None,
        coordinator: PatchCoordinator | None = None,
        conflicts: ConflictResolver | None = None,
        loader: ModRuntimeLoader | None = None,
    ) -> None:
        self.root_dir = Path(root_dir or get_config().mods.root_dir)
        self.scanner = scanner or ManifestScanner()
        self.resolver = resolver or DependencyGraphResolver()
        self.coordinator = coordinator or PatchCoordinator()
        self.conflicts = conflicts or ConflictResolver()
        self.loader = loader or ModRuntimeLoader(self.coordinator)
        self.loader.on_changed = self._remerge
        self._lock = RLock()
        self._descriptors: List[PackageDescriptor] = []
        self._load_order: LoadOrder = ()
        self._merged = MergeResult()
        self._metrics = LoadMetrics()
        self._report = ValidationReport()
        self.last_error: Optional[ModError] = None
        self._loaded_root: Optional[Path] = None

    # --- Operational entry points ------------------------------------------
    def load_all(
        self,
        path: str | Path | None = None,
        cancel: CancellationToken | None = None,
    ) -> LoadMetrics:
        start = time.perf_counter()
        root = Path(path) if path is not None else self.root_dir
        with self._lock:
            descriptors = self.scanner.discover(root, cancel)
            report = self.scanner.report
            rejected = len(report.errors)
            if report.cancelled:
                # a partial scan cannot be resolved; nothing is loaded
                self._report = report
                self._metrics = LoadMetrics(
                    discovered=len(descriptors),
                    rejected=rejected,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    status="cancelled",
                )
                self._emit_completed()
                log.warning(
                    "load_all cancelled during scan after %d package(s)",
                    len(descriptors),
                )
                return self.get_load_metrics()
            validate_descriptors(descriptors, report)
            self._descriptors = descriptors
            self._report = report
            resolved_root = root.resolve()
            if (
                self._loaded_root is not None
                and self._loaded_root != resolved_root
            ):
                log.info(
                    "mods root changed %s -> %s; dropping old records",
                    self._loaded_root,
                    resolved_root,
                )
                self.loader.reset()
                self._load_order = ()
            self._loaded_root = resolved_root
            try:
                order = self.resolver.resolve_load_order(descriptors)
            except ResolutionError as e:
                self.last_error = e
                self._metrics = LoadMetrics(
                    discovered=len(descriptors),
                    rejected=rejected,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    status="failed",
                )
                self._emit_completed()
                raise
            self.last_error = None
            self._load_order = order
            result = self.loader.load_all(order, descriptors, cancel)
            cancelled = report.cancelled or result.status == "cancelled"
            self._metrics = LoadMetrics(
                discovered=len(descriptors),
                rejected=rejected,
                loaded=len(result.loaded),
                failed=len(result.failed),
                duration_ms=int((time.perf_counter() - start) * 1000),
                status="cancelled" if cancelled else "ok",
            )
            self._emit_completed()
            log.info(
                "load_all done: %d loaded, %d failed, %d rejected (%s)",
                self._metrics.loaded,
                self._metrics.failed,
                rejected,
                self._metrics.status,
            )
            return self.get_load_metrics()

    def _emit_completed(self) -> None:
        m = self._metrics
        emit(
            LoadCompleted(
                discovered=m.discovered,
                loaded=m.loaded,
                failed=m.failed,
                duration_ms=m.duration_ms,
                status=m.status,
            )
        )

    def unload_all(self) -> int:
        with self._lock:
            return self.loader.unload_all()

    def unload_mod(self, mod_id: str) -> bool:
        with self._lock:
            return self.loader.unload_mod(mod_id)

    def reload_mod(
        self, mod_id: str, cancel: CancellationToken | None = None
    ) -> LoadedPackageRecord:
        with self._lock:
            return self.loader.reload_mod(mod_id, cancel)

    def _remerge(self) -> None:
        order, contributions = self.loader.contributions()
        append_keys = {
            key
            for rec in self.loader.loaded()
            for key in rec.descriptor.append_keys
        }
        self._merged = self.conflicts.merge_overrides(
            order, contributions, append_keys
        )

    # --- Queries -------------------------------------------------------------
    def get_load_order(self) -> LoadOrder:
        return tuple(self._load_order)

    def get_loaded_mods(self) -> List[LoadedPackageRecord]:
        return self.loader.loaded()

    def get_record(self, mod_id: str) -> Optional[LoadedPackageRecord]:
        return self.loader.get_record(mod_id)

    def get_api(
        self, mod_id: str, expected_type: Type[T] | None = None
    ) -> Any:
        api = self.loader.get_api(mod_id)
        if expected_type is not None and not isinstance(api, expected_type):
            return None
        return api

    def get_load_metrics(self) -> LoadMetrics:
        return LoadMetrics(**self._metrics.to_dict())

    def get_value(self, key: str, default: Any = None) -> Any:
        return self._merged.values.get(key, default)

    def merged_values(self) -> Dict[str, Any]:
        return dict(self._merged.values)

    def value_sources(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self._merged.sources.items()}

    def validation_report(self) -> ValidationReport:
        copy = ValidationReport()
        copy.extend(self._report)
        return copy

    def descriptors(self) -> List[PackageDescriptor]:
        return list(self._descriptors)

    def _descriptor(self, mod_id: str) -> PackageDescriptor:
        for d in self._descriptors:
            if d.id == mod_id:
                return d
        raise KeyError(f"Unknown mod id '{mod_id}'")

    def get_dependents(self, mod_id: str) -> List[str]:
        self._descriptor(mod_id)
        return dependents_of(mod_id, self._descriptors)

    def get_dependencies(self, mod_id: str) -> List[str]:
        return [d.id for d in self._descriptor(mod_id).dependencies]


@lru_cache(maxsize=1)
def get_mod_host() -> ModHost:
    return ModHost()


__all__ = ["ModHost", "LoadMetrics", "get_mod_host"]
