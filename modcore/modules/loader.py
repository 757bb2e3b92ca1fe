"""ModRuntimeLoader: load/initialize packages in resolved order.

Per package: DISCOVERED -> LOADED (code module imported, plugin
instantiated) -> INITIALIZED (data read, ``initialize`` called, declared
patches attached). A failure at any step marks only that package FAILED;
the pass continues. A package whose required dependency is not
INITIALIZED fails with ``dependency-failed`` without running its code.

All mutations run under one RLock (single writer); queries return record
snapshots.
"""
from __future__ import annotations

import importlib.util
import inspect
import itertools
import json
import re
import sys
from dataclasses import dataclass, field
from threading import RLock
from time import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from modcore.cancellation import CancellationToken, is_cancelled
from modcore.config import get_config
from modcore.errors import map_exception
from modcore.events import (
    emit,
    ModLoadFailed,
    ModReloaded,
    ModStateChanged,
    ModUnloaded,
)
from modcore.exceptions import (
    InitializationError,
    ModError,
    RuntimeLoadError,
    RuntimeMissingDependencyError,
)
from modcore.log import get_logger
from modcore.patching import PatchCoordinator
from modcore.registry.manifest import PackageDescriptor
from modcore.resolver import dependents_of
from .lifecycle import ModContext, ModPlugin
from .records import LifecycleState, LoadedPackageRecord, TRANSITIONS

log = get_logger("loader")

MODULE_NAMESPACE = "modcore_mods"
DATA_SUFFIXES = (".json", ".yaml", ".yml")

_LIVE = (LifecycleState.LOADED, LifecycleState.INITIALIZED)


@dataclass
class LoadResult:
    records: List[LoadedPackageRecord] = field(default_factory=list)
    status: str = "ok"  # ok|cancelled

    @property
    def loaded(self) -> List[str]:
        return [
            r.id for r in self.records
            if r.state is LifecycleState.INITIALIZED
        ]

    @property
    def failed(self) -> List[str]:
        return [r.id for r in self.records if r.state is LifecycleState.FAILED]


class ModRuntimeLoader:
    def __init__(
        self,
        coordinator: PatchCoordinator | None = None,
        data_dir: str | None = None,
        on_changed: Callable[[], None] | None = None,
    ) -> None:
        self._coordinator = coordinator or PatchCoordinator()
        self._data_dir = data_dir or get_config().mods.data_dir
        self.on_changed = on_changed
        self._records: Dict[str, LoadedPackageRecord] = {}
        self._order: List[str] = []
        self._generation = itertools.count(1)
        self._lock = RLock()

    @property
    def coordinator(self) -> PatchCoordinator:
        return self._coordinator

    # --- State transitions ---------------------------------------------------
    def _transition(
        self,
        rec: LoadedPackageRecord,
        to: LifecycleState,
        reason: str | None = None,
    ) -> None:
        if to not in TRANSITIONS[rec.state]:
            raise RuntimeError(
                f"illegal transition for {rec.id}: "
                f"{rec.state.value} -> {to.value}"
            )
        prev = rec.state
        rec.state = to
        log.debug("%s: %s -> %s", rec.id, prev.value, to.value)
        emit(
            ModStateChanged(
                mod_id=rec.id,
                from_state=prev.value,
                to_state=to.value,
                reason=reason,
            )
        )

    def _fail(
        self, rec: LoadedPackageRecord, phase: str, exc: BaseException
    ) -> None:
        if not isinstance(exc, ModError):
            code = map_exception(exc, phase)
            cls = (
                InitializationError
                if phase == "initialize"
                else RuntimeLoadError
            )
            wrapped = cls(
                rec.id, f"{type(exc).__name__}: {exc}", error_type=code
            )
            wrapped.__cause__ = exc
            exc = wrapped
        rec.failure = exc
        rec.failure_phase = phase
        # partial initialize must not leave interceptors behind
        self._coordinator.remove_patches(rec.id)
        rec.patch_handles = []
        self._drop_module(rec)
        rec.plugin = None
        rec.api = None
        rec.contributions = {}
        log.error("mod %s failed during %s: %s", rec.id, phase, exc)
        self._transition(rec, LifecycleState.FAILED, reason=phase)
        emit(
            ModLoadFailed(
                mod_id=rec.id,
                phase=phase,
                error_type=getattr(exc, "error_type", "internal"),
                message=str(exc),
            )
        )

    # --- Code module import --------------------------------------------------
    def _import_module(self, desc: PackageDescriptor) -> Tuple[Any, str]:
        file_part = (desc.code_module or "").split(":", 1)[0]
        if desc.mod_dir is None:
            raise RuntimeLoadError(
                desc.id, "mod has no source path", error_type="module-missing"
            )
        base = desc.mod_dir.resolve()
        path = (base / file_part).resolve()
        if not path.is_relative_to(base):
            raise RuntimeLoadError(
                desc.id,
                f"entry point escapes mod directory: {file_part}",
                error_type="entry-point-invalid",
            )
        if not path.is_file():
            raise RuntimeLoadError(
                desc.id,
                f"code module not found: {file_part}",
                error_type="module-missing",
            )
        safe = re.sub(r"\W", "_", desc.id)
        # fresh name per load so a reload never reuses a cached module
        module_name = f"{MODULE_NAMESPACE}.{safe}_{next(self._generation)}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise RuntimeLoadError(desc.id, f"cannot import {file_part}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module, module_name

    @staticmethod
    def _instantiate(desc: PackageDescriptor, module: Any) -> ModPlugin:
        attr = ""
        if desc.code_module and ":" in desc.code_module:
            attr = desc.code_module.split(":", 1)[1].strip()
        if attr:
            factory = getattr(module, attr, None)
            if factory is None:
                raise RuntimeLoadError(
                    desc.id,
                    f"entry point attribute '{attr}' not found",
                    error_type="entry-point-invalid",
                )
        else:
            found = [
                obj
                for obj in vars(module).values()
                if inspect.isclass(obj)
                and issubclass(obj, ModPlugin)
                and obj.__module__ == module.__name__
                and not inspect.isabstract(obj)
            ]
            if len(found) != 1:
                raise RuntimeLoadError(
                    desc.id,
                    f"expected exactly one ModPlugin subclass, found "
                    f"{len(found)}",
                    error_type="entry-point-invalid",
                )
            factory = found[0]
        if not callable(factory):
            raise RuntimeLoadError(
                desc.id,
                f"entry point '{attr}' is not callable",
                error_type="entry-point-invalid",
            )
        plugin = factory()
        if not isinstance(plugin, ModPlugin):
            raise RuntimeLoadError(
                desc.id,
                f"entry point returned {type(plugin).__name__}, "
                "not a ModPlugin",
                error_type="entry-point-invalid",
            )
        return plugin

    @staticmethod
    def _drop_module(rec: LoadedPackageRecord) -> None:
        if rec.module_name:
            sys.modules.pop(rec.module_name, None)
            rec.module_name = None

    # --- Data ----------------------------------------------------------------
    def _read_data(self, desc: PackageDescriptor) -> Dict[str, Any]:
        data_dir = desc.data_dir(self._data_dir)
        out: Dict[str, Any] = {}
        if data_dir is None:
            return out
        base = desc.mod_dir.resolve()
        if not data_dir.resolve().is_relative_to(base):
            raise RuntimeLoadError(
                desc.id,
                f"data directory escapes mod directory: {data_dir}",
                error_type="data-invalid",
            )
        if not data_dir.is_dir():
            return out
        for path in sorted(data_dir.iterdir(), key=lambda p: p.name):
            if not path.is_file() or path.suffix.lower() not in DATA_SUFFIXES:
                continue
            text = path.read_text(encoding="utf-8")
            if path.suffix.lower() == ".json":
                doc = json.loads(text)
            else:
                doc = yaml.safe_load(text)
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RuntimeLoadError(
                    desc.id,
                    f"data file {path.name} must contain a mapping",
                    error_type="data-invalid",
                )
            out.update(doc)
        return out

    # --- Load ----------------------------------------------------------------
    def _missing_dependency(self, desc: PackageDescriptor) -> Optional[str]:
        for dep in desc.dependencies:
            other = self._records.get(dep.id)
            ready = (
                other is not None
                and other.state is LifecycleState.INITIALIZED
            )
            if ready:
                continue
            if dep.optional:
                if other is not None:
                    log.warning(
                        "optional dependency %s of %s is %s",
                        dep.id,
                        desc.id,
                        other.state.value,
                    )
                continue
            return dep.id
        return None

    def _lookup_api(self, mod_id: str) -> Any:
        rec = self._records.get(mod_id)
        if rec is None or rec.state is not LifecycleState.INITIALIZED:
            return None
        return rec.api

    def _load_one(
        self,
        desc: PackageDescriptor,
        previous: LoadedPackageRecord | None = None,
        reason: str | None = None,
    ) -> LoadedPackageRecord:
        if previous is not None:
            # fresh attempt for an unloaded or failed package
            self._transition(previous, LifecycleState.DISCOVERED, reason)
        if desc.id not in self._order:
            self._order.append(desc.id)
        rec = LoadedPackageRecord(desc, self._order.index(desc.id))
        self._records[desc.id] = rec

        missing = self._missing_dependency(desc)
        if missing is not None:
            self._fail(
                rec, "dependency", RuntimeMissingDependencyError(desc.id, missing)
            )
            return rec

        phase = "import"
        try:
            if desc.code_module:
                module, rec.module_name = self._import_module(desc)
                phase = "instantiate"
                rec.plugin = self._instantiate(desc, module)
        except Exception as e:  # noqa: BLE001 - isolate mod code failures
            self._fail(rec, phase, e)
            return rec
        self._transition(rec, LifecycleState.LOADED)

        phase = "data"
        try:
            rec.contributions.update(self._read_data(desc))
            if rec.plugin is not None:
                phase = "initialize"
                ctx = ModContext(rec, self._coordinator, self._lookup_api)
                rec.plugin.initialize(ctx)
                phase = "patch"
                self._coordinator.apply_patches(
                    desc.id, list(rec.plugin.patches() or ())
                )
                rec.api = rec.plugin.api
        except Exception as e:  # noqa: BLE001
            self._fail(rec, "initialize" if phase == "patch" else phase, e)
            return rec
        rec.patch_handles = [
            r.handle for r in self._coordinator.owned_by(desc.id)
        ]
        rec.loaded_at = time()
        self._transition(rec, LifecycleState.INITIALIZED)
        log.info("mod initialized: %s", desc.label())
        return rec

    def _sync_order(self, load_order: Sequence[str]) -> bool:
        """Resolved ids first (in load order), then ids from earlier passes."""
        resolved = [m for m in load_order if m in self._records]
        placed = set(resolved)
        order = resolved + [m for m in self._order if m not in placed]
        moved = order != self._order
        self._order = order
        for index, mod_id in enumerate(order):
            self._records[mod_id].load_index = index
        return moved

    def load_all(
        self,
        load_order: Sequence[str],
        descriptors: Sequence[PackageDescriptor],
        cancel: CancellationToken | None = None,
    ) -> LoadResult:
        by_id = {d.id: d for d in descriptors}
        result = LoadResult()
        changed = False
        with self._lock:
            for mod_id in load_order:
                if is_cancelled(cancel):
                    result.status = "cancelled"
                    log.warning(
                        "load cancelled before %s (%s)",
                        mod_id,
                        cancel.reason if cancel else None,
                    )
                    break
                existing = self._records.get(mod_id)
                if (
                    existing is not None
                    and existing.state is not LifecycleState.UNLOADED
                ):
                    # already handled by an earlier pass
                    continue
                desc = by_id.get(mod_id) or (
                    existing.descriptor if existing else None
                )
                if desc is None:
                    log.warning("no descriptor for %s; skipping", mod_id)
                    continue
                self._load_one(desc, existing)
                changed = True
            if self._sync_order(load_order):
                changed = True
            result.records = [
                self._records[m].snapshot()
                for m in load_order
                if m in self._records
            ]
        if changed and self.on_changed is not None:
            self.on_changed()
        return result

    # --- Unload / reload -----------------------------------------------------
    def _unload_one(self, rec: LoadedPackageRecord, reason: str) -> None:
        if rec.plugin is not None:
            try:
                rec.plugin.shutdown()
            except Exception as e:  # noqa: BLE001 - shutdown never propagates
                code = map_exception(e, "shutdown")
                log.error("shutdown of %s failed: %s", rec.id, e)
                emit(
                    ModLoadFailed(
                        mod_id=rec.id,
                        phase="shutdown",
                        error_type=code,
                        message=str(e),
                    )
                )
        removed = self._coordinator.remove_patches(rec.id)
        self._drop_module(rec)
        rec.plugin = None
        rec.api = None
        rec.contributions = {}
        rec.patch_handles = []
        self._transition(rec, LifecycleState.UNLOADED, reason)
        emit(ModUnloaded(mod_id=rec.id, reason=reason, patches_removed=removed))

    def unload_all(self) -> int:
        """Unload every package in reverse load order; returns the count."""
        count = 0
        with self._lock:
            for mod_id in reversed(self._order):
                rec = self._records[mod_id]
                if rec.state is LifecycleState.UNLOADED:
                    continue
                if rec.state is LifecycleState.DISCOVERED:
                    continue
                self._unload_one(rec, "unload_all")
                count += 1
        if count:
            log.info("unloaded %d mod(s)", count)
            if self.on_changed is not None:
                self.on_changed()
        return count

    def _stale_dependents(self, mod_id: str, action: str) -> List[str]:
        stale = [
            d
            for d in dependents_of(
                mod_id, [r.descriptor for r in self._records.values()]
            )
            if self._records[d].state in _LIVE
        ]
        if stale:
            log.warning(
                "%s %s; dependents now stale: %s",
                action,
                mod_id,
                ", ".join(stale),
            )
        return stale

    def unload_mod(self, mod_id: str) -> bool:
        """Unload one package (dependents are left running, now stale)."""
        with self._lock:
            rec = self._records.get(mod_id)
            if rec is None:
                raise KeyError(f"Unknown mod id '{mod_id}'")
            if rec.state not in _LIVE:
                return False
            self._stale_dependents(mod_id, "unloading")
            self._unload_one(rec, "unload")
        if self.on_changed is not None:
            self.on_changed()
        return True

    def reload_mod(
        self, mod_id: str, cancel: CancellationToken | None = None
    ) -> LoadedPackageRecord:
        with self._lock:
            rec = self._records.get(mod_id)
            if rec is None:
                raise KeyError(f"Unknown mod id '{mod_id}'")
            if cancel is not None:
                cancel.raise_if_cancelled()
            stale = self._stale_dependents(mod_id, "reloading")
            if rec.state in _LIVE:
                self._unload_one(rec, "reload")
            new = self._load_one(rec.descriptor, rec, reason="reload")
            emit(
                ModReloaded(
                    mod_id=mod_id,
                    state=new.state.value,
                    stale_dependents=stale or None,
                )
            )
            snap = new.snapshot()
        if self.on_changed is not None:
            self.on_changed()
        return snap

    # --- Queries -------------------------------------------------------------
    def get_record(self, mod_id: str) -> Optional[LoadedPackageRecord]:
        with self._lock:
            rec = self._records.get(mod_id)
            return rec.snapshot() if rec else None

    def records(self) -> List[LoadedPackageRecord]:
        with self._lock:
            return [self._records[m].snapshot() for m in self._order]

    def loaded(self) -> List[LoadedPackageRecord]:
        return [
            r for r in self.records() if r.state is LifecycleState.INITIALIZED
        ]

    def get_api(self, mod_id: str) -> Any:
        with self._lock:
            return self._lookup_api(mod_id)

    def contributions(self) -> Tuple[List[str], Dict[str, Dict[str, Any]]]:
        """(load order, contributions) of INITIALIZED packages."""
        with self._lock:
            order = [
                m for m in self._order
                if self._records[m].state is LifecycleState.INITIALIZED
            ]
            return order, {
                m: dict(self._records[m].contributions) for m in order
            }

    def reset(self) -> None:
        """Forget every record after unloading; used on a new mods root."""
        with self._lock:
            self.unload_all()
            self._records.clear()
            self._order.clear()


__all__ = ["ModRuntimeLoader", "LoadResult"]
