"""PatchCoordinator: ownership-tracked interceptors behind a dispatch point.

Nothing is rewritten in place. Host code exposes an operation through
``register_target`` / ``@patchable`` and every call goes through
``dispatch(target, ...)``, which consults the per-target ordered list of
interceptors:

  before hooks   handler(call) -> None | False   (False skips the original)
  replace hooks  handler(original, *args, **kwargs) -> result
                 (only the highest-priority replace runs)
  after hooks    handler(call) -> None           (may overwrite call.result)

Before and after hooks run high priority first; equal priority keeps
registration order. Each entry is tagged with its owner so removal touches
only that owner's entries.
"""
from __future__ import annotations

import functools
import itertools
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from time import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from modcore.config import get_config
from modcore.events import emit, PatchApplied, PatchFailed, PatchesRemoved
from modcore.exceptions import PatchApplicationError
from modcore.log import get_logger

log = get_logger("patching")


class PatchKind(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    REPLACE = "replace"


@dataclass(frozen=True)
class PatchSpec:
    """Patch declared by a package (not yet attached)."""

    target: str
    handler: Callable[..., Any]
    kind: str = "after"
    priority: int = 0


@dataclass(frozen=True)
class PatchRecord:
    handle: int
    target: str
    owner: str
    kind: PatchKind
    priority: int
    handler: Callable[..., Any] = field(repr=False, compare=False)
    applied_at: float = 0.0
    sequence: int = 0

    def sort_key(self) -> tuple:
        return (-self.priority, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "target": self.target,
            "owner": self.owner,
            "kind": self.kind.value,
            "priority": self.priority,
            "applied_at": self.applied_at,
        }


@dataclass
class PatchCall:
    """Mutable call state shared by the hooks of one dispatch."""

    target: str
    args: tuple
    kwargs: Dict[str, Any]
    result: Any = None
    skipped_original: bool = False


class PatchCoordinator:
    def __init__(
        self,
        allowed_targets: Sequence[str] | None = None,
        blocked_targets: Sequence[str] | None = None,
    ) -> None:
        if allowed_targets is None or blocked_targets is None:
            pcfg = get_config().patching
            if allowed_targets is None:
                allowed_targets = pcfg.allowed_targets
            if blocked_targets is None:
                blocked_targets = pcfg.blocked_targets
        self._allowed = tuple(allowed_targets)
        self._blocked = tuple(blocked_targets)
        self._originals: Dict[str, Callable[..., Any]] = {}
        self._entries: Dict[str, List[PatchRecord]] = {}
        self._seq = itertools.count(1)
        self._lock = RLock()
        self._disposed = False

    # --- Targets -----------------------------------------------------------
    def register_target(
        self, target: str, func: Callable[..., Any]
    ) -> Callable[..., Any]:
        if not callable(func):
            raise TypeError(f"target '{target}' must be callable")
        with self._lock:
            if target in self._originals:
                log.debug("re-registering patch target %s", target)
            self._originals[target] = func
        return func

    def patchable(self, target: str | None = None):
        """Decorator: register a function and route its calls via dispatch."""

        def deco(func: Callable[..., Any]) -> Callable[..., Any]:
            name = target or f"{func.__module__}.{func.__qualname__}"
            self.register_target(name, func)

            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                return self.dispatch(name, *args, **kwargs)

            wrapper.patch_target = name  # type: ignore[attr-defined]
            return wrapper

        return deco

    def targets(self) -> List[str]:
        with self._lock:
            return sorted(self._originals)

    def _policy_error(self, target: str) -> Optional[str]:
        if any(target.startswith(p) for p in self._blocked):
            return "patch-target-blocked"
        if self._allowed and not any(
            target.startswith(p) for p in self._allowed
        ):
            return "patch-target-blocked"
        if target not in self._originals:
            return "patch-target-unknown"
        return None

    # --- Apply / remove ------------------------------------------------------
    def _attach(self, package_id: str, spec: PatchSpec) -> PatchRecord:
        try:
            kind = PatchKind(spec.kind)
        except ValueError:
            raise PatchApplicationError(
                package_id, spec.target, f"invalid patch kind '{spec.kind}'"
            ) from None
        if not callable(spec.handler):
            raise PatchApplicationError(
                package_id, spec.target, "patch handler is not callable"
            )
        code = self._policy_error(spec.target)
        if code is not None:
            raise PatchApplicationError(
                package_id,
                spec.target,
                f"cannot patch '{spec.target}' ({code})",
                error_type=code,
            )
        seq = next(self._seq)
        rec = PatchRecord(
            handle=seq,
            target=spec.target,
            owner=package_id,
            kind=kind,
            priority=int(spec.priority),
            handler=spec.handler,
            applied_at=time(),
            sequence=seq,
        )
        entries = self._entries.setdefault(spec.target, [])
        entries.append(rec)
        entries.sort(key=PatchRecord.sort_key)
        return rec

    def apply_patches(
        self, package_id: str, patches: Iterable[PatchSpec]
    ) -> List[PatchRecord]:
        """Attach every patch it can; failing ones are logged and skipped."""
        applied: List[PatchRecord] = []
        with self._lock:
            if self._disposed:
                raise RuntimeError("PatchCoordinator has been disposed")
            for spec in patches:
                try:
                    rec = self._attach(package_id, spec)
                except PatchApplicationError as e:
                    log.warning(
                        "patch %s from %s skipped: %s",
                        spec.target,
                        package_id,
                        e,
                    )
                    emit(
                        PatchFailed(
                            mod_id=package_id,
                            target=spec.target,
                            error_type=e.error_type,
                            message=str(e),
                        )
                    )
                    continue
                applied.append(rec)
                log.info(
                    "patch applied %s %s by %s (priority %d)",
                    rec.kind.value,
                    rec.target,
                    package_id,
                    rec.priority,
                )
                emit(
                    PatchApplied(
                        mod_id=package_id,
                        target=rec.target,
                        kind=rec.kind.value,
                        priority=rec.priority,
                        handle=rec.handle,
                    )
                )
        return applied

    def remove_patches(self, package_id: str) -> int:
        removed = 0
        with self._lock:
            for target in list(self._entries):
                kept = [r for r in self._entries[target] if r.owner != package_id]
                removed += len(self._entries[target]) - len(kept)
                if kept:
                    self._entries[target] = kept
                else:
                    del self._entries[target]
        if removed:
            log.info("removed %d patch(es) owned by %s", removed, package_id)
            emit(PatchesRemoved(mod_id=package_id, count=removed))
        return removed

    def dispose(self) -> int:
        """Remove every patch; further apply calls raise RuntimeError."""
        with self._lock:
            owners = sorted({r.owner for rs in self._entries.values() for r in rs})
            total = sum(self.remove_patches(o) for o in owners)
            self._disposed = True
        return total

    @property
    def disposed(self) -> bool:
        return self._disposed

    # --- Queries -------------------------------------------------------------
    def patches_for(self, target: str) -> List[PatchRecord]:
        with self._lock:
            return list(self._entries.get(target, ()))

    def owned_by(self, package_id: str) -> List[PatchRecord]:
        with self._lock:
            return [
                r
                for rs in self._entries.values()
                for r in rs
                if r.owner == package_id
            ]

    def detect_conflicts(self) -> Dict[str, List[str]]:
        """Targets patched by more than one owner -> owners (sorted)."""
        with self._lock:
            out: Dict[str, List[str]] = {}
            for target, rs in self._entries.items():
                owners = sorted({r.owner for r in rs})
                if len(owners) > 1:
                    out[target] = owners
            return out

    # --- Dispatch ------------------------------------------------------------
    def dispatch(self, target: str, *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            original = self._originals.get(target)
            entries = list(self._entries.get(target, ()))
        if original is None:
            raise KeyError(f"Unknown patch target '{target}'")
        call = PatchCall(target=target, args=args, kwargs=dict(kwargs))
        for rec in entries:
            if rec.kind is PatchKind.BEFORE and rec.handler(call) is False:
                call.skipped_original = True
                break
        if not call.skipped_original:
            replace = next(
                (r for r in entries if r.kind is PatchKind.REPLACE), None
            )
            if replace is not None:
                call.result = replace.handler(
                    original, *call.args, **call.kwargs
                )
            else:
                call.result = original(*call.args, **call.kwargs)
        for rec in entries:
            if rec.kind is PatchKind.AFTER:
                rec.handler(call)
        return call.result


__all__ = [
    "PatchKind",
    "PatchSpec",
    "PatchRecord",
    "PatchCall",
    "PatchCoordinator",
]
