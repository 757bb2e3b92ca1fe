"""Mod lifecycle event dataclasses + any-subscriber bridge.

Every state transition and failure of the load pipeline is emitted here as a
structured event. `emit` forwards to `modcore.eventbus` (per-event
subscribers) and then to any-subscribers registered with `on(handler)`,
where handler(name, payload) receives every event. The built-in metrics
collector is always the first any-subscriber.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from time import time
from typing import Any, Callable, Dict, List, Protocol

from modcore import metrics as _metrics
from modcore.eventbus import emit as _emit_bus

EventHandler = Callable[[str, Dict[str, Any]], None]


class SupportsEvent(Protocol):  # pragma: no cover
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        ...


@dataclass(slots=True)
class BaseEvent:
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        data = asdict(self)
        data["ts"] = data.get("ts") or time()
        return data


@dataclass(slots=True)
class ModDiscovered(BaseEvent):
    mod_id: str
    name: str
    version: str
    path: str
    discovery_index: int


@dataclass(slots=True)
class ManifestRejected(BaseEvent):
    """Metadata document excluded during scanning.

    code: taxonomy code (manifest-invalid|manifest-missing-field|
    duplicate-id|invalid-id|invalid-version)
    mod_id: declared id when it could be read, else None
    """
    path: str
    code: str
    message: str
    mod_id: str | None = None


@dataclass(slots=True)
class LoadOrderResolved(BaseEvent):
    order: list[str]
    dropped_soft_edges: int = 0


@dataclass(slots=True)
class ResolutionFailed(BaseEvent):
    """Fatal resolution error (cycle, missing dependency, version, ...).

    mod_ids: offending packages (cycle members, dependent + missing id).
    """
    error_type: str
    message: str
    mod_ids: list[str]


@dataclass(slots=True)
class ModStateChanged(BaseEvent):
    mod_id: str
    from_state: str
    to_state: str
    reason: str | None = None


@dataclass(slots=True)
class ModLoadFailed(BaseEvent):
    mod_id: str
    phase: str  # import|instantiate|initialize|dependency|data
    error_type: str
    message: str | None = None


@dataclass(slots=True)
class ModUnloaded(BaseEvent):
    mod_id: str
    reason: str  # unload|unload_all|reload
    patches_removed: int = 0


@dataclass(slots=True)
class ModReloaded(BaseEvent):
    mod_id: str
    state: str
    stale_dependents: list[str] | None = None


@dataclass(slots=True)
class PatchApplied(BaseEvent):
    mod_id: str
    target: str
    kind: str
    priority: int
    handle: int


@dataclass(slots=True)
class PatchFailed(BaseEvent):
    mod_id: str
    target: str
    error_type: str
    message: str | None = None


@dataclass(slots=True)
class PatchesRemoved(BaseEvent):
    mod_id: str
    count: int


@dataclass(slots=True)
class OverridesMerged(BaseEvent):
    keys: int
    contributors: list[str]


@dataclass(slots=True)
class LoadCompleted(BaseEvent):
    """End of a load_all pass.

    status: ok|cancelled|failed (resolution error)
    """
    discovered: int
    loaded: int
    failed: int
    duration_ms: int
    status: str


_ANY_SUBS: List[EventHandler] = []


def _metrics_collector(
    name: str, payload: Dict[str, Any]
) -> None:  # noqa: D401
    if name == "ModDiscovered":
        _metrics.inc("mods_discovered_total")
    elif name == "ManifestRejected":
        _metrics.inc_manifest_rejected(payload.get("code", "unknown"))
    elif name == "LoadOrderResolved":
        _metrics.inc_soft_edge_dropped(payload.get("dropped_soft_edges", 0))
    elif name == "ResolutionFailed":
        _metrics.inc_resolution_failed(payload.get("error_type", "unknown"))
    elif name == "ModStateChanged":
        _metrics.inc(
            "mod_state_transitions_total",
            {"to": payload.get("to_state", "unknown")},
        )
    elif name == "ModLoadFailed":
        _metrics.inc(
            "mod_load_failed_total",
            {"error_type": payload.get("error_type", "unknown")},
        )
    elif name == "PatchApplied":
        _metrics.inc("patches_applied_total")
    elif name == "PatchFailed":
        _metrics.inc_patch_failed(payload.get("error_type", "unknown"))
    elif name == "PatchesRemoved":
        _metrics.inc("patches_removed_total", value=payload.get("count", 0))
    elif name == "LoadCompleted":
        _metrics.observe(
            "load_all_ms",
            payload.get("duration_ms", 0),
            {"status": payload.get("status", "unknown")},
        )


_ANY_SUBS.append(_metrics_collector)


def emit(ev: BaseEvent | SupportsEvent) -> None:
    name = ev.__class__.__name__
    payload = ev.to_event()
    _emit_bus(name, payload)
    for h in list(_ANY_SUBS):  # copy for isolation
        try:
            h(name, dict(payload))
        except Exception:  # noqa: BLE001
            _metrics.inc("handler_exceptions_total", {"event": name})


def on(handler: EventHandler) -> None:
    _ANY_SUBS.append(handler)


def subscribe(handler: EventHandler):
    on(handler)

    def _unsub() -> None:  # noqa: D401
        try:
            _ANY_SUBS.remove(handler)
        except ValueError:
            pass
    return _unsub


def reset_listeners_for_tests() -> None:  # pragma: no cover
    _ANY_SUBS.clear()
    _ANY_SUBS.append(_metrics_collector)


__all__ = [
    "emit",
    "on",
    "subscribe",
    "BaseEvent",
    "ModDiscovered",
    "ManifestRejected",
    "LoadOrderResolved",
    "ResolutionFailed",
    "ModStateChanged",
    "ModLoadFailed",
    "ModUnloaded",
    "ModReloaded",
    "PatchApplied",
    "PatchFailed",
    "PatchesRemoved",
    "OverridesMerged",
    "LoadCompleted",
    "reset_listeners_for_tests",
]
