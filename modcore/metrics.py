"""Minimal in-memory metrics collector.

Purpose:
    - Counters and simple duration samples for the load pipeline.
    - Zero external deps; can be swapped by an exporter later.

Core API (intentionally tiny):
    inc(name, labels=None, value=1)
    observe(name, value, labels=None)
    snapshot() -> dict (copy for safe reading)

Thread-safety: coarse RLock; overhead negligible for low event volume.

Mod pipeline metric names (documented for discoverability):
    - mods_discovered_total
    - manifest_rejected_total{code}
    - resolution_failed_total{error_type}
    - soft_edges_dropped_total
    - mod_state_transitions_total{to}
    - mod_load_failed_total{error_type}
    - patches_applied_total
    - patch_failed_total{error_type}
    - patches_removed_total
    - load_all_ms (histogram)

Helper functions wrap ``inc`` for the names above to reduce label spelling
drift.
"""
from __future__ import annotations

from threading import RLock
from time import time
from typing import Dict, Tuple, Any

_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HIST: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = {}
_LOCK = RLock()


def _norm_labels(labels: dict[str, Any] | None) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _label_suffix(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def inc(
    name: str,
    labels: dict[str, Any] | None = None,
    value: float = 1.0,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0.0) + value


def observe(
    name: str,
    value: float,
    labels: dict[str, Any] | None = None,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _HIST.setdefault(key, []).append(value)


def get_counter(name: str, labels: dict[str, Any] | None = None) -> float:
    """Return a single counter value (0.0 when never incremented)."""
    with _LOCK:
        return _COUNTERS.get((name, _norm_labels(labels)), 0.0)


def snapshot() -> dict[str, Any]:
    with _LOCK:
        counters: dict[str, float] = {}
        for (name, labels), v in _COUNTERS.items():
            counters[name + _label_suffix(labels)] = v
        hist = {}
        for (name, labels), vals in _HIST.items():
            if not vals:
                continue
            ordered = sorted(vals)
            hist[name + _label_suffix(labels)] = {
                "count": len(vals),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[len(ordered) // 2],
                "last": vals[-1],
            }
        return {
            "ts": time(),
            "counters": counters,
            "histograms": hist,
        }


def reset_for_tests() -> None:  # pragma: no cover
    with _LOCK:
        _COUNTERS.clear()
        _HIST.clear()


__all__ = [
    "inc",
    "observe",
    "get_counter",
    "snapshot",
    "reset_for_tests",
]


# ------------------- Helper wrappers -------------------

def inc_manifest_rejected(code: str) -> None:
    """Increment rejected manifest counter.

    code: taxonomy code of the validation issue (manifest-invalid,
    duplicate-id, invalid-id, ...).
    """
    if code:
        inc("manifest_rejected_total", {"code": code})


def inc_resolution_failed(error_type: str) -> None:
    if error_type:
        inc("resolution_failed_total", {"error_type": error_type})


def inc_soft_edge_dropped(count: int = 1) -> None:
    if count:
        inc("soft_edges_dropped_total", value=count)


def inc_patch_failed(error_type: str) -> None:
    """Increment failed patch attachment counter (one per skipped patch)."""
    if error_type:
        inc("patch_failed_total", {"error_type": error_type})


__all__ += [
    "inc_manifest_rejected",
    "inc_resolution_failed",
    "inc_soft_edge_dropped",
    "inc_patch_failed",
]
