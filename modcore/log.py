"""Logging setup for the mod pipeline (stdlib ``logging``).

All engine loggers live under the ``modcore`` hierarchy; each mod gets
``modcore.mod.<id>``. ``configure_logging`` installs a single stream handler
(text or JSON lines) according to the ``logging`` config section and is safe
to call repeatedly. ``install_event_logging`` mirrors every lifecycle event
into the ``modcore.events`` logger so an external sink sees one structured
record per transition/failure.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict

ROOT_LOGGER = "modcore"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# events whose payload signals a failure are logged at WARNING
_FAILURE_EVENTS = {
    "ManifestRejected",
    "ResolutionFailed",
    "ModLoadFailed",
    "PatchFailed",
}

_event_unsub: Callable[[], None] | None = None


def get_logger(name: str) -> logging.Logger:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra={"event": {...}}`` is inlined."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, dict):
            data["event"] = event
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str, ensure_ascii=False)


def configure_logging(cfg: Any) -> logging.Logger:
    """Apply a LoggingConfig-like object (level, format, log_events)."""
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(_LEVELS.get(getattr(cfg, "level", "info"), logging.INFO))
    for h in list(root.handlers):
        if getattr(h, "_modcore_handler", False):
            root.removeHandler(h)
    handler = logging.StreamHandler()
    handler._modcore_handler = True  # type: ignore[attr-defined]
    if getattr(cfg, "format", "text") == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("[%(levelname)s] %(name)s: %(message)s")
        )
    root.addHandler(handler)
    if getattr(cfg, "log_events", True):
        install_event_logging()
    else:
        uninstall_event_logging()
    return root


def _log_event(name: str, payload: Dict[str, Any]) -> None:
    logger = logging.getLogger(f"{ROOT_LOGGER}.events")
    level = logging.WARNING if name in _FAILURE_EVENTS else logging.DEBUG
    if name in {"ModStateChanged", "LoadOrderResolved", "LoadCompleted"}:
        level = logging.INFO
    logger.log(level, "%s %s", name, payload, extra={"event": payload})


def install_event_logging() -> None:
    global _event_unsub  # noqa: PLW0603
    if _event_unsub is not None:
        return
    from modcore.events import subscribe  # local import (events → metrics)

    _event_unsub = subscribe(_log_event)


def uninstall_event_logging() -> None:
    global _event_unsub  # noqa: PLW0603
    if _event_unsub is None:
        return
    _event_unsub()
    _event_unsub = None


__all__ = [
    "get_logger",
    "configure_logging",
    "install_event_logging",
    "uninstall_event_logging",
    "JsonFormatter",
]
