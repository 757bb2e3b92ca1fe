"""Central error taxonomy for the mod pipeline.

Every event carrying an ``error_type`` and every ``ModError`` subclass uses a
code from this set.
"""
from __future__ import annotations

_ALLOWED_ERROR_TYPES = {
    # scan / manifest
    "manifest-invalid",
    "manifest-missing-field",
    "invalid-version",
    "invalid-id",
    "duplicate-id",
    "module-missing",
    # resolution
    "circular-dependency",
    "missing-dependency",
    "version-incompatible",
    "incompatible-mod",
    # runtime
    "module-import-failed",
    "entry-point-invalid",
    "initialization-failed",
    "dependency-failed",
    "data-invalid",
    "shutdown-failed",
    "cancelled",
    # patching
    "patch-target-unknown",
    "patch-target-blocked",
    "patch-invalid",
    # config
    "config-invalid",
    "config-out-of-range",
    # infra
    "event-handler-error",
    "internal",
}


def validate_error_type(code: str) -> str:
    assert (
        code in _ALLOWED_ERROR_TYPES
    ), f"Unknown error_type '{code}' (not in taxonomy)"
    return code


def map_exception(e: BaseException, phase: str) -> str:
    """Map an arbitrary exception raised by mod code to a taxonomy code.

    ModError subclasses carry their own code; anything else is classified by
    the pipeline phase it escaped from.
    """
    code = getattr(e, "error_type", None)
    if isinstance(code, str) and code in _ALLOWED_ERROR_TYPES:
        return code
    if phase == "import":
        if isinstance(e, FileNotFoundError):
            return "module-missing"
        return "module-import-failed"
    if phase == "instantiate":
        return "entry-point-invalid"
    if phase == "initialize":
        return "initialization-failed"
    if phase == "data":
        return "data-invalid"
    if phase == "shutdown":
        return "shutdown-failed"
    return "internal"


__all__ = ["validate_error_type", "map_exception"]
