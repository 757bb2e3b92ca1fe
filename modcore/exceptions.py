"""Mod pipeline exception hierarchy.

Each class carries an ``error_type`` from `modcore.errors` and the ids of the
packages involved, so callers get a structured result instead of a bare
message.
"""
from __future__ import annotations

from typing import Sequence


class ModError(Exception):
    """Base mod exception."""

    error_type = "internal"

    def __init__(self, message: str, mod_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.mod_ids = list(mod_ids)

    def to_dict(self) -> dict:
        return {
            "error_type": self.error_type,
            "message": str(self),
            "mod_ids": list(self.mod_ids),
        }


class ManifestValidationError(ModError):
    """Raised when a metadata document cannot become a descriptor.

    Never escapes the scanner; converted into a report entry.
    """

    error_type = "manifest-invalid"

    def __init__(
        self,
        message: str,
        code: str = "manifest-invalid",
        mod_id: str | None = None,
    ) -> None:
        super().__init__(message, [mod_id] if mod_id else [])
        self.error_type = code
        self.mod_id = mod_id


# --- Resolution (fatal) ---------------------------------------------------

class ResolutionError(ModError):
    """Base for errors that abort load-order resolution."""


class CircularDependencyError(ResolutionError):
    error_type = "circular-dependency"

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        chain = " -> ".join(self.cycle)
        super().__init__(
            f"Circular dependency detected: {chain}",
            # last element repeats the first
            list(dict.fromkeys(self.cycle)),
        )


class MissingDependencyError(ResolutionError):
    error_type = "missing-dependency"

    def __init__(self, package_id: str, missing_id: str) -> None:
        self.package_id = package_id
        self.missing_id = missing_id
        super().__init__(
            f"Missing required dependency: {missing_id} "
            f"(required by {package_id})",
            [package_id, missing_id],
        )


class VersionIncompatibleError(ResolutionError):
    error_type = "version-incompatible"

    def __init__(
        self,
        package_id: str,
        dependency_id: str,
        constraint: str,
        actual: str,
    ) -> None:
        self.package_id = package_id
        self.dependency_id = dependency_id
        self.constraint = constraint
        self.actual = actual
        super().__init__(
            f"{package_id} requires {dependency_id} {constraint}, "
            f"found {actual}",
            [package_id, dependency_id],
        )


class IncompatiblePackagesError(ResolutionError):
    error_type = "incompatible-mod"

    def __init__(
        self, package_id: str, other_id: str, reason: str | None = None
    ) -> None:
        self.package_id = package_id
        self.other_id = other_id
        self.reason = reason
        msg = f"Incompatible mod present: {other_id} (declared by {package_id})"
        if reason:
            msg += f" - {reason}"
        super().__init__(msg, [package_id, other_id])


# --- Runtime (isolated per package) ---------------------------------------

class RuntimeLoadError(ModError):
    """Code module could not be imported or instantiated."""

    error_type = "module-import-failed"

    def __init__(
        self,
        mod_id: str,
        message: str,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message, [mod_id])
        self.mod_id = mod_id
        if error_type:
            self.error_type = error_type


class InitializationError(RuntimeLoadError):
    error_type = "initialization-failed"


class RuntimeMissingDependencyError(RuntimeLoadError):
    error_type = "dependency-failed"

    def __init__(self, mod_id: str, dependency_id: str) -> None:
        super().__init__(
            mod_id,
            f"Dependency '{dependency_id}' of '{mod_id}' is not initialized",
        )
        self.dependency_id = dependency_id
        self.mod_ids.append(dependency_id)


class PatchApplicationError(ModError):
    """A single patch failed to attach; siblings are still attempted."""

    error_type = "patch-invalid"

    def __init__(
        self,
        owner: str,
        target: str,
        message: str,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message, [owner])
        self.owner = owner
        self.target = target
        if error_type:
            self.error_type = error_type


class OperationCancelled(ModError):
    error_type = "cancelled"


__all__ = [
    "ModError",
    "ManifestValidationError",
    "ResolutionError",
    "CircularDependencyError",
    "MissingDependencyError",
    "VersionIncompatibleError",
    "IncompatiblePackagesError",
    "RuntimeLoadError",
    "InitializationError",
    "RuntimeMissingDependencyError",
    "PatchApplicationError",
    "OperationCancelled",
]
