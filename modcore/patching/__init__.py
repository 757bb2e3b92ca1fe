"""Runtime interception (patches) coordinated per owner package."""
from .coordinator import (  # noqa: F401
    PatchCall,
    PatchCoordinator,
    PatchKind,
    PatchRecord,
    PatchSpec,
)

__all__ = [
    "PatchCall",
    "PatchCoordinator",
    "PatchKind",
    "PatchRecord",
    "PatchSpec",
]
