"""Load-order resolution over a snapshot of package descriptors."""
from .graph import (  # noqa: F401
    DependencyEdge,
    DependencyGraph,
    DependencyGraphResolver,
    EdgeKind,
    LoadOrder,
    dependents_of,
)
from .validation import validate_descriptors  # noqa: F401

__all__ = [
    "DependencyEdge",
    "DependencyGraph",
    "DependencyGraphResolver",
    "EdgeKind",
    "LoadOrder",
    "dependents_of",
    "validate_descriptors",
]
