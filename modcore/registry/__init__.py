"""Package registry: descriptor schema, versions, discovery.

Responsibilities:
- Parse per-package metadata documents (JSON/YAML) into descriptors
- Validate required fields, ids and versions
- Discover packages under a mods root with a validation report
- Semantic version constraint matching used by the resolver
"""
from .manifest import (  # noqa: F401
    AssetPaths,
    DependencySpec,
    IncompatibilitySpec,
    ModType,
    PackageDescriptor,
)
from .report import ValidationIssue, ValidationReport  # noqa: F401
from .scanner import ManifestScanner  # noqa: F401
from .version import SemVer, VersionConstraint, satisfies  # noqa: F401

__all__ = [
    "AssetPaths",
    "DependencySpec",
    "IncompatibilitySpec",
    "ModType",
    "PackageDescriptor",
    "ValidationIssue",
    "ValidationReport",
    "ManifestScanner",
    "SemVer",
    "VersionConstraint",
    "satisfies",
]
