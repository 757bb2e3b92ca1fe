"""Package descriptor schema (parsed metadata document).

Field names follow the JSON metadata document (camelCase aliases); Python
code uses the snake_case attributes. Unknown fields are ignored so newer
documents still load on older engines.
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .version import SemVer, VersionConstraint

REQUIRED_FIELDS = ("id", "name", "version")


class ModType(str, Enum):
    DATA = "data"
    CONTENT = "content"
    CODE = "code"
    HYBRID = "hybrid"


class DependencySpec(BaseModel):
    id: str
    version: Optional[str] = None
    optional: bool = False

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("version")
    @classmethod
    def _constraint_parses(cls, v: Optional[str]) -> Optional[str]:
        VersionConstraint.parse(v)
        return v

    @property
    def constraint(self) -> VersionConstraint:
        return VersionConstraint.parse(self.version)


class IncompatibilitySpec(BaseModel):
    id: str
    reason: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class AssetPaths(BaseModel):
    data: Optional[str] = None
    textures: str = "assets/textures"
    audio: str = "assets/audio"

    model_config = ConfigDict(extra="ignore", frozen=True)


def _ids_to_objects(v: Any) -> Any:
    if isinstance(v, list):
        return [{"id": item} if isinstance(item, str) else item for item in v]
    return v


class PackageDescriptor(BaseModel):
    id: str
    name: str
    version: str
    api_version: str = Field("1.0.0", alias="apiVersion")
    author: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    dependencies: List[DependencySpec] = Field(default_factory=list)
    incompatible_with: List[IncompatibilitySpec] = Field(
        default_factory=list, alias="incompatibleWith"
    )
    load_after: List[str] = Field(default_factory=list, alias="loadAfter")
    load_before: List[str] = Field(default_factory=list, alias="loadBefore")
    mod_type: ModType = Field(ModType.DATA, alias="modType")
    entry_point: Optional[str] = Field(None, alias="entryPoint")
    append_keys: List[str] = Field(default_factory=list, alias="appendKeys")
    asset_paths: AssetPaths = Field(
        default_factory=AssetPaths, alias="assetPaths"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # filled by the scanner, never read from the document
    source_path: Optional[str] = Field(None, exclude=True)
    discovery_index: int = Field(0, exclude=True)

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, frozen=True
    )

    @field_validator("id")
    @classmethod
    def _id_safe(cls, v: str) -> str:  # noqa: D401
        v = v.strip()
        if not v:
            raise ValueError("id cannot be empty")
        if ".." in v or "/" in v or "\\" in v:
            raise ValueError(f"path traversal characters in id '{v}'")
        return v

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, v: str) -> str:  # noqa: D401
        if not v.strip():
            raise ValueError("name cannot be empty")
        return v

    @field_validator("version")
    @classmethod
    def _version_parses(cls, v: str) -> str:  # noqa: D401
        return str(SemVer.parse(v))

    @field_validator("dependencies", "incompatible_with", mode="before")
    @classmethod
    def _accept_bare_ids(cls, v: Any) -> Any:  # noqa: D401
        return _ids_to_objects(v)

    # --- Derived views ----------------------------------------------------
    @property
    def semver(self) -> SemVer:
        return SemVer.parse(self.version)

    @property
    def code_module(self) -> Optional[str]:
        """Relative path (optionally ``file.py:Attr``) of the code module."""
        if self.entry_point:
            return self.entry_point
        if self.mod_type in (ModType.CODE, ModType.HYBRID):
            return f"{self.id}.py"
        return None

    @property
    def mod_dir(self) -> Optional[Path]:
        return Path(self.source_path) if self.source_path else None

    def required_ids(self) -> List[str]:
        return [d.id for d in self.dependencies if not d.optional]

    def data_dir(self, default: str = "data") -> Optional[Path]:
        if self.mod_dir is None:
            return None
        return self.mod_dir / (self.asset_paths.data or default)

    def label(self) -> str:
        return f"{self.name} ({self.id}) v{self.version}"


__all__ = [
    "ModType",
    "DependencySpec",
    "IncompatibilitySpec",
    "AssetPaths",
    "PackageDescriptor",
    "REQUIRED_FIELDS",
]
