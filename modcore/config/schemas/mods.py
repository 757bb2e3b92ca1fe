"""Mod pipeline config schemas: discovery, patching, conflict merging.

No side effects / globals.
"""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field, field_validator, ConfigDict


class ModsConfig(BaseModel):
    root_dir: str = "mods"
    # first existing name wins inside a package directory
    manifest_names: List[str] = Field(
        default_factory=lambda: ["modinfo.json", "modinfo.yaml", "modinfo.yml"]
    )
    scan_workers: int = 4
    # default data directory when a manifest has no assetPaths.data
    data_dir: str = "data"

    model_config = ConfigDict(extra="forbid")

    @field_validator("manifest_names")
    @classmethod
    def _names_not_empty(cls, v: List[str]) -> List[str]:  # noqa: D401
        if not v:
            raise ValueError("manifest_names cannot be empty")
        return v


class PatchingConfig(BaseModel):
    # prefixes; empty list means any registered target is patchable
    allowed_targets: List[str] = Field(default_factory=list)
    blocked_targets: List[str] = Field(default_factory=lambda: ["modcore."])

    model_config = ConfigDict(extra="forbid")


class ConflictsConfig(BaseModel):
    # keys merged by concatenation instead of last-wins
    append_keys: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")
