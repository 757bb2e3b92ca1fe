"""Narrow lifecycle interface implemented by code modules.

A package's code module defines one ``ModPlugin`` subclass (or names a
class/factory via ``entryPoint: "file.py:Attr"``). The loader instantiates
it, calls ``initialize(context)``, attaches the patches it declares and
exposes ``api`` to other packages.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from modcore.log import get_logger
from modcore.patching import PatchCoordinator, PatchRecord, PatchSpec
from modcore.registry.manifest import PackageDescriptor

if TYPE_CHECKING:  # pragma: no cover
    from .records import LoadedPackageRecord


class ModPlugin(ABC):
    #: capability object published to other packages (GetApi)
    api: Any = None

    @abstractmethod
    def initialize(self, context: "ModContext") -> None:
        ...

    def shutdown(self) -> None:  # noqa: D401
        """Called once on unload; errors are logged, never propagated."""

    def patches(self) -> Iterable[PatchSpec]:  # noqa: D401
        return ()


class ModContext:
    """Services handed to a plugin during ``initialize``."""

    def __init__(
        self,
        record: "LoadedPackageRecord",
        coordinator: PatchCoordinator,
        api_lookup: Callable[[str], Any],
    ) -> None:
        self._record = record
        self._coordinator = coordinator
        self._api_lookup = api_lookup
        self.logger: logging.Logger = get_logger(f"mod.{record.id}")

    @property
    def descriptor(self) -> PackageDescriptor:
        return self._record.descriptor

    @property
    def mod_id(self) -> str:
        return self._record.id

    @property
    def mod_dir(self) -> Optional[Path]:
        return self.descriptor.mod_dir

    def contribute(self, key: str, value: Any) -> None:
        self._record.contributions[key] = value

    def apply_patch(
        self,
        target: str,
        kind: str,
        handler: Callable[..., Any],
        priority: int = 0,
    ) -> Optional[PatchRecord]:
        applied = self._coordinator.apply_patches(
            self.mod_id, [PatchSpec(target, handler, kind, priority)]
        )
        return applied[0] if applied else None

    def get_api(self, other_id: str) -> Any:
        return self._api_lookup(other_id)

    def resolve_path(self, relative: str) -> Path:
        """Absolute path of a file inside this package (no escaping)."""
        if self.mod_dir is None:
            raise ValueError(f"mod '{self.mod_id}' has no source path")
        base = self.mod_dir.resolve()
        path = (base / relative).resolve()
        if not path.is_relative_to(base):
            raise ValueError(f"path escapes mod directory: {relative}")
        return path


__all__ = ["ModPlugin", "ModContext"]
