"""ManifestScanner: discover package directories and parse metadata.

One immediate subdirectory of the mods root == one candidate package. The
first file from ``mods.manifest_names`` found inside it is the metadata
document (JSON or YAML). A bad document never aborts the scan: it is
recorded in the validation report and the package is excluded.

Parsing runs on a small thread pool; results are re-sorted by directory name
before duplicate detection, so discovery order never depends on task
completion order.
"""
from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError
from yaml import YAMLError

from modcore.cancellation import CancellationToken, is_cancelled
from modcore.config import get_config
from modcore.events import emit, ManifestRejected, ModDiscovered
from modcore.exceptions import ManifestValidationError
from modcore.log import get_logger
from .manifest import PackageDescriptor, REQUIRED_FIELDS
from .report import ValidationReport

log = get_logger("scanner")

YAML_SUFFIXES = (".yaml", ".yml")


def load_manifest_file(path: Path) -> Dict[str, Any]:
    """Read one metadata document into a dict.

    YAML documents containing tab characters (common accidental edit) are
    re-tried with tabs replaced by two spaces before giving up.
    """
    raw_text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in YAML_SUFFIXES:
        try:
            data = yaml.safe_load(raw_text)
        except YAMLError as e:
            if "\t" not in raw_text:
                raise ManifestValidationError(
                    f"Invalid manifest {path.name}: {e}"
                ) from e
            log.warning("re-parsing manifest tabs->spaces: %s", path)
            try:
                data = yaml.safe_load(raw_text.replace("\t", "  "))
            except YAMLError as e2:
                raise ManifestValidationError(
                    f"Invalid manifest {path.name}: {e2}"
                ) from e2
    else:
        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise ManifestValidationError(
                f"Invalid manifest {path.name}: {e}"
            ) from e
    if not isinstance(data, dict):
        raise ManifestValidationError(
            f"Invalid manifest {path.name}: top-level object expected"
        )
    return data


def _classify(err: ValidationError) -> str:
    codes = []
    for item in err.errors():
        loc = item.get("loc") or ()
        field = loc[0] if loc else None
        if item.get("type") == "missing" and field in REQUIRED_FIELDS:
            codes.append("manifest-missing-field")
        elif field == "version":
            codes.append("invalid-version")
        elif field == "id":
            codes.append("invalid-id")
        else:
            codes.append("manifest-invalid")
    for preferred in ("manifest-missing-field", "invalid-id", "invalid-version"):
        if preferred in codes:
            return preferred
    return "manifest-invalid"


def parse_descriptor(data: Dict[str, Any], path: Path) -> PackageDescriptor:
    """Validate a raw document; raise ManifestValidationError with a code."""
    try:
        desc = PackageDescriptor.model_validate(data)
    except ValidationError as e:
        declared = data.get("id") if isinstance(data.get("id"), str) else None
        raise ManifestValidationError(
            f"Invalid manifest {path}: {e.error_count()} error(s): "
            + "; ".join(
                f"{'.'.join(str(p) for p in i['loc'])}: {i['msg']}"
                for i in e.errors()
            ),
            code=_classify(e),
            mod_id=declared,
        ) from e
    return desc.model_copy(update={"source_path": str(path.parent)})


@dataclass
class _ScanOutcome:
    directory: Path
    manifest: Optional[Path] = None
    descriptor: Optional[PackageDescriptor] = None
    error: Optional[ManifestValidationError] = None
    skipped: bool = False


class ManifestScanner:
    def __init__(
        self,
        manifest_names: Iterable[str] | None = None,
        workers: int | None = None,
    ) -> None:
        if manifest_names is None or workers is None:
            mods_cfg = get_config().mods
            if manifest_names is None:
                manifest_names = mods_cfg.manifest_names
            if workers is None:
                workers = mods_cfg.scan_workers
        self._manifest_names = list(manifest_names)
        self._workers = max(1, int(workers))
        self._report = ValidationReport()
        self._lock = RLock()

    @property
    def report(self) -> ValidationReport:
        """Report of the most recent `discover` call (copy)."""
        with self._lock:
            copy = ValidationReport()
            copy.extend(self._report)
            return copy

    def find_manifest(self, mod_dir: Path) -> Optional[Path]:
        for name in self._manifest_names:
            candidate = mod_dir / name
            if candidate.is_file():
                return candidate
        return None

    def _scan_one(
        self, mod_dir: Path, cancel: CancellationToken | None
    ) -> _ScanOutcome:
        outcome = _ScanOutcome(directory=mod_dir)
        if is_cancelled(cancel):
            outcome.skipped = True
            return outcome
        manifest = self.find_manifest(mod_dir)
        if manifest is None:
            log.debug("skipping %s - no metadata file", mod_dir)
            return outcome
        outcome.manifest = manifest
        try:
            outcome.descriptor = parse_descriptor(
                load_manifest_file(manifest), manifest
            )
        except ManifestValidationError as e:
            outcome.error = e
        except (OSError, UnicodeDecodeError) as e:
            outcome.error = ManifestValidationError(
                f"Cannot read manifest {manifest}: {e}"
            )
        return outcome

    def _candidates(self, root: Path) -> List[Path]:
        resolved_root = root.resolve()
        out = []
        for child in sorted(root.iterdir(), key=lambda p: p.name):
            if not child.is_dir():
                continue
            # symlinked directories must stay inside the mods root
            if not child.resolve().is_relative_to(resolved_root):
                log.warning("skipping directory outside mods root: %s", child)
                continue
            out.append(child)
        return out

    def discover(
        self,
        root_dir: str | Path,
        cancel: CancellationToken | None = None,
    ) -> List[PackageDescriptor]:
        report = ValidationReport()
        root = Path(root_dir)
        if not root.is_dir():
            log.warning("mods directory does not exist: %s", root)
            with self._lock:
                self._report = report
            return []
        candidates = self._candidates(root)
        log.info("scanning %d directories for mods", len(candidates))
        outcomes: List[_ScanOutcome] = []
        with ThreadPoolExecutor(
            max_workers=min(self._workers, max(1, len(candidates))),
            thread_name_prefix="modcore-scan",
        ) as pool:
            futures = []
            for mod_dir in candidates:
                if is_cancelled(cancel):
                    report.cancelled = True
                    break
                futures.append(pool.submit(self._scan_one, mod_dir, cancel))
            for fut in as_completed(futures):
                outcomes.append(fut.result())
        outcomes.sort(key=lambda o: o.directory.name)

        descriptors: List[PackageDescriptor] = []
        seen: Dict[str, Path] = {}
        for o in outcomes:
            if o.skipped:
                report.cancelled = True
                continue
            if o.error is not None:
                self._reject(report, o.error.error_type, str(o.error),
                             o.error.mod_id, o.manifest or o.directory)
                continue
            desc = o.descriptor
            if desc is None:
                continue
            if desc.id in seen:
                self._reject(
                    report,
                    "duplicate-id",
                    f"Duplicate mod id '{desc.id}' in {o.directory.name} "
                    f"(first defined in {seen[desc.id].name})",
                    desc.id,
                    o.manifest or o.directory,
                )
                continue
            seen[desc.id] = o.directory
            desc = desc.model_copy(
                update={"discovery_index": len(descriptors)}
            )
            descriptors.append(desc)
            log.info("discovered mod: %s", desc.label())
            emit(
                ModDiscovered(
                    mod_id=desc.id,
                    name=desc.name,
                    version=desc.version,
                    path=str(desc.source_path),
                    discovery_index=desc.discovery_index,
                )
            )
        if report.cancelled:
            log.warning(
                "scan cancelled after %d package(s)", len(descriptors)
            )
        with self._lock:
            self._report = report
        return descriptors

    @staticmethod
    def _reject(
        report: ValidationReport,
        code: str,
        message: str,
        mod_id: str | None,
        path: Path,
    ) -> None:
        report.add_error(code, message, mod_id=mod_id, path=str(path))
        log.error("rejected manifest %s: %s", path, message)
        emit(
            ManifestRejected(
                path=str(path), code=code, message=message, mod_id=mod_id
            )
        )


__all__ = [
    "ManifestScanner",
    "load_manifest_file",
    "parse_descriptor",
]
