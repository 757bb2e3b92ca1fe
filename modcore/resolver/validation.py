"""Cross-package pre-flight validation (no code is loaded).

Collects every problem instead of stopping at the first one, so a mods
folder can be checked in one pass before `load_all`.
"""
from __future__ import annotations

from typing import Sequence

from modcore.log import get_logger
from modcore.registry.manifest import PackageDescriptor
from modcore.registry.report import ValidationReport
from .graph import DependencyGraph

log = get_logger("resolver.validation")


def validate_descriptors(
    descriptors: Sequence[PackageDescriptor],
    report: ValidationReport | None = None,
) -> ValidationReport:
    report = report if report is not None else ValidationReport()
    graph = DependencyGraph.build(descriptors, strict=False)
    for err in graph.problems:
        report.add_error(
            err.error_type,
            str(err),
            mod_id=err.mod_ids[0] if err.mod_ids else None,
        )
    for owner, missing in graph.optional_missing:
        report.add_warning(
            "missing-dependency",
            f"Optional dependency not found: {missing} (used by {owner})",
            mod_id=owner,
        )
    for edge in graph.dropped:
        report.add_warning(
            "circular-dependency",
            f"Ordering hint {edge.source} -> {edge.target} "
            f"({edge.kind.value}) ignored: would create a cycle",
            mod_id=edge.source,
        )
    for desc in graph.ordered_nodes():
        ref = desc.code_module
        if not ref or desc.mod_dir is None:
            continue
        file_part = ref.split(":", 1)[0]
        if not (desc.mod_dir / file_part).is_file():
            report.add_warning(
                "module-missing",
                f"Code module not found: {file_part}",
                mod_id=desc.id,
                path=str(desc.mod_dir / file_part),
            )
    log.info(
        "validated %d mods: %d error(s), %d warning(s)",
        len(descriptors),
        len(report.errors),
        len(report.warnings),
    )
    return report


__all__ = ["validate_descriptors"]
