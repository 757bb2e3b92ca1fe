"""Build import dependency graph for internal modules.

Parses .py files under the given root (default modcore/) collecting edges
between project-internal modules (prefix `modcore.`). Relative imports are
resolved against the importing module. Used in tests to enforce:
  - No cycles between modcore modules.
  - No forbidden edges (layering: registry < resolver < modules < host).

Simplistic static parsing: looks for lines starting with 'import ' or
'from ' and extracts the module token. Good enough for a guardrail.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Set, List, Tuple
import re

IMPORT_RE = re.compile(r"^(?:from|import)\s+(\.*[a-zA-Z0-9_.]*)")

# (importer prefix, forbidden target prefix)
LAYER_RULES: List[Tuple[str, str]] = [
    ("modcore.registry", "modcore.resolver"),
    ("modcore.registry", "modcore.modules"),
    ("modcore.registry", "modcore.host"),
    ("modcore.resolver", "modcore.modules"),
    ("modcore.resolver", "modcore.host"),
    ("modcore.patching", "modcore.modules"),
    ("modcore.patching", "modcore.host"),
    ("modcore.modules", "modcore.host"),
    ("modcore.", "modhost"),
]


def _module_name(py: Path, root_path: Path, package: str) -> str:
    rel = py.relative_to(root_path).with_suffix("").as_posix()
    name = f"{package}.{rel}".replace("/", ".")
    if name.endswith(".__init__"):
        name = name[: -len(".__init__")]
    return name


def _resolve_relative(target: str, module: str, is_package: bool) -> str:
    dots = len(target) - len(target.lstrip("."))
    parts = module.split(".")
    # a package's __init__ is its own anchor; a module's anchor is its parent
    base = parts if is_package else parts[:-1]
    if dots > 1:
        base = base[: len(base) - (dots - 1)]
    rest = target[dots:]
    return ".".join(base + ([rest] if rest else []))


def build_import_graph(
    root: str | Path = "modcore", package: str = "modcore"
) -> Dict[str, Set[str]]:
    root_path = Path(root)
    edges: Dict[str, Set[str]] = {}
    for py in sorted(root_path.rglob("*.py")):
        rel_mod = _module_name(py, root_path, package)
        is_package = py.name == "__init__.py"
        edges.setdefault(rel_mod, set())
        with py.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith(("#", '"""', "'''")):
                    continue
                m = IMPORT_RE.match(line)
                if not m or not m.group(1):
                    continue
                target = m.group(1)
                if target.startswith("."):
                    target = _resolve_relative(target, rel_mod, is_package)
                target = target.rstrip(".")
                # only track internal imports
                if target != package and not target.startswith(
                    package + "."
                ):
                    if not target.startswith("modhost"):
                        continue
                if target != rel_mod:
                    edges[rel_mod].add(target)
    for n in list(edges.keys()):
        for m in edges[n]:
            edges.setdefault(m, set())
    return edges


def detect_cycles(graph: Dict[str, Set[str]]) -> List[List[str]]:
    visited: Set[str] = set()
    stack: Set[str] = set()
    cycles: List[List[str]] = []

    def dfs(node: str, path: List[str]):
        if node in stack:
            # cycle found - slice path
            if node in path[:-1]:
                idx = path.index(node)
                cycles.append(path[idx:])
            return
        if node in visited:
            return
        visited.add(node)
        stack.add(node)
        for nxt in sorted(graph.get(node, [])):
            dfs(nxt, path + [nxt])
        stack.remove(node)

    for n in sorted(graph):
        if n not in visited:
            dfs(n, [n])
    return cycles


def forbidden_edges(
    graph: Dict[str, Set[str]],
    rules: List[Tuple[str, str]] | None = None,
) -> List[Tuple[str, str]]:
    found: List[Tuple[str, str]] = []
    for src, targets in graph.items():
        for dst in targets:
            for a, b in rules if rules is not None else LAYER_RULES:
                if src.startswith(a) and dst.startswith(b):
                    found.append((src, dst))
    return found


__all__ = [
    "LAYER_RULES",
    "build_import_graph",
    "detect_cycles",
    "forbidden_edges",
]
