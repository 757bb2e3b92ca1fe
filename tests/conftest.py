"""Pytest configuration ensuring project root is importable.

Adds repository root and src/ to sys.path explicitly to avoid
interpreter/path quirks, isolates config/env and resets the in-memory
metrics + event listeners between tests. Mod tree fixtures build packages
under ``tmp_path``.
"""
from __future__ import annotations

import json
import os
import sys
import textwrap
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolate_config_env():  # noqa: D401
    """Ensure global config/env side effects do not leak between tests.

    - Point MODCORE_CONFIG_DIR at the repo configs/ directory
    - Drop MODCORE__* overrides set by earlier tests
    - Clear aggregated config cache
    """
    from modcore.config import clear_config_cache  # local import

    prev_dir = os.environ.get("MODCORE_CONFIG_DIR")
    prev_env = {
        k: v for k, v in os.environ.items() if k.startswith("MODCORE__")
    }
    for k in prev_env:
        os.environ.pop(k)
    os.environ["MODCORE_CONFIG_DIR"] = str(ROOT / "configs")
    clear_config_cache()
    try:
        yield
    finally:
        clear_config_cache()
        for k in [k for k in os.environ if k.startswith("MODCORE__")]:
            os.environ.pop(k)
        os.environ.update(prev_env)
        if prev_dir is None:
            os.environ.pop("MODCORE_CONFIG_DIR", None)
        else:
            os.environ["MODCORE_CONFIG_DIR"] = prev_dir


@pytest.fixture(autouse=True)
def _reset_observability():  # noqa: D401
    from modcore import eventbus, metrics
    from modcore.events import reset_listeners_for_tests
    from modcore.log import uninstall_event_logging

    uninstall_event_logging()
    reset_listeners_for_tests()
    eventbus.reset_for_tests()
    metrics.reset_for_tests()
    yield
    uninstall_event_logging()
    reset_listeners_for_tests()
    eventbus.reset_for_tests()


@pytest.fixture
def captured_events():
    """List of (name, payload) for every event emitted during the test."""
    from modcore.events import subscribe

    got: list[tuple[str, dict]] = []
    unsub = subscribe(lambda name, payload: got.append((name, payload)))
    yield got
    unsub()


@pytest.fixture
def mods_root(tmp_path) -> Path:
    root = tmp_path / "mods"
    root.mkdir()
    return root


@pytest.fixture
def make_mod(mods_root):
    """Factory: write one package directory and return its path.

    make_mod("core", version="1.0.0", dependencies=[...], code="...",
             data={"items.json": {...}}, dirname=None, **manifest_fields)
    """

    def _make(
        mod_id: str,
        version: str = "1.0.0",
        dependencies: list | None = None,
        code: str | None = None,
        data: dict | None = None,
        dirname: str | None = None,
        manifest_name: str = "modinfo.json",
        **fields,
    ) -> Path:
        mod_dir = mods_root / (dirname or mod_id)
        mod_dir.mkdir(parents=True, exist_ok=True)
        manifest = {
            "id": mod_id,
            "name": fields.pop("name", mod_id.title()),
            "version": version,
            "dependencies": dependencies or [],
        }
        manifest.update(fields)
        if code is not None:
            manifest.setdefault("modType", "code")
            manifest.setdefault("entryPoint", "plugin.py")
            (mod_dir / manifest["entryPoint"].split(":")[0]).write_text(
                textwrap.dedent(code), encoding="utf-8"
            )
        for fname, content in (data or {}).items():
            data_dir = mod_dir / "data"
            data_dir.mkdir(exist_ok=True)
            (data_dir / fname).write_text(
                json.dumps(content), encoding="utf-8"
            )
        if manifest_name.endswith(".json"):
            text = json.dumps(manifest, indent=2)
        else:
            import yaml

            text = yaml.safe_dump(manifest)
        (mod_dir / manifest_name).write_text(text, encoding="utf-8")
        return mod_dir

    return _make


@pytest.fixture
def make_desc():
    """Factory for in-memory descriptors (no filesystem)."""
    from modcore.registry import PackageDescriptor

    counter = {"n": 0}

    def _make(
        mod_id: str,
        version: str = "1.0.0",
        deps=(),
        after=(),
        before=(),
        index: int | None = None,
        **fields,
    ) -> PackageDescriptor:
        if index is None:
            index = counter["n"]
        counter["n"] += 1
        desc = PackageDescriptor.model_validate(
            {
                "id": mod_id,
                "name": mod_id,
                "version": version,
                "dependencies": list(deps),
                "loadAfter": list(after),
                "loadBefore": list(before),
                **fields,
            }
        )
        return desc.model_copy(update={"discovery_index": index})

    return _make
