import json
import threading

import pytest

from modcore.cancellation import CancellationToken
from modcore.exceptions import OperationCancelled
from modcore.modules import LifecycleState, ModRuntimeLoader
from modcore.patching import PatchCoordinator
from modcore.registry import ManifestScanner
from modcore.resolver import DependencyGraphResolver

PLUGIN = """
from modcore.modules import ModPlugin


class Plugin(ModPlugin):
    def initialize(self, context):
        context.contribute("greeting", "hi from " + context.mod_id)
        self.api = {"owner": context.mod_id}
"""

BROKEN = """
from modcore.modules import ModPlugin

class Plugin(ModPlugin)  # syntax error
    pass
"""


def _load(mods_root, loader=None, cancel=None):
    descs = ManifestScanner().discover(mods_root)
    order = DependencyGraphResolver().resolve_load_order(descs)
    loader = loader or ModRuntimeLoader(PatchCoordinator())
    return loader, loader.load_all(order, descs, cancel)


def _states(loader):
    return {r.id: r.state for r in loader.records()}


def test_code_and_data_packages_initialize(make_mod, mods_root):
    make_mod("data_only", data={"items.json": {"potion": 10}})
    make_mod("coder", code=PLUGIN)
    loader, result = _load(mods_root)
    assert result.status == "ok"
    assert sorted(result.loaded) == ["coder", "data_only"]
    rec = loader.get_record("coder")
    assert rec.state is LifecycleState.INITIALIZED
    assert rec.contributions == {"greeting": "hi from coder"}
    assert loader.get_api("coder") == {"owner": "coder"}
    data_rec = loader.get_record("data_only")
    assert data_rec.plugin is None
    assert data_rec.contributions == {"potion": 10}
    assert loader.get_api("data_only") is None


def test_one_corrupted_module_out_of_ten_is_isolated(make_mod, mods_root):
    for i in range(10):
        make_mod(f"mod{i}", code=BROKEN if i == 4 else PLUGIN)
    loader, result = _load(mods_root)
    assert len(result.loaded) == 9
    assert result.failed == ["mod4"]
    assert [r.id for r in loader.loaded()] == [
        f"mod{i}" for i in range(10) if i != 4
    ]
    failed = loader.get_record("mod4")
    assert failed.error_type == "module-import-failed"
    assert failed.failure_phase == "import"


def test_dependent_of_failed_package_fails_without_running(
    make_mod, mods_root, tmp_path
):
    marker = tmp_path / "ran.txt"
    make_mod("base", code=BROKEN)
    make_mod(
        "child",
        dependencies=["base"],
        code=f"""
        from pathlib import Path
        from modcore.modules import ModPlugin


        class Child(ModPlugin):
            def initialize(self, context):
                Path({str(marker)!r}).write_text("ran")
        """,
    )
    make_mod("sibling", code=PLUGIN)
    loader, result = _load(mods_root)
    child = loader.get_record("child")
    assert child.state is LifecycleState.FAILED
    assert child.error_type == "dependency-failed"
    assert child.failure.dependency_id == "base"
    assert not marker.exists()
    assert loader.get_record("sibling").state is LifecycleState.INITIALIZED


def test_failed_optional_dependency_only_warns(make_mod, mods_root):
    make_mod("extra", code=BROKEN)
    make_mod(
        "main", dependencies=[{"id": "extra", "optional": True}], code=PLUGIN
    )
    loader, _ = _load(mods_root)
    assert loader.get_record("main").state is LifecycleState.INITIALIZED


def test_initialize_exception_marks_failed(make_mod, mods_root):
    make_mod(
        "boom",
        code="""
        from modcore.modules import ModPlugin


        class Boom(ModPlugin):
            def initialize(self, context):
                context.contribute("partial", True)
                raise RuntimeError("kaboom")
        """,
    )
    loader, result = _load(mods_root)
    rec = loader.get_record("boom")
    assert rec.state is LifecycleState.FAILED
    assert rec.error_type == "initialization-failed"
    assert "kaboom" in str(rec.failure)
    assert rec.contributions == {}


def test_load_all_is_idempotent(make_mod, mods_root):
    mod_dir = make_mod(
        "counted",
        code="""
        from modcore.modules import ModPlugin


        class Counted(ModPlugin):
            def initialize(self, context):
                with open(context.resolve_path("calls.txt"), "a") as f:
                    f.write("x")
        """,
    )
    loader, first = _load(mods_root)
    _, second = _load(mods_root, loader=loader)
    assert (mod_dir / "calls.txt").read_text() == "x"
    assert [r.state for r in second.records] == [LifecycleState.INITIALIZED]
    assert first.loaded == second.loaded == ["counted"]


def test_unload_all_reverse_order_with_shutdown(make_mod, mods_root, tmp_path):
    log_file = tmp_path / "shutdown.log"
    code = f"""
        from modcore.modules import ModPlugin


        class P(ModPlugin):
            def initialize(self, context):
                self.mod_id = context.mod_id

            def shutdown(self):
                with open({str(log_file)!r}, "a") as f:
                    f.write(self.mod_id + "\\n")
        """
    make_mod("core", code=code)
    make_mod("ui", dependencies=["core"], code=code)
    make_mod("late", dependencies=["ui"], code=code)
    loader, _ = _load(mods_root)
    assert loader.unload_all() == 3
    assert log_file.read_text().split() == ["late", "ui", "core"]
    assert loader.loaded() == []
    assert set(_states(loader).values()) == {LifecycleState.UNLOADED}
    # second call is a no-op
    assert loader.unload_all() == 0
    assert log_file.read_text().split() == ["late", "ui", "core"]


def test_unload_all_on_empty_loader_is_noop():
    loader = ModRuntimeLoader(PatchCoordinator())
    assert loader.unload_all() == 0
    assert loader.unload_all() == 0


def test_shutdown_errors_are_not_propagated(make_mod, mods_root, captured_events):
    make_mod(
        "grumpy",
        code="""
        from modcore.modules import ModPlugin


        class Grumpy(ModPlugin):
            def initialize(self, context):
                pass

            def shutdown(self):
                raise ValueError("no")
        """,
    )
    loader, _ = _load(mods_root)
    assert loader.unload_all() == 1
    assert loader.get_record("grumpy").state is LifecycleState.UNLOADED
    failures = [p for n, p in captured_events if n == "ModLoadFailed"]
    assert failures[-1]["phase"] == "shutdown"
    assert failures[-1]["error_type"] == "shutdown-failed"


def test_load_all_after_unload_loads_again(make_mod, mods_root):
    make_mod("again", code=PLUGIN)
    loader, _ = _load(mods_root)
    loader.unload_all()
    _, result = _load(mods_root, loader=loader)
    assert result.loaded == ["again"]
    assert loader.get_api("again") == {"owner": "again"}


def test_reload_picks_up_changed_data(make_mod, mods_root):
    mod_dir = make_mod("stats", data={"values.json": {"version": 1}})
    loader, _ = _load(mods_root)
    assert loader.get_record("stats").contributions["version"] == 1
    (mod_dir / "data" / "values.json").write_text(
        json.dumps({"version": 2}), encoding="utf-8"
    )
    rec = loader.reload_mod("stats")
    assert rec.state is LifecycleState.INITIALIZED
    assert rec.contributions["version"] == 2


def test_reload_reimports_code_under_fresh_module(make_mod, mods_root):
    mod_dir = make_mod("coder", code=PLUGIN)
    loader, _ = _load(mods_root)
    first_module = loader.get_record("coder").module_name
    (mod_dir / "plugin.py").write_text(
        PLUGIN.replace("hi from", "hello from"), encoding="utf-8"
    )
    rec = loader.reload_mod("coder")
    assert rec.module_name != first_module
    assert rec.contributions["greeting"] == "hello from coder"


def test_reload_retries_failed_package(make_mod, mods_root):
    mod_dir = make_mod("flaky", code=BROKEN)
    loader, _ = _load(mods_root)
    assert loader.get_record("flaky").state is LifecycleState.FAILED
    (mod_dir / "plugin.py").write_text(PLUGIN, encoding="utf-8")
    rec = loader.reload_mod("flaky")
    assert rec.state is LifecycleState.INITIALIZED
    assert rec.failure is None


def test_reload_logs_stale_dependents(make_mod, mods_root, captured_events):
    make_mod("core", code=PLUGIN)
    make_mod("ui", dependencies=["core"], code=PLUGIN)
    loader, _ = _load(mods_root)
    loader.reload_mod("core")
    reloaded = [p for n, p in captured_events if n == "ModReloaded"]
    assert reloaded[0]["stale_dependents"] == ["ui"]
    # dependents are not blocked or reloaded
    assert loader.get_record("ui").state is LifecycleState.INITIALIZED


def test_unload_single_mod_leaves_dependents(make_mod, mods_root, caplog):
    make_mod("core", code=PLUGIN)
    make_mod("ui", dependencies=["core"], code=PLUGIN)
    loader, _ = _load(mods_root)
    assert loader.unload_mod("core") is True
    assert loader.unload_mod("core") is False
    assert _states(loader) == {
        "core": LifecycleState.UNLOADED,
        "ui": LifecycleState.INITIALIZED,
    }
    assert "dependents now stale: ui" in caplog.text
    with pytest.raises(KeyError):
        loader.unload_mod("nope")


def test_reload_unknown_id_raises_key_error():
    loader = ModRuntimeLoader(PatchCoordinator())
    with pytest.raises(KeyError):
        loader.reload_mod("nope")


def test_reload_honours_cancellation(make_mod, mods_root):
    make_mod("c", code=PLUGIN)
    loader, _ = _load(mods_root)
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        loader.reload_mod("c", cancel=token)
    assert loader.get_record("c").state is LifecycleState.INITIALIZED


def test_cancelled_load_returns_partial_status(make_mod, mods_root):
    make_mod("a", code=PLUGIN)
    descs = ManifestScanner().discover(mods_root)
    token = CancellationToken()
    token.cancel("shutdown")
    loader = ModRuntimeLoader(PatchCoordinator())
    result = loader.load_all(["a"], descs, token)
    assert result.status == "cancelled"
    assert result.records == []


def test_entry_point_outside_package_rejected(make_mod, mods_root):
    (mods_root / "evil.py").write_text("x = 1\n", encoding="utf-8")
    make_mod("sneaky", modType="code", entryPoint="../evil.py")
    loader, _ = _load(mods_root)
    rec = loader.get_record("sneaky")
    assert rec.state is LifecycleState.FAILED
    assert rec.error_type == "entry-point-invalid"


def test_missing_code_module_fails(make_mod, mods_root):
    make_mod("hollow", modType="code")
    loader, _ = _load(mods_root)
    assert loader.get_record("hollow").error_type == "module-missing"


def test_entry_point_factory_attribute(make_mod, mods_root):
    make_mod(
        "factory",
        entryPoint="plugin.py:create",
        code="""
        from modcore.modules import ModPlugin


        class _Impl(ModPlugin):
            def initialize(self, context):
                context.contribute("made_by", "factory")


        def create():
            return _Impl()
        """,
    )
    loader, _ = _load(mods_root)
    rec = loader.get_record("factory")
    assert rec.state is LifecycleState.INITIALIZED
    assert rec.contributions == {"made_by": "factory"}


def test_entry_point_must_produce_plugin(make_mod, mods_root):
    make_mod("notplugin", entryPoint="plugin.py:thing", code="thing = dict\n")
    loader, _ = _load(mods_root)
    assert loader.get_record("notplugin").error_type == "entry-point-invalid"


def test_non_mapping_data_file_fails(make_mod, mods_root):
    make_mod("listy", data={"items.json": [1, 2, 3]})
    loader, _ = _load(mods_root)
    rec = loader.get_record("listy")
    assert rec.state is LifecycleState.FAILED
    assert rec.error_type == "data-invalid"


def test_state_transition_events(make_mod, mods_root, captured_events):
    make_mod("one", code=PLUGIN)
    loader, _ = _load(mods_root)
    loader.unload_all()
    transitions = [
        (p["from_state"], p["to_state"])
        for n, p in captured_events
        if n == "ModStateChanged"
    ]
    assert transitions == [
        ("discovered", "loaded"),
        ("loaded", "initialized"),
        ("initialized", "unloaded"),
    ]


def test_declared_patches_applied_and_removed(make_mod, mods_root):
    coord = PatchCoordinator()
    coord.register_target("game.damage", lambda base: base)
    make_mod(
        "buff",
        code="""
        from modcore.modules import ModPlugin
        from modcore.patching import PatchSpec


        def _double(call):
            call.result = call.result * 2


        class Buff(ModPlugin):
            def initialize(self, context):
                pass

            def patches(self):
                return [PatchSpec("game.damage", _double, "after", 5)]
        """,
    )
    loader, _ = _load(mods_root, loader=ModRuntimeLoader(coord))
    assert coord.dispatch("game.damage", 10) == 20
    assert len(loader.get_record("buff").patch_handles) == 1
    loader.unload_all()
    assert coord.dispatch("game.damage", 10) == 10
    assert coord.owned_by("buff") == []


def test_failed_initialize_rolls_back_context_patches(make_mod, mods_root):
    coord = PatchCoordinator()
    coord.register_target("game.heal", lambda amount: amount)
    make_mod(
        "halfway",
        code="""
        from modcore.modules import ModPlugin


        class Halfway(ModPlugin):
            def initialize(self, context):
                context.apply_patch(
                    "game.heal", "before", lambda call: False
                )
                raise RuntimeError("late failure")
        """,
    )
    loader, _ = _load(mods_root, loader=ModRuntimeLoader(coord))
    assert loader.get_record("halfway").state is LifecycleState.FAILED
    assert coord.patches_for("game.heal") == []
    assert coord.dispatch("game.heal", 3) == 3


def test_plugin_can_read_other_mods_api(make_mod, mods_root):
    make_mod("lib", code=PLUGIN)
    make_mod(
        "user",
        dependencies=["lib"],
        code="""
        from modcore.modules import ModPlugin


        class User(ModPlugin):
            def initialize(self, context):
                context.contribute("lib_owner", context.get_api("lib")["owner"])
        """,
    )
    loader, _ = _load(mods_root)
    assert loader.get_record("user").contributions == {"lib_owner": "lib"}


def test_data_dir_outside_package_rejected(make_mod, mods_root):
    make_mod("esc", assetPaths={"data": "../other"})
    (mods_root / "other").mkdir()
    (mods_root / "other" / "leak.json").write_text('{"K": "leaked"}')
    loader, _ = _load(mods_root)
    rec = loader.get_record("esc")
    assert rec.state is LifecycleState.FAILED
    assert rec.error_type == "data-invalid"
    assert rec.contributions == {}


TICKING = """
from modcore.modules import ModPlugin


class Plugin(ModPlugin):
    def initialize(self, context):
        def hook(call):
            call.result = call.result + 1

        context.apply_patch("game.tick", "after", hook)
"""


def test_concurrent_reload_and_unload_never_interleave(make_mod, mods_root):
    make_mod("c", code=TICKING)
    coord = PatchCoordinator()
    coord.register_target("game.tick", lambda: 0)
    loader, _ = _load(mods_root, ModRuntimeLoader(coord))
    errors = []

    def run(fn):
        def body():
            for _ in range(20):
                try:
                    fn()
                except Exception as e:  # noqa: BLE001
                    errors.append(e)
        return body

    threads = [
        threading.Thread(target=run(lambda: loader.reload_mod("c")))
        for _ in range(3)
    ] + [
        threading.Thread(target=run(loader.unload_all)) for _ in range(3)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rec = loader.get_record("c")
    owned = coord.owned_by("c")
    assert rec.state in (LifecycleState.INITIALIZED, LifecycleState.UNLOADED)
    if rec.state is LifecycleState.INITIALIZED:
        assert [r.handle for r in owned] == rec.patch_handles
        assert coord.dispatch("game.tick") == 1
    else:
        assert owned == [] and rec.patch_handles == []
        assert coord.dispatch("game.tick") == 0
