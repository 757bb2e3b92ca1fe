import json

import pytest

from modcore.cancellation import CancellationToken
from modcore.exceptions import MissingDependencyError
from modcore.host import ModHost, get_mod_host
from modcore.modules import LifecycleState
from modcore.registry import ManifestScanner

PLUGIN = """
from modcore.modules import ModPlugin


class Api:
    def ping(self):
        return "pong"


class Plugin(ModPlugin):
    def initialize(self, context):
        self.api = Api()
"""


def test_full_pipeline_load_and_query(make_mod, mods_root):
    make_mod("core", data={"base.json": {"K": "core", "hp": 10}})
    make_mod("ui", dependencies=["core"], code=PLUGIN)
    make_mod("skin", loadAfter=["ui"], data={"k.json": {"K": "skin"}})
    host = ModHost(root_dir=mods_root)
    m = host.load_all()
    assert (m.discovered, m.loaded, m.failed, m.status) == (3, 3, 0, "ok")
    assert host.get_load_order() == ("core", "ui", "skin")
    assert [r.id for r in host.get_loaded_mods()] == ["core", "ui", "skin"]
    assert host.get_value("K") == "skin"
    assert host.get_value("hp") == 10
    assert host.get_api("ui").ping() == "pong"
    assert host.get_api("core") is None
    assert host.get_dependents("core") == ["ui"]
    assert host.get_dependencies("ui") == ["core"]


def test_get_api_expected_type(make_mod, mods_root):
    make_mod("ui", code=PLUGIN)
    host = ModHost(root_dir=mods_root)
    host.load_all()
    assert host.get_api("ui", dict) is None
    api = host.get_api("ui")
    assert host.get_api("ui", type(api)) is api
    assert host.get_api("unknown") is None


def test_ten_packages_one_corrupted(make_mod, mods_root):
    for i in range(10):
        make_mod(
            f"m{i}",
            code="this is not python" if i == 7 else PLUGIN,
        )
    host = ModHost(root_dir=mods_root)
    m = host.load_all()
    assert (m.loaded, m.failed) == (9, 1)
    loaded = [r.id for r in host.get_loaded_mods()]
    assert len(loaded) == 9 and "m7" not in loaded
    assert host.get_record("m7").state is LifecycleState.FAILED


def test_reload_updates_merged_values(make_mod, mods_root):
    mod_dir = make_mod("data", data={"v.json": {"K": 1}})
    host = ModHost(root_dir=mods_root)
    host.load_all()
    assert host.get_value("K") == 1
    (mod_dir / "data" / "v.json").write_text(json.dumps({"K": 2}))
    host.reload_mod("data")
    assert host.get_value("K") == 2


def test_unload_all_then_queries_empty(make_mod, mods_root):
    make_mod("a", data={"x.json": {"x": 1}})
    host = ModHost(root_dir=mods_root)
    host.load_all()
    host.unload_all()
    assert host.get_loaded_mods() == []
    assert host.merged_values() == {}
    host.unload_all()


def test_resolution_error_recorded_and_raised(make_mod, mods_root):
    make_mod("a", dependencies=["x"])
    host = ModHost(root_dir=mods_root)
    with pytest.raises(MissingDependencyError):
        host.load_all()
    assert host.last_error is not None
    assert host.last_error.to_dict()["error_type"] == "missing-dependency"
    assert host.get_load_metrics().status == "failed"
    assert host.validation_report().codes() == ["missing-dependency"]
    assert host.get_loaded_mods() == []


def test_rejected_manifests_counted(make_mod, mods_root):
    make_mod("good")
    bad = mods_root / "bad"
    bad.mkdir()
    (bad / "modinfo.json").write_text("{}", encoding="utf-8")
    host = ModHost(root_dir=mods_root)
    m = host.load_all()
    assert (m.discovered, m.rejected, m.loaded) == (1, 1, 1)
    report = host.validation_report()
    assert report.codes() == ["manifest-missing-field"]


def test_append_keys_declared_in_manifest(make_mod, mods_root):
    make_mod("a", appendKeys=["music"], data={"m.json": {"music": ["a.ogg"]}})
    make_mod("b", data={"m.json": {"music": ["b.ogg"]}})
    host = ModHost(root_dir=mods_root)
    host.load_all()
    assert host.get_value("music") == ["a.ogg", "b.ogg"]
    assert host.value_sources()["music"] == ["a", "b"]


def test_two_packages_patch_same_target_unload_one(make_mod, mods_root):
    host = ModHost(root_dir=mods_root)
    host.coordinator.register_target("game.damage", lambda base: base)
    for name, factor in (("x2", 2), ("x3", 3)):
        make_mod(
            name,
            code=f"""
            from modcore.modules import ModPlugin


            class P(ModPlugin):
                def initialize(self, context):
                    def hook(call):
                        call.result = call.result * {factor}

                    context.apply_patch("game.damage", "after", hook)
            """,
        )
    host.load_all()
    assert host.coordinator.dispatch("game.damage", 1) == 6
    host.reload_mod("x2")
    assert host.coordinator.dispatch("game.damage", 1) == 6
    assert host.unload_mod("x2") is True
    assert host.coordinator.dispatch("game.damage", 1) == 3
    assert [r.owner for r in host.coordinator.patches_for("game.damage")] == [
        "x3"
    ]


def test_get_dependencies_unknown_raises(make_mod, mods_root):
    host = ModHost(root_dir=mods_root)
    host.load_all()
    with pytest.raises(KeyError):
        host.get_dependencies("nope")


def test_load_completed_event_and_histogram(make_mod, mods_root, captured_events):
    from modcore import metrics

    make_mod("a")
    ModHost(root_dir=mods_root).load_all()
    done = [p for n, p in captured_events if n == "LoadCompleted"]
    assert done[0]["status"] == "ok"
    hist = metrics.snapshot()["histograms"]
    assert hist["load_all_ms{status=ok}"]["count"] == 1


def test_get_mod_host_cached():
    get_mod_host.cache_clear()
    try:
        assert get_mod_host() is get_mod_host()
    finally:
        get_mod_host.cache_clear()


class _CancelAfterFirstManifest(ManifestScanner):
    def __init__(self, token):
        super().__init__(workers=1)
        self.token = token

    def find_manifest(self, mod_dir):
        found = super().find_manifest(mod_dir)
        self.token.cancel("test")
        return found


def test_cancelled_scan_reports_cancelled_without_resolving(
    make_mod, mods_root, captured_events
):
    make_mod("a_dep", dependencies=["z_base"])
    make_mod("z_base")
    token = CancellationToken()
    host = ModHost(
        root_dir=mods_root, scanner=_CancelAfterFirstManifest(token)
    )
    m = host.load_all(cancel=token)
    assert m.status == "cancelled"
    assert m.loaded == 0 and m.failed == 0
    assert host.last_error is None
    assert host.get_loaded_mods() == []
    assert host.validation_report().cancelled is True
    assert not [n for n, _ in captured_events if n == "ResolutionFailed"]
    done = [p for n, p in captured_events if n == "LoadCompleted"]
    assert done[-1]["status"] == "cancelled"


def test_second_pass_follows_new_load_order(
    make_mod, mods_root, captured_events
):
    make_mod("a", data={"k.json": {"K": "from-a"}})
    make_mod("c", data={"k.json": {"K": "from-c"}})
    host = ModHost(root_dir=mods_root)
    host.load_all()
    host.unload_all()
    make_mod("b", data={"k.json": {"K": "from-b"}})
    make_mod("c", dependencies=["b"], data={"k.json": {"K": "from-c"}})
    host.load_all()
    assert host.get_load_order() == ("a", "b", "c")
    assert [r.id for r in host.get_loaded_mods()] == ["a", "b", "c"]
    assert [r.load_index for r in host.get_loaded_mods()] == [0, 1, 2]
    assert host.get_value("K") == "from-c"
    assert host.value_sources()["K"] == ["a", "b", "c"]

    captured_events.clear()
    host.unload_all()
    unloaded = [p["mod_id"] for n, p in captured_events if n == "ModUnloaded"]
    assert unloaded == ["c", "b", "a"]


def test_new_root_drops_records_of_previous_root(
    tmp_path, make_mod, mods_root
):
    make_mod("old", data={"k.json": {"K": "old"}})
    other = tmp_path / "other"
    (other / "new").mkdir(parents=True)
    (other / "new" / "modinfo.json").write_text(
        json.dumps({"id": "new", "name": "New", "version": "1.0.0"})
    )
    host = ModHost(root_dir=mods_root)
    host.load_all()
    assert host.get_value("K") == "old"
    host.load_all(other)
    assert [r.id for r in host.get_loaded_mods()] == ["new"]
    assert host.get_load_order() == ("new",)
    assert host.get_record("old") is None
    assert host.get_value("K") is None
