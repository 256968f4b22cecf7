"""Unit tests for PluginRegistry."""

import asyncio
import json
import os

import pytest
import pytest_asyncio

from gesturevision.core.config.repository import ConfigRepository
from gesturevision.core.events import InternalEvent
from gesturevision.core.plugins.base import ActionDetails
from gesturevision.core.plugins.registry import PluginInstallError, PluginRegistry


ECHO_PLUGIN = '''
from gesturevision.core.plugins.base import ActionResult, BasePlugin


class EchoHandler:
    async def execute(self, settings, details, global_config, context):
        return ActionResult.ok(
            "echoed",
            {"settings": settings, "gesture": details.gesture_name, "global": global_config},
        )


class EchoPlugin(BasePlugin):
    def get_action_handler(self):
        return EchoHandler()
'''

RAISING_PLUGIN = '''
from gesturevision.core.plugins.base import BasePlugin


class Boom:
    async def execute(self, settings, details, global_config, context):
        raise RuntimeError("boom")


class Plugin(BasePlugin):
    def get_action_handler(self):
        return Boom()
'''

SENTINEL_PLUGIN = '''
from pathlib import Path

from gesturevision.core.plugins.base import BasePlugin

Path(__file__).with_name("imported.flag").write_text("imported")


class Plugin(BasePlugin):
    pass
'''

SCHEMA_PLUGIN = '''
from pydantic import BaseModel, Field

from gesturevision.core.plugins.base import BasePlugin


class Settings(BaseModel):
    url: str
    retries: int = Field(default=3, ge=0)


class Plugin(BasePlugin):
    global_config_schema = Settings
    updates = []

    async def on_global_config_update(self, config):
        Plugin.updates.append(config)

    async def test_connection(self, config):
        return {"success": True, "messageKey": "ok", "echo": config}
'''

INIT_FAILS_PLUGIN = '''
from gesturevision.core.plugins.base import BasePlugin


class Plugin(BasePlugin):
    async def init(self, context):
        raise RuntimeError("cannot start")
'''

SCHEMA_GETTER_FAILS_PLUGIN = '''
from gesturevision.core.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def get_global_config_schema(self):
        raise RuntimeError("schema bug")
'''

DICT_SCHEMA_PLUGIN = '''
from gesturevision.core.plugins.base import BasePlugin


class Plugin(BasePlugin):
    global_config_schema = {"url": "string"}
'''

HANDLER_GETTER_FAILS_PLUGIN = '''
from gesturevision.core.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def get_action_handler(self):
        raise RuntimeError("getter bug")
'''

ACTION_SCHEMA_PLUGIN = '''
from pydantic import BaseModel

from gesturevision.core.plugins.base import BasePlugin


class Target(BaseModel):
    channel: str


class Plugin(BasePlugin):
    action_config_schema = Target
'''


@pytest_asyncio.fixture
async def registry(plugins_dir, tmp_path, event_bus):
    registry = PluginRegistry(
        plugins_dir,
        ConfigRepository(tmp_path / "config.json"),
        event_bus,
        config_poll_interval=0.02,
        config_debounce=0.02,
    )
    yield registry
    await registry.destroy()


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


# =============================================================================
# Loading
# =============================================================================


class TestInitialize:
    """Test discovery and loading at startup."""

    @pytest.mark.asyncio
    async def test_loads_enabled_plugins(self, registry, make_plugin):
        make_plugin("echo", code=ECHO_PLUGIN)
        make_plugin("plain")

        await registry.initialize()

        assert registry.plugin_ids == ["echo", "plain"]
        assert type(registry.get_plugin_instance("echo")).__name__ == "EchoPlugin"
        assert registry.get_plugin_instance("echo").manifest.id == "echo"

    @pytest.mark.asyncio
    async def test_disabled_plugin_is_not_imported(self, registry, make_plugin, plugins_dir):
        plugin_dir = make_plugin("sentinel", code=SENTINEL_PLUGIN)
        (plugins_dir / "disabled-plugins.json").write_text(json.dumps(["sentinel"]))

        await registry.initialize()

        record = registry.get_plugin("sentinel")
        assert record.status == "disabled"
        assert type(record.instance).__name__ == "BasePlugin"
        assert not (plugin_dir / "imported.flag").exists()
        assert await registry.get_global_config("sentinel") is None

    @pytest.mark.asyncio
    async def test_enabled_sentinel_is_imported(self, registry, make_plugin):
        plugin_dir = make_plugin("sentinel", code=SENTINEL_PLUGIN)

        await registry.initialize()

        assert (plugin_dir / "imported.flag").exists()

    @pytest.mark.asyncio
    async def test_broken_plugins_are_omitted(self, registry, make_plugin, plugins_dir):
        make_plugin("syntax", code="def broken(:\n")
        make_plugin("initfails", code=INIT_FAILS_PLUGIN)
        make_plugin("good")
        (plugins_dir / "nomanifest").mkdir()

        await registry.initialize()

        assert registry.plugin_ids == ["good"]

    @pytest.mark.asyncio
    async def test_faulty_schema_hooks_do_not_block_boot(self, registry, make_plugin):
        make_plugin("good")
        make_plugin("badschema", code=SCHEMA_GETTER_FAILS_PLUGIN, global_config={"url": "http://a"})
        make_plugin("dictschema", code=DICT_SCHEMA_PLUGIN)

        await registry.initialize()

        assert registry.initialized
        assert registry.plugin_ids == ["good"]

    @pytest.mark.asyncio
    async def test_skips_reserved_directories(self, registry, make_plugin):
        make_plugin("common")
        make_plugin("_private")
        make_plugin("real")

        await registry.initialize()

        assert registry.plugin_ids == ["real"]

    @pytest.mark.asyncio
    async def test_manifests_include_status_and_locales(self, registry, make_plugin):
        make_plugin("echo", code=ECHO_PLUGIN, locales={"en": {"title": "Echo"}})
        make_plugin("plain")

        await registry.initialize()
        manifests = {m["id"]: m for m in await registry.get_manifests()}

        assert manifests["echo"]["status"] == "enabled"
        assert manifests["echo"]["locales"] == {"en": {"title": "Echo"}}
        assert "locales" not in manifests["plain"]
        assert manifests["echo"]["capabilities"]["providesActions"] is True


# =============================================================================
# Global plugin config
# =============================================================================


class TestGlobalConfig:
    """Test reading, saving and watching plugin global configs."""

    @pytest.mark.asyncio
    async def test_reads_and_validates_with_defaults(self, registry, make_plugin):
        make_plugin("hook", code=SCHEMA_PLUGIN, global_config={"url": "http://a"})

        await registry.initialize()

        assert await registry.get_global_config("hook") == {"url": "http://a", "retries": 3}
        assert await registry.get_plugin_configs() == {"hook": {"url": "http://a", "retries": 3}}

    @pytest.mark.asyncio
    async def test_save_rejects_invalid_without_writing(self, registry, make_plugin, recorder):
        plugin_dir = make_plugin("hook", code=SCHEMA_PLUGIN, global_config={"url": "http://a"})
        await registry.initialize()
        recorder.clear()

        result = await registry.save_global_config("hook", {"retries": -1})

        assert result.success is False
        fields = {error["field"] for error in result.to_dict()["validationErrors"]}
        assert fields == {"url", "retries"}
        assert json.loads((plugin_dir / "hook.config.json").read_text()) == {"url": "http://a"}
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_save_persists_and_publishes(self, registry, make_plugin, recorder):
        plugin_dir = make_plugin("hook", code=SCHEMA_PLUGIN, global_config={"url": "http://a"})
        await registry.initialize()
        recorder.clear()

        result = await registry.save_global_config("hook", {"url": "http://b"})

        assert result.success is True
        assert json.loads((plugin_dir / "hook.config.json").read_text()) == {"url": "http://b", "retries": 3}
        assert await registry.get_global_config("hook") == {"url": "http://b", "retries": 3}
        changes = recorder.of(InternalEvent.PLUGIN_CONFIG_CHANGED)
        assert [(c.plugin_id, c.config["url"]) for c in changes] == [("hook", "http://b")]

    @pytest.mark.asyncio
    async def test_save_without_global_settings(self, registry, make_plugin):
        make_plugin("plain")
        await registry.initialize()

        result = await registry.save_global_config("plain", {"a": 1})

        assert result.success is False
        assert "does not exist or support global settings" in result.message

    @pytest.mark.asyncio
    async def test_external_edit_is_picked_up(self, registry, make_plugin, recorder):
        plugin_dir = make_plugin("hook", code=SCHEMA_PLUGIN, global_config={"url": "http://a"})
        await registry.initialize()
        recorder.clear()
        config_file = plugin_dir / "hook.config.json"
        await asyncio.sleep(0.05)

        config_file.write_text(json.dumps({"url": "http://edited"}))
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 5))

        assert await _wait_for(lambda: recorder.of(InternalEvent.PLUGIN_CONFIG_CHANGED))
        change = recorder.of(InternalEvent.PLUGIN_CONFIG_CHANGED)[0]
        assert change.config == {"url": "http://edited", "retries": 3}
        assert registry.get_plugin_instance("hook").updates[-1] == change.config

    @pytest.mark.asyncio
    async def test_test_connection(self, registry, make_plugin):
        make_plugin("hook", code=SCHEMA_PLUGIN, global_config={"url": "http://a"})
        make_plugin("plain")
        await registry.initialize()

        assert (await registry.test_connection("hook", {"url": "x"}))["echo"] == {"url": "x"}
        assert (await registry.test_connection("plain", None))["messageKey"] == "testNotSupported"
        assert (await registry.test_connection("missing", None))["success"] is False


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Test action dispatch."""

    @pytest.mark.asyncio
    async def test_dispatch_to_handler(self, registry, make_plugin):
        make_plugin("echo", code=ECHO_PLUGIN)
        await registry.initialize()
        binding = {"gesture": "OPEN_PALM", "actionConfig": {"pluginId": "echo", "settings": {"k": 1}}}

        result = await registry.dispatch(binding, ActionDetails(gesture_name="OPEN_PALM", confidence=0.9))

        assert result.success is True
        assert result.details == {"settings": {"k": 1}, "gesture": "OPEN_PALM", "global": None}

    @pytest.mark.asyncio
    async def test_no_action_configured(self, registry):
        await registry.initialize()

        result = await registry.dispatch({"gesture": "OPEN_PALM", "actionConfig": None}, {"gestureName": "OPEN_PALM"})

        assert result.success is False
        assert result.message == "No action configured for OPEN_PALM."

    @pytest.mark.asyncio
    async def test_missing_plugin(self, registry):
        await registry.initialize()

        result = await registry.dispatch(
            {"gesture": "VICTORY", "actionConfig": {"pluginId": "ghost"}},
            ActionDetails(gesture_name="VICTORY"),
        )

        assert result.message == "Action failed: Plugin 'ghost' is disabled or not found."

    @pytest.mark.asyncio
    async def test_plugin_without_handler(self, registry, make_plugin):
        make_plugin("plain")
        await registry.initialize()

        result = await registry.dispatch(
            {"gesture": "VICTORY", "actionConfig": {"pluginId": "plain"}},
            ActionDetails(gesture_name="VICTORY"),
        )

        assert result.success is False
        assert "does not provide actions" in result.message

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_result(self, registry, make_plugin):
        make_plugin("raiser", code=RAISING_PLUGIN)
        await registry.initialize()

        result = await registry.dispatch(
            {"pose": "ARMS_UP", "actionConfig": {"pluginId": "raiser"}},
            ActionDetails(gesture_name="ARMS_UP"),
        )

        assert result.success is False
        assert result.message == "Handler error for plugin raiser: boom"

    @pytest.mark.asyncio
    async def test_handler_getter_exception_becomes_result(self, registry, make_plugin):
        make_plugin("getter", code=HANDLER_GETTER_FAILS_PLUGIN)
        await registry.initialize()

        result = await registry.dispatch(
            {"gesture": "VICTORY", "actionConfig": {"pluginId": "getter"}},
            ActionDetails(gesture_name="VICTORY"),
        )

        assert result.success is False
        assert result.message == "Handler error for plugin getter: getter bug"
        assert result.details == {"pluginId": "getter"}


class TestActionSettings:
    """Test validation of per-binding action settings."""

    @pytest.mark.asyncio
    async def test_invalid_settings_report_fields(self, registry, make_plugin):
        make_plugin("notify", code=ACTION_SCHEMA_PLUGIN)
        await registry.initialize()

        errors = registry.validate_action_settings("notify", {"channel": 5})

        assert [error.field for error in errors] == ["channel"]

    @pytest.mark.asyncio
    async def test_valid_settings(self, registry, make_plugin):
        make_plugin("notify", code=ACTION_SCHEMA_PLUGIN)
        await registry.initialize()

        assert registry.validate_action_settings("notify", {"channel": "ops"}) == []

    @pytest.mark.asyncio
    async def test_plugins_without_schema_accept_anything(self, registry, make_plugin):
        make_plugin("plain")
        await registry.initialize()

        assert registry.validate_action_settings("plain", "anything") == []
        assert registry.validate_action_settings("ghost", {"x": 1}) == []


# =============================================================================
# Lifecycle
# =============================================================================


class FakeCloneRegistry(PluginRegistry):
    """Registry whose clone step lays out a plugin instead of running git."""

    def __init__(self, *args, fail=False, write_manifest=True, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail = fail
        self.write_manifest = write_manifest
        self.clones = []

    async def _clone_repository(self, source_url, target_dir):
        self.clones.append(source_url)
        await asyncio.sleep(0.01)
        target_dir.mkdir(parents=True)
        (target_dir / "README.md").write_text("partial")
        if self.write_manifest:
            manifest = {"id": target_dir.name, "name": "Echo", "version": "2.0.0", "backendEntry": "backend.py"}
            (target_dir / "manifest.json").write_text(json.dumps(manifest))
            (target_dir / "backend.py").write_text(ECHO_PLUGIN)
        if self.fail:
            raise PluginInstallError("git clone exited with 128: not found")


def _fake_registry(plugins_dir, tmp_path, event_bus, **kwargs):
    return FakeCloneRegistry(
        plugins_dir,
        ConfigRepository(tmp_path / "config.json"),
        event_bus,
        **kwargs,
    )


class TestInstall:
    """Test install/uninstall/set_state."""

    @pytest.mark.asyncio
    async def test_install_uninstall_roundtrip(self, plugins_dir, tmp_path, event_bus, recorder):
        registry = _fake_registry(plugins_dir, tmp_path, event_bus)
        await registry.initialize()

        installed = await registry.install("https://github.com/acme/gv-echo.git")

        assert installed.success is True
        assert installed.details == {"pluginId": "gv-echo"}
        assert registry.plugin_ids == ["gv-echo"]
        manifests = recorder.of(InternalEvent.MANIFESTS_CHANGED)
        assert [m["id"] for m in manifests[-1].manifests] == ["gv-echo"]

        removed = await registry.uninstall("gv-echo")

        assert removed.success is True
        assert not (plugins_dir / "gv-echo").exists()
        assert registry.plugin_ids == []
        assert recorder.of(InternalEvent.MANIFESTS_CHANGED)[-1].manifests == []
        await registry.destroy()

    @pytest.mark.asyncio
    async def test_uninstall_clears_disabled_record(self, plugins_dir, tmp_path, event_bus):
        registry = _fake_registry(plugins_dir, tmp_path, event_bus)
        await registry.initialize()
        disabled_file = plugins_dir / "disabled-plugins.json"
        await registry.install("https://github.com/acme/gv-echo.git")
        await registry.set_state("gv-echo", "disabled")
        assert json.loads(disabled_file.read_text()) == ["gv-echo"]

        removed = await registry.uninstall("gv-echo")

        assert removed.success is True
        assert json.loads(disabled_file.read_text()) == []
        assert not registry.is_disabled("gv-echo")

        reinstalled = await registry.install("https://github.com/acme/gv-echo.git")

        assert reinstalled.success is True
        assert registry.get_plugin("gv-echo").status == "enabled"
        await registry.destroy()

    @pytest.mark.asyncio
    async def test_failed_clone_cleans_up(self, plugins_dir, tmp_path, event_bus, recorder):
        registry = _fake_registry(plugins_dir, tmp_path, event_bus, fail=True)

        result = await registry.install("https://github.com/acme/gv-echo")

        assert result.success is False
        assert "git clone exited with 128" in result.message
        assert not (plugins_dir / "gv-echo").exists()
        assert registry.get_plugin("gv-echo") is None
        assert recorder.of(InternalEvent.MANIFESTS_CHANGED) == []

    @pytest.mark.asyncio
    async def test_missing_manifest_cleans_up(self, plugins_dir, tmp_path, event_bus):
        registry = _fake_registry(plugins_dir, tmp_path, event_bus, write_manifest=False)

        result = await registry.install("git://example.test/plugins/lonely.git")

        assert result.success is False
        assert not (plugins_dir / "lonely").exists()

    @pytest.mark.asyncio
    async def test_concurrent_same_id_install(self, plugins_dir, tmp_path, event_bus):
        registry = _fake_registry(plugins_dir, tmp_path, event_bus)

        first, second = await asyncio.gather(
            registry.install("https://github.com/acme/gv-echo.git"),
            registry.install("https://gitlab.com/other/gv-echo"),
        )

        assert first.success is True
        assert second.success is False
        assert "already exists" in second.message
        assert len(registry.clones) == 1
        await registry.destroy()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://example.test/x.git", "not a url", ""])
    async def test_invalid_url(self, registry, url):
        result = await registry.install(url)

        assert result.success is False

    @pytest.mark.asyncio
    async def test_uninstall_unknown(self, registry):
        result = await registry.uninstall("ghost")

        assert result.success is False
        assert result.message == "Plugin 'ghost' not found."

    @pytest.mark.asyncio
    async def test_disable_then_enable(self, registry, make_plugin, plugins_dir, recorder):
        plugin_dir = make_plugin("sentinel", code=SENTINEL_PLUGIN)
        await registry.initialize()
        (plugin_dir / "imported.flag").unlink()
        recorder.clear()

        disabled = await registry.set_state("sentinel", "disabled")

        assert disabled.success is True
        assert registry.get_plugin("sentinel").status == "disabled"
        assert json.loads((plugins_dir / "disabled-plugins.json").read_text()) == ["sentinel"]
        assert not (plugin_dir / "imported.flag").exists()

        enabled = await registry.set_state("sentinel", "enabled")

        assert enabled.success is True
        assert registry.get_plugin("sentinel").status == "enabled"
        assert json.loads((plugins_dir / "disabled-plugins.json").read_text()) == []
        assert len(recorder.of(InternalEvent.MANIFESTS_CHANGED)) == 2

    @pytest.mark.asyncio
    async def test_set_state_unknown_plugin(self, registry):
        result = await registry.set_state("ghost", "enabled")

        assert result.success is False
        assert "not found" in result.message
