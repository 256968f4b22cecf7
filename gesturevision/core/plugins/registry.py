"""
Plugin Registry - owns the set of loaded plugins and their lifecycle.

Each plugin lives in its own directory under the plugins directory. The
registry imports enabled plugins, registers inert stand-ins for disabled
ones, watches plugin global-config files, installs plugins from git and
dispatches gesture actions to plugin handlers.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from ..config.repository import ConfigRepository
from ..config.validation import ValidationErrorDetail, errors_to_dicts, validate_document
from ..events import EventBus, InternalEvent, ManifestsChange, PluginConfigChange
from ..file_watch import DebouncedFileWatcher
from ..logging_utils import get_module_logger
from ..paths import DISABLED_PLUGINS_FILENAME
from .base import ActionDetails, ActionResult, BasePlugin, PluginContext
from .loader import (
    PluginLoadError,
    discover_manifests_async,
    import_plugin_class,
    load_disabled_ids,
    read_locales_async,
    read_manifest_async,
    save_disabled_ids,
)
from .manifest import PluginManifest

PLUGIN_CONFIG_POLL_INTERVAL = 2.0
PLUGIN_CONFIG_DEBOUNCE = 0.3

REPOSITORY_URL_PATTERN = re.compile(r"^(https?|git)://[^\s$.?#].[^\s]*$")
PLUGIN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

STATUS_ENABLED = "enabled"
STATUS_DISABLED = "disabled"


class PluginInstallError(Exception):
    """Cloning or loading a plugin repository failed."""


@dataclass
class LoadedPlugin:
    manifest: PluginManifest
    instance: BasePlugin
    directory: Path
    status: str = STATUS_ENABLED
    global_config: Optional[Dict[str, Any]] = None
    config_path: Optional[Path] = None
    watcher: Optional[DebouncedFileWatcher] = None
    config_schema: Optional[Type[BaseModel]] = None
    action_schema: Optional[Type[BaseModel]] = None

    @property
    def enabled(self) -> bool:
        return self.status == STATUS_ENABLED


@dataclass
class PluginConfigSaveResult:
    success: bool
    message: str
    validation_errors: Optional[List[ValidationErrorDetail]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.validation_errors:
            result["validationErrors"] = errors_to_dicts(self.validation_errors)
        return result


def resolve_schema(getter: Callable[[], Any]) -> Optional[Type[BaseModel]]:
    """Call a plugin schema getter, accepting only ``None`` or a pydantic model class."""
    try:
        schema = getter()
    except Exception as e:
        raise PluginLoadError(f"{getter.__name__}() failed: {e}") from e
    if schema is None or (isinstance(schema, type) and issubclass(schema, BaseModel)):
        return schema
    raise PluginLoadError(f"{getter.__name__}() must return a pydantic model class, not {type(schema).__name__}")


class PluginRegistry:
    """Loads, tracks and unloads plugins found in ``plugins_dir``."""

    def __init__(
        self,
        plugins_dir: Path,
        repository: ConfigRepository,
        event_bus: EventBus,
        *,
        config_poll_interval: float = PLUGIN_CONFIG_POLL_INTERVAL,
        config_debounce: float = PLUGIN_CONFIG_DEBOUNCE,
    ):
        self.logger = get_module_logger("PluginRegistry")
        self.plugins_dir = Path(plugins_dir)
        self.repository = repository
        self.event_bus = event_bus
        self.config_poll_interval = config_poll_interval
        self.config_debounce = config_debounce
        self.initialized = False
        self._plugins: Dict[str, LoadedPlugin] = {}
        self._disabled_ids: set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def disabled_file(self) -> Path:
        return self.plugins_dir / DISABLED_PLUGINS_FILENAME

    def _lock_for(self, plugin_id: str) -> asyncio.Lock:
        lock = self._locks.get(plugin_id)
        if lock is None:
            lock = self._locks[plugin_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Startup and shutdown

    async def initialize(self) -> None:
        if self.initialized:
            return
        self._disabled_ids = await load_disabled_ids(self.disabled_file)
        discovered = await discover_manifests_async(self.plugins_dir)
        await asyncio.gather(
            *(self._load_guarded(plugin_dir, manifest) for plugin_dir, manifest in discovered)
        )
        self.initialized = True
        self.logger.info(
            "Loaded %d plugin(s) (%d disabled)",
            len(self._plugins),
            sum(1 for record in self._plugins.values() if not record.enabled),
        )

    async def _load_guarded(self, plugin_dir: Path, manifest: PluginManifest) -> None:
        try:
            await self._load_plugin(plugin_dir, manifest)
        except PluginLoadError as e:
            self.logger.error("Could not load plugin '%s': %s", plugin_dir.name, e)
        except Exception as e:
            self.logger.error("Unexpected error loading plugin '%s': %s", plugin_dir.name, e, exc_info=True)

    async def destroy(self) -> None:
        for plugin_id in list(self._plugins):
            await self._unload_plugin(plugin_id)
        self.initialized = False

    # ------------------------------------------------------------------
    # Loading and unloading

    async def _load_plugin(self, plugin_dir: Path, manifest: PluginManifest) -> Optional[LoadedPlugin]:
        plugin_id = plugin_dir.name
        if plugin_id in self._plugins:
            self.logger.warning("Duplicate plugin ID '%s'. Skipping.", plugin_id)
            return None

        if plugin_id in self._disabled_ids:
            self.logger.info("Registering disabled plugin '%s' without loading its code", plugin_id)
            record = LoadedPlugin(
                manifest=manifest,
                instance=BasePlugin(manifest),
                directory=plugin_dir,
                status=STATUS_DISABLED,
            )
            self._plugins[plugin_id] = record
            return record

        if manifest.backend_entry:
            plugin_class = await asyncio.to_thread(import_plugin_class, plugin_dir, manifest.backend_entry)
            try:
                instance = plugin_class()
                instance.manifest = manifest
            except Exception as e:
                raise PluginLoadError(f"Constructing {plugin_class.__name__} failed: {e}") from e
        else:
            instance = BasePlugin(manifest)

        record = LoadedPlugin(
            manifest=manifest,
            instance=instance,
            directory=plugin_dir,
            config_schema=resolve_schema(instance.get_global_config_schema),
            action_schema=resolve_schema(instance.get_action_config_schema),
        )
        if manifest.has_global_settings:
            record.config_path = plugin_dir / manifest.global_config_file_name
            record.global_config = await self._read_plugin_config(record)

        self._plugins[plugin_id] = record
        if record.config_path is not None:
            self._start_config_watcher(plugin_id, record)

        try:
            await instance.init(PluginContext(plugin_id=plugin_id, registry=self))
        except Exception as e:
            await self._unload_plugin(plugin_id)
            raise PluginLoadError(f"init() failed: {e}") from e

        self.logger.info("Loaded plugin '%s' v%s", plugin_id, manifest.version)
        return record

    async def _unload_plugin(self, plugin_id: str) -> None:
        record = self._plugins.pop(plugin_id, None)
        if record is None:
            return
        if record.watcher is not None:
            record.watcher.stop()
            record.watcher = None
        try:
            await record.instance.destroy()
        except Exception as e:
            self.logger.error("Error destroying plugin '%s': %s", plugin_id, e, exc_info=True)

    async def _reload_from_disk(self, plugin_id: str) -> LoadedPlugin:
        plugin_dir = self.plugins_dir / plugin_id
        manifest = await read_manifest_async(plugin_dir)
        record = await self._load_plugin(plugin_dir, manifest)
        if record is None:
            raise PluginLoadError(f"Plugin '{plugin_id}' is already loaded")
        return record

    # ------------------------------------------------------------------
    # Global plugin config

    async def _read_plugin_config(self, record: LoadedPlugin) -> Optional[Dict[str, Any]]:
        raw = await self.repository.read_json(record.config_path)
        if raw is None:
            return None
        if record.config_schema is None:
            return raw
        document, errors = validate_document(record.config_schema, raw, exclude_unset=False)
        if document is None:
            self.logger.error(
                "Config for plugin '%s' failed validation: %s",
                record.manifest.id,
                errors_to_dicts(errors),
            )
        return document

    def _start_config_watcher(self, plugin_id: str, record: LoadedPlugin) -> None:
        async def _on_change() -> None:
            await self._on_plugin_config_changed(plugin_id)

        record.watcher = DebouncedFileWatcher(
            record.config_path,
            _on_change,
            poll_interval=self.config_poll_interval,
            debounce=self.config_debounce,
            name=f"plugin:{plugin_id}",
        )
        record.watcher.start()

    async def _on_plugin_config_changed(self, plugin_id: str) -> None:
        record = self._plugins.get(plugin_id)
        if record is None or not record.enabled:
            return
        new_config = await self._read_plugin_config(record)
        if new_config == record.global_config:
            return
        record.global_config = new_config
        self.logger.info("Config for plugin '%s' changed on disk", plugin_id)
        try:
            await record.instance.on_global_config_update(new_config)
        except Exception as e:
            self.logger.error("Plugin '%s' failed to apply config update: %s", plugin_id, e, exc_info=True)
        await self.event_bus.publish(
            InternalEvent.PLUGIN_CONFIG_CHANGED,
            PluginConfigChange(plugin_id=plugin_id, config=new_config),
        )

    async def get_global_config(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        record = self._plugins.get(plugin_id)
        if record is None or not record.enabled:
            return None
        if record.global_config is None and record.config_path is not None:
            record.global_config = await self._read_plugin_config(record)
        return record.global_config

    async def save_global_config(self, plugin_id: str, data: Any) -> PluginConfigSaveResult:
        record = self._plugins.get(plugin_id)
        if record is None or record.config_path is None or not record.manifest.has_global_settings:
            return PluginConfigSaveResult(
                success=False,
                message=f"Plugin '{plugin_id}' does not exist or support global settings.",
            )

        validated = data
        if record.config_schema is not None:
            validated, errors = validate_document(record.config_schema, data, exclude_unset=False)
            if validated is None:
                return PluginConfigSaveResult(
                    success=False,
                    message="Plugin configuration validation failed.",
                    validation_errors=errors,
                )

        if not await self.repository.write_json(record.config_path, validated):
            return PluginConfigSaveResult(
                success=False,
                message=f"Failed to write config for plugin '{plugin_id}'.",
            )

        record.global_config = validated
        await self.event_bus.publish(
            InternalEvent.PLUGIN_CONFIG_CHANGED,
            PluginConfigChange(plugin_id=plugin_id, config=validated),
        )
        return PluginConfigSaveResult(success=True, message=f"Plugin '{plugin_id}' config saved.")

    def validate_action_settings(self, plugin_id: str, settings: Any) -> List[ValidationErrorDetail]:
        """Validate gesture action settings with the plugin's schema, if it has one."""
        record = self._plugins.get(plugin_id)
        if record is None or record.action_schema is None:
            return []
        _, errors = validate_document(record.action_schema, settings)
        return errors

    async def test_connection(self, plugin_id: str, config: Any) -> Dict[str, Any]:
        record = self._plugins.get(plugin_id)
        if record is None or not record.enabled:
            return {
                "success": False,
                "messageKey": "pluginNotFound",
                "error": {"code": "NOT_FOUND", "message": f"Plugin '{plugin_id}' not found or disabled."},
            }
        try:
            return await record.instance.test_connection(config)
        except Exception as e:
            self.logger.error("Connection test for plugin '%s' failed: %s", plugin_id, e, exc_info=True)
            return {"success": False, "messageKey": "testFailed", "error": {"code": "TEST_ERROR", "message": str(e)}}

    # ------------------------------------------------------------------
    # Queries

    def get_plugin(self, plugin_id: str) -> Optional[LoadedPlugin]:
        return self._plugins.get(plugin_id)

    def get_plugin_instance(self, plugin_id: str) -> Optional[BasePlugin]:
        record = self._plugins.get(plugin_id)
        return record.instance if record else None

    @property
    def plugin_ids(self) -> List[str]:
        return sorted(self._plugins)

    def is_disabled(self, plugin_id: str) -> bool:
        return plugin_id in self._disabled_ids

    async def get_manifests(self) -> List[Dict[str, Any]]:
        """Manifests of every registered plugin with ``status`` and ``locales``."""
        manifests = []
        for plugin_id in sorted(self._plugins):
            record = self._plugins[plugin_id]
            manifest = record.manifest.to_dict()
            manifest["status"] = record.status
            locales = await read_locales_async(record.directory)
            if locales:
                manifest["locales"] = locales
            manifests.append(manifest)
        return manifests

    async def get_plugin_configs(self) -> Dict[str, Optional[Dict[str, Any]]]:
        """Global config of every enabled plugin that has global settings."""
        configs = {}
        for plugin_id in sorted(self._plugins):
            record = self._plugins[plugin_id]
            if record.enabled and record.manifest.has_global_settings:
                configs[plugin_id] = await self.get_global_config(plugin_id)
        return configs

    async def _publish_manifests(self) -> None:
        await self.event_bus.publish(
            InternalEvent.MANIFESTS_CHANGED,
            ManifestsChange(manifests=await self.get_manifests()),
        )

    # ------------------------------------------------------------------
    # Lifecycle operations

    @staticmethod
    def plugin_id_from_url(source_url: str) -> str:
        name = source_url.rstrip("/").rsplit("/", 1)[-1]
        if name.endswith(".git"):
            name = name[: -len(".git")]
        return name

    async def install(self, source_url: str) -> ActionResult:
        if not isinstance(source_url, str) or not REPOSITORY_URL_PATTERN.match(source_url):
            return ActionResult.error("Invalid Git repository URL provided.")
        plugin_id = self.plugin_id_from_url(source_url)
        if not PLUGIN_ID_PATTERN.match(plugin_id):
            return ActionResult.error(f"Cannot derive a plugin ID from '{source_url}'.")

        async with self._lock_for(plugin_id):
            target_dir = self.plugins_dir / plugin_id
            if target_dir.exists():
                return ActionResult.error(f"Plugin '{plugin_id}' already exists.")

            try:
                await self._clone_repository(source_url, target_dir)
                await self._reload_from_disk(plugin_id)
            except (PluginInstallError, PluginLoadError, OSError) as e:
                self.logger.error("Failed to install plugin from %s: %s", source_url, e)
                await self._unload_plugin(plugin_id)
                await asyncio.to_thread(shutil.rmtree, target_dir, True)
                return ActionResult.error(f"Failed to install plugin: {e}")

        await self._publish_manifests()
        return ActionResult.ok(f"Plugin '{plugin_id}' installed successfully.", {"pluginId": plugin_id})

    async def _clone_repository(self, source_url: str, target_dir: Path) -> None:
        await asyncio.to_thread(target_dir.parent.mkdir, parents=True, exist_ok=True)
        process = await asyncio.create_subprocess_exec(
            "git", "clone", "--depth", "1", source_url, str(target_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise PluginInstallError(f"git clone exited with {process.returncode}: {detail}")

    async def uninstall(self, plugin_id: str) -> ActionResult:
        async with self._lock_for(plugin_id):
            plugin_dir = self.plugins_dir / plugin_id
            if not PLUGIN_ID_PATTERN.match(plugin_id) or not plugin_dir.is_dir():
                return ActionResult.error(f"Plugin '{plugin_id}' not found.")

            await self._unload_plugin(plugin_id)
            try:
                await asyncio.to_thread(shutil.rmtree, plugin_dir)
            except OSError as e:
                self.logger.error("Failed to uninstall plugin %s: %s", plugin_id, e)
                return ActionResult.error(f"Failed to uninstall plugin: {e}")

            self._disabled_ids.discard(plugin_id)
            await save_disabled_ids(self.disabled_file, self._disabled_ids)

        await self._publish_manifests()
        return ActionResult.ok(f"Plugin '{plugin_id}' uninstalled successfully.")

    async def set_state(self, plugin_id: str, state: str) -> ActionResult:
        if state not in (STATUS_ENABLED, STATUS_DISABLED):
            return ActionResult.error(f"Invalid plugin state '{state}'.")

        async with self._lock_for(plugin_id):
            if plugin_id not in self._plugins:
                return ActionResult.error(f"Plugin '{plugin_id}' not found.")

            if state == STATUS_ENABLED:
                self._disabled_ids.discard(plugin_id)
            else:
                self._disabled_ids.add(plugin_id)
            await save_disabled_ids(self.disabled_file, self._disabled_ids)

            await self._unload_plugin(plugin_id)
            try:
                await self._reload_from_disk(plugin_id)
            except PluginLoadError as e:
                self.logger.error("Failed to reload plugin '%s' after state change: %s", plugin_id, e)
                await self._publish_manifests()
                return ActionResult.error(f"Failed to reload plugin after state change: {e}")

        await self._publish_manifests()
        return ActionResult.ok(f"Plugin '{plugin_id}' has been {state}.")

    # ------------------------------------------------------------------
    # Action dispatch

    async def dispatch(
        self,
        binding: Dict[str, Any],
        details: Union[ActionDetails, Dict[str, Any]],
    ) -> ActionResult:
        """Run the action configured on a gesture or pose binding."""
        if isinstance(details, dict):
            details = ActionDetails.from_dict(details)
        name = binding.get("gesture") or binding.get("pose") or details.gesture_name
        action_config = binding.get("actionConfig") or {}
        plugin_id = action_config.get("pluginId")

        if not plugin_id or plugin_id == "none":
            return ActionResult.error(f"No action configured for {name}.", {"configName": name})

        record = self._plugins.get(plugin_id)
        if record is None or not record.enabled:
            return ActionResult.error(
                f"Action failed: Plugin '{plugin_id}' is disabled or not found.",
                {"pluginId": plugin_id},
            )

        context = PluginContext(plugin_id=plugin_id, registry=self)
        try:
            handler = record.instance.get_action_handler()
            if handler is None:
                return ActionResult.error(
                    f"Action handler for plugin '{plugin_id}' not found or plugin does not provide actions.",
                    {"pluginId": plugin_id},
                )
            return await handler.execute(
                action_config.get("settings"),
                details,
                await self.get_global_config(plugin_id),
                context,
            )
        except Exception as e:
            self.logger.error("Handler error for plugin %s: %s", plugin_id, e, exc_info=True)
            return ActionResult.error(
                f"Handler error for plugin {plugin_id}: {e or 'Unknown handler error'}",
                {"pluginId": plugin_id},
            )
