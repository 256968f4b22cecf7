"""
Config Store - authoritative owner of the configuration document.

All mutations go through :meth:`ConfigStore.write`, which is guarded by a
single fail-fast write lock. External edits are picked up by a debounced
file watcher and re-validated before they replace the in-memory copy.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..events import ConfigChange, EventBus, InternalEvent
from ..file_watch import DebouncedFileWatcher
from ..logging_utils import get_module_logger
from ..naming import normalize_name
from .repository import ConfigRepository
from .schemas import DEFAULT_CONFIG, FullConfiguration, RoiConfig
from .validation import ValidationErrorDetail, errors_to_dicts, validate_document

FILE_WATCH_INTERVAL = 1.0
DEBOUNCE_DELAY = 0.3

# (plugin_id, settings) -> field errors from the plugin's action settings schema
ActionSettingsValidator = Callable[[str, Any], List[ValidationErrorDetail]]


class ConfigStoreError(Exception):
    """Base class for config store failures."""


class ConfigWriteInProgressError(ConfigStoreError):
    """Another write holds the lock."""


class ConfigWriteError(ConfigStoreError):
    """The document could not be persisted."""


class ConfigValidationError(ConfigStoreError):
    def __init__(self, errors: List[ValidationErrorDetail]):
        self.errors = errors
        super().__init__(f"Configuration failed validation ({len(errors)} error(s))")


@dataclass
class PatchResult:
    success: bool
    message: str
    validation_errors: List[ValidationErrorDetail] = field(default_factory=list)
    rtsp_changed: bool = False
    updated_config: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.validation_errors:
            result["validationErrors"] = errors_to_dicts(self.validation_errors)
        if self.success:
            result["rtspChanged"] = self.rtsp_changed
        if self.updated_config is not None:
            result["updatedConfig"] = self.updated_config
        return result


class ConfigStore:
    """Holds the validated configuration and publishes its changes."""

    def __init__(
        self,
        repository: ConfigRepository,
        event_bus: EventBus,
        *,
        watch_interval: float = FILE_WATCH_INTERVAL,
        debounce_delay: float = DEBOUNCE_DELAY,
        watch: bool = True,
        action_settings_validator: Optional[ActionSettingsValidator] = None,
    ):
        self.logger = get_module_logger("ConfigStore")
        self.repository = repository
        self.event_bus = event_bus
        self.initialized = False
        self.action_settings_validator = action_settings_validator
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self._write_lock = asyncio.Lock()
        self._watch = watch
        self._watcher = DebouncedFileWatcher(
            repository.config_path,
            self.reload,
            poll_interval=watch_interval,
            debounce=debounce_delay,
            name="config",
        )

    # ------------------------------------------------------------------
    # Reading

    def get(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def rtsp_sources(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._config.get("rtspSources", []))

    def find_binding(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the gesture or pose binding whose name matches ``name``."""
        if not name:
            return None
        wanted = normalize_name(name)
        for binding in self._config.get("gestureConfigs", []):
            label = binding.get("gesture", binding.get("pose"))
            if normalize_name(label) == wanted:
                return copy.deepcopy(binding)
        return None

    @property
    def write_in_progress(self) -> bool:
        return self._write_lock.locked()

    # ------------------------------------------------------------------
    # Loading

    async def load(self) -> None:
        """Read, validate and adopt the document on disk. Never raises."""
        if self.initialized:
            return
        try:
            await self._read_and_validate()
        except Exception as e:
            self.logger.error("Critical error during initial config load: %s", e, exc_info=True)
            self._config = copy.deepcopy(DEFAULT_CONFIG)
        self.initialized = True
        if self._watch:
            self._watcher.start()

    async def _read_and_validate(self) -> Dict[str, Any]:
        raw = await self.repository.read_config_file()
        needs_write_back = False

        if raw is None:
            self.logger.warning("Config file %s not found. Creating with defaults.", self.repository.config_path)
            raw = copy.deepcopy(DEFAULT_CONFIG)
            needs_write_back = True

        document, errors = validate_document(FullConfiguration, raw)
        if document is None:
            self.logger.warning(
                "Config validation failed, falling back to defaults. Errors: %s",
                errors_to_dicts(errors),
            )
            document, _ = validate_document(FullConfiguration, DEFAULT_CONFIG)
            needs_write_back = True

        self._config = document
        if needs_write_back:
            await self.write(document, suspend_watcher=False)
        return document

    async def reload(self) -> Tuple[bool, bool]:
        """Re-read the file after an external change.

        Returns ``(changed, rtsp_changed)``. Skipped while a write holds the lock.
        """
        if self._write_lock.locked():
            self.logger.debug("Reload skipped: write in progress")
            return False, False

        previous = copy.deepcopy(self._config)
        try:
            current = await self._read_and_validate()
        except ConfigStoreError as e:
            self.logger.error("Failed to reload config: %s", e)
            return False, False

        if current == previous:
            return False, False

        rtsp_changed = previous.get("rtspSources") != current.get("rtspSources")
        self.logger.info("Configuration reloaded from disk (rtsp changed: %s)", rtsp_changed)
        await self.event_bus.publish(
            InternalEvent.CONFIG_RELOADED,
            ConfigChange(config=self.get(), rtsp_changed=rtsp_changed),
        )
        return True, rtsp_changed

    # ------------------------------------------------------------------
    # Writing

    async def write(self, document: Dict[str, Any], *, suspend_watcher: bool = True) -> Dict[str, Any]:
        """Validate and persist ``document`` as the new configuration.

        Raises:
            ConfigValidationError: document does not satisfy the schema
            ConfigWriteInProgressError: another write holds the lock
            ConfigWriteError: the repository failed to persist
        """
        normalized, errors = validate_document(FullConfiguration, document)
        if normalized is None:
            raise ConfigValidationError(errors)

        if self._write_lock.locked():
            raise ConfigWriteInProgressError("Configuration save already in progress.")

        async with self._write_lock:
            resume = suspend_watcher and self._watcher.is_running
            if resume:
                self._watcher.stop()
            try:
                if not await self.repository.write_config_file(normalized):
                    raise ConfigWriteError(f"Could not write {self.repository.config_path}")
                self._config = normalized
            finally:
                if resume:
                    self._watcher.start()
        return copy.deepcopy(normalized)

    def _validate_action_settings(self, document: Dict[str, Any]) -> List[ValidationErrorDetail]:
        if self.action_settings_validator is None:
            return []
        errors: List[ValidationErrorDetail] = []
        for index, binding in enumerate(document.get("gestureConfigs", [])):
            action = binding.get("actionConfig") or {}
            plugin_id = action.get("pluginId")
            if not plugin_id or plugin_id == "none":
                continue
            prefix = f"gestureConfigs.{index}.actionConfig.settings"
            for error in self.action_settings_validator(plugin_id, action.get("settings")):
                error.field = f"{prefix}.{error.field}" if error.field else prefix
                errors.append(error)
        return errors

    async def patch(self, partial: Any) -> PatchResult:
        """Shallow-merge ``partial`` into the document, validate and persist."""
        if not isinstance(partial, dict):
            return PatchResult(success=False, message="Invalid patch data.")

        proposed = {**copy.deepcopy(self._config), **partial}
        document, errors = validate_document(FullConfiguration, proposed)
        if document is not None and "gestureConfigs" in partial:
            errors = self._validate_action_settings(document)
            if errors:
                document = None
        if document is None:
            return PatchResult(
                success=False,
                message="Global config validation failed.",
                validation_errors=errors,
            )

        if document == self._config:
            return PatchResult(success=True, message="No changes detected in global config.")

        rtsp_changed = self._config.get("rtspSources") != document.get("rtspSources")
        try:
            written = await self.write(document)
        except ConfigStoreError as e:
            return PatchResult(success=False, message=f"Config write operation failed: {e}")

        change = ConfigChange(config=written, rtsp_changed=rtsp_changed)
        await self.event_bus.publish(InternalEvent.CONFIG_RELOADED, change)
        await self.event_bus.publish(InternalEvent.CONFIG_PATCHED, change)
        return PatchResult(
            success=True,
            message="Global config updated successfully.",
            rtsp_changed=rtsp_changed,
            updated_config=copy.deepcopy(written),
        )

    async def set_source_roi(self, path_name: str, roi: Any) -> PatchResult:
        """Replace the region of interest of the RTSP source keyed by ``path_name``."""
        roi_doc, errors = validate_document(RoiConfig, roi)
        if roi_doc is None:
            for error in errors:
                error.field = f"roi.{error.field}" if error.field else "roi"
            return PatchResult(success=False, message="Invalid ROI data.", validation_errors=errors)

        document = copy.deepcopy(self._config)
        for source in document.get("rtspSources", []):
            if normalize_name(source.get("name")) == path_name:
                source["roi"] = roi_doc
                break
        else:
            return PatchResult(success=False, message=f"RTSP source '{path_name}' not found.")

        try:
            written = await self.write(document)
        except ConfigValidationError as e:
            return PatchResult(success=False, message="Invalid ROI data.", validation_errors=e.errors)
        except ConfigStoreError as e:
            return PatchResult(success=False, message=f"Config write operation failed: {e}")

        await self.event_bus.publish(
            InternalEvent.CONFIG_RELOADED,
            ConfigChange(config=written, rtsp_changed=False),
        )
        return PatchResult(success=True, message="ROI updated successfully.", updated_config=written)

    async def close(self) -> None:
        self._watcher.stop()
