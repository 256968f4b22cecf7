"""Filesystem side of the plugin system: discovery, manifests, locales, imports."""

import asyncio
import importlib.util
import inspect
import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Type

import aiofiles
from pydantic import ValidationError

from ..logging_utils import get_module_logger
from ..paths import PLUGIN_MANIFEST_FILENAME
from .base import BasePlugin
from .manifest import PluginManifest

logger = get_module_logger("PluginLoader")

SKIPPED_DIRECTORIES = frozenset({"common", "plugin-template", "__pycache__"})
_MODULE_NAME_INVALID = re.compile(r"[^0-9a-zA-Z_]")


class PluginLoadError(Exception):
    """A plugin's manifest or code could not be loaded."""


def is_plugin_directory(path: Path) -> bool:
    name = path.name
    if name.startswith(("_", ".")) or name in SKIPPED_DIRECTORIES:
        return False
    return path.is_dir()


def read_manifest(plugin_dir: Path) -> PluginManifest:
    """Parse ``manifest.json`` in ``plugin_dir``; the directory name is the plugin ID."""
    manifest_path = plugin_dir / PLUGIN_MANIFEST_FILENAME
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise PluginLoadError(f"Cannot read {manifest_path}: {e}") from e
    if not isinstance(data, dict):
        raise PluginLoadError(f"{manifest_path} is not a JSON object")

    declared_id = data.get("id")
    if declared_id != plugin_dir.name:
        logger.warning(
            "Manifest ID (%r) does not match directory (%r). Using directory name.",
            declared_id,
            plugin_dir.name,
        )
        data["id"] = plugin_dir.name
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        raise PluginLoadError(f"Invalid manifest in {plugin_dir.name}: {e}") from e


async def read_manifest_async(plugin_dir: Path) -> PluginManifest:
    return await asyncio.to_thread(read_manifest, plugin_dir)


def discover_manifests(plugins_dir: Path) -> List[Tuple[Path, PluginManifest]]:
    """Return ``(directory, manifest)`` for every loadable plugin directory."""
    found: List[Tuple[Path, PluginManifest]] = []
    if not plugins_dir.is_dir():
        logger.info("Plugins directory %s does not exist", plugins_dir)
        return found

    for plugin_dir in sorted(plugins_dir.iterdir()):
        if not is_plugin_directory(plugin_dir):
            continue
        try:
            found.append((plugin_dir, read_manifest(plugin_dir)))
        except PluginLoadError as e:
            logger.error("Failed to load manifest from '%s': %s", plugin_dir.name, e)
    return found


async def discover_manifests_async(plugins_dir: Path) -> List[Tuple[Path, PluginManifest]]:
    return await asyncio.to_thread(discover_manifests, plugins_dir)


def read_locales(plugin_dir: Path) -> Optional[Dict[str, Dict[str, str]]]:
    """Collect ``locales/<lang>.json`` files, or None when there are none."""
    locales_dir = plugin_dir / "locales"
    if not locales_dir.is_dir():
        return None
    locales: Dict[str, Dict[str, str]] = {}
    for locale_file in sorted(locales_dir.glob("*.json")):
        try:
            locales[locale_file.stem] = json.loads(locale_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Error reading locale %s for plugin %s: %s", locale_file.name, plugin_dir.name, e)
    return locales or None


async def read_locales_async(plugin_dir: Path) -> Optional[Dict[str, Dict[str, str]]]:
    return await asyncio.to_thread(read_locales, plugin_dir)


def _find_plugin_class(module) -> Optional[Type[BasePlugin]]:
    candidate = getattr(module, "Plugin", None)
    if inspect.isclass(candidate) and issubclass(candidate, BasePlugin):
        return candidate
    for _name, obj in inspect.getmembers(module, inspect.isclass):
        if issubclass(obj, BasePlugin) and obj is not BasePlugin and obj.__module__ == module.__name__:
            return obj
    return None


def import_plugin_class(plugin_dir: Path, entry: str) -> Type[BasePlugin]:
    """Import ``entry`` (relative to ``plugin_dir``) and return its plugin class."""
    entry_path = (plugin_dir / entry).resolve()
    if plugin_dir.resolve() not in entry_path.parents:
        raise PluginLoadError(f"Backend entry {entry!r} escapes the plugin directory")
    if not entry_path.is_file():
        raise PluginLoadError(f"Backend entry {entry_path} not found")

    module_name = "gesturevision_plugin_" + _MODULE_NAME_INVALID.sub("_", plugin_dir.name)
    spec = importlib.util.spec_from_file_location(module_name, entry_path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Unable to create import spec for {entry_path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise PluginLoadError(f"Error importing {entry_path}: {e}") from e

    plugin_class = _find_plugin_class(module)
    if plugin_class is None:
        raise PluginLoadError(f"{entry_path} does not define a BasePlugin subclass")
    return plugin_class


async def load_disabled_ids(path: Path) -> Set[str]:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
    except FileNotFoundError:
        return set()
    except (OSError, ValueError) as e:
        logger.error("Error reading %s: %s", path.name, e)
        return set()
    return {str(item) for item in data} if isinstance(data, list) else set()


async def save_disabled_ids(path: Path, disabled: Set[str]) -> bool:
    try:
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(sorted(disabled), indent=2))
        return True
    except OSError as e:
        logger.error("Error saving %s: %s", path.name, e)
        return False
