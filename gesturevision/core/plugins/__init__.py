"""
Plugin system.

Plugins live in one directory each under the plugins directory and describe
themselves with a ``manifest.json``. Enabled plugins are imported from their
``backendEntry`` Python file; disabled ones are represented by a no-op
:class:`BasePlugin` without importing any plugin code.
"""

from .base import ActionDetails, ActionHandler, ActionResult, BasePlugin, PluginContext
from .loader import PluginLoadError
from .manifest import PluginCapabilities, PluginManifest
from .registry import PluginInstallError, PluginRegistry

__all__ = [
    'ActionDetails',
    'ActionHandler',
    'ActionResult',
    'BasePlugin',
    'PluginContext',
    'PluginLoadError',
    'PluginCapabilities',
    'PluginManifest',
    'PluginInstallError',
    'PluginRegistry',
]
