"""Plugin manifest model."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class PluginCapabilities(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    has_global_settings: bool = Field(default=False, alias="hasGlobalSettings")
    provides_actions: bool = Field(default=False, alias="providesActions")
    provides_tab: bool = Field(default=False, alias="providesTab")
    provides_ui_contribution: bool = Field(default=False, alias="providesUIContribution")


class PluginManifest(BaseModel):
    """Contents of a plugin's ``manifest.json``.

    Keys this process does not interpret (frontend entry points, icons and
    so on) are kept and passed through to clients.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    version: str = "0.0.0"
    description: str = ""
    backend_entry: Optional[str] = Field(default=None, alias="backendEntry")
    global_config_file_name: Optional[str] = Field(default=None, alias="globalConfigFileName")
    capabilities: PluginCapabilities = Field(default_factory=PluginCapabilities)

    @property
    def has_global_settings(self) -> bool:
        return bool(self.capabilities.has_global_settings and self.global_config_file_name)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
