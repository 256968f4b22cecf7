"""Process-level settings resolved from the environment and CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import paths

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9001
DEFAULT_MTX_API_ADDRESS = "0.0.0.0:9997"
DEFAULT_PUBLIC_HOST = "gesturevision"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class ServerSettings:
    """Everything the composition root needs to start the control plane.

    Attributes:
        host: Interface the HTTP/WebSocket server binds to.
        port: Port the HTTP/WebSocket server binds to.
        config_path: Location of the configuration document.
        plugins_dir: Directory holding one subdirectory per plugin.
        custom_gestures_dir: Directory scanned for custom gesture definitions.
        mtx_api_address: ``host:port`` of the MediaMTX control API.
        public_host: Hostname the media server uses to reach this process.
        log_level: Root logging level name.
        log_file: Optional rotating log file.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    config_path: Path = field(default_factory=lambda: paths.CONFIG_PATH)
    plugins_dir: Path = field(default_factory=lambda: paths.PLUGINS_DIR)
    custom_gestures_dir: Path = field(default_factory=lambda: paths.CUSTOM_GESTURES_DIR)
    mtx_api_address: str = DEFAULT_MTX_API_ADDRESS
    public_host: str = DEFAULT_PUBLIC_HOST
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def mtx_api_base_url(self) -> str:
        address = self.mtx_api_address
        if address.startswith(("http://", "https://")):
            return address.rstrip("/")
        # MediaMTX accepts ":9997" as "all interfaces"
        if address.startswith(":"):
            address = f"{DEFAULT_HOST}{address}"
        return f"http://{address}"

    @property
    def webhook_base_url(self) -> str:
        return f"http://{self.public_host}:{self.port}"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            host=os.environ.get("GESTUREVISION_HOST", DEFAULT_HOST),
            port=_env_int("GESTUREVISION_PORT", DEFAULT_PORT),
            mtx_api_address=os.environ.get("MTX_APIADDRESS", DEFAULT_MTX_API_ADDRESS),
            public_host=os.environ.get("GESTUREVISION_PUBLIC_HOST", DEFAULT_PUBLIC_HOST),
            log_level=os.environ.get("GESTUREVISION_LOG_LEVEL", "INFO"),
        )
