"""Allow ``python -m gesturevision`` to launch the control plane."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from pathlib import Path
from typing import Optional

from gesturevision.app import ControlPlane
from gesturevision.core import paths
from gesturevision.core.logging_config import configure_logging
from gesturevision.core.settings import ServerSettings

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Value must be an integer") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("Value must be positive")
    return number


def build_parser(defaults: ServerSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GestureVision control plane")
    parser.add_argument("--host", default=defaults.host, help="Interface to bind the HTTP/WebSocket server to")
    parser.add_argument("--port", type=positive_int, default=defaults.port, help="Port to bind the HTTP/WebSocket server to")
    parser.add_argument("--config", type=Path, default=defaults.config_path, help="Path of the configuration document")
    parser.add_argument("--plugins-dir", type=Path, default=defaults.plugins_dir, help="Directory holding installed plugins")
    parser.add_argument(
        "--custom-gestures-dir",
        type=Path,
        default=defaults.custom_gestures_dir,
        help="Directory scanned for custom gesture definitions",
    )
    parser.add_argument(
        "--mtx-api-address",
        default=defaults.mtx_api_address,
        help="host:port of the MediaMTX control API",
    )
    parser.add_argument(
        "--public-host",
        default=defaults.public_host,
        help="Hostname the media server uses to reach this process",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=defaults.log_level.lower() if defaults.log_level.lower() in LOG_LEVELS else "info",
        help="Logging verbosity",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=f"Optional rotating log file (e.g. {paths.MASTER_LOG_FILE})",
    )
    return parser


def settings_from_args(argv: Optional[list[str]] = None) -> ServerSettings:
    defaults = ServerSettings.from_env()
    args = build_parser(defaults).parse_args(argv)
    return ServerSettings(
        host=args.host,
        port=args.port,
        config_path=args.config,
        plugins_dir=args.plugins_dir,
        custom_gestures_dir=args.custom_gestures_dir,
        mtx_api_address=args.mtx_api_address,
        public_host=args.public_host,
        log_level=args.log_level,
        log_file=args.log_file,
    )


async def main(argv: Optional[list[str]] = None) -> int:
    settings = settings_from_args(argv)
    configure_logging(settings.log_level, log_file=settings.log_file)

    control_plane = ControlPlane(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, control_plane.request_shutdown)

    await control_plane.run()
    return 0


def run(argv: Optional[list[str]] = None) -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main(argv)))
    except KeyboardInterrupt:
        print("\nInterrupted")


if __name__ == "__main__":
    run()
