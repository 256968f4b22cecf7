"""JSON file persistence for the configuration document and plugin configs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import aiofiles

from ..logging_utils import get_module_logger


class ConfigRepository:
    """Reads and writes JSON documents.

    Reads return ``None`` when the file is missing or unparseable and writes
    return ``False`` on failure; errors other than a missing file are logged.
    """

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self.logger = get_module_logger("ConfigRepository")

    async def read_config_file(self) -> Optional[Any]:
        return await self.read_json(self.config_path)

    async def write_config_file(self, data: Any) -> bool:
        return await self.write_json(self.config_path, data)

    async def read_json(self, path: Path) -> Optional[Any]:
        path = Path(path)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
            return json.loads(content)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.logger.error("Error reading or parsing %s: %s", path, e)
            return None

    async def write_json(self, path: Path, data: Any) -> bool:
        path = Path(path)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2))
            return True
        except (OSError, TypeError, ValueError) as e:
            self.logger.error("Error writing %s: %s", path, e)
            return False
