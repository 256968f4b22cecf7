"""Discovery and management of user-supplied custom gesture definitions.

Each definition is a JavaScript file in the custom gestures directory whose
``export const metadata = {...}`` block names the gesture. The file stem is
the gesture id.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logging_utils import get_module_logger
from .naming import normalize_name

logger = get_module_logger("CustomGestures")

BUILT_IN_GESTURES = frozenset({
    "OPEN_PALM",
    "CLOSED_FIST",
    "POINTING_UP",
    "THUMB_UP",
    "THUMB_DOWN",
    "VICTORY",
    "ILOVEYOU",
    "NONE",
})

_METADATA_BLOCK = re.compile(r"export\s+const\s+metadata\s*=\s*({[\s\S]*?})\s*;?", re.MULTILINE)
_GESTURE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def _string_property(block: str, key: str) -> Optional[str]:
    match = re.search(rf"""\b{key}["']?\s*:\s*(['"`])(.*?)\1""", block, re.DOTALL)
    return match.group(2).strip() if match else None


@dataclass
class CustomGestureMetadata:
    id: str
    name: str
    file_path: Path
    code_string: str
    type: str = "hand"
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "filePath": str(self.file_path),
            "codeString": self.code_string,
            "type": self.type,
        }
        if self.description is not None:
            result["description"] = self.description
        return result


def _name_key(name: str) -> str:
    return normalize_name(name).upper()


def conflicts_with_built_in(name: str) -> bool:
    return _name_key(name) in BUILT_IN_GESTURES


def parse_metadata(code: str) -> Optional[Dict[str, Optional[str]]]:
    """Read name/description/type from ``export const metadata = {...}``."""
    match = _METADATA_BLOCK.search(code or "")
    if not match:
        return None
    block = match.group(1)
    name = _string_property(block, "name")
    if not name:
        return None
    return {
        "name": name,
        "description": _string_property(block, "description"),
        "type": "pose" if _string_property(block, "type") == "pose" else "hand",
    }


def scan_custom_gestures(directory: Path) -> List[CustomGestureMetadata]:
    definitions: List[CustomGestureMetadata] = []
    if not directory.is_dir():
        return definitions

    seen = set()
    for path in sorted(directory.glob("*.js")):
        try:
            code = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Error reading %s: %s", path, e)
            continue
        metadata = parse_metadata(code)
        if metadata is None:
            logger.warning("Could not parse valid metadata from: %s", path.name)
            continue
        key = _name_key(metadata["name"])
        if conflicts_with_built_in(metadata["name"]) or key in seen:
            logger.warning(
                "Skipping '%s': name %r conflicts with a built-in or existing custom gesture",
                path.name,
                metadata["name"],
            )
            continue
        seen.add(key)
        definitions.append(
            CustomGestureMetadata(
                id=path.stem,
                name=metadata["name"],
                description=metadata["description"],
                type=metadata["type"],
                file_path=path,
                code_string=code,
            )
        )
    return definitions


async def scan_custom_gestures_async(directory: Path) -> List[CustomGestureMetadata]:
    return await asyncio.to_thread(scan_custom_gestures, directory)


# ----------------------------------------------------------------------
# Upload, rename and delete


@dataclass
class GestureFileResult:
    success: bool
    message: Optional[str] = None
    definition: Optional[CustomGestureMetadata] = None


def _embed_metadata(code: str, name: str, description: Optional[str], gesture_type: str) -> str:
    block = json.dumps(
        {"name": name, "description": (description or "").strip(), "type": gesture_type},
        indent=2,
    )
    statement = f"export const metadata = {block};"
    if _METADATA_BLOCK.search(code):
        return _METADATA_BLOCK.sub(lambda _match: statement, code, count=1)
    return f"{statement}\n\n{code}"


def save_custom_gesture(
    directory: Path,
    name: str,
    description: Optional[str],
    gesture_type: str,
    code_string: str,
) -> GestureFileResult:
    """Write a new definition as ``<normalized name>.js`` with its metadata embedded."""
    name = (name or "").strip()
    if not name or not code_string:
        return GestureFileResult(False, "Gesture name and code cannot be empty.")
    if conflicts_with_built_in(name):
        return GestureFileResult(False, f'Name "{name}" conflicts with a built-in gesture.')
    key = _name_key(name)
    if any(_name_key(existing.name) == key for existing in scan_custom_gestures(directory)):
        return GestureFileResult(False, f'A custom gesture with the name "{name}" already exists.')

    gesture_type = "pose" if gesture_type == "pose" else "hand"
    expected = "checkPose" if gesture_type == "pose" else "checkGesture"
    if f"export function {expected}" not in code_string:
        return GestureFileResult(False, f"Code validation failed: Missing 'export function {expected}(...)'.")

    gesture_id = normalize_name(name)
    path = directory / f"{gesture_id}.js"
    if path.exists():
        return GestureFileResult(False, f"A gesture file named {path.name} already exists.")
    code = _embed_metadata(code_string, name, description, gesture_type)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(code, encoding="utf-8")
    except OSError as e:
        return GestureFileResult(False, f"Failed to save gesture file: {e}")

    logger.info("Saved custom gesture '%s' to %s", name, path.name)
    return GestureFileResult(
        True,
        "Gesture saved successfully.",
        CustomGestureMetadata(
            id=gesture_id,
            name=name,
            description=(description or "").strip() or None,
            type=gesture_type,
            file_path=path,
            code_string=code,
        ),
    )


def update_custom_gesture(
    directory: Path,
    gesture_id: str,
    new_name: str,
    new_description: Optional[str],
) -> GestureFileResult:
    """Rename or re-describe an existing definition, keeping its type and code."""
    new_name = (new_name or "").strip()
    if not gesture_id or not _GESTURE_ID.match(gesture_id) or not new_name:
        return GestureFileResult(False, "Gesture ID and new name cannot be empty.")
    if conflicts_with_built_in(new_name):
        return GestureFileResult(False, f'Name "{new_name}" conflicts with a built-in gesture.')
    key = _name_key(new_name)
    if any(
        existing.id != gesture_id and _name_key(existing.name) == key
        for existing in scan_custom_gestures(directory)
    ):
        return GestureFileResult(False, f'A custom gesture with the name "{new_name}" already exists.')

    path = directory / f"{gesture_id}.js"
    try:
        code = path.read_text(encoding="utf-8")
    except OSError as e:
        return GestureFileResult(False, f"Failed to update gesture file: {e}")
    metadata = parse_metadata(code)
    if metadata is None:
        return GestureFileResult(False, f"Could not parse existing metadata from {gesture_id}.js.")

    code = _embed_metadata(code, new_name, new_description, metadata["type"])
    try:
        path.write_text(code, encoding="utf-8")
    except OSError as e:
        return GestureFileResult(False, f"Failed to update gesture file: {e}")

    return GestureFileResult(
        True,
        "Gesture updated successfully.",
        CustomGestureMetadata(
            id=gesture_id,
            name=new_name,
            description=(new_description or "").strip() or None,
            type=metadata["type"],
            file_path=path,
            code_string=code,
        ),
    )


def delete_custom_gesture(directory: Path, gesture_id: str) -> GestureFileResult:
    """Remove a definition file. A file that is already gone counts as deleted."""
    if not gesture_id or not _GESTURE_ID.match(gesture_id):
        return GestureFileResult(False, "Invalid ID for deletion.")
    try:
        (directory / f"{gesture_id}.js").unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        return GestureFileResult(False, f"Failed to delete gesture file: {e}")
    logger.info("Deleted custom gesture %s", gesture_id)
    return GestureFileResult(True, "Gesture deleted successfully.")


async def save_custom_gesture_async(
    directory: Path,
    name: str,
    description: Optional[str],
    gesture_type: str,
    code_string: str,
) -> GestureFileResult:
    return await asyncio.to_thread(save_custom_gesture, directory, name, description, gesture_type, code_string)


async def update_custom_gesture_async(
    directory: Path,
    gesture_id: str,
    new_name: str,
    new_description: Optional[str],
) -> GestureFileResult:
    return await asyncio.to_thread(update_custom_gesture, directory, gesture_id, new_name, new_description)


async def delete_custom_gesture_async(directory: Path, gesture_id: str) -> GestureFileResult:
    return await asyncio.to_thread(delete_custom_gesture, directory, gesture_id)
