"""Canonical naming for media paths and gesture lookups."""

import re

_WHITESPACE = re.compile(r"\s+")
_INVALID = re.compile(r"[^a-z0-9_]")
_REPEATED_UNDERSCORE = re.compile(r"_+")

UNNAMED = "unnamed"


def normalize_name(name: object) -> str:
    """Map a display name to the identifier used as a media path key.

    >>> normalize_name("  Front Door Cam! ")
    'front_door_cam'
    """
    if not isinstance(name, str):
        return UNNAMED
    text = _WHITESPACE.sub("_", name.strip().lower())
    text = _INVALID.sub("_", text)
    text = _REPEATED_UNDERSCORE.sub("_", text).strip("_")
    return text or UNNAMED
