"""Conversion of pydantic validation failures into field-level error details."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

# Tags pydantic inserts into error locations for tagged unions
_UNION_TAGS = frozenset({"GestureBinding", "PoseBinding"})
_VALUE_ERROR_PREFIXES = ("Value error, ", "Assertion failed, ")


@dataclass
class ValidationErrorDetail:
    field: str
    message_key: str
    code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "messageKey": self.message_key,
            "details": {"code": self.code},
        }


def _field_path(loc: Iterable[Any], prefix: Optional[str] = None) -> str:
    parts = [str(part) for part in loc if part not in _UNION_TAGS]
    if prefix:
        parts.insert(0, prefix)
    return ".".join(parts)


def _message(raw: str) -> str:
    for marker in _VALUE_ERROR_PREFIXES:
        if raw.startswith(marker):
            return raw[len(marker):]
    return raw


def errors_from_exception(
    exc: ValidationError,
    *,
    prefix: Optional[str] = None,
) -> List[ValidationErrorDetail]:
    return [
        ValidationErrorDetail(
            field=_field_path(error.get("loc", ()), prefix),
            message_key=_message(error.get("msg", "")),
            code=error.get("type", "invalid"),
        )
        for error in exc.errors()
    ]


def dump_model(model: BaseModel, *, exclude_unset: bool = True) -> Dict[str, Any]:
    """Serialize a validated model back to its camelCase JSON shape."""
    return model.model_dump(mode="json", by_alias=True, exclude_unset=exclude_unset)


def validate_document(
    schema: Type[BaseModel],
    data: Any,
    *,
    exclude_unset: bool = True,
) -> Tuple[Optional[Dict[str, Any]], List[ValidationErrorDetail]]:
    """Validate ``data`` against ``schema``.

    Returns ``(normalized, [])`` on success and ``(None, errors)`` otherwise.
    The normalized document keeps only the keys the schema knows about.
    """
    try:
        model = schema.model_validate(data)
    except ValidationError as exc:
        return None, errors_from_exception(exc)
    return dump_model(model, exclude_unset=exclude_unset), []


def errors_to_dicts(errors: Iterable[ValidationErrorDetail]) -> List[Dict[str, Any]]:
    return [error.to_dict() for error in errors]
