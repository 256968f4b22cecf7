"""
Configuration document: schema, file access and the in-memory store.
"""

from .repository import ConfigRepository
from .schemas import ALLOWED_FPS_VALUES, DEFAULT_CONFIG, FullConfiguration
from .store import (
    ConfigStore,
    ConfigStoreError,
    ConfigValidationError,
    ConfigWriteError,
    ConfigWriteInProgressError,
    PatchResult,
)
from .validation import ValidationErrorDetail, validate_document

__all__ = [
    'ConfigRepository',
    'ALLOWED_FPS_VALUES',
    'DEFAULT_CONFIG',
    'FullConfiguration',
    'ConfigStore',
    'ConfigStoreError',
    'ConfigValidationError',
    'ConfigWriteError',
    'ConfigWriteInProgressError',
    'PatchResult',
    'ValidationErrorDetail',
    'validate_document',
]
