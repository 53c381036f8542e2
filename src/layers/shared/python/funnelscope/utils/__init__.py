"""Utility functions and helpers."""

from funnelscope.utils.responses import accepted, error, no_content, success, text, validation_error
from funnelscope.utils.exceptions import (
    ConfigurationError,
    FunnelscopeError,
    StorageError,
    ValidationError,
    VersionConflictError,
)

__all__ = [
    # Response helpers
    "accepted",
    "error",
    "no_content",
    "success",
    "text",
    "validation_error",
    # Exceptions
    "ConfigurationError",
    "FunnelscopeError",
    "StorageError",
    "ValidationError",
    "VersionConflictError",
]
