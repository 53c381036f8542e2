"""Custom exception classes for funnelscope."""


class FunnelscopeError(Exception):
    """Base exception for all funnelscope errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 500,
        details: dict | None = None,
    ):
        """Initialize FunnelscopeError.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            status_code: HTTP status code for API responses.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API response."""
        result = {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(FunnelscopeError):
    """Raised when an inbound event or request fails validation."""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: list[dict] | None = None,
    ):
        """Initialize ValidationError.

        Args:
            message: Error message.
            errors: List of validation errors with field and message.
        """
        self.errors = errors or []
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=400,
            details={"errors": self.errors},
        )

    @classmethod
    def from_pydantic(cls, exc: Exception) -> "ValidationError":
        """Create ValidationError from Pydantic ValidationError."""
        errors = []
        if hasattr(exc, "errors"):
            for error in exc.errors():
                errors.append(
                    {
                        "field": ".".join(str(loc) for loc in error.get("loc", [])),
                        "message": error.get("msg", "Invalid value"),
                        "type": error.get("type", "unknown"),
                    }
                )
        return cls(message="Validation failed", errors=errors)


class ConfigurationError(FunnelscopeError):
    """Raised when the funnel stage configuration is unusable."""

    def __init__(self, message: str, stage_id: str | None = None):
        """Initialize ConfigurationError.

        Args:
            message: Error message.
            stage_id: Offending stage, when one can be named.
        """
        self.stage_id = stage_id
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            status_code=500,
            details={"stage_id": stage_id} if stage_id else None,
        )


class StorageError(FunnelscopeError):
    """Raised by progress stores when a read or write fails."""

    def __init__(
        self,
        message: str = "Progress store operation failed",
        key: str | None = None,
        original_error: str | None = None,
    ):
        """Initialize StorageError."""
        details = {}
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = original_error

        super().__init__(
            message=message,
            error_code="STORAGE_ERROR",
            status_code=503,
            details=details if details else None,
        )


class VersionConflictError(StorageError):
    """Raised when a stored record changed since it was read (optimistic lock failure)."""

    def __init__(self, message: str = "Funnel progress was modified by another writer", key: str | None = None):
        """Initialize VersionConflictError."""
        super().__init__(message=message, key=key)
        self.error_code = "CONFLICT"
        self.status_code = 409
