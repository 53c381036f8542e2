"""Funnel event model.

Events are emitted by page-view trackers, form handlers and the chat
widget. Identity fields are mandatory; everything else is best-effort
and silently dropped when malformed.
"""

from typing import Any

from pydantic import Field, field_validator

from funnelscope.models.base import BaseModel, generate_ulid


class FunnelEvent(BaseModel):
    """A single timestamped user interaction."""

    event_name: str = Field(..., min_length=1, description="Interaction name, e.g. page-view")
    timestamp: int = Field(..., ge=0, description="Epoch milliseconds")
    user_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    page_url: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    value: float | None = None
    currency: str | None = None
    event_id: str = Field(default_factory=generate_ulid)

    @field_validator("event_name", "user_id", "session_id", mode="before")
    @classmethod
    def strip_identity(cls, v: Any) -> Any:
        """Strip whitespace so blank identity fields are rejected."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def reject_bool_timestamp(cls, v: Any) -> Any:
        """Booleans are ints to Python but never valid timestamps."""
        if isinstance(v, bool):
            raise ValueError("timestamp must be epoch milliseconds")
        if isinstance(v, float) and v.is_integer():
            return int(v)
        return v

    @field_validator("page_url", mode="before")
    @classmethod
    def coerce_page_url(cls, v: Any) -> str:
        """Treat a missing or non-string URL as empty."""
        return v if isinstance(v, str) else ""

    @field_validator("metadata", mode="before")
    @classmethod
    def coerce_metadata(cls, v: Any) -> dict[str, Any]:
        """Treat non-dict metadata as absent."""
        return v if isinstance(v, dict) else {}

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> float | None:
        """Treat non-numeric values as absent."""
        if v is None or isinstance(v, bool):
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None

    @field_validator("currency", mode="before")
    @classmethod
    def coerce_currency(cls, v: Any) -> str | None:
        """Normalize currency codes; drop anything that is not a string."""
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip().upper()

    @field_validator("event_id", mode="before")
    @classmethod
    def default_event_id(cls, v: Any) -> str:
        """Generate an id when the producer did not send one."""
        if not isinstance(v, str) or not v:
            return generate_ulid()
        return v

    def metadata_str(self, key: str) -> str | None:
        """Get a string metadata value, or None."""
        value = self.metadata.get(key)
        return value if isinstance(value, str) and value else None
