"""Base Pydantic models with storage serialization."""

import time
from typing import Any, Self

from pydantic import BaseModel as PydanticBaseModel, ConfigDict
from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def now_ms() -> int:
    """Get current epoch time in milliseconds."""
    return int(time.time() * 1000)


class BaseModel(PydanticBaseModel):
    """Base model for funnel entities.

    All funnel models should inherit from this class. Values are plain
    JSON types so a model round-trips through any key-value store.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def to_storage(self) -> dict[str, Any]:
        """Serialize model to a JSON-compatible dict."""
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, item: dict[str, Any]) -> Self:
        """Deserialize a stored dict back to a model instance."""
        return cls.model_validate(item)
