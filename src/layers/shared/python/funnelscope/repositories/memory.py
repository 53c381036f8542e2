"""In-process progress store.

Behaves like browser local storage: string values per key and an
optional byte quota that rejects oversized writes.
"""

from funnelscope.repositories.base import KeyValueProgressStore
from funnelscope.utils.exceptions import StorageError


class InMemoryProgressStore(KeyValueProgressStore):
    """Progress store backed by a dict of JSON strings."""

    def __init__(self, quota_bytes: int | None = None):
        """Initialize store.

        Args:
            quota_bytes: Maximum total payload size. None means unlimited.
        """
        super().__init__()
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}

    def _read(self, key: str) -> str | None:
        return self._items.get(key)

    def _write(self, key: str, payload: str) -> None:
        if self.quota_bytes is not None:
            others = sum(len(v.encode("utf-8")) for k, v in self._items.items() if k != key)
            if others + len(payload.encode("utf-8")) > self.quota_bytes:
                raise StorageError("Storage quota exceeded", key=key)
        self._items[key] = payload

    def _delete(self, key: str) -> None:
        self._items.pop(key, None)

    def raw(self, key: str) -> str | None:
        """Peek at a raw stored payload."""
        return self._items.get(key)
