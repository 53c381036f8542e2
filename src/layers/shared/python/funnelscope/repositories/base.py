"""Base progress store for funnel state persistence.

Stores are shared by every analyzer instance of a funnel (warm Lambda
containers, the sweep worker, a dev server), so writes are per user and
guarded by the record's version. A writer holding a stale copy gets a
VersionConflictError instead of silently overwriting newer state.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import Field, ValidationError as PydanticValidationError

from funnelscope.models.base import BaseModel
from funnelscope.models.event import FunnelEvent
from funnelscope.models.progress import FunnelProgress
from funnelscope.utils.exceptions import StorageError, VersionConflictError

logger = structlog.get_logger()

PROGRESS_KEY = "funnel-progress"
EVENTS_KEY = "funnel-events"
COMPLETED_KEY = "completed-funnels"

STORAGE_KEYS = (PROGRESS_KEY, EVENTS_KEY, COMPLETED_KEY)


class FunnelSnapshot(BaseModel):
    """Everything a store persists for one funnel."""

    progress: dict[str, FunnelProgress] = Field(default_factory=dict)
    events: list[FunnelEvent] = Field(default_factory=list)
    completed: list[FunnelProgress] = Field(default_factory=list)


def _newest(items: list, limit: int | None) -> list:
    if limit is None:
        return list(items)
    return items[-limit:] if limit > 0 else []


class ProgressStore(ABC):
    """Persistence port for the funnel analyzer.

    Any failure must surface as StorageError. Writes of a progress record
    succeed only when the stored version still equals ``progress.version``
    (an absent record counts as version 0); on success the store bumps
    ``progress.version`` in place.
    """

    @abstractmethod
    def get_progress(self, user_id: str) -> FunnelProgress | None:
        """Get a user's active journey, or None."""

    @abstractmethod
    def get_completed(self, user_id: str) -> FunnelProgress | None:
        """Get a user's finished journey, or None."""

    @abstractmethod
    def save_progress(self, progress: FunnelProgress) -> None:
        """Write an active journey.

        Raises:
            VersionConflictError: If the stored record changed, or the user
                already finished.
        """

    @abstractmethod
    def finish_progress(self, progress: FunnelProgress, max_completed: int | None = None) -> None:
        """Move a journey from active to completed history.

        Raises:
            VersionConflictError: If the stored record changed, or the user
                already finished.
        """

    @abstractmethod
    def append_event(self, event: FunnelEvent, max_events: int | None = None) -> None:
        """Append to the funnel event log."""

    @abstractmethod
    def load(self, max_events: int | None = None, max_completed: int | None = None) -> FunnelSnapshot:
        """Load the persisted funnel state, newest history kept.

        Raises:
            StorageError: If state cannot be read or decoded.
        """

    @abstractmethod
    def clear(self) -> None:
        """Remove all persisted funnel state."""


class KeyValueProgressStore(ProgressStore):
    """Store laid out as three JSON payloads, like browser local storage.

    Subclasses provide ``_read``/``_write``/``_delete`` for a single key.
    Read-modify-write cycles are serialized by a process-wide lock, so one
    store instance must be shared by every analyzer in the process.
    """

    def __init__(self):
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self, key: str) -> str | None:
        """Return the raw payload stored under key, or None."""

    @abstractmethod
    def _write(self, key: str, payload: str) -> None:
        """Store a raw payload under key."""

    @abstractmethod
    def _delete(self, key: str) -> None:
        """Remove key if present."""

    def _decode(self, key: str, default: Any, discard_corrupt: bool = False) -> Any:
        """Read and decode one key.

        Args:
            key: Storage key.
            default: Empty value returned for a missing key; also the expected type.
            discard_corrupt: Return default for an undecodable payload instead
                of raising. Used right before the key is rewritten.
        """
        raw = self._read(key)
        if not raw:
            return default
        try:
            data = json.loads(raw)
            problem = None if isinstance(data, type(default)) else "unexpected type"
        except json.JSONDecodeError as e:
            problem = str(e)

        if problem is None:
            return data
        if discard_corrupt:
            logger.warning("Discarding corrupt funnel state", key=key, error=problem)
            return default
        raise StorageError("Persisted funnel state is corrupt", key=key, original_error=problem)

    def _parse_progress(self, key: str, data: dict[str, Any]) -> FunnelProgress:
        try:
            return FunnelProgress.from_storage(data)
        except PydanticValidationError as e:
            raise StorageError("Persisted funnel state is corrupt", key=key, original_error=str(e)) from e

    @staticmethod
    def _stored_version(active: dict[str, Any], user_id: str) -> int:
        record = active.get(user_id)
        if not isinstance(record, dict):
            return 0
        return record.get("version", 0)

    def _check_version(self, active: dict, completed: list, progress: FunnelProgress) -> None:
        if self._stored_version(active, progress.user_id) != progress.version:
            raise VersionConflictError(key=PROGRESS_KEY)
        if any(isinstance(p, dict) and p.get("user_id") == progress.user_id for p in completed):
            raise VersionConflictError("Funnel journey already finished", key=COMPLETED_KEY)

    def get_progress(self, user_id: str) -> FunnelProgress | None:
        with self._lock:
            record = self._decode(PROGRESS_KEY, {}).get(user_id)
        return self._parse_progress(PROGRESS_KEY, record) if record else None

    def get_completed(self, user_id: str) -> FunnelProgress | None:
        with self._lock:
            completed = self._decode(COMPLETED_KEY, [])
        for record in reversed(completed):
            if isinstance(record, dict) and record.get("user_id") == user_id:
                return self._parse_progress(COMPLETED_KEY, record)
        return None

    def save_progress(self, progress: FunnelProgress) -> None:
        with self._lock:
            active = self._decode(PROGRESS_KEY, {}, discard_corrupt=True)
            completed = self._decode(COMPLETED_KEY, [], discard_corrupt=True) if progress.version == 0 else []
            self._check_version(active, completed, progress)

            progress.version += 1
            active[progress.user_id] = progress.to_storage()
            try:
                self._write(PROGRESS_KEY, json.dumps(active))
            except StorageError:
                progress.version -= 1
                raise

    def finish_progress(self, progress: FunnelProgress, max_completed: int | None = None) -> None:
        with self._lock:
            active = self._decode(PROGRESS_KEY, {}, discard_corrupt=True)
            completed = self._decode(COMPLETED_KEY, [], discard_corrupt=True)
            self._check_version(active, completed, progress)

            progress.version += 1
            completed.append(progress.to_storage())
            active.pop(progress.user_id, None)
            try:
                # Completed first: a journey in both places reads as finished
                self._write(COMPLETED_KEY, json.dumps(_newest(completed, max_completed)))
                self._write(PROGRESS_KEY, json.dumps(active))
            except StorageError:
                progress.version -= 1
                raise

    def append_event(self, event: FunnelEvent, max_events: int | None = None) -> None:
        with self._lock:
            events = self._decode(EVENTS_KEY, [], discard_corrupt=True)
            events.append(event.to_storage())
            self._write(EVENTS_KEY, json.dumps(_newest(events, max_events)))

    def load(self, max_events: int | None = None, max_completed: int | None = None) -> FunnelSnapshot:
        """Load the persisted funnel state.

        Missing keys load as empty collections. A journey recorded both as
        active and completed loads as completed.
        """
        with self._lock:
            active = self._decode(PROGRESS_KEY, {})
            events = self._decode(EVENTS_KEY, [])
            completed = self._decode(COMPLETED_KEY, [])

        try:
            snapshot = FunnelSnapshot.model_validate(
                {
                    "progress": active,
                    "events": _newest(events, max_events),
                    "completed": _newest(completed, max_completed),
                }
            )
        except PydanticValidationError as e:
            raise StorageError("Persisted funnel state is corrupt", original_error=str(e)) from e

        finished = {p.user_id for p in snapshot.completed}
        snapshot.progress = {u: p for u, p in snapshot.progress.items() if u not in finished}
        return snapshot

    def clear(self) -> None:
        with self._lock:
            for key in STORAGE_KEYS:
                self._delete(key)
