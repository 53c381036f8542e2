"""JSON-file progress store for single-process deployments."""

import os
import tempfile
from pathlib import Path

import structlog

from funnelscope.repositories.base import KeyValueProgressStore
from funnelscope.utils.exceptions import StorageError

logger = structlog.get_logger()


class JsonFileProgressStore(KeyValueProgressStore):
    """Stores each funnel key as ``<directory>/<key>.json``.

    Writes go to a temporary file in the same directory and are moved into
    place, so readers never observe a half-written payload.
    """

    def __init__(self, directory: str | Path):
        """Initialize store.

        Args:
            directory: Directory holding the JSON files. Created on first write.
        """
        super().__init__()
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError("Failed to read funnel state", key=key, original_error=str(e)) from e

    def _write(self, key: str, payload: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, self._path(key))
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError("Failed to write funnel state", key=key, original_error=str(e)) from e

    def _delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete funnel state file", key=key, error=str(e))
            raise StorageError("Failed to delete funnel state", key=key, original_error=str(e)) from e
