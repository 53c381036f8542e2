"""Progress stores for funnel state persistence."""

from funnelscope.repositories.base import (
    COMPLETED_KEY,
    EVENTS_KEY,
    PROGRESS_KEY,
    FunnelSnapshot,
    KeyValueProgressStore,
    ProgressStore,
)
from funnelscope.repositories.dynamodb import DynamoDBProgressStore
from funnelscope.repositories.file import JsonFileProgressStore
from funnelscope.repositories.memory import InMemoryProgressStore

__all__ = [
    "COMPLETED_KEY",
    "EVENTS_KEY",
    "PROGRESS_KEY",
    "FunnelSnapshot",
    "KeyValueProgressStore",
    "ProgressStore",
    "DynamoDBProgressStore",
    "JsonFileProgressStore",
    "InMemoryProgressStore",
]
