"""Funnel progression notifications.

The analyzer fires a notification every time a user enters a new stage.
Listeners are plain callables receiving ``{"user_progress", "stage"}``;
delivery is best-effort and a failing listener never affects tracking.
"""

import json
import os
from typing import Any, Callable

import boto3
import structlog

from funnelscope.models.progress import FunnelProgress
from funnelscope.models.stage import FunnelStage

logger = structlog.get_logger()

ProgressionListener = Callable[[dict[str, Any]], None]


PROGRESSION_DETAIL_TYPE = "funnel.progression"


class ProgressionNotifier:
    """Fan-out of progression notifications to registered listeners."""

    def __init__(self, listeners: list[ProgressionListener] | None = None):
        self._listeners: list[ProgressionListener] = list(listeners or [])

    def subscribe(self, listener: ProgressionListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def notify(self, user_progress: FunnelProgress, stage: FunnelStage) -> int:
        """Deliver a progression notification.

        Args:
            user_progress: Progress of the user who advanced.
            stage: Stage just entered.

        Returns:
            Number of listeners that accepted the notification.
        """
        payload = {"user_progress": user_progress, "stage": stage}
        delivered = 0

        for listener in list(self._listeners):
            try:
                listener(payload)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Progression listener failed",
                    listener=getattr(listener, "__name__", type(listener).__name__),
                    user_id=user_progress.user_id,
                    stage=stage.id,
                    error=str(e),
                )

        return delivered


def build_progression_detail(user_progress: FunnelProgress, stage: FunnelStage) -> dict[str, Any]:
    """Flatten a progression notification for external analytics sinks."""
    entered_at = user_progress.stage_entered_at.get(stage.id, user_progress.last_activity)
    return {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "user_id": user_progress.user_id,
        "session_id": user_progress.session_id,
        "total_value": user_progress.total_value,
        "time_to_stage": entered_at - user_progress.start_time,
        "device_type": user_progress.device_type,
        "traffic_source": user_progress.traffic_source,
    }


class EventBridgeProgressionPublisher:
    """Listener that forwards progressions to an EventBridge bus.

    Does nothing when no bus is configured, so the same wiring works in
    local development and tests.
    """

    SOURCE = "funnelscope.funnel"

    def __init__(self, event_bus_name: str | None = None, client=None):
        """Initialize publisher.

        Args:
            event_bus_name: Target bus. Defaults to FUNNEL_EVENT_BUS_NAME env var.
            client: Optional pre-built boto3 events client.
        """
        self.event_bus_name = event_bus_name or os.environ.get("FUNNEL_EVENT_BUS_NAME")
        self._client = client

    @property
    def client(self):
        """Get EventBridge client (lazy init)."""
        if self._client is None:
            self._client = boto3.client("events")
        return self._client

    def __call__(self, payload: dict[str, Any]) -> None:
        if not self.event_bus_name:
            logger.debug("No event bus configured, skipping progression publish")
            return

        detail = build_progression_detail(payload["user_progress"], payload["stage"])
        response = self.client.put_events(
            Entries=[
                {
                    "Source": self.SOURCE,
                    "DetailType": PROGRESSION_DETAIL_TYPE,
                    "Detail": json.dumps(detail),
                    "EventBusName": self.event_bus_name,
                }
            ]
        )

        if response.get("FailedEntryCount"):
            logger.warning(
                "EventBridge rejected progression event",
                stage=detail["stage_id"],
                user_id=detail["user_id"],
                entries=response.get("Entries"),
            )
