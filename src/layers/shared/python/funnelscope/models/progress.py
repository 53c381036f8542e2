"""Per-user funnel progress model."""

from enum import Enum

from pydantic import Field

from funnelscope.models.base import BaseModel
from funnelscope.models.event import FunnelEvent


class DeviceType(str, Enum):
    """Device class derived from the user agent."""

    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


class FunnelProgress(BaseModel):
    """Journey of one user through the funnel.

    Created on the user's first event, mutated on every later event, and
    moved to completed history once the terminal stage is reached or the
    user goes idle.
    """

    user_id: str
    session_id: str
    start_time: int = Field(..., description="Epoch ms of the first event")
    current_stage: str | None = Field(None, description="Most recently entered stage")
    completed_stages: list[str] = Field(default_factory=list)
    abandoned_at: str | None = None
    total_value: float = 0.0
    events: list[FunnelEvent] = Field(default_factory=list)
    device_type: DeviceType = Field(DeviceType.UNKNOWN, validate_default=True)
    traffic_source: str = "direct"
    last_activity: int = Field(..., description="Epoch ms of the latest event")

    # Timestamp of the event that caused entry into each stage
    stage_entered_at: dict[str, int] = Field(default_factory=dict)

    # Bumped by the store on every successful write; 0 means never persisted
    version: int = Field(default=0, ge=0, description="Optimistic locking version")

    @property
    def is_abandoned(self) -> bool:
        """Whether the journey ended through inactivity."""
        return self.abandoned_at is not None

    def has_completed(self, stage_id: str) -> bool:
        """Check whether a stage has been reached."""
        return stage_id in self.completed_stages

    def complete_stage(self, stage_id: str, timestamp: int, goal_value: float | None = None) -> bool:
        """Record entry into a stage.

        Returns False without changing anything when the stage was already
        completed, so redundant triggers never add value twice.
        """
        if stage_id in self.completed_stages:
            return False
        self.completed_stages.append(stage_id)
        self.current_stage = stage_id
        self.total_value += goal_value or 0
        self.stage_entered_at[stage_id] = timestamp
        return True

    def idle_for(self, now: int) -> int:
        """Milliseconds since the last event."""
        return now - self.last_activity
