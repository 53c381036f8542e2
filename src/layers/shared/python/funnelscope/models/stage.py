"""Funnel stage configuration models.

A funnel is an ordered list of stages. Order defines the "next stage"
relationship used for conversion rates; entry into a stage is driven by
its triggers, preconditions and time window.
"""

import json
from pathlib import Path
from typing import Any

from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from funnelscope.models.base import BaseModel
from funnelscope.utils.exceptions import ConfigurationError

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class FunnelStage(BaseModel):
    """A single step of the conversion journey."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique stage identifier")
    name: str = Field(..., min_length=1)
    description: str = ""
    triggers: list[str] = Field(default_factory=list, description="Event names that enter this stage")
    required_events: list[str] | None = Field(
        None, description="Stage ids that must already be completed"
    )
    goal_value: float | None = Field(None, ge=0, description="Value added when the stage is reached")
    time_window: int | None = Field(
        None, gt=0, description="Milliseconds from funnel start within which triggers count"
    )

    @field_validator("triggers")
    @classmethod
    def strip_triggers(cls, v: list[str]) -> list[str]:
        """Drop blank trigger names."""
        return [t.strip() for t in v if t and t.strip()]

    def is_triggered_by(self, event_name: str) -> bool:
        """Check whether an event name is one of this stage's triggers."""
        return event_name in self.triggers

    def preconditions_met(self, completed_stages: list[str]) -> bool:
        """Check that every required stage is already completed."""
        if not self.required_events:
            return True
        return all(stage_id in completed_stages for stage_id in self.required_events)

    def within_time_window(self, start_time: int, event_timestamp: int) -> bool:
        """Check that an event falls inside the stage's window."""
        if self.time_window is None:
            return True
        return event_timestamp - start_time <= self.time_window


class FunnelConfig(BaseModel):
    """Ordered, validated stage configuration.

    Raises ConfigurationError on duplicate ids or on preconditions that
    name stages which do not exist, since such a stage could never be
    entered.
    """

    model_config = ConfigDict(frozen=True)

    stages: list[FunnelStage]

    @model_validator(mode="after")
    def validate_stage_graph(self) -> "FunnelConfig":
        """Validate stage ids and precondition references."""
        if not self.stages:
            raise ConfigurationError("Funnel configuration must define at least one stage")

        seen: set[str] = set()
        for stage in self.stages:
            if stage.id in seen:
                raise ConfigurationError(f"Duplicate stage id '{stage.id}'", stage_id=stage.id)
            seen.add(stage.id)

        for stage in self.stages:
            for required in stage.required_events or []:
                if required == stage.id:
                    raise ConfigurationError(
                        f"Stage '{stage.id}' cannot require itself", stage_id=stage.id
                    )
                if required not in seen:
                    raise ConfigurationError(
                        f"Stage '{stage.id}' requires unknown stage '{required}'",
                        stage_id=stage.id,
                    )
        return self

    @classmethod
    def from_stages(cls, stages: list[FunnelStage | dict[str, Any]]) -> "FunnelConfig":
        """Build a config from stage models or raw dicts."""
        try:
            return cls(stages=stages)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid funnel stage configuration: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "FunnelConfig":
        """Load stages from a JSON file.

        The file holds either a list of stages or an object with a
        ``stages`` list.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read funnel configuration from {path}: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("stages")
        if not isinstance(raw, list):
            raise ConfigurationError(f"Funnel configuration in {path} must be a list of stages")
        return cls.from_stages(raw)

    @property
    def stage_ids(self) -> list[str]:
        """Stage ids in funnel order."""
        return [stage.id for stage in self.stages]

    @property
    def first_stage(self) -> FunnelStage:
        """Entry stage of the funnel."""
        return self.stages[0]

    @property
    def terminal_stage(self) -> FunnelStage:
        """Last stage; reaching it completes the funnel."""
        return self.stages[-1]

    def index_of(self, stage_id: str | None) -> int:
        """Position of a stage, or -1 when unknown."""
        for i, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return i
        return -1

    def get(self, stage_id: str) -> FunnelStage | None:
        """Look up a stage by id."""
        index = self.index_of(stage_id)
        return self.stages[index] if index >= 0 else None

    def next_stage(self, stage_id: str) -> FunnelStage | None:
        """Stage following the given one, if any."""
        index = self.index_of(stage_id)
        if index < 0 or index + 1 >= len(self.stages):
            return None
        return self.stages[index + 1]


# Marketing funnel for the consulting site, from first visit to signed contract
DEFAULT_FUNNEL_STAGES = [
    FunnelStage(
        id="awareness",
        name="Awareness",
        description="User discovers the website",
        triggers=["page-view", "organic-search", "paid-ad-click"],
        time_window=30 * SECOND_MS,
    ),
    FunnelStage(
        id="interest",
        name="Interest",
        description="User shows engagement with content",
        triggers=["scroll-depth", "time-on-page", "multiple-pages"],
        required_events=["awareness"],
        time_window=2 * MINUTE_MS,
    ),
    FunnelStage(
        id="consideration",
        name="Consideration",
        description="User engages with key content or features",
        triggers=["service-page-view", "case-study-read", "pricing-view", "resource-download"],
        required_events=["interest"],
        time_window=5 * MINUTE_MS,
    ),
    FunnelStage(
        id="intent",
        name="Intent",
        description="User shows purchasing intent",
        triggers=["form-start", "contact-info-view", "phone-number-click", "calendar-view"],
        required_events=["consideration"],
        goal_value=500,
        time_window=10 * MINUTE_MS,
    ),
    FunnelStage(
        id="lead",
        name="Lead Generation",
        description="User provides contact information",
        triggers=["form-submit", "schedule-assessment", "download-guide", "consultation-request"],
        required_events=["intent"],
        goal_value=1000,
        time_window=30 * MINUTE_MS,
    ),
    FunnelStage(
        id="qualified-lead",
        name="Qualified Lead",
        description="User shows high purchase intent",
        triggers=["poc-request", "consultation-book", "phone-call-click"],
        required_events=["lead"],
        goal_value=2500,
        time_window=HOUR_MS,
    ),
    FunnelStage(
        id="conversion",
        name="Conversion",
        description="User converts to customer",
        triggers=["contract-signed", "payment-completed", "project-started"],
        required_events=["qualified-lead"],
        goal_value=5000,
        time_window=7 * DAY_MS,
    ),
]


def default_funnel_config() -> FunnelConfig:
    """Build the default marketing funnel configuration."""
    return FunnelConfig.from_stages(list(DEFAULT_FUNNEL_STAGES))
