"""Analytics and optimization result models."""

from enum import Enum
from typing import Any

from pydantic import Field

from funnelscope.models.base import BaseModel


class StageAnalytics(BaseModel):
    """Conversion statistics for a single stage."""

    users: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    average_time_in_stage: float = 0.0
    drop_off_rate: float = 0.0
    revenue: float = 0.0


class DropOffPoint(BaseModel):
    """Users lost between two adjacent stages."""

    from_stage: str
    to_stage: str
    drop_off_rate: float
    users: int


class FunnelAnalytics(BaseModel):
    """Aggregate funnel statistics over active and completed journeys."""

    total_users: int = 0
    stage_analytics: dict[str, StageAnalytics] = Field(default_factory=dict)
    overall_conversion_rate: float = 0.0
    average_time: float = 0.0
    total_revenue: float = 0.0
    top_drop_off_points: list[DropOffPoint] = Field(default_factory=list)


class DeviceSegment(BaseModel):
    """Terminal-stage conversion for one device type."""

    users: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0


class OpportunityType(str, Enum):
    """Kinds of heuristic findings."""

    HIGH_DROP_OFF = "high_drop_off"
    SLOW_PROGRESSION = "slow_progression"
    LOW_ENGAGEMENT = "low_engagement"
    DEVICE_SPECIFIC = "device_specific"
    TRAFFIC_SOURCE_SPECIFIC = "traffic_source_specific"


class OpportunityPriority(str, Enum):
    """Priority assigned by the heuristic rules."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OptimizationOpportunity(BaseModel):
    """A flagged stage or segment with recommendations."""

    type: OpportunityType
    priority: OpportunityPriority
    stage: str
    description: str
    potential_impact: float
    recommendations: list[str] = Field(default_factory=list)
    data_points: dict[str, Any] = Field(default_factory=dict)
