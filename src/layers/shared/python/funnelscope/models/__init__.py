"""Pydantic models for funnelscope entities."""

from funnelscope.models.base import BaseModel, generate_ulid, now_ms
from funnelscope.models.stage import (
    DEFAULT_FUNNEL_STAGES,
    FunnelConfig,
    FunnelStage,
    default_funnel_config,
)
from funnelscope.models.event import FunnelEvent
from funnelscope.models.progress import DeviceType, FunnelProgress
from funnelscope.models.analytics import (
    DeviceSegment,
    DropOffPoint,
    FunnelAnalytics,
    OpportunityPriority,
    OpportunityType,
    OptimizationOpportunity,
    StageAnalytics,
)

__all__ = [
    # Base
    "BaseModel",
    "generate_ulid",
    "now_ms",
    # Stages
    "DEFAULT_FUNNEL_STAGES",
    "FunnelConfig",
    "FunnelStage",
    "default_funnel_config",
    # Events
    "FunnelEvent",
    # Progress
    "DeviceType",
    "FunnelProgress",
    # Analytics
    "DeviceSegment",
    "DropOffPoint",
    "FunnelAnalytics",
    "OpportunityPriority",
    "OpportunityType",
    "OptimizationOpportunity",
    "StageAnalytics",
]
