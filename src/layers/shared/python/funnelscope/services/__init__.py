"""Funnel services."""

from funnelscope.services.funnel_events import (
    EventBridgeProgressionPublisher,
    ProgressionNotifier,
    build_progression_detail,
)
from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer
from funnelscope.services.abandonment_sweeper import AbandonmentSweeper
from funnelscope.services.optimization_report import render_optimization_report

__all__ = [
    "AbandonmentSweeper",
    "ConversionFunnelAnalyzer",
    "EventBridgeProgressionPublisher",
    "ProgressionNotifier",
    "build_progression_detail",
    "render_optimization_report",
]
