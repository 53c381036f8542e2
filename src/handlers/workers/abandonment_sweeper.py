"""Abandonment sweep Lambda.

Scheduled by EventBridge every few minutes. Moves journeys idle for more
than 24 hours into completed history so abandonment is recorded even for
visitors who never send another event.
"""

from typing import Any

import structlog

from funnelscope.config import build_analyzer

logger = structlog.get_logger()


def handler(event: dict[str, Any], context: Any) -> dict:
    """Sweep idle funnel journeys."""
    logger.info("Abandonment sweep started")

    analyzer = build_analyzer()
    abandoned = analyzer.sweep_abandoned()

    by_stage: dict[str, int] = {}
    for progress in abandoned:
        by_stage[progress.abandoned_at] = by_stage.get(progress.abandoned_at, 0) + 1

    logger.info(
        "Abandonment sweep finished",
        abandoned=len(abandoned),
        still_active=len(analyzer.active_progress),
        by_stage=by_stage,
    )

    return {
        "status": "success",
        "abandoned": len(abandoned),
        "abandoned_by_stage": by_stage,
        "active": len(analyzer.active_progress),
    }
