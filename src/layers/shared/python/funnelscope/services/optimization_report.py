"""Markdown rendering of funnel analytics for the dashboard and email digests."""

from datetime import datetime

from funnelscope.models.analytics import FunnelAnalytics, OptimizationOpportunity
from funnelscope.models.stage import FunnelConfig

NEXT_STEPS = [
    "Prioritize high-impact, high-priority opportunities",
    "Implement A/B tests for top recommendations",
    "Monitor conversion rates after changes",
    "Continue tracking and optimizing based on data",
]


def _format_number(value: float) -> str:
    """Group thousands; keep decimals only when present."""
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _minutes(ms: float) -> int:
    return round(ms / 1000 / 60)


def render_optimization_report(
    config: FunnelConfig,
    analytics: FunnelAnalytics,
    opportunities: list[OptimizationOpportunity],
    generated_at: datetime,
) -> str:
    """Render the human-readable optimization report.

    Args:
        config: Funnel stage configuration, used for ordering and names.
        analytics: Output of ConversionFunnelAnalyzer.generate_analytics().
        opportunities: Output of identify_optimization_opportunities().
        generated_at: Timestamp printed in the header.

    Returns:
        Markdown text.
    """
    lines = [
        "# Conversion Funnel Optimization Report",
        f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        "",
        "## Overview",
        f"- **Total Users:** {_format_number(analytics.total_users)}",
        f"- **Overall Conversion Rate:** {analytics.overall_conversion_rate:.2f}%",
        f"- **Average Funnel Time:** {_minutes(analytics.average_time)} minutes",
        f"- **Total Revenue:** ${_format_number(analytics.total_revenue)}",
        "",
        "## Stage Performance",
    ]

    for stage in config.stages:
        data = analytics.stage_analytics.get(stage.id)
        if data is None:
            continue
        lines.extend([
            "",
            f"### {stage.name}",
            f"- Users: {_format_number(data.users)}",
            f"- Conversion Rate: {data.conversion_rate:.2f}%",
            f"- Drop-off Rate: {data.drop_off_rate:.2f}%",
            f"- Average Time: {_minutes(data.average_time_in_stage)} minutes",
            f"- Revenue: ${_format_number(data.revenue)}",
        ])

    lines.extend(["", "## Top Drop-off Points"])
    for index, drop_off in enumerate(analytics.top_drop_off_points, start=1):
        lines.append(
            f"{index}. {drop_off.from_stage} → {drop_off.to_stage}: "
            f"{drop_off.drop_off_rate:.1f}% ({drop_off.users} users)"
        )

    lines.extend(["", "## Optimization Opportunities"])
    for index, opportunity in enumerate(opportunities, start=1):
        lines.extend([
            "",
            f"### {index}. {opportunity.description}",
            f"**Priority:** {str(opportunity.priority).upper()}",
            f"**Potential Impact:** {round(opportunity.potential_impact)} users",
            "**Recommendations:**",
        ])
        lines.extend(f"- {rec}" for rec in opportunity.recommendations)

    lines.extend(["", "## Next Steps"])
    lines.extend(f"{i}. {step}" for i, step in enumerate(NEXT_STEPS, start=1))

    return "\n".join(lines) + "\n"
