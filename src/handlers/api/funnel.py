"""Funnel tracking and analytics API handler."""

import json
from typing import Any

import structlog

from funnelscope.config import build_analyzer
from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer
from funnelscope.utils.exceptions import ConfigurationError, ValidationError
from funnelscope.utils.responses import accepted, error, no_content, success, text, validation_error

logger = structlog.get_logger()

# Reused across warm invocations of the same Lambda container; writes go
# through per-user versioned store records, so a stale cache is never saved
_analyzer: ConversionFunnelAnalyzer | None = None


def get_analyzer() -> ConversionFunnelAnalyzer:
    """Get the container's analyzer (lazy init)."""
    global _analyzer
    if _analyzer is None:
        _analyzer = build_analyzer()
    return _analyzer


def handler(event: dict[str, Any], context: Any) -> dict:
    """Handle funnel API requests.

    Routes:
        POST   /funnel/events
        GET    /funnel/analytics
        GET    /funnel/opportunities
        GET    /funnel/report
        GET    /funnel/export
        POST   /funnel/sweep
        DELETE /funnel/data
    """
    try:
        http_method = event.get("httpMethod", "").upper()
        path = (event.get("path") or "").rstrip("/")

        if http_method == "OPTIONS":
            return no_content()

        analyzer = get_analyzer()
        if http_method == "GET":
            # Other containers and the sweep worker write to the same store
            analyzer.refresh()

        if path.endswith("/funnel/events") and http_method == "POST":
            return track_event(analyzer, event)
        if path.endswith("/funnel/analytics") and http_method == "GET":
            return success(analyzer.generate_analytics())
        if path.endswith("/funnel/opportunities") and http_method == "GET":
            opportunities = analyzer.identify_optimization_opportunities()
            return success({"items": [o.model_dump(mode="json") for o in opportunities]})
        if path.endswith("/funnel/report") and http_method == "GET":
            return text(analyzer.generate_optimization_report())
        if path.endswith("/funnel/export") and http_method == "GET":
            return text(analyzer.export_data(), content_type="application/json")
        if path.endswith("/funnel/sweep") and http_method == "POST":
            abandoned = analyzer.sweep_abandoned()
            return success({"abandoned": [p.user_id for p in abandoned]})
        if path.endswith("/funnel/data") and http_method == "DELETE":
            analyzer.clear_data()
            return no_content()

        return error("Not found", 404, error_code="NOT_FOUND")

    except ValidationError as e:
        return validation_error(e.errors)
    except ConfigurationError as e:
        logger.error("Funnel configuration error", error=e.message)
        return error("Funnel is misconfigured", 500, error_code=e.error_code)
    except Exception as e:
        logger.exception("Funnel handler error", error=str(e))
        return error("Internal server error", 500)


def track_event(analyzer: ConversionFunnelAnalyzer, event: dict) -> dict:
    """Ingest a tracking event posted by the site.

    Request headers fill in user agent and referrer when the tracker did
    not capture them itself.
    """
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400, error_code="INVALID_JSON")

    if not isinstance(body, dict):
        return error("Event must be a JSON object", 400, error_code="INVALID_JSON")

    headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    if headers.get("user-agent"):
        metadata.setdefault("user_agent", headers["user-agent"][:500])
    if headers.get("referer"):
        metadata.setdefault("referrer", headers["referer"])
    body["metadata"] = metadata

    analyzer.track_event(body)

    logger.debug("Funnel event tracked", user_id=body.get("user_id"), event_name=body.get("event_name"))

    return accepted({"tracked": True})
