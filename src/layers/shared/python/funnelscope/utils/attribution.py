"""Device and traffic-source attribution for new funnel journeys."""

import re
from urllib.parse import parse_qs, urlparse

from funnelscope.models.event import FunnelEvent
from funnelscope.models.progress import DeviceType

_TABLET_PATTERN = re.compile(r"Tablet|iPad|PlayBook|Android(?!.*Mobile)")
_MOBILE_PATTERN = re.compile(
    r"Mobile|Android|iP(hone|od)|IEMobile|BlackBerry|Kindle|Silk-Accelerated|(hpw|web)OS|Opera M(obi|ini)"
)

# Referrer host pattern -> traffic source label, first match wins
_REFERRER_SOURCES = [
    (re.compile(r"(^|\.)google\.[a-z.]+$"), "google-organic"),
    (re.compile(r"(^|\.)bing\.com$"), "bing-organic"),
    (re.compile(r"(^|\.)duckduckgo\.com$"), "duckduckgo-organic"),
    (re.compile(r"(^|\.)(linkedin\.com|lnkd\.in)$"), "linkedin"),
    (re.compile(r"(^|\.)(twitter\.com|t\.co|x\.com)$"), "twitter"),
]


def detect_device_type(user_agent: str | None) -> DeviceType:
    """Classify a user agent string.

    Args:
        user_agent: Raw User-Agent header value.

    Returns:
        DeviceType; UNKNOWN when no user agent was captured.
    """
    if not user_agent:
        return DeviceType.UNKNOWN
    if _TABLET_PATTERN.search(user_agent):
        return DeviceType.TABLET
    if _MOBILE_PATTERN.search(user_agent):
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


def _utm_source_from_url(page_url: str) -> str | None:
    if not page_url:
        return None
    try:
        query = parse_qs(urlparse(page_url).query)
    except ValueError:
        return None
    values = query.get("utm_source")
    return values[0] if values and values[0] else None


def _referrer_host(referrer: str) -> str:
    try:
        return (urlparse(referrer).hostname or referrer).lower()
    except ValueError:
        return referrer.lower()


def detect_traffic_source(
    referrer: str | None,
    page_url: str | None = None,
    utm_source: str | None = None,
) -> str:
    """Classify where a visitor came from.

    UTM source wins over the referrer. Known search and social hosts map
    to fixed labels, any other referrer is "referral", and no referrer
    at all is "direct".

    Args:
        referrer: HTTP referrer of the landing page.
        page_url: Landing page URL, checked for a utm_source parameter.
        utm_source: Explicit UTM source captured by the tracker.

    Returns:
        Traffic source label.
    """
    source = utm_source or _utm_source_from_url(page_url or "")
    if source:
        return source

    if not referrer:
        return "direct"

    host = _referrer_host(referrer)
    for pattern, label in _REFERRER_SOURCES:
        if pattern.search(host):
            return label
    return "referral"


def attribute_event(event: FunnelEvent) -> tuple[DeviceType, str]:
    """Derive device type and traffic source from a journey's first event."""
    device_type = detect_device_type(event.metadata_str("user_agent"))
    traffic_source = detect_traffic_source(
        referrer=event.metadata_str("referrer"),
        page_url=event.page_url,
        utm_source=event.metadata_str("utm_source"),
    )
    return device_type, traffic_source
