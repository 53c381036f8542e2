#!/usr/bin/env python3
"""Seed synthetic funnel journeys for dashboard development."""

import argparse
import random

from funnelscope.config import FunnelSettings, build_store
from funnelscope.models.base import now_ms
from funnelscope.models.event import FunnelEvent
from funnelscope.models.stage import DAY_MS
from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (iPad; CPU OS 17_5 like Mac OS X) AppleWebKit/605.1.15 Version/17.5 Safari/604.1",
]

REFERRERS = [
    None,
    "https://www.google.com/",
    "https://www.linkedin.com/feed/",
    "https://news.ycombinator.com/",
]

# One representative trigger per default stage, with the chance a visitor
# who got this far continues to the next step
JOURNEY = [
    ("page-view", 1.0),
    ("scroll-depth", 0.6),
    ("service-page-view", 0.5),
    ("form-start", 0.4),
    ("form-submit", 0.5),
    ("consultation-book", 0.4),
    ("contract-signed", 0.3),
]

# Milliseconds after the first event at which each step fires
STEP_OFFSETS = [0, 20_000, 90_000, 240_000, 500_000, 1_500_000, DAY_MS]


class SimulatedClock:
    """Analyzer clock that follows the simulated event time."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


def seed_journey(
    analyzer: ConversionFunnelAnalyzer,
    clock: SimulatedClock,
    rng: random.Random,
    index: int,
    start: int,
) -> None:
    """Track one synthetic visitor."""
    user_id = f"seed-user-{index:04d}"
    metadata = {"user_agent": rng.choice(USER_AGENTS)}
    referrer = rng.choice(REFERRERS)
    if referrer:
        metadata["referrer"] = referrer

    for step, ((event_name, keep_going), offset) in enumerate(zip(JOURNEY, STEP_OFFSETS)):
        if step and rng.random() > keep_going:
            break
        clock.now = start + offset
        analyzer.track_event(
            FunnelEvent(
                event_name=event_name,
                timestamp=start + offset,
                user_id=user_id,
                session_id=f"seed-session-{index:04d}",
                page_url="https://example.com/",
                metadata=metadata,
            )
        )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed synthetic funnel data")
    parser.add_argument("--store", default="file", choices=["memory", "file", "dynamodb"])
    parser.add_argument("--path", default=".funnelscope", help="Directory for the file store")
    parser.add_argument("--table", default="funnelscope-dev", help="DynamoDB table name")
    parser.add_argument("--users", type=int, default=200, help="Number of visitors to simulate")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--report", action="store_true", help="Print the optimization report")
    args = parser.parse_args()

    settings = FunnelSettings(store_backend=args.store, store_path=args.path, table_name=args.table)
    start = now_ms() - 8 * DAY_MS
    clock = SimulatedClock(start)
    analyzer = ConversionFunnelAnalyzer(store=build_store(settings), clock=clock)

    rng = random.Random(args.seed)
    for index in range(args.users):
        seed_journey(analyzer, clock, rng, index, start + index * 60_000)

    abandoned = analyzer.sweep_abandoned(now=now_ms())
    print(f"Seeded {args.users} visitors ({len(abandoned)} abandoned) into {args.store} store")

    if args.report:
        print(analyzer.generate_optimization_report())


if __name__ == "__main__":
    main()
