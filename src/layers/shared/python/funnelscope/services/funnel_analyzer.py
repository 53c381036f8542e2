"""Conversion funnel analyzer.

Tracks each visitor's progression through the marketing funnel, persists
progress through a ProgressStore, and computes drop-off statistics and
heuristic optimization opportunities.

Progress records are copy-on-write: an event is applied to a private copy
of the user's progress under that user's lock, written to the store with a
version check, and only then replaces the committed record under the state
lock. Store I/O never happens while the state lock is held.

Several analyzers may share one store (warm Lambda containers, the sweep
worker). Each re-reads a user's journey before changing it, so the store
rather than any one process's memory is the source of truth.
"""

import json
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from pydantic import ValidationError as PydanticValidationError

from funnelscope.models.analytics import (
    DeviceSegment,
    DropOffPoint,
    FunnelAnalytics,
    OpportunityPriority,
    OpportunityType,
    OptimizationOpportunity,
    StageAnalytics,
)
from funnelscope.models.base import now_ms
from funnelscope.models.event import FunnelEvent
from funnelscope.models.progress import FunnelProgress
from funnelscope.models.stage import HOUR_MS, MINUTE_MS, FunnelConfig, FunnelStage, default_funnel_config
from funnelscope.repositories.base import ProgressStore
from funnelscope.repositories.memory import InMemoryProgressStore
from funnelscope.services.funnel_events import ProgressionListener, ProgressionNotifier
from funnelscope.services.optimization_report import render_optimization_report
from funnelscope.utils.attribution import attribute_event
from funnelscope.utils.exceptions import StorageError, ValidationError, VersionConflictError

logger = structlog.get_logger()

ABANDONMENT_TIMEOUT_MS = 24 * HOUR_MS
MAX_PERSISTED_EVENTS = 1000
MAX_PERSISTED_COMPLETED = 100
MAX_WRITE_ATTEMPTS = 3

# Heuristic thresholds
HIGH_DROP_OFF_RATE = 70.0
SLOW_PROGRESSION_MS = 5 * MINUTE_MS
DEVICE_UNDERPERFORMANCE_RATIO = 0.7

HIGH_DROP_OFF_IMPACT = 0.1
SLOW_PROGRESSION_IMPACT = 0.05
DEVICE_SPECIFIC_IMPACT = 0.15

HIGH_DROP_OFF_RECOMMENDATIONS = [
    "A/B test different messaging and value propositions",
    "Simplify the user experience at this stage",
    "Add social proof or testimonials",
    "Implement exit-intent popups with offers",
    "Analyze user session recordings to identify friction points",
]

SLOW_PROGRESSION_RECOMMENDATIONS = [
    "Streamline the user flow",
    "Add progress indicators",
    "Implement guided onboarding",
    "Reduce cognitive load with simpler messaging",
    "Add urgency elements to encourage action",
]


def _device_recommendations(device: str) -> list[str]:
    return [
        f"Optimize the {device} experience",
        "Implement device-specific testing",
        f"Reduce page load times on {device}",
        "Simplify forms for touch interfaces",
        "Add device-specific call-to-action buttons",
    ]


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class ConversionFunnelAnalyzer:
    """Funnel state machine and analytics engine.

    Construct one per funnel and pass it to whatever needs it; the engine
    holds no module-level state.
    """

    def __init__(
        self,
        store: ProgressStore | None = None,
        config: FunnelConfig | None = None,
        notifier: ProgressionNotifier | None = None,
        clock: Callable[[], int] | None = None,
        abandonment_timeout_ms: int = ABANDONMENT_TIMEOUT_MS,
        max_persisted_events: int = MAX_PERSISTED_EVENTS,
        max_persisted_completed: int = MAX_PERSISTED_COMPLETED,
    ):
        """Initialize the analyzer and load persisted state.

        Args:
            store: Persistence port. Defaults to an in-memory store.
            config: Stage configuration. Defaults to the marketing funnel.
            notifier: Progression notifier. A fresh one is created if omitted.
            clock: Returns "now" in epoch ms; used for abandonment.
            abandonment_timeout_ms: Inactivity after which a journey is abandoned.
            max_persisted_events: Event log entries kept in the store.
            max_persisted_completed: Completed journeys kept in the store.
        """
        self.config = config or default_funnel_config()
        self.store = store or InMemoryProgressStore()
        self.notifier = notifier or ProgressionNotifier()
        self._clock = clock or now_ms
        self.abandonment_timeout_ms = abandonment_timeout_ms
        self.max_persisted_events = max_persisted_events
        self.max_persisted_completed = max_persisted_completed

        self._progress: dict[str, FunnelProgress] = {}
        self._completed: list[FunnelProgress] = []
        self._completed_user_ids: set[str] = set()
        self._events: list[FunnelEvent] = []
        self._event_ids: set[str] = set()
        self._opportunities: list[OptimizationOpportunity] = []

        self._state_lock = threading.RLock()
        self._user_locks: dict[str, threading.RLock] = {}
        self._user_locks_guard = threading.Lock()

        self.refresh()

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    @property
    def stages(self) -> list[FunnelStage]:
        return list(self.config.stages)

    @property
    def active_progress(self) -> dict[str, FunnelProgress]:
        """Committed progress of users still in the funnel."""
        with self._state_lock:
            return dict(self._progress)

    @property
    def completed_funnels(self) -> list[FunnelProgress]:
        """Finished journeys, completed or abandoned, oldest first."""
        with self._state_lock:
            return list(self._completed)

    @property
    def events(self) -> list[FunnelEvent]:
        with self._state_lock:
            return list(self._events)

    @property
    def optimization_opportunities(self) -> list[OptimizationOpportunity]:
        """Result of the last identify_optimization_opportunities() call."""
        return list(self._opportunities)

    def get_progress(self, user_id: str) -> FunnelProgress | None:
        """Get a user's progress, active or finished."""
        with self._state_lock:
            progress = self._progress.get(user_id)
            if progress is not None:
                return progress
            if user_id in self._completed_user_ids:
                for finished in reversed(self._completed):
                    if finished.user_id == user_id:
                        return finished
        return None

    def on_progression(self, listener: ProgressionListener) -> Callable[[], None]:
        """Register a stage-progression listener."""
        return self.notifier.subscribe(listener)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def refresh(self) -> None:
        """Merge state persisted by other analyzers sharing the store.

        The store is authoritative for active journeys, except records this
        analyzer could never persist (version 0), which are kept. Finished
        journeys and events are merged by user id and event id.
        """
        try:
            snapshot = self.store.load(
                max_events=self.max_persisted_events,
                max_completed=self.max_persisted_completed,
            )
        except StorageError as e:
            logger.warning("Failed to load funnel data", store=type(self.store).__name__, error=str(e))
            return

        with self._state_lock:
            for finished in snapshot.completed:
                self._record_finished(finished)

            # Persisted once but missing now: finished beyond the retained history, or cleared
            missing = [
                user_id
                for user_id, local in self._progress.items()
                if user_id not in snapshot.progress and local.version > 0
            ]

            for user_id, stored in snapshot.progress.items():
                local = self._progress.get(user_id)
                if user_id not in self._completed_user_ids and (local is None or stored.version > local.version):
                    self._progress[user_id] = stored

            for event in snapshot.events:
                self._remember_event(event)

        # The snapshot may predate a write made here since, so confirm per user
        for user_id in missing:
            with self._lock_for(user_id):
                self._refresh_user(user_id)

        logger.debug(
            "Funnel data refreshed",
            active=len(self._progress),
            completed=len(self._completed),
            events=len(self._events),
        )

    def _remember_event(self, event: FunnelEvent) -> None:
        if event.event_id not in self._event_ids:
            self._event_ids.add(event.event_id)
            self._events.append(event)

    def _record_finished(self, progress: FunnelProgress) -> None:
        self._progress.pop(progress.user_id, None)
        if progress.user_id not in self._completed_user_ids:
            self._completed.append(progress)
            self._completed_user_ids.add(progress.user_id)

    def _refresh_user(self, user_id: str) -> tuple[FunnelProgress | None, bool]:
        """Reload one user's journey before changing it.

        Returns:
            The committed active progress (or None) and whether the user
            already finished the funnel.
        """
        try:
            stored = self.store.get_progress(user_id)
            stored_finished = self.store.get_completed(user_id)
        except StorageError as e:
            logger.warning("Failed to read funnel progress", user_id=user_id, error=str(e))
            with self._state_lock:
                return self._progress.get(user_id), user_id in self._completed_user_ids

        with self._state_lock:
            if stored_finished is not None:
                self._record_finished(stored_finished)
            if user_id in self._completed_user_ids:
                return None, True

            local = self._progress.get(user_id)
            if stored is not None and (local is None or stored.version > local.version):
                self._progress[user_id] = stored
            elif stored is None and local is not None and local.version > 0:
                del self._progress[user_id]
            return self._progress.get(user_id), False

    def _store_write(self, operation: Callable[[FunnelProgress], None], progress: FunnelProgress) -> None:
        """Run a store write, logging and swallowing failures other than conflicts."""
        try:
            operation(progress)
        except VersionConflictError:
            raise
        except StorageError as e:
            logger.warning(
                "Failed to persist funnel progress",
                store=type(self.store).__name__,
                user_id=progress.user_id,
                error=str(e),
            )

    def _finish_in_store(self, progress: FunnelProgress) -> None:
        self.store.finish_progress(progress, max_completed=self.max_persisted_completed)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    def _release_lock_slot(self, user_id: str) -> None:
        with self._user_locks_guard:
            self._user_locks.pop(user_id, None)

    @staticmethod
    def _coerce_event(event: FunnelEvent | Mapping[str, Any]) -> FunnelEvent:
        if isinstance(event, FunnelEvent):
            return event
        if not isinstance(event, Mapping):
            raise ValidationError(
                "Funnel event must be an object",
                errors=[{"field": "", "message": "Expected a mapping", "type": "type_error"}],
            )
        try:
            return FunnelEvent.model_validate(dict(event))
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

    def track_event(self, event: FunnelEvent | Mapping[str, Any]) -> None:
        """Ingest one interaction event.

        The user's journey is re-read from the store and written back
        conditionally, so analyzers in other processes never have their
        updates overwritten. On a version conflict the event is re-applied
        to the newer journey.

        Args:
            event: FunnelEvent or a mapping with the same fields.

        Raises:
            ValidationError: If user_id, session_id, event_name or timestamp
                is missing or invalid.
        """
        event = self._coerce_event(event)

        with self._lock_for(event.user_id):
            self._record_event(event)

            for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
                committed, finished = self._refresh_user(event.user_id)
                if finished:
                    logger.debug(
                        "Event for finished funnel journey",
                        user_id=event.user_id,
                        event_name=event.event_name,
                    )
                    return

                progress = committed.model_copy(deep=True) if committed else self._start_progress(event)
                progress.events.append(event)
                progress.last_activity = max(progress.last_activity, event.timestamp)

                reached = self._check_stage_progression(progress, event)
                try:
                    self._check_funnel_status(progress, self._clock())
                except VersionConflictError:
                    logger.info("Funnel progress changed concurrently", user_id=event.user_id, attempt=attempt)
                    continue

                for stage in reached:
                    self._fire_progression_event(progress, stage)
                return

        logger.error(
            "Funnel event not applied after repeated write conflicts",
            user_id=event.user_id,
            event_name=event.event_name,
            attempts=MAX_WRITE_ATTEMPTS,
        )

    def _record_event(self, event: FunnelEvent) -> None:
        with self._state_lock:
            self._remember_event(event)
        try:
            self.store.append_event(event, max_events=self.max_persisted_events)
        except StorageError as e:
            logger.warning("Failed to persist funnel event", store=type(self.store).__name__, error=str(e))

    def _start_progress(self, event: FunnelEvent) -> FunnelProgress:
        device_type, traffic_source = attribute_event(event)
        logger.debug(
            "Funnel journey started",
            user_id=event.user_id,
            device_type=device_type,
            traffic_source=traffic_source,
        )
        return FunnelProgress(
            user_id=event.user_id,
            session_id=event.session_id,
            start_time=event.timestamp,
            current_stage=self.config.first_stage.id,
            device_type=device_type,
            traffic_source=traffic_source,
            last_activity=event.timestamp,
        )

    def _check_stage_progression(self, progress: FunnelProgress, event: FunnelEvent) -> list[FunnelStage]:
        """Enter every stage this event unlocks.

        Scans forward from the current stage so the current stage never
        moves backwards, while one event may still satisfy several stages
        whose preconditions are met earlier in the same pass.
        """
        start_index = max(self.config.index_of(progress.current_stage), 0)
        reached = []

        for stage in self.config.stages[start_index:]:
            if progress.has_completed(stage.id):
                continue
            if not stage.is_triggered_by(event.event_name):
                continue
            if not stage.preconditions_met(progress.completed_stages):
                continue
            if not stage.within_time_window(progress.start_time, event.timestamp):
                continue

            progress.complete_stage(stage.id, event.timestamp, stage.goal_value)
            reached.append(stage)

            logger.info(
                "Funnel stage reached",
                user_id=progress.user_id,
                stage=stage.id,
                total_value=progress.total_value,
            )

        return reached

    def _fire_progression_event(self, progress: FunnelProgress, stage: FunnelStage) -> None:
        self.notifier.notify(progress, stage)

    def _check_funnel_status(self, progress: FunnelProgress, now: int) -> None:
        """Commit progress, finishing the journey when it completed or went idle.

        Raises:
            VersionConflictError: If another writer changed the journey.
        """
        if progress.has_completed(self.config.terminal_stage.id):
            self._finish(progress)
            logger.info("Funnel completed", user_id=progress.user_id, total_value=progress.total_value)
            return

        if progress.idle_for(now) > self.abandonment_timeout_ms:
            progress.abandoned_at = progress.current_stage
            self._finish(progress)
            logger.info("Funnel abandoned", user_id=progress.user_id, stage=progress.current_stage)
            return

        self._store_write(self.store.save_progress, progress)
        with self._state_lock:
            self._progress[progress.user_id] = progress

    def _finish(self, progress: FunnelProgress) -> None:
        self._store_write(self._finish_in_store, progress)
        with self._state_lock:
            self._record_finished(progress)
        self._release_lock_slot(progress.user_id)

    def sweep_abandoned(self, now: int | None = None) -> list[FunnelProgress]:
        """Move idle journeys to completed history.

        Users who simply stop sending events are never re-checked by
        track_event, so this must run periodically. Journeys written by
        other analyzers sharing the store are swept too.

        Args:
            now: Reference time in epoch ms. Defaults to the analyzer clock.

        Returns:
            The journeys that were marked abandoned.
        """
        now = self._clock() if now is None else now
        self.refresh()

        with self._state_lock:
            stale = [
                user_id
                for user_id, progress in self._progress.items()
                if progress.idle_for(now) > self.abandonment_timeout_ms
            ]

        abandoned = []
        for user_id in stale:
            progress = self._abandon(user_id, now)
            if progress is not None:
                abandoned.append(progress)

        if abandoned:
            logger.info("Abandoned funnels swept", count=len(abandoned))

        return abandoned

    def _abandon(self, user_id: str, now: int) -> FunnelProgress | None:
        with self._lock_for(user_id):
            for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
                committed, _ = self._refresh_user(user_id)
                # Re-check: an event may have arrived since the scan
                if committed is None or committed.idle_for(now) <= self.abandonment_timeout_ms:
                    return None

                progress = committed.model_copy(deep=True)
                progress.abandoned_at = progress.current_stage
                try:
                    self._finish(progress)
                except VersionConflictError:
                    logger.info("Funnel progress changed during sweep", user_id=user_id, attempt=attempt)
                    continue
                return progress

        logger.error("Funnel journey not swept after repeated write conflicts", user_id=user_id)
        return None

    def _all_users(self) -> list[FunnelProgress]:
        with self._state_lock:
            return list(self._progress.values()) + list(self._completed)

    def _time_to_stage(self, progress: FunnelProgress, stage: FunnelStage) -> int:
        entered_at = progress.stage_entered_at.get(stage.id)
        if entered_at is None:
            # Records persisted before entry times were kept
            entered_at = next(
                (e.timestamp for e in progress.events if stage.is_triggered_by(e.event_name)),
                progress.start_time,
            )
        return entered_at - progress.start_time

    def generate_analytics(self) -> FunnelAnalytics:
        """Compute per-stage and overall funnel statistics."""
        users = self._all_users()
        total_users = len(users)

        if total_users == 0:
            return FunnelAnalytics()

        stage_analytics: dict[str, StageAnalytics] = {}
        total_revenue = 0.0

        for stage in self.config.stages:
            stage_users = [u for u in users if u.has_completed(stage.id)]
            next_stage = self.config.next_stage(stage.id)

            reached = len(stage_users)
            conversions = (
                sum(1 for u in stage_users if u.has_completed(next_stage.id)) if next_stage else 0
            )

            # Nobody converts past the terminal stage, so it reports 100% drop-off
            conversion_rate = conversions * 100 / reached if reached else 0.0
            drop_off_rate = 100 - conversion_rate if reached else 0.0

            revenue = reached * (stage.goal_value or 0)
            total_revenue += revenue

            stage_analytics[stage.id] = StageAnalytics(
                users=reached,
                conversions=conversions,
                conversion_rate=conversion_rate,
                average_time_in_stage=_mean([self._time_to_stage(u, stage) for u in stage_users]),
                drop_off_rate=drop_off_rate,
                revenue=revenue,
            )

        with self._state_lock:
            converted = [u for u in self._completed if not u.is_abandoned]

        return FunnelAnalytics(
            total_users=total_users,
            stage_analytics=stage_analytics,
            overall_conversion_rate=len(converted) * 100 / total_users,
            average_time=_mean([u.last_activity - u.start_time for u in converted]),
            total_revenue=total_revenue,
            top_drop_off_points=self._top_drop_off_points(stage_analytics),
        )

    def _top_drop_off_points(self, stage_analytics: dict[str, StageAnalytics], limit: int = 5) -> list[DropOffPoint]:
        points = []
        stages = self.config.stages

        for current, following in zip(stages, stages[1:]):
            data = stage_analytics[current.id]
            dropped = data.users - data.conversions
            if dropped > 0:
                points.append(
                    DropOffPoint(
                        from_stage=current.name,
                        to_stage=following.name,
                        drop_off_rate=data.drop_off_rate,
                        users=dropped,
                    )
                )

        points.sort(key=lambda p: p.drop_off_rate, reverse=True)
        return points[:limit]

    def analyze_by_device(self) -> dict[str, DeviceSegment]:
        """Terminal-stage conversion segmented by device type."""
        terminal_id = self.config.terminal_stage.id
        counts: dict[str, list[int]] = {}

        for user in self._all_users():
            bucket = counts.setdefault(str(user.device_type), [0, 0])
            bucket[0] += 1
            if user.has_completed(terminal_id):
                bucket[1] += 1

        return {
            device: DeviceSegment(
                users=users,
                conversions=conversions,
                conversion_rate=conversions * 100 / users if users else 0.0,
            )
            for device, (users, conversions) in counts.items()
        }

    def identify_optimization_opportunities(self) -> list[OptimizationOpportunity]:
        """Apply the heuristic rules to fresh analytics.

        Returns:
            Opportunities ordered by potential impact, highest first.
        """
        analytics = self.generate_analytics()
        opportunities: list[OptimizationOpportunity] = []

        for stage_id, data in analytics.stage_analytics.items():
            stage = self.config.get(stage_id)
            if stage is None:
                continue

            if data.drop_off_rate > HIGH_DROP_OFF_RATE:
                opportunities.append(
                    OptimizationOpportunity(
                        type=OpportunityType.HIGH_DROP_OFF,
                        priority=OpportunityPriority.HIGH,
                        stage=stage.name,
                        description=f"High drop-off rate ({data.drop_off_rate:.1f}%) at {stage.name} stage",
                        potential_impact=data.users * HIGH_DROP_OFF_IMPACT,
                        recommendations=list(HIGH_DROP_OFF_RECOMMENDATIONS),
                        data_points={
                            "current_drop_off_rate": data.drop_off_rate,
                            "users_affected": data.users,
                            "current_conversion_rate": data.conversion_rate,
                        },
                    )
                )

            if data.average_time_in_stage > SLOW_PROGRESSION_MS:
                opportunities.append(
                    OptimizationOpportunity(
                        type=OpportunityType.SLOW_PROGRESSION,
                        priority=OpportunityPriority.MEDIUM,
                        stage=stage.name,
                        description=(
                            f"Users spending too long ({round(data.average_time_in_stage / 1000 / 60)} minutes) "
                            f"at {stage.name}"
                        ),
                        potential_impact=data.users * SLOW_PROGRESSION_IMPACT,
                        recommendations=list(SLOW_PROGRESSION_RECOMMENDATIONS),
                        data_points={
                            "average_time": data.average_time_in_stage,
                            "users_affected": data.users,
                        },
                    )
                )

        overall = analytics.overall_conversion_rate
        for device, segment in self.analyze_by_device().items():
            if segment.conversion_rate < overall * DEVICE_UNDERPERFORMANCE_RATIO:
                opportunities.append(
                    OptimizationOpportunity(
                        type=OpportunityType.DEVICE_SPECIFIC,
                        priority=OpportunityPriority.HIGH,
                        stage="Overall",
                        description=(
                            f"Poor performance on {device} devices "
                            f"({segment.conversion_rate:.1f}% vs {overall:.1f}% overall)"
                        ),
                        potential_impact=segment.users * DEVICE_SPECIFIC_IMPACT,
                        recommendations=_device_recommendations(device),
                        data_points={
                            "device_conversion_rate": segment.conversion_rate,
                            "overall_conversion_rate": overall,
                            "users_affected": segment.users,
                        },
                    )
                )

        opportunities.sort(key=lambda o: o.potential_impact, reverse=True)
        self._opportunities = opportunities
        return list(opportunities)

    def generate_optimization_report(self) -> str:
        """Render analytics and opportunities as a Markdown report."""
        analytics = self.generate_analytics()
        opportunities = self.identify_optimization_opportunities()
        return render_optimization_report(
            self.config,
            analytics,
            opportunities,
            generated_at=datetime.now(timezone.utc),
        )

    # -------------------------------------------------------------------------
    # Export / reset
    # -------------------------------------------------------------------------

    def export_data(self) -> str:
        """Serialize the full engine state to indented JSON."""
        with self._state_lock:
            progress = {user_id: p.to_storage() for user_id, p in self._progress.items()}
            completed = [p.to_storage() for p in self._completed]
            events = [e.to_storage() for e in self._events[-self.max_persisted_events:]]

        return json.dumps(
            {
                "funnel_stages": [s.to_storage() for s in self.config.stages],
                "user_progress": progress,
                "completed_funnels": completed,
                "events": events,
                "analytics": self.generate_analytics().to_storage(),
                "optimization_opportunities": [o.to_storage() for o in self._opportunities],
                "exported_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )

    def clear_data(self) -> None:
        """Reset in-memory and persisted state."""
        try:
            self.store.clear()
        except StorageError as e:
            logger.warning("Failed to clear persisted funnel data", error=str(e))

        with self._state_lock:
            self._progress.clear()
            self._completed = []
            self._completed_user_ids = set()
            self._events = []
            self._event_ids = set()
            self._opportunities = []

        with self._user_locks_guard:
            self._user_locks.clear()

        logger.info("Funnel data cleared")
