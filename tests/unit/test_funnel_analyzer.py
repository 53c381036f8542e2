"""Tests for ConversionFunnelAnalyzer event tracking and progression."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from funnelscope.models.stage import HOUR_MS, FunnelConfig
from funnelscope.repositories.base import COMPLETED_KEY, EVENTS_KEY, PROGRESS_KEY
from funnelscope.repositories.memory import InMemoryProgressStore
from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer
from funnelscope.utils.exceptions import StorageError, ValidationError, VersionConflictError

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"

# One trigger per default stage with offsets inside every stage's window
FULL_JOURNEY = [
    ("page-view", 0),
    ("scroll-depth", 10_000),
    ("service-page-view", 60_000),
    ("form-start", 120_000),
    ("form-submit", 300_000),
    ("consultation-book", 600_000),
    ("contract-signed", 24 * HOUR_MS),
]


def _track_journey(analyzer, make_event, steps, user_id="user-1"):
    for event_name, offset in steps:
        analyzer.track_event(make_event(event_name, offset, user_id=user_id))


class TestTrackEvent:
    """Tests for event ingestion on the default funnel."""

    def test_first_event_starts_journey(self, analyzer, make_event):
        """Test that a user's first event opens a journey at the entry stage."""
        analyzer.track_event(make_event("page-view"))

        progress = analyzer.get_progress("user-1")
        assert progress is not None
        assert progress.current_stage == "awareness"
        assert progress.completed_stages == ["awareness"]
        assert progress.total_value == 0
        assert progress.session_id == "session-user-1"
        assert len(progress.events) == 1
        assert len(analyzer.events) == 1

    def test_unmatched_first_event_still_starts_journey(self, analyzer, make_event):
        """Test that a journey exists even before any stage is entered."""
        analyzer.track_event(make_event("newsletter-open"))

        progress = analyzer.get_progress("user-1")
        assert progress.current_stage == "awareness"
        assert progress.completed_stages == []

    def test_full_journey_completes_funnel(self, analyzer, make_event):
        """Test that reaching the terminal stage moves the journey to history."""
        _track_journey(analyzer, make_event, FULL_JOURNEY)

        assert analyzer.active_progress == {}
        assert len(analyzer.completed_funnels) == 1

        finished = analyzer.completed_funnels[0]
        assert finished.completed_stages == [
            "awareness",
            "interest",
            "consideration",
            "intent",
            "lead",
            "qualified-lead",
            "conversion",
        ]
        assert finished.current_stage == "conversion"
        assert finished.total_value == 9000
        assert finished.is_abandoned is False
        assert analyzer.get_progress("user-1") == finished

    def test_attribution_on_first_event(self, analyzer, make_event):
        """Test that device and traffic source come from the first event."""
        analyzer.track_event(
            make_event(
                "page-view",
                metadata={"user_agent": IPHONE_UA, "referrer": "https://www.google.com/"},
            )
        )
        analyzer.track_event(make_event("scroll-depth", 5_000, metadata={"user_agent": "Windows NT"}))

        progress = analyzer.get_progress("user-1")
        assert progress.device_type == "mobile"
        assert progress.traffic_source == "google-organic"

    def test_last_activity_never_moves_backwards(self, analyzer, make_event):
        """Test that an out-of-order event does not rewind activity."""
        analyzer.track_event(make_event("page-view", 0))
        analyzer.track_event(make_event("scroll-depth", 20_000))
        analyzer.track_event(make_event("time-on-page", 10_000))

        progress = analyzer.get_progress("user-1")
        assert progress.last_activity - progress.start_time == 20_000
        assert len(progress.events) == 3

    def test_mapping_input_validated(self, analyzer, make_event):
        """Test that invalid events raise and are not recorded."""
        event = make_event("page-view")
        del event["user_id"]

        with pytest.raises(ValidationError) as exc_info:
            analyzer.track_event(event)

        assert exc_info.value.status_code == 400
        assert any(e["field"] == "user_id" for e in exc_info.value.errors)
        assert analyzer.events == []

    def test_non_mapping_rejected(self, analyzer):
        """Test that non-object payloads are rejected."""
        with pytest.raises(ValidationError):
            analyzer.track_event(["page-view"])


class TestStageProgression:
    """Tests for stage entry rules on a two-stage funnel."""

    def _analyzer(self, config, clock, **kwargs):
        return ConversionFunnelAnalyzer(store=InMemoryProgressStore(), config=config, clock=clock, **kwargs)

    def test_precondition_blocks_out_of_order_trigger(self, two_stage_config, clock, make_event):
        """Test that B's trigger before A is ignored, then counts after A."""
        analyzer = self._analyzer(two_stage_config, clock)

        analyzer.track_event(make_event("y", 0))
        assert analyzer.get_progress("user-1").completed_stages == []

        analyzer.track_event(make_event("x", 100))
        assert analyzer.get_progress("user-1").completed_stages == ["A"]

        analyzer.track_event(make_event("y", 200))
        finished = analyzer.get_progress("user-1")
        assert finished.completed_stages == ["A", "B"]
        assert finished.total_value == 100

    def test_repeated_trigger_is_idempotent(self, clock, make_event):
        """Test that re-triggering a completed stage adds nothing."""
        config = FunnelConfig.from_stages([
            {"id": "A", "name": "Stage A", "triggers": ["x"], "goal_value": 50},
            {"id": "B", "name": "Stage B", "triggers": ["y"], "required_events": ["A"]},
        ])
        analyzer = self._analyzer(config, clock)

        analyzer.track_event(make_event("x", 0))
        analyzer.track_event(make_event("x", 100))

        progress = analyzer.get_progress("user-1")
        assert progress.completed_stages == ["A"]
        assert progress.total_value == 50
        assert progress.stage_entered_at["A"] == progress.start_time

    @pytest.mark.parametrize("offset,entered", [(1000, True), (1500, False)])
    def test_time_window(self, clock, make_event, offset, entered):
        """Test that triggers after the stage window do not count."""
        config = FunnelConfig.from_stages([
            {"id": "A", "name": "Stage A", "triggers": ["x"]},
            {"id": "B", "name": "Stage B", "triggers": ["y"], "required_events": ["A"], "time_window": 1000},
        ])
        analyzer = self._analyzer(config, clock)

        analyzer.track_event(make_event("x", 0))
        analyzer.track_event(make_event("y", offset))

        progress = analyzer.get_progress("user-1")
        assert ("B" in progress.completed_stages) is entered

    def test_one_event_can_enter_several_stages(self, clock, make_event):
        """Test that a shared trigger enters consecutive stages in one pass."""
        config = FunnelConfig.from_stages([
            {"id": "A", "name": "Stage A", "triggers": ["x"]},
            {"id": "B", "name": "Stage B", "triggers": ["x"], "required_events": ["A"]},
            {"id": "C", "name": "Stage C", "triggers": ["z"], "required_events": ["B"]},
        ])
        analyzer = self._analyzer(config, clock)

        analyzer.track_event(make_event("x", 0))

        progress = analyzer.get_progress("user-1")
        assert progress.completed_stages == ["A", "B"]
        assert progress.current_stage == "B"

    def test_current_stage_never_moves_backwards(self, clock, make_event):
        """Test that triggers for earlier stages leave the current stage alone."""
        config = FunnelConfig.from_stages([
            {"id": "A", "name": "Stage A", "triggers": ["x"]},
            {"id": "B", "name": "Stage B", "triggers": ["y"], "required_events": ["A"]},
            {"id": "C", "name": "Stage C", "triggers": ["z"], "required_events": ["B"]},
        ])
        analyzer = self._analyzer(config, clock)

        analyzer.track_event(make_event("x", 0))
        analyzer.track_event(make_event("y", 100))
        analyzer.track_event(make_event("x", 200))

        progress = analyzer.get_progress("user-1")
        assert progress.current_stage == "B"
        assert progress.completed_stages == ["A", "B"]

    def test_events_after_completion_do_not_reopen(self, two_stage_config, clock, make_event):
        """Test that a finished user never gets a second journey."""
        analyzer = self._analyzer(two_stage_config, clock)

        analyzer.track_event(make_event("x", 0))
        analyzer.track_event(make_event("y", 100))
        analyzer.track_event(make_event("x", 200))

        assert analyzer.active_progress == {}
        assert len(analyzer.completed_funnels) == 1
        assert len(analyzer.completed_funnels[0].events) == 2
        assert len(analyzer.events) == 3

    def test_progression_listeners(self, two_stage_config, clock, make_event):
        """Test that listeners hear every stage entry and failures are contained."""
        analyzer = self._analyzer(two_stage_config, clock)
        received = []

        def failing(payload):
            raise RuntimeError("listener down")

        analyzer.on_progression(failing)
        unsubscribe = analyzer.on_progression(received.append)

        analyzer.track_event(make_event("x", 0))
        analyzer.track_event(make_event("y", 100))

        assert [p["stage"].id for p in received] == ["A", "B"]
        assert received[1]["user_progress"].total_value == 100
        assert len(analyzer.completed_funnels) == 1

        unsubscribe()
        analyzer.track_event(make_event("x", 0, user_id="user-2"))
        assert len(received) == 2


class TestAbandonment:
    """Tests for inactivity handling."""

    def test_stale_event_abandons_immediately(self, analyzer, clock, make_event):
        """Test that an event already older than the timeout ends the journey."""
        clock.advance(25 * HOUR_MS)

        analyzer.track_event(make_event("page-view", 0))

        assert analyzer.active_progress == {}
        finished = analyzer.completed_funnels[0]
        assert finished.abandoned_at == "awareness"
        assert finished.is_abandoned is True

    def test_sweep_marks_idle_journeys(self, analyzer, clock, make_event):
        """Test that idle users are abandoned at their current stage."""
        analyzer.track_event(make_event("page-view", 0, user_id="idle"))
        analyzer.track_event(make_event("scroll-depth", 10_000, user_id="idle"))

        idle_offset = 10_000 + 24 * HOUR_MS + 1
        clock.advance(idle_offset)
        analyzer.track_event(make_event("page-view", idle_offset, user_id="fresh"))

        abandoned = analyzer.sweep_abandoned()

        assert [p.user_id for p in abandoned] == ["idle"]
        assert abandoned[0].abandoned_at == "interest"
        assert list(analyzer.active_progress) == ["fresh"]
        assert analyzer.get_progress("idle").is_abandoned is True
        assert analyzer.sweep_abandoned() == []

    def test_sweep_timeout_is_exclusive(self, analyzer, clock, make_event):
        """Test that exactly the timeout of inactivity is not yet abandonment."""
        analyzer.track_event(make_event("page-view", 0))

        assert analyzer.sweep_abandoned(now=clock.now + 24 * HOUR_MS) == []
        assert len(analyzer.sweep_abandoned(now=clock.now + 24 * HOUR_MS + 1)) == 1

    def test_custom_timeout(self, clock, make_event):
        """Test a shorter abandonment timeout."""
        analyzer = ConversionFunnelAnalyzer(clock=clock, abandonment_timeout_ms=1000)
        analyzer.track_event(make_event("page-view", 0))

        clock.advance(1001)

        assert len(analyzer.sweep_abandoned()) == 1


class TestPersistence:
    """Tests for store interaction."""

    def test_state_persisted_after_each_event(self, two_stage_config, clock, make_event):
        """Test that all three keys are written."""
        store = InMemoryProgressStore()
        analyzer = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)

        analyzer.track_event(make_event("x", 0, user_id="active"))
        analyzer.track_event(make_event("x", 0, user_id="done"))
        analyzer.track_event(make_event("y", 100, user_id="done"))

        assert list(json.loads(store.raw(PROGRESS_KEY))) == ["active"]
        assert len(json.loads(store.raw(EVENTS_KEY))) == 3
        assert [p["user_id"] for p in json.loads(store.raw(COMPLETED_KEY))] == ["done"]

    def test_reload_from_store(self, two_stage_config, clock, make_event):
        """Test that a new analyzer resumes from persisted state."""
        store = InMemoryProgressStore()
        first = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)
        first.track_event(make_event("x", 0, user_id="active"))
        first.track_event(make_event("x", 0, user_id="done"))
        first.track_event(make_event("y", 100, user_id="done"))

        second = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)

        assert list(second.active_progress) == ["active"]
        assert [p.user_id for p in second.completed_funnels] == ["done"]
        assert len(second.events) == 3

        second.track_event(make_event("y", 200, user_id="active"))
        assert second.active_progress == {}
        assert len(second.completed_funnels) == 2

    def test_persisted_history_is_trimmed(self, clock, make_event):
        """Test that only the newest events are persisted."""
        store = InMemoryProgressStore()
        analyzer = ConversionFunnelAnalyzer(store=store, clock=clock, max_persisted_events=3)

        for offset in range(5):
            analyzer.track_event(make_event("time-on-page", offset))

        persisted = json.loads(store.raw(EVENTS_KEY))
        assert len(persisted) == 3
        assert persisted[-1]["timestamp"] == analyzer.events[-1].timestamp
        assert len(analyzer.events) == 5

    def test_quota_failure_does_not_break_tracking(self, clock, make_event):
        """Test that a full store is logged and ignored."""
        store = InMemoryProgressStore(quota_bytes=10)
        analyzer = ConversionFunnelAnalyzer(store=store, clock=clock)

        analyzer.track_event(make_event("page-view"))

        assert analyzer.get_progress("user-1").current_stage == "awareness"
        assert store.raw(PROGRESS_KEY) is None

    def test_corrupt_store_starts_empty(self, clock, make_event):
        """Test that unreadable persisted data is ignored on load."""
        store = InMemoryProgressStore()
        store._write(PROGRESS_KEY, "{not json")

        analyzer = ConversionFunnelAnalyzer(store=store, clock=clock)

        assert analyzer.active_progress == {}
        analyzer.track_event(make_event("page-view"))
        assert "user-1" in json.loads(store.raw(PROGRESS_KEY))


class TestConcurrency:
    """Tests for concurrent ingestion."""

    def test_parallel_users(self, two_stage_config, clock, make_event):
        """Test that concurrent journeys are all recorded."""
        analyzer = ConversionFunnelAnalyzer(config=two_stage_config, clock=clock)

        def journey(index):
            user_id = f"user-{index}"
            analyzer.track_event(make_event("x", 0, user_id=user_id))
            analyzer.track_event(make_event("y", 100, user_id=user_id))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(journey, range(40)))

        assert analyzer.active_progress == {}
        assert len(analyzer.completed_funnels) == 40
        assert len(analyzer.events) == 80
        assert all(p.total_value == 100 for p in analyzer.completed_funnels)


class InterleavingStore(InMemoryProgressStore):
    """Runs a callback just before the next progress write, simulating another writer."""

    def __init__(self):
        super().__init__()
        self.before_write = None

    def save_progress(self, progress):
        callback, self.before_write = self.before_write, None
        if callback:
            callback()
        super().save_progress(progress)


class AlwaysConflictingStore(InMemoryProgressStore):
    """Store whose progress writes always lose the version race."""

    def save_progress(self, progress):
        raise VersionConflictError(key=PROGRESS_KEY)


class StateLockCheckingStore(InMemoryProgressStore):
    """Records whether another thread could take the analyzer state lock during store I/O."""

    def __init__(self):
        super().__init__()
        self.analyzer = None
        self.lock_free = []

    def _check(self):
        if self.analyzer is None:
            return
        outcome = []

        def try_lock():
            if self.analyzer._state_lock.acquire(timeout=1):
                self.analyzer._state_lock.release()
                outcome.append(True)
            else:
                outcome.append(False)

        thread = threading.Thread(target=try_lock)
        thread.start()
        thread.join()
        self.lock_free.extend(outcome)

    def _read(self, key):
        self._check()
        return super()._read(key)

    def _write(self, key, payload):
        self._check()
        super()._write(key, payload)

    def _delete(self, key):
        self._check()
        super()._delete(key)


class TestSharedStore:
    """Tests for several analyzers sharing one store, as warm Lambda containers do."""

    def test_sweep_by_other_analyzer_is_not_overwritten(self, clock, make_event):
        """Test that an API container's later writes keep the sweeper's abandonment."""
        store = InMemoryProgressStore()
        api = ConversionFunnelAnalyzer(store=store, clock=clock)
        api.track_event(make_event("page-view", 0, user_id="u1"))

        clock.advance(25 * HOUR_MS)
        sweeper = ConversionFunnelAnalyzer(store=store, clock=clock)
        assert [p.user_id for p in sweeper.sweep_abandoned()] == ["u1"]

        api.track_event(make_event("page-view", 25 * HOUR_MS, user_id="u2"))

        fresh = ConversionFunnelAnalyzer(store=store, clock=clock)
        assert list(fresh.active_progress) == ["u2"]
        assert [p.user_id for p in fresh.completed_funnels] == ["u1"]
        assert fresh.get_progress("u1").abandoned_at == "awareness"

        api.refresh()
        assert list(api.active_progress) == ["u2"]
        assert api.get_progress("u1").is_abandoned is True

    def test_writers_keep_each_others_users(self, two_stage_config, clock, make_event):
        """Test that two analyzers tracking different users never erase each other."""
        store = InMemoryProgressStore()
        first = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)
        second = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)

        first.track_event(make_event("x", 0, user_id="u1"))
        second.track_event(make_event("x", 0, user_id="u2"))
        first.track_event(make_event("x", 50, user_id="u3"))

        fresh = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)
        assert sorted(fresh.active_progress) == ["u1", "u2", "u3"]
        assert len(fresh.events) == 3

    def test_same_user_across_analyzers(self, clock, make_event):
        """Test that a journey continued elsewhere is re-read before the next event."""
        store = InMemoryProgressStore()
        first = ConversionFunnelAnalyzer(store=store, clock=clock)
        second = ConversionFunnelAnalyzer(store=store, clock=clock)

        first.track_event(make_event("page-view", 0))
        second.track_event(make_event("scroll-depth", 10_000))
        first.track_event(make_event("service-page-view", 60_000))

        progress = first.get_progress("user-1")
        assert progress.completed_stages == ["awareness", "interest", "consideration"]
        assert len(progress.events) == 3
        assert progress.version == 3
        assert store.get_progress("user-1") == progress

    def test_finished_elsewhere_stays_finished(self, two_stage_config, clock, make_event):
        """Test that a journey completed by another analyzer is not reopened."""
        store = InMemoryProgressStore()
        first = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)
        second = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)

        first.track_event(make_event("x", 0))
        second.track_event(make_event("y", 100))
        first.track_event(make_event("x", 200))

        assert first.active_progress == {}
        assert first.get_progress("user-1").completed_stages == ["A", "B"]
        assert store.get_progress("user-1") is None
        assert len(first.events) == 2

    def test_conflict_is_retried_on_newer_journey(self, clock, make_event):
        """Test that a write racing another writer re-applies the event to the winner's journey."""
        store = InterleavingStore()
        first = ConversionFunnelAnalyzer(store=store, clock=clock)
        second = ConversionFunnelAnalyzer(store=store, clock=clock)
        first.track_event(make_event("page-view", 0))

        store.before_write = lambda: second.track_event(make_event("scroll-depth", 10_000))
        first.track_event(make_event("service-page-view", 60_000))

        stored = store.get_progress("user-1")
        assert stored.completed_stages == ["awareness", "interest", "consideration"]
        assert [e.event_name for e in stored.events] == ["page-view", "scroll-depth", "service-page-view"]
        assert first.get_progress("user-1") == stored

    def test_repeated_conflicts_drop_the_update(self, make_event, clock):
        """Test that exhausting retries leaves state untouched instead of raising."""
        analyzer = ConversionFunnelAnalyzer(store=AlwaysConflictingStore(), clock=clock)
        received = []
        analyzer.on_progression(received.append)

        analyzer.track_event(make_event("page-view"))

        assert analyzer.get_progress("user-1") is None
        assert len(analyzer.events) == 1
        assert received == []

    def test_unreadable_store_falls_back_to_memory(self, clock, make_event):
        """Test that tracking continues from memory when per-user reads fail."""
        store = InMemoryProgressStore()
        analyzer = ConversionFunnelAnalyzer(store=store, clock=clock)
        analyzer.track_event(make_event("page-view", 0))

        def broken(user_id):
            raise StorageError("Failed to read funnel state")

        store.get_progress = broken
        analyzer.track_event(make_event("scroll-depth", 10_000))

        assert analyzer.get_progress("user-1").completed_stages == ["awareness", "interest"]

    def test_store_io_never_holds_state_lock(self, two_stage_config, clock, make_event):
        """Test that readers are never blocked behind a slow store."""
        store = StateLockCheckingStore()
        analyzer = ConversionFunnelAnalyzer(store=store, config=two_stage_config, clock=clock)
        store.analyzer = analyzer

        analyzer.track_event(make_event("x", 0, user_id="u1"))
        analyzer.track_event(make_event("y", 100, user_id="u1"))
        analyzer.track_event(make_event("x", 0, user_id="u2"))
        analyzer.sweep_abandoned(now=clock.now + 25 * HOUR_MS)
        analyzer.clear_data()

        assert len(store.lock_free) > 10
        assert all(store.lock_free)
