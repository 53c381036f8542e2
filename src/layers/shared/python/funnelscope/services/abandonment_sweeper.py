"""Background abandonment sweep for long-running processes.

Lambda deployments use the scheduled worker handler instead; this thread
serves hosts that keep one analyzer alive (dev server, container).
"""

import threading

import structlog

from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer

logger = structlog.get_logger()

DEFAULT_SWEEP_INTERVAL_SECONDS = 300


class AbandonmentSweeper:
    """Runs ConversionFunnelAnalyzer.sweep_abandoned() on a fixed interval."""

    def __init__(
        self,
        analyzer: ConversionFunnelAnalyzer,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.analyzer = analyzer
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Sweep now.

        Returns:
            Number of journeys marked abandoned.
        """
        try:
            abandoned = self.analyzer.sweep_abandoned()
        except Exception as e:
            logger.exception("Abandonment sweep failed", error=str(e))
            return 0
        return len(abandoned)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        """Start the sweep thread. No-op if already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="funnel-abandonment-sweeper", daemon=True)
        self._thread.start()
        logger.info("Abandonment sweeper started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the sweep thread and wait for it to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Abandonment sweeper stopped")
