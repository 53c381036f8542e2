"""Environment-driven configuration and analyzer wiring.

The host environment picks the progress store; the analyzer itself never
branches on where it runs.
"""

import os
from dataclasses import dataclass

import structlog

from funnelscope.models.stage import FunnelConfig, default_funnel_config
from funnelscope.repositories.base import ProgressStore
from funnelscope.repositories.dynamodb import DynamoDBProgressStore
from funnelscope.repositories.file import JsonFileProgressStore
from funnelscope.repositories.memory import InMemoryProgressStore
from funnelscope.services.abandonment_sweeper import DEFAULT_SWEEP_INTERVAL_SECONDS, AbandonmentSweeper
from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer
from funnelscope.services.funnel_events import EventBridgeProgressionPublisher, ProgressionNotifier
from funnelscope.utils.exceptions import ConfigurationError

logger = structlog.get_logger()

STORE_BACKENDS = ("memory", "file", "dynamodb")


@dataclass(frozen=True)
class FunnelSettings:
    """Runtime settings for a funnel deployment."""

    store_backend: str = "memory"
    store_path: str = ".funnelscope"
    table_name: str = "funnelscope-dev"
    namespace: str = "default"
    stages_path: str | None = None
    event_bus_name: str | None = None
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS

    @classmethod
    def from_env(cls) -> "FunnelSettings":
        """Read settings from FUNNEL_* environment variables.

        Raises:
            ConfigurationError: On an unknown store backend or a bad interval.
        """
        backend = os.environ.get("FUNNEL_STORE", "memory").strip().lower()
        if backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"FUNNEL_STORE must be one of {', '.join(STORE_BACKENDS)}, got '{backend}'"
            )

        raw_interval = os.environ.get("FUNNEL_SWEEP_INTERVAL_SECONDS", str(DEFAULT_SWEEP_INTERVAL_SECONDS))
        try:
            interval = float(raw_interval)
        except ValueError as e:
            raise ConfigurationError(f"FUNNEL_SWEEP_INTERVAL_SECONDS is not a number: {raw_interval}") from e
        if interval <= 0:
            raise ConfigurationError("FUNNEL_SWEEP_INTERVAL_SECONDS must be positive")

        return cls(
            store_backend=backend,
            store_path=os.environ.get("FUNNEL_STORE_PATH", ".funnelscope"),
            table_name=os.environ.get("TABLE_NAME", "funnelscope-dev"),
            namespace=os.environ.get("FUNNEL_NAMESPACE", "default"),
            stages_path=os.environ.get("FUNNEL_STAGES_PATH") or None,
            event_bus_name=os.environ.get("FUNNEL_EVENT_BUS_NAME") or None,
            sweep_interval_seconds=interval,
        )


def build_store(settings: FunnelSettings) -> ProgressStore:
    """Create the progress store selected by settings."""
    if settings.store_backend == "dynamodb":
        return DynamoDBProgressStore(table_name=settings.table_name, namespace=settings.namespace)
    if settings.store_backend == "file":
        return JsonFileProgressStore(settings.store_path)
    return InMemoryProgressStore()


def load_funnel_config(path: str | None) -> FunnelConfig:
    """Load stage configuration from a JSON file, or the default funnel."""
    if not path:
        return default_funnel_config()
    config = FunnelConfig.from_file(path)
    logger.info("Funnel configuration loaded", path=path, stages=len(config.stages))
    return config


def build_analyzer(settings: FunnelSettings | None = None) -> ConversionFunnelAnalyzer:
    """Composition root used by the Lambda handlers."""
    settings = settings or FunnelSettings.from_env()

    notifier = ProgressionNotifier()
    if settings.event_bus_name:
        notifier.subscribe(EventBridgeProgressionPublisher(event_bus_name=settings.event_bus_name))

    return ConversionFunnelAnalyzer(
        store=build_store(settings),
        config=load_funnel_config(settings.stages_path),
        notifier=notifier,
    )


def build_sweeper(
    settings: FunnelSettings | None = None,
    analyzer: ConversionFunnelAnalyzer | None = None,
) -> AbandonmentSweeper:
    """Background sweeper for hosts that keep one analyzer alive.

    Runs on FUNNEL_SWEEP_INTERVAL_SECONDS. The sweeper is returned stopped;
    call start() once the host is serving.
    """
    settings = settings or FunnelSettings.from_env()
    return AbandonmentSweeper(
        analyzer or build_analyzer(settings),
        interval_seconds=settings.sweep_interval_seconds,
    )
