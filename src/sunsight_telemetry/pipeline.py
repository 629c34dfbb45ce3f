from dataclasses import dataclass
from datetime import timedelta

import structlog

from sunsight_telemetry.config import Settings
from sunsight_telemetry.database import init_db
from sunsight_telemetry.forecast import ForecastEngine
from sunsight_telemetry.imaging import BlobImageFetcher
from sunsight_telemetry.model_registry import ModelRegistry
from sunsight_telemetry.scaler import ScalerStore
from sunsight_telemetry.scheduler import ForecastScheduler
from sunsight_telemetry.store import ReadingStore

logger = structlog.get_logger("Pipeline")


@dataclass(frozen=True)
class Pipeline:
    """Every long-lived component, constructed once at startup and shared read-only."""

    settings: Settings
    store: ReadingStore
    scaler: ScalerStore
    model: ModelRegistry
    fetcher: BlobImageFetcher
    engine: ForecastEngine
    scheduler: ForecastScheduler


def assemble_pipeline(
    settings: Settings,
    store: ReadingStore,
    scaler: ScalerStore,
    model: ModelRegistry,
    fetcher: BlobImageFetcher,
) -> Pipeline:
    engine = ForecastEngine(
        store,
        model,
        scaler,
        fetcher,
        horizon=timedelta(minutes=settings.forecast_horizon_minutes),
        offset=settings.forecast_offset,
    )
    scheduler = ForecastScheduler(
        store,
        engine,
        tz=settings.station_zone(),
        min_daily_readings=settings.min_daily_readings,
        lookback_days=settings.schedule_lookback_days,
    )
    return Pipeline(settings, store, scaler, model, fetcher, engine, scheduler)


def build_pipeline(settings: Settings) -> Pipeline:
    """Fatal startup sequence: configuration, scaler, model, database.

    Any ConfigurationError propagates; the service must not start degraded.
    """
    settings.check_required()
    assert settings.scaler_path is not None and settings.model_path is not None
    assert settings.database_url is not None and settings.blob_store_url is not None

    scaler = ScalerStore.load(settings.scaler_path)
    model = ModelRegistry.load(
        settings.model_path,
        fallback_input_size=settings.model_input_size,
        channels_last=settings.model_channels_last,
    )
    store = ReadingStore(init_db(settings.database_url))
    fetcher = BlobImageFetcher(
        settings.blob_store_url,
        timeout=settings.image_fetch_timeout,
        attempts=settings.image_fetch_attempts,
    )

    logger.info("Pipeline ready", features=scaler.n_features, input_size=model.input_size)
    return assemble_pipeline(settings, store, scaler, model, fetcher)
