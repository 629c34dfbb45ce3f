import enum
from datetime import timedelta

import structlog

from sunsight_telemetry.errors import MissingInputError, NotFoundError
from sunsight_telemetry.imaging import BlobImageFetcher, image_to_tensor
from sunsight_telemetry.model_registry import ModelRegistry
from sunsight_telemetry.scaler import ScalerStore
from sunsight_telemetry.store import ReadingStore
from sunsight_telemetry.timeutil import as_utc

logger = structlog.get_logger("Forecast")


class ForecastOutcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class ForecastEngine:
    """
    Scores the sky image behind a reading and records one forecast per target instant.

    Nothing is written unless every step succeeds. Failures surface as
    ForecastError subclasses for the caller to log.
    """

    def __init__(
        self,
        store: ReadingStore,
        model: ModelRegistry,
        scaler: ScalerStore,
        fetcher: BlobImageFetcher,
        horizon: timedelta = timedelta(minutes=5),
        offset: float = 0.0,
    ) -> None:
        self.store = store
        self.model = model
        self.scaler = scaler
        self.fetcher = fetcher
        self.horizon = horizon
        self.offset = offset

    def run(self, reading_id: int) -> ForecastOutcome:
        reading = self.store.get_reading(reading_id)
        if reading is None:
            raise NotFoundError(f"Reading {reading_id} not found")

        reading_time = as_utc(reading.timestamp)
        target_time = reading_time + self.horizon
        log = logger.bind(reading_id=reading_id, forecast_time=target_time.isoformat())

        if self.store.has_forecast_for(target_time):
            log.info("Forecast already exists")
            return ForecastOutcome.ALREADY_EXISTS

        # The newest image may belong to an earlier reading
        image = self.store.most_recent_image_at_or_before(reading_time)
        if image is None:
            raise MissingInputError(f"No image at or before {reading_time.isoformat()}")

        data = self.fetcher.fetch(image.url)
        tensor = image_to_tensor(data, self.model.input_size, self.model.channels_last)
        scaled = self.model.predict(tensor)
        value = self.scaler.inverse([scaled])[0] + self.offset

        if not self.store.insert_forecast(reading_id, target_time, value):
            log.info("Forecast stored concurrently, dropping duplicate")
            return ForecastOutcome.ALREADY_EXISTS

        log.info(
            "Forecast stored",
            image_reading_id=image.reading_id,
            scaled=scaled,
            predicted_value=value,
        )
        return ForecastOutcome.CREATED
