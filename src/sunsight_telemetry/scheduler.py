import enum
from datetime import timedelta, tzinfo

import structlog
from sqlalchemy.exc import SQLAlchemyError

from sunsight_telemetry.errors import ForecastError, TransactionError
from sunsight_telemetry.forecast import ForecastEngine
from sunsight_telemetry.models import Reading
from sunsight_telemetry.store import ReadingStore
from sunsight_telemetry.timeutil import local_day

logger = structlog.get_logger("Scheduler")


class ScheduleDecision(enum.Enum):
    SKIP = "skip"
    SCHEDULE = "schedule"


class ForecastScheduler:
    """
    Gates forecasting on the data density of the station day.

    The day counted is the reading's local day minus ``lookback_days``
    (one day by default, matching the deployed station behaviour).
    """

    def __init__(
        self,
        store: ReadingStore,
        engine: ForecastEngine,
        tz: tzinfo,
        min_daily_readings: int = 5,
        lookback_days: int = 1,
    ) -> None:
        self.store = store
        self.engine = engine
        self.tz = tz
        self.min_daily_readings = min_daily_readings
        self.lookback_days = lookback_days

    def decide(self, reading: Reading) -> ScheduleDecision:
        day = local_day(reading.timestamp, self.tz) - timedelta(days=self.lookback_days)
        count = self.store.count_readings_for_day(day, self.tz)
        if count >= self.min_daily_readings:
            return ScheduleDecision.SCHEDULE
        logger.debug(
            "Not enough readings to forecast",
            reading_id=reading.id,
            day=day.isoformat(),
            count=count,
        )
        return ScheduleDecision.SKIP

    def handle(self, reading_id: int) -> ScheduleDecision:
        """Decide for a freshly ingested reading and run the forecast if due.

        Forecast failures are logged here and never propagate to ingestion.
        """
        try:
            reading = self.store.get_reading(reading_id)
            if reading is None:
                logger.warning("Reading vanished before scheduling", reading_id=reading_id)
                return ScheduleDecision.SKIP
            decision = self.decide(reading)
        except SQLAlchemyError:
            logger.exception("Scheduling check failed", reading_id=reading_id)
            return ScheduleDecision.SKIP

        if decision is ScheduleDecision.SKIP:
            return decision

        try:
            outcome = self.engine.run(reading_id)
            logger.info("Forecast run finished", reading_id=reading_id, outcome=outcome.value)
        except ForecastError as e:
            logger.warning(
                "Forecast skipped", reading_id=reading_id, error=type(e).__name__, detail=str(e)
            )
        except TransactionError:
            logger.exception("Forecast could not be stored", reading_id=reading_id)
        except Exception:
            logger.exception("Forecast run crashed", reading_id=reading_id)
        return decision
