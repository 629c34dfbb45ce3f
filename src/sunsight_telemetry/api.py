from datetime import date, datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from sunsight_telemetry.errors import TransactionError, ValidationError
from sunsight_telemetry.models import ForecastOut, IngestRequest, IngestResponse, ReadingOut
from sunsight_telemetry.pipeline import Pipeline
from sunsight_telemetry.store import ReadingRow
from sunsight_telemetry.timeutil import local_day, utc_now

logger = structlog.get_logger("API")

router = APIRouter()


def get_pipeline(request: Request) -> Pipeline:
    pipeline: Pipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return pipeline


def _reading_out(row: ReadingRow) -> ReadingOut:
    reading, image_url = row
    return ReadingOut(**reading.model_dump(), image_url=image_url)


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/insert-data", status_code=201, response_model=IngestResponse)
def insert_weather_data(
    payload: IngestRequest,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Store a reading with its image, then hand forecasting off as a background task."""
    try:
        reading_id = pipeline.store.insert_reading_with_image(payload, payload.image_url)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except TransactionError as e:
        raise HTTPException(status_code=500, detail="Server Error") from e

    # Runs after the response is sent; failures are logged by the scheduler
    background_tasks.add_task(pipeline.scheduler.handle, reading_id)

    logger.info("Reading ingested", reading_id=reading_id)
    return IngestResponse(
        message="Weather data and image uploaded successfully.", weather_data_id=reading_id
    )


@router.get("/live-data", response_model=ReadingOut)
def get_live_data(pipeline: Pipeline = Depends(get_pipeline)) -> ReadingOut:
    row = pipeline.store.latest_reading_with_image()
    if row is None:
        raise HTTPException(status_code=404, detail="No data found.")
    return _reading_out(row)


@router.get("/history-data", response_model=list[ReadingOut])
def get_historical_data(
    day: date = Query(..., alias="date", description="Station-local day, YYYY-MM-DD"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[ReadingOut]:
    rows = pipeline.store.readings_for_day(day, pipeline.settings.station_zone())
    return [_reading_out(row) for row in rows]


@router.get("/latest-forecasts", response_model=list[ForecastOut])
def get_latest_forecasts(
    after: datetime | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[ForecastOut]:
    """Upcoming forecasts after ``after`` (default: now)."""
    records = pipeline.store.next_forecasts_after(after or utc_now(), limit=limit)
    return [ForecastOut.model_validate(r) for r in records]


@router.get("/latest-forecasts-all", response_model=list[ForecastOut])
def get_current_day_forecasts(pipeline: Pipeline = Depends(get_pipeline)) -> list[ForecastOut]:
    tz = pipeline.settings.station_zone()
    records = pipeline.store.forecasts_for_day(local_day(utc_now(), tz), tz)
    return [ForecastOut.model_validate(r) for r in records]
