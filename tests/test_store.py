from datetime import timedelta
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import Session, select

from sunsight_telemetry.errors import TransactionError, ValidationError
from sunsight_telemetry.models import ForecastRecord, Reading, ReadingImage
from sunsight_telemetry.store import ReadingStore

from conftest import reading_fields


def _count(store, model) -> int:
    with Session(store.engine) as session:
        return len(session.exec(select(model)).all())


def test_insert_reading(store, day_start):
    reading_id = store.insert_reading(reading_fields(day_start, light_lux=1200.0))

    reading = store.get_reading(reading_id)
    assert reading.temperature_c == 22.5
    assert reading.light_lux == 1200.0
    assert reading.timestamp == day_start


def test_insert_reading_legacy_aliases(store, day_start):
    """The device's ambientWeather* names map onto the outdoor sensor block."""
    fields = reading_fields(
        day_start,
        ambientWeatherLightLux=800.0,
        ambientWeatherBatteryOk=True,
        ambientWeatherTemp=19.0,
    )
    reading = store.get_reading(store.insert_reading(fields))

    assert reading.light_lux == 800.0
    assert reading.battery_ok is True
    assert reading.aux_temperature == 19.0


def test_insert_reading_missing_field(store, day_start):
    fields = reading_fields(day_start)
    del fields["pressure"]

    with pytest.raises(ValidationError, match="pressure"):
        store.insert_reading(fields)
    assert _count(store, Reading) == 0


def test_insert_reading_with_image(store, day_start):
    reading_id = store.insert_reading_with_image(reading_fields(day_start), "img1")

    ref = store.most_recent_image_at_or_before(day_start)
    assert ref.reading_id == reading_id
    assert ref.url == "img1"


def test_insert_reading_with_empty_image(store, day_start):
    with pytest.raises(ValidationError):
        store.insert_reading_with_image(reading_fields(day_start), "")
    assert _count(store, Reading) == 0


def test_image_write_failure_rolls_back_reading(store, day_start):
    """Reading and image commit together or not at all."""
    with patch.object(ReadingStore, "_upsert_image", side_effect=RuntimeError("disk full")):
        with pytest.raises(TransactionError, match="disk full"):
            store.insert_reading_with_image(reading_fields(day_start), "img1")

    assert _count(store, Reading) == 0
    assert _count(store, ReadingImage) == 0


def test_upsert_image_replaces(store, day_start):
    """A second upload for the same reading replaces the first."""
    reading_id = store.insert_reading_with_image(reading_fields(day_start), "first")
    store.upsert_image(reading_id, "second")

    assert _count(store, ReadingImage) == 1
    assert store.most_recent_image_at_or_before(day_start).url == "second"


def test_upsert_image_unknown_reading(store):
    with pytest.raises(ValidationError, match="does not exist"):
        store.upsert_image(999, "img")


def test_count_readings_for_day(store, day_start):
    for hour in (0, 6, 23):
        store.insert_reading(reading_fields(day_start + timedelta(hours=hour)))
    store.insert_reading(reading_fields(day_start + timedelta(days=1)))

    assert store.count_readings_for_day(day_start.date()) == 3
    assert store.count_readings_for_day((day_start - timedelta(days=1)).date()) == 0


def test_count_readings_for_day_local_timezone(store, day_start):
    """Day boundaries follow the station timezone, not UTC."""
    tz = ZoneInfo("America/New_York")
    # 02:00 UTC on June 12 is still June 11 in New York (UTC-4)
    store.insert_reading(reading_fields(day_start + timedelta(hours=2)))
    store.insert_reading(reading_fields(day_start + timedelta(hours=10)))

    assert store.count_readings_for_day(day_start.date(), tz) == 1
    assert store.count_readings_for_day((day_start - timedelta(days=1)).date(), tz) == 1


def test_most_recent_image_at_or_before(store, day_start):
    store.insert_reading_with_image(reading_fields(day_start), "early")
    store.insert_reading_with_image(reading_fields(day_start + timedelta(minutes=10)), "late")
    # A reading without an image is skipped
    store.insert_reading(reading_fields(day_start + timedelta(minutes=15)))

    assert store.most_recent_image_at_or_before(day_start + timedelta(minutes=5)).url == "early"
    assert store.most_recent_image_at_or_before(day_start + timedelta(minutes=10)).url == "late"
    assert store.most_recent_image_at_or_before(day_start + timedelta(minutes=20)).url == "late"
    assert store.most_recent_image_at_or_before(day_start - timedelta(seconds=1)) is None


def test_insert_forecast_duplicate(store, day_start):
    reading_id = store.insert_reading(reading_fields(day_start))
    target = day_start + timedelta(minutes=5)

    assert store.insert_forecast(reading_id, target, 1000.0) is True
    assert store.insert_forecast(reading_id, target, 2000.0) is False

    assert store.has_forecast_for(target)
    records = store.next_forecasts_after(day_start)
    assert [r.predicted_value for r in records] == [1000.0]


def test_latest_reading_with_image(store, day_start):
    assert store.latest_reading_with_image() is None

    store.insert_reading_with_image(reading_fields(day_start), "a")
    newest = store.insert_reading(reading_fields(day_start + timedelta(hours=1), temperature_c=25.0))

    reading, url = store.latest_reading_with_image()
    assert reading.id == newest
    assert url is None


def test_readings_for_day_and_between(store, day_start):
    for minutes in (0, 30, 60):
        store.insert_reading_with_image(
            reading_fields(day_start + timedelta(minutes=minutes)), f"img{minutes}"
        )
    store.insert_reading(reading_fields(day_start - timedelta(minutes=1)))

    rows = store.readings_for_day(day_start.date())
    assert [url for _, url in rows] == ["img0", "img30", "img60"]

    rows = store.readings_between(day_start + timedelta(minutes=30), day_start + timedelta(minutes=60))
    assert [url for _, url in rows] == ["img30", "img60"]


def test_forecast_queries(store, day_start):
    reading_id = store.insert_reading(reading_fields(day_start))
    for minutes in (5, 10, 15):
        store.insert_forecast(reading_id, day_start + timedelta(minutes=minutes), float(minutes))
    store.insert_forecast(reading_id, day_start + timedelta(days=1), 99.0)

    upcoming = store.next_forecasts_after(day_start + timedelta(minutes=5), limit=2)
    assert [r.predicted_value for r in upcoming] == [10.0, 15.0]

    today = store.forecasts_for_day(day_start.date())
    assert [r.predicted_value for r in today] == [5.0, 10.0, 15.0]
    assert _count(store, ForecastRecord) == 4
