import logging
import typing
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, date, datetime, tzinfo

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from sunsight_telemetry.errors import DuplicateForecastError, TransactionError, ValidationError
from sunsight_telemetry.models import ForecastRecord, ImageRef, Reading, ReadingImage, ReadingIn
from sunsight_telemetry.timeutil import day_bounds, utc_now

logger = logging.getLogger("ReadingStore")

ReadingRow = tuple[Reading, str | None]


class ReadingStore:
    """
    Durable storage of readings, their images and the forecasts derived from them.

    Reading + image writes share one transaction boundary. Forecast uniqueness
    is enforced by the database (unique ``forecast_time``), not by the caller.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Writes ---

    @staticmethod
    def _validate(fields: ReadingIn | Mapping[str, typing.Any]) -> ReadingIn:
        if isinstance(fields, ReadingIn):
            return fields
        try:
            return ReadingIn.model_validate(dict(fields))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid reading: {e}") from e

    def _insert_reading(self, session: Session, reading_in: ReadingIn) -> int:
        reading = Reading(**reading_in.model_dump(include=set(ReadingIn.model_fields)))
        session.add(reading)
        session.flush()
        assert reading.id is not None
        return reading.id

    def _upsert_image(self, session: Session, reading_id: int, url: str) -> None:
        table = ReadingImage.__table__  # type: ignore[attr-defined]
        dialect = session.get_bind().dialect.name

        stmt: typing.Any
        if dialect == "postgresql":
            stmt = pg_insert(table)
        elif dialect == "sqlite":
            stmt = sqlite_insert(table)
        else:
            raise TransactionError(f"Image upsert not supported on dialect '{dialect}'")

        stmt = stmt.values(reading_id=reading_id, image_url=url, stored_at=utc_now())
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.reading_id],
            set_={"image_url": stmt.excluded.image_url, "stored_at": stmt.excluded.stored_at},
        )
        session.execute(stmt)

    def insert_reading(self, fields: ReadingIn | Mapping[str, typing.Any]) -> int:
        reading_in = self._validate(fields)
        try:
            with self.session_scope() as session:
                reading_id = self._insert_reading(session, reading_in)
        except SQLAlchemyError as e:
            raise TransactionError(f"Failed to insert reading: {e}") from e
        return reading_id

    def upsert_image(self, reading_id: int, url: str) -> None:
        """Insert or replace the image of a reading. Last writer wins."""
        if not url:
            raise ValidationError("image_url must not be empty")
        try:
            with self.session_scope() as session:
                if session.get(Reading, reading_id) is None:
                    raise ValidationError(f"Reading {reading_id} does not exist")
                self._upsert_image(session, reading_id, url)
        except SQLAlchemyError as e:
            raise TransactionError(f"Failed to store image for reading {reading_id}: {e}") from e

    def insert_reading_with_image(
        self, fields: ReadingIn | Mapping[str, typing.Any], url: str
    ) -> int:
        """Insert a reading and its image atomically. On failure neither row exists."""
        reading_in = self._validate(fields)
        if not url:
            raise ValidationError("image_url must not be empty")

        try:
            with self.session_scope() as session:
                reading_id = self._insert_reading(session, reading_in)
                self._upsert_image(session, reading_id, url)
        except Exception as e:
            logger.error(f"Error inserting weather data and image: {e}")
            raise TransactionError(f"Reading and image were not stored: {e}") from e

        logger.debug(f"Stored reading {reading_id} with image {url}")
        return reading_id

    def insert_forecast(self, source_reading_id: int, target_time: datetime, value: float) -> bool:
        """Store a forecast. Returns False when one already exists for ``target_time``."""
        try:
            self._insert_forecast(source_reading_id, target_time, value)
        except DuplicateForecastError:
            logger.info(f"Forecast for {target_time.isoformat()} already exists, skipping insert")
            return False
        return True

    def _insert_forecast(self, source_reading_id: int, target_time: datetime, value: float) -> None:
        try:
            with self.session_scope() as session:
                session.add(
                    ForecastRecord(
                        source_reading_id=source_reading_id,
                        forecast_time=target_time,
                        predicted_value=value,
                    )
                )
        except IntegrityError as e:
            if self.has_forecast_for(target_time):
                raise DuplicateForecastError(str(target_time)) from e
            raise TransactionError(f"Failed to store forecast: {e}") from e
        except SQLAlchemyError as e:
            raise TransactionError(f"Failed to store forecast: {e}") from e

    # --- Pipeline Reads ---

    def get_reading(self, reading_id: int) -> Reading | None:
        with self.session_scope() as session:
            return session.get(Reading, reading_id)

    def count_readings_for_day(self, day: date, tz: tzinfo = UTC) -> int:
        """Number of readings whose timestamp falls on ``day`` in timezone ``tz``."""
        start, end = day_bounds(day, tz)
        with self.session_scope() as session:
            stmt = (
                select(func.count())
                .select_from(Reading)
                .where(col(Reading.timestamp) >= start, col(Reading.timestamp) < end)
            )
            return int(session.exec(stmt).one())

    def most_recent_image_at_or_before(self, timestamp: datetime) -> ImageRef | None:
        """Image of the latest reading at or before ``timestamp`` (by stored timestamp)."""
        with self.session_scope() as session:
            stmt = (
                select(Reading.id, Reading.timestamp, ReadingImage.image_url)
                .join(ReadingImage, col(ReadingImage.reading_id) == col(Reading.id))
                .where(col(Reading.timestamp) <= timestamp)
                .order_by(col(Reading.timestamp).desc(), col(Reading.id).desc())
                .limit(1)
            )
            row = session.exec(stmt).first()

        if row is None:
            return None
        reading_id, ts, url = row
        return ImageRef(reading_id=reading_id, url=url, timestamp=ts)

    def has_forecast_for(self, target_time: datetime) -> bool:
        with self.session_scope() as session:
            stmt = (
                select(func.count())
                .select_from(ForecastRecord)
                .where(col(ForecastRecord.forecast_time) == target_time)
            )
            return int(session.exec(stmt).one()) > 0

    # --- Read Projections ---

    def _readings_with_images(
        self, *conditions: typing.Any, newest_first: bool = False, limit: int | None = None
    ) -> list[ReadingRow]:
        order = col(Reading.timestamp).desc() if newest_first else col(Reading.timestamp).asc()
        stmt = (
            select(Reading, ReadingImage.image_url)
            .join(ReadingImage, col(ReadingImage.reading_id) == col(Reading.id), isouter=True)
            .where(*conditions)
            .order_by(order)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.session_scope() as session:
            return [(reading, url) for reading, url in session.exec(stmt).all()]

    def latest_reading_with_image(self) -> ReadingRow | None:
        rows = self._readings_with_images(newest_first=True, limit=1)
        return rows[0] if rows else None

    def readings_for_day(self, day: date, tz: tzinfo = UTC) -> list[ReadingRow]:
        start, end = day_bounds(day, tz)
        return self._readings_with_images(
            col(Reading.timestamp) >= start, col(Reading.timestamp) < end
        )

    def readings_between(self, start: datetime, end: datetime) -> list[ReadingRow]:
        """Readings with start <= timestamp <= end, oldest first."""
        return self._readings_with_images(
            col(Reading.timestamp) >= start, col(Reading.timestamp) <= end
        )

    def next_forecasts_after(self, after: datetime, limit: int = 10) -> list[ForecastRecord]:
        with self.session_scope() as session:
            stmt = (
                select(ForecastRecord)
                .where(col(ForecastRecord.forecast_time) > after)
                .order_by(col(ForecastRecord.forecast_time).asc())
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def forecasts_for_day(self, day: date, tz: tzinfo = UTC) -> list[ForecastRecord]:
        start, end = day_bounds(day, tz)
        with self.session_scope() as session:
            stmt = (
                select(ForecastRecord)
                .where(
                    col(ForecastRecord.forecast_time) >= start,
                    col(ForecastRecord.forecast_time) < end,
                )
                .order_by(col(ForecastRecord.forecast_time).asc())
            )
            return list(session.exec(stmt).all())
