import typing
from dataclasses import dataclass
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from sunsight_telemetry.timeutil import as_utc, utc_now


class UTCDateTime(TypeDecorator):  # type: ignore[type-arg]
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value: typing.Any, dialect: typing.Any) -> typing.Any:
        return as_utc(value) if value is not None else None

    def process_result_value(self, value: typing.Any, dialect: typing.Any) -> typing.Any:
        return as_utc(value) if value is not None else None


class Reading(SQLModel, table=True):
    """
    One timestamped sensor sample from the field device.
    Immutable once written.
    """

    __tablename__ = "weather_data"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(sa_type=UTCDateTime, index=True)

    # Main station block
    temperature_c: float
    temperature_f: float | None = None
    humidity: float
    pressure: float
    wind_speed: float | None = None
    wind_direction: float | None = None

    # Outdoor sensor block
    wind_max_speed: float | None = None
    rain: float | None = None
    uv: float | None = None
    uvi: float | None = None
    light_lux: float | None = None
    battery_ok: bool | None = None
    aux_temperature: float | None = None
    aux_humidity: float | None = None
    aux_wind_direction: float | None = None
    aux_wind_speed: float | None = None


class ReadingImage(SQLModel, table=True):
    """Latest sky-camera image per reading (upserted, never appended)."""

    __tablename__ = "weather_images"

    id: int | None = Field(default=None, primary_key=True)
    reading_id: int = Field(foreign_key="weather_data.id", unique=True)
    image_url: str = Field(max_length=1024)
    stored_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class ForecastRecord(SQLModel, table=True):
    __tablename__ = "forecasts"

    id: int | None = Field(default=None, primary_key=True)
    source_reading_id: int = Field(foreign_key="weather_data.id", index=True)
    # Unique: at most one forecast per target instant
    forecast_time: datetime = Field(sa_type=UTCDateTime, unique=True)
    predicted_value: float
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


@dataclass(frozen=True)
class ImageRef:
    """The image chosen for scoring and the reading it belongs to."""

    reading_id: int
    url: str
    timestamp: datetime


# --- API / Ingestion Schemas ---


class ReadingIn(BaseModel):
    """
    Strict model for incoming readings.
    Accepts the device's legacy field names as aliases.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: datetime
    temperature_c: float
    humidity: float = PydanticField(ge=0, le=100)
    pressure: float
    temperature_f: float | None = None
    wind_speed: float | None = PydanticField(default=None, ge=0)
    wind_direction: float | None = None

    wind_max_speed: float | None = PydanticField(
        default=None, ge=0, validation_alias=AliasChoices("wind_max_speed", "ambientWeatherWindMaxSpeed")
    )
    rain: float | None = PydanticField(
        default=None, ge=0, validation_alias=AliasChoices("rain", "ambientWeatherRain")
    )
    uv: float | None = PydanticField(default=None, validation_alias=AliasChoices("uv", "ambientWeatherUV"))
    uvi: float | None = PydanticField(default=None, validation_alias=AliasChoices("uvi", "ambientWeatherUVI"))
    light_lux: float | None = PydanticField(
        default=None, ge=0, validation_alias=AliasChoices("light_lux", "ambientWeatherLightLux")
    )
    battery_ok: bool | None = PydanticField(
        default=None, validation_alias=AliasChoices("battery_ok", "ambientWeatherBatteryOk")
    )
    aux_temperature: float | None = PydanticField(
        default=None, validation_alias=AliasChoices("aux_temperature", "ambientWeatherTemp")
    )
    aux_humidity: float | None = PydanticField(
        default=None, validation_alias=AliasChoices("aux_humidity", "ambientWeatherHumidity")
    )
    aux_wind_direction: float | None = PydanticField(
        default=None, validation_alias=AliasChoices("aux_wind_direction", "ambientWeatherWindDirection")
    )
    aux_wind_speed: float | None = PydanticField(
        default=None, validation_alias=AliasChoices("aux_wind_speed", "ambientWeatherWindSpeed")
    )

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class IngestRequest(ReadingIn):
    image_url: str = PydanticField(min_length=1, max_length=1024)


class IngestResponse(BaseModel):
    message: str
    weather_data_id: int


class ReadingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    temperature_c: float
    temperature_f: float | None
    humidity: float
    pressure: float
    wind_speed: float | None
    wind_direction: float | None
    wind_max_speed: float | None
    rain: float | None
    uv: float | None
    uvi: float | None
    light_lux: float | None
    battery_ok: bool | None
    aux_temperature: float | None
    aux_humidity: float | None
    aux_wind_direction: float | None
    aux_wind_speed: float | None
    image_url: str | None = None


class ForecastOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_reading_id: int
    forecast_time: datetime
    predicted_value: float
