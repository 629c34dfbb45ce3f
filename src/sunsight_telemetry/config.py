import logging
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sunsight_telemetry.errors import ConfigurationError

logger = logging.getLogger("Config")


class Settings(BaseSettings):
    """
    Service configuration using Pydantic Settings.
    Reads from environment variables and an optional .env file.
    """

    # Application Config
    log_level: str = "INFO"
    log_file: str | None = None
    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins_raw: str = Field(default="*", alias="CORS_ORIGINS")

    # Database Config
    # DATABASE_URL wins; otherwise the POSTGRES_* parts are composed.
    database_url_override: str | None = Field(default=None, alias="DATABASE_URL")
    postgres_user: str | None = None
    postgres_password: str | None = None
    postgres_db: str | None = None
    postgres_host: str | None = None
    postgres_port: int = 5432

    # Artifacts
    model_path: Path | None = None
    scaler_path: Path | None = None
    model_input_size: int = Field(default=128, ge=8)
    model_channels_last: bool = True

    # Blob store (images are uploaded by an external component)
    blob_store_url: str | None = None
    image_fetch_timeout: float = Field(default=10.0, gt=0)
    image_fetch_attempts: int = Field(default=3, ge=1)

    # Forecasting
    forecast_horizon_minutes: int = Field(default=5, ge=1)
    forecast_offset: float = 0.0
    min_daily_readings: int = Field(default=5, ge=0)
    schedule_lookback_days: int = Field(default=1, ge=0)
    station_timezone: str = "UTC"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    @computed_field
    def database_url(self) -> str | None:
        if self.database_url_override:
            return self.database_url_override
        parts = (self.postgres_user, self.postgres_password, self.postgres_host, self.postgres_db)
        if not all(parts):
            return None
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.cors_origins_raw.split(",") if item.strip()]

    def station_zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.station_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown station timezone: {self.station_timezone}") from e

    def check_required(self) -> None:
        """Raise ConfigurationError naming every missing required setting."""
        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL (or POSTGRES_USER/PASSWORD/HOST/DB)")
        if self.model_path is None:
            missing.append("MODEL_PATH")
        if self.scaler_path is None:
            missing.append("SCALER_PATH")
        if not self.blob_store_url:
            missing.append("BLOB_STORE_URL")

        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        self.station_zone()
        logger.info("Configuration complete.")
