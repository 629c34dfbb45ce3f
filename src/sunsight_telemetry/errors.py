class TelemetryError(Exception):
    """Base class for all errors raised by the telemetry service."""


class ConfigurationError(TelemetryError):
    """Missing or malformed startup configuration (fatal)."""


class ValidationError(TelemetryError):
    """Malformed or missing reading fields."""


class TransactionError(TelemetryError):
    """The reading + image write failed and was rolled back."""


class ForecastError(TelemetryError):
    """Failure scoped to forecast generation. Never fails ingestion."""


class NotFoundError(ForecastError):
    pass


class MissingInputError(ForecastError):
    """No scoring image is available at or before the reading."""


class InferenceFailure(ForecastError):
    """Image fetch, decode or model call failed."""


class DuplicateForecastError(TelemetryError):
    """A forecast for the target instant already exists."""
