import io
from datetime import UTC, datetime
from pathlib import Path

import httpx
import numpy as np
import pytest
from PIL import Image
from sqlmodel import SQLModel

from sunsight_telemetry.config import Settings
from sunsight_telemetry.database import make_engine
from sunsight_telemetry.imaging import BlobImageFetcher
from sunsight_telemetry.model_registry import ModelRegistry
from sunsight_telemetry.pipeline import assemble_pipeline
from sunsight_telemetry.scaler import ScalerParameters, ScalerStore
from sunsight_telemetry.store import ReadingStore

BLOB_URL = "https://blob.test/weather_images"

# Feature 0 is the lux target, feature 1 an auxiliary input
SCALER_PARAMS = {
    "min_": [0.0, -0.5],
    "scale_": [1 / 50000.0, 1 / 20.0],
    "data_min_": [0.0, 10.0],
    "data_max_": [50000.0, 30.0],
    "data_range_": [50000.0, 20.0],
}


class StubInput:
    def __init__(self, name: str, shape: list) -> None:
        self.name = name
        self.shape = shape


class StubSession:
    """Stands in for onnxruntime.InferenceSession with a fixed scaled output."""

    def __init__(self, value: float = 0.5, shape: tuple = ("batch", 32, 32, 3)) -> None:
        self.value = value
        self.feeds: list[dict] = []
        self._inputs = [StubInput("sky_image", list(shape))]

    def get_inputs(self) -> list[StubInput]:
        return self._inputs

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        return [np.array([[self.value]], dtype=np.float32)]


class FakeBlobStore:
    """In-process blob store served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.requests: list[str] = []
        self.fail_with: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.fail_with is not None:
            raise self.fail_with
        key = request.url.path.rsplit("/", 1)[-1]
        if key not in self.objects:
            return httpx.Response(404)
        return httpx.Response(200, content=self.objects[key])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def png_bytes(color: tuple[int, int, int] = (250, 200, 40), size: tuple[int, int] = (64, 48)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def reading_fields(timestamp: datetime, **overrides) -> dict:
    fields = {
        "timestamp": timestamp.isoformat(),
        "temperature_c": 22.5,
        "humidity": 40,
        "pressure": 1008,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url_override="sqlite://",
        model_path=Path("/models/sky.onnx"),
        scaler_path=Path("/models/scaler.json"),
        blob_store_url=BLOB_URL,
        image_fetch_attempts=1,
    )


@pytest.fixture
def scaler() -> ScalerStore:
    return ScalerStore(ScalerParameters.model_validate(SCALER_PARAMS))


@pytest.fixture
def session() -> StubSession:
    return StubSession(value=0.5)


@pytest.fixture
def model(session) -> ModelRegistry:
    return ModelRegistry(session)


@pytest.fixture
def store() -> ReadingStore:
    """Store on a fresh in-memory SQLite database."""
    engine = make_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield ReadingStore(engine)
    engine.dispose()


@pytest.fixture
def blob() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def fetcher(blob) -> BlobImageFetcher:
    return BlobImageFetcher(BLOB_URL, timeout=1.0, attempts=1, transport=blob.transport)


@pytest.fixture
def make_pipeline(store, scaler, model, fetcher):
    """Factory so tests can tweak settings before wiring."""

    def _make(settings: Settings):
        return assemble_pipeline(settings, store, scaler, model, fetcher)

    return _make


@pytest.fixture
def pipeline(make_pipeline, settings):
    return make_pipeline(settings)


@pytest.fixture
def day_start() -> datetime:
    return datetime(2024, 6, 12, 0, 0, tzinfo=UTC)
