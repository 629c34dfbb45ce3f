import io
import logging

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sunsight_telemetry.errors import InferenceFailure

logger = logging.getLogger("Imaging")


class BlobImageFetcher:
    """Downloads sky images from the blob store the uploader writes to."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        attempts: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self._transport = transport

    def resolve(self, ref: str) -> str:
        """Absolute URLs are used as-is, anything else is a key in the blob store."""
        if ref.startswith(("http://", "https://")):
            return ref
        return f"{self.base_url}/{ref.lstrip('/')}"

    def fetch(self, ref: str) -> bytes:
        url = self.resolve(ref)

        @retry(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        def _get() -> bytes:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.content

        try:
            return _get()
        except httpx.HTTPStatusError as e:
            raise InferenceFailure(
                f"Image fetch failed for {url}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise InferenceFailure(f"Image fetch failed for {url}: {e}") from e


def image_to_tensor(data: bytes, size: tuple[int, int], channels_last: bool = True) -> np.ndarray:
    """
    Decode image bytes into a model input tensor.

    Converts to RGB, resizes to ``size`` (height, width), scales pixels to
    [0, 1] and adds the batch dimension: (1, H, W, 3) or (1, 3, H, W).
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise InferenceFailure(f"Image could not be decoded: {e}") from e

    height, width = size
    resized = rgb.resize((width, height), Image.Resampling.BILINEAR)
    array = np.asarray(resized, dtype=np.float32) / 255.0

    if not channels_last:
        array = np.transpose(array, (2, 0, 1))
    return np.expand_dims(array, axis=0)
