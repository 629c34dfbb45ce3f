import logging
import typing
from pathlib import Path

import numpy as np
import onnxruntime as ort

from sunsight_telemetry.errors import ConfigurationError, InferenceFailure

logger = logging.getLogger("ModelRegistry")


class ModelRegistry:
    """
    Owns the pretrained sky-image model for the lifetime of the process.

    Loaded exactly once at startup. There is no reload or swap: the session
    reference is never replaced after construction.
    """

    def __init__(
        self,
        session: typing.Any,
        fallback_input_size: int = 128,
        channels_last: bool = True,
    ) -> None:
        self._session = session
        self.channels_last = channels_last

        inputs = session.get_inputs()
        if not inputs:
            raise ConfigurationError("Model declares no inputs")
        self.input_name: str = inputs[0].name
        self.input_size = self._resolve_input_size(inputs[0].shape, fallback_input_size)

    @classmethod
    def load(
        cls, path: Path | str, fallback_input_size: int = 128, channels_last: bool = True
    ) -> "ModelRegistry":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Model artifact not found: {path}")

        try:
            session = ort.InferenceSession(str(path), providers=["CPUExecutionProvider"])
        except Exception as e:
            raise ConfigurationError(f"Failed to load model {path}: {e}") from e

        registry = cls(session, fallback_input_size=fallback_input_size, channels_last=channels_last)
        logger.info(
            f"Loaded model {path.name} (input '{registry.input_name}', size {registry.input_size})"
        )
        return registry

    def _resolve_input_size(
        self, shape: typing.Sequence[typing.Any], fallback: int
    ) -> tuple[int, int]:
        """Static (height, width) from the model input, else the configured fallback."""
        if len(shape) == 4:
            dims = shape[1:3] if self.channels_last else shape[2:4]
            if all(isinstance(d, int) and d > 0 for d in dims):
                return int(dims[0]), int(dims[1])
        return fallback, fallback

    def predict(self, tensor: np.ndarray) -> float:
        """Run one batch element through the model and return the scaled scalar."""
        try:
            outputs = self._session.run(None, {self.input_name: tensor.astype(np.float32)})
            return float(np.asarray(outputs[0]).reshape(-1)[0])
        except Exception as e:
            raise InferenceFailure(f"Model inference failed: {e}") from e
