import json
import logging
from collections.abc import Sequence
from pathlib import Path

import numpy as np
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from sunsight_telemetry.errors import ConfigurationError

logger = logging.getLogger("Scaler")


class ScalerParameters(BaseModel):
    """
    Per-feature MinMax parameters exported from the training pipeline.
    Serialized with scikit-learn attribute names (``data_min_`` ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min: list[float] = Field(validation_alias=AliasChoices("min_", "min"))
    scale: list[float] = Field(validation_alias=AliasChoices("scale_", "scale"))
    data_min: list[float] = Field(validation_alias=AliasChoices("data_min_", "data_min"))
    data_max: list[float] = Field(validation_alias=AliasChoices("data_max_", "data_max"))
    data_range: list[float] = Field(validation_alias=AliasChoices("data_range_", "data_range"))

    @model_validator(mode="after")
    def check_shapes(self) -> "ScalerParameters":
        lengths = {
            len(self.min),
            len(self.scale),
            len(self.data_min),
            len(self.data_max),
            len(self.data_range),
        }
        if len(lengths) != 1:
            raise ValueError(f"Scaler arrays differ in length: {sorted(lengths)}")
        if not self.data_range:
            raise ValueError("Scaler arrays are empty")
        if any(r == 0 for r in self.data_range):
            raise ValueError("data_range contains a zero entry")
        return self

    @property
    def n_features(self) -> int:
        return len(self.data_min)


class ScalerStore:
    """Forward and inverse MinMax transforms, exactly as used during training.

    Values outside the training range extrapolate linearly; nothing is clamped.
    """

    def __init__(self, params: ScalerParameters) -> None:
        self.params = params
        self._data_min = np.asarray(params.data_min, dtype=np.float64)
        self._data_range = np.asarray(params.data_range, dtype=np.float64)

    @classmethod
    def load(cls, path: Path | str) -> "ScalerStore":
        """Load scaler parameters from a JSON artifact. Any problem is fatal."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Scaler artifact not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            params = ScalerParameters.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise ConfigurationError(f"Malformed scaler artifact {path}: {e}") from e

        logger.info(f"Loaded scaler parameters ({params.n_features} features) from {path}")
        return cls(params)

    @property
    def n_features(self) -> int:
        return self.params.n_features

    def _as_vector(self, values: Sequence[float]) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float64)
        if vector.shape != self._data_min.shape:
            raise ConfigurationError(
                f"Feature length mismatch: expected {self.n_features}, got {len(values)}"
            )
        return vector

    def forward(self, features: Sequence[float]) -> list[float]:
        """X_scaled = (X - data_min) / data_range"""
        x = self._as_vector(features)
        return ((x - self._data_min) / self._data_range).tolist()

    def inverse(self, scaled: Sequence[float]) -> list[float]:
        """X = X_scaled * data_range + data_min

        Model outputs may cover only the leading features, so a shorter
        vector is inverted against the first ``len(scaled)`` features.
        """
        x = np.asarray(scaled, dtype=np.float64)
        n = x.shape[0] if x.ndim == 1 else -1
        if n < 1 or n > self.n_features:
            raise ConfigurationError(
                f"Feature length mismatch: expected at most {self.n_features}, got {len(scaled)}"
            )
        return (x * self._data_range[:n] + self._data_min[:n]).tolist()

    def forward_batch(self, rows: Sequence[Sequence[float]]) -> list[list[float]]:
        out = []
        for index, row in enumerate(rows):
            if len(row) != self.n_features:
                raise ConfigurationError(
                    f"Feature length mismatch at row {index}: expected {self.n_features}, got {len(row)}"
                )
            out.append(self.forward(row))
        return out
