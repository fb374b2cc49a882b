# allocation_engine/features/normalizer.py

"""
Feature normalization.

Parameters are fitted once on training data, stored inside the model
metadata and re-applied unchanged at inference time.
"""

from typing import Any, Dict, Optional

import numpy as np

from ..config import NormalizationMethod
from ..core.exceptions import ValidationError


class Normalizer:
    """Per-feature z-score or min-max scaling over the last axis"""

    def __init__(self, method: NormalizationMethod = NormalizationMethod.ZSCORE):
        self.method = method
        self.center: Optional[np.ndarray] = None
        self.scale: Optional[np.ndarray] = None

    @property
    def is_fitted(self) -> bool:
        return self.center is not None

    def fit(self, values) -> "Normalizer":
        array = np.asarray(values, dtype=np.float64)
        if array.size == 0:
            raise ValidationError("Cannot fit a normalizer on empty data")
        flat = array.reshape(-1, array.shape[-1]) if array.ndim > 1 else array[:, None]

        if self.method is NormalizationMethod.ZSCORE:
            center = flat.mean(axis=0)
            scale = flat.std(axis=0)
        else:
            center = flat.min(axis=0)
            scale = flat.max(axis=0) - center
        # Constant features map to 0 instead of dividing by zero
        scale = np.where(scale > 1e-12, scale, 1.0)

        self.center = center
        self.scale = scale
        return self

    def transform(self, values) -> np.ndarray:
        self._require_fitted()
        array = np.asarray(values, dtype=np.float64)
        if array.ndim == 1 and self.center.shape[0] == 1:
            return (array - self.center[0]) / self.scale[0]
        if array.shape[-1] != self.center.shape[0]:
            raise ValidationError(
                f"Expected {self.center.shape[0]} features, got {array.shape[-1]}"
            )
        return (array - self.center) / self.scale

    def inverse_transform(self, values) -> np.ndarray:
        self._require_fitted()
        array = np.asarray(values, dtype=np.float64)
        if array.ndim == 1 and self.center.shape[0] == 1:
            return array * self.scale[0] + self.center[0]
        return array * self.scale + self.center

    def fit_transform(self, values) -> np.ndarray:
        return self.fit(values).transform(values)

    def _require_fitted(self) -> None:
        if not self.is_fitted:
            raise ValidationError("Normalizer used before fit()")

    def to_dict(self) -> Dict[str, Any]:
        self._require_fitted()
        return {
            "method": self.method.value,
            "center": self.center.tolist(),
            "scale": self.scale.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Normalizer":
        normalizer = cls(NormalizationMethod(data["method"]))
        normalizer.center = np.asarray(data["center"], dtype=np.float64)
        normalizer.scale = np.asarray(data["scale"], dtype=np.float64)
        return normalizer
