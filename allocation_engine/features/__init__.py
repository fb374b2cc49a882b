# allocation_engine/features/__init__.py

"""Feature extraction and normalization for the ML models."""

from .extractor import (
    AllocationContext,
    allocation_features,
    cost_feature_matrix,
    duration_sequence,
    history_frame,
    risk_feature_vector,
    schedule_feature_matrix,
    sliding_windows,
)
from .normalizer import Normalizer

__all__ = [
    "AllocationContext",
    "Normalizer",
    "allocation_features",
    "cost_feature_matrix",
    "duration_sequence",
    "history_frame",
    "risk_feature_vector",
    "schedule_feature_matrix",
    "sliding_windows",
]
