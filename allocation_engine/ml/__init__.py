# allocation_engine/ml/__init__.py

"""
Neural models, their versioned registry and the manager that serves them
"""

from .manager import MLModelManager
from .models import (
    FeedForwardClassifier,
    Model,
    Prediction,
    SequenceRegressor,
    TrainingDataset,
    TrainingReport,
    build_model,
)
from .registry import ModelMetadata, ModelRegistry

__all__ = [
    "FeedForwardClassifier",
    "MLModelManager",
    "Model",
    "ModelMetadata",
    "ModelRegistry",
    "Prediction",
    "SequenceRegressor",
    "TrainingDataset",
    "TrainingReport",
    "build_model",
]
