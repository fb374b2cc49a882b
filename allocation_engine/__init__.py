# allocation_engine/__init__.py

"""
Allocation Engine Package Initialization

Genetic-algorithm search over task-resource allocations, combined with
neural duration, quality and risk models and LSTM cost/schedule forecasters.
"""

from .config import (
    EngineConfig,
    ForecastType,
    GeneticAlgorithmConfig,
    OptimizationGoal,
    get_logger,
)
from .core import (
    InMemoryDataProvider,
    OptimizationRequest,
    OptimizationResult,
    ProjectDataProvider,
    Resource,
    Task,
    TimeHorizon,
)
from .engine import AllocationEngine
from .forecasting import ForecastConfig, ForecastResponse
from .settings import EngineSettings, get_settings

__version__ = "1.0.0"

# Package-level exports
__all__ = [
    # Configuration
    "EngineConfig",
    "EngineSettings",
    "ForecastType",
    "GeneticAlgorithmConfig",
    "OptimizationGoal",
    "get_logger",
    "get_settings",
    # Engine
    "AllocationEngine",
    "ForecastConfig",
    "ForecastResponse",
    "InMemoryDataProvider",
    "OptimizationRequest",
    "OptimizationResult",
    "ProjectDataProvider",
    "Resource",
    "Task",
    "TimeHorizon",
]

# Initialize package-level logger
logger = get_logger("main")
logger.debug(f"Allocation Engine v{__version__} initialized")
