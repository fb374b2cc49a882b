# allocation_engine/core/__init__.py

"""
Core data structures: problem snapshots, results, errors and data access
"""

from .data_provider import InMemoryDataProvider, ProjectDataProvider
from .exceptions import (
    ConstraintInfeasibleError,
    ConvergenceTimeout,
    EngineError,
    InsufficientDataError,
    InsufficientHistoryError,
    ModelNotFoundError,
    PersistenceError,
    ResultNotFoundError,
    ValidationError,
)
from .problem_model import (
    OptimizationConstraints,
    OptimizationPreferences,
    OptimizationRequest,
    ProblemSnapshot,
    ProjectHistoryPoint,
    Resource,
    ResourceCategory,
    Task,
    TaskHistoryRecord,
    TimeHorizon,
    WorkingHours,
)
from .solution import (
    AlternativeAllocation,
    BottleneckKind,
    BottleneckWarning,
    OptimizationMetrics,
    OptimizationResult,
    OptimizationWarning,
    Recommendation,
    RiskLevel,
    TaskAllocation,
    TerminationReason,
    WarningKind,
)

__all__ = [
    # Problem model
    "OptimizationConstraints",
    "OptimizationPreferences",
    "OptimizationRequest",
    "ProblemSnapshot",
    "ProjectHistoryPoint",
    "Resource",
    "ResourceCategory",
    "Task",
    "TaskHistoryRecord",
    "TimeHorizon",
    "WorkingHours",
    # Results
    "AlternativeAllocation",
    "BottleneckKind",
    "BottleneckWarning",
    "OptimizationMetrics",
    "OptimizationResult",
    "OptimizationWarning",
    "Recommendation",
    "RiskLevel",
    "TaskAllocation",
    "TerminationReason",
    "WarningKind",
    # Errors
    "ConstraintInfeasibleError",
    "ConvergenceTimeout",
    "EngineError",
    "InsufficientDataError",
    "InsufficientHistoryError",
    "ModelNotFoundError",
    "PersistenceError",
    "ResultNotFoundError",
    "ValidationError",
    # Data access
    "InMemoryDataProvider",
    "ProjectDataProvider",
]
