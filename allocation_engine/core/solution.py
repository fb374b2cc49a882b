# allocation_engine/core/solution.py

"""
Output records produced by the optimizer.

Identifiers are derived from the request id so that two runs with the same
seed and input compare equal; wall-clock fields are excluded from equality.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BottleneckKind(Enum):
    OVER_UTILIZATION = "over_utilization"
    SKILL_SHORTAGE = "skill_shortage"


class WarningKind(Enum):
    BUDGET = "budget"
    DEADLINE = "deadline"
    CONSTRAINT_VIOLATION = "constraint_violation"


class TerminationReason(Enum):
    MAX_GENERATIONS = "max_generations"
    CONVERGED = "converged"
    DEADLINE = "deadline"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskAllocation:
    task_id: str
    resource_id: str
    start_offset_hours: int
    end_offset_hours: int
    start_time: datetime
    end_time: datetime
    duration_hours: int
    cost: float
    overtime_hours: int = 0


@dataclass(frozen=True)
class Recommendation:
    recommendation_id: str
    task_id: str
    resource_id: str
    start_time: datetime
    predicted_duration_hours: float
    predicted_cost: float
    confidence: float
    cost_delta: float
    time_delta: float
    quality_delta: float
    risk_flags: Tuple[str, ...] = ()
    rank: int = 0
    prediction_source: str = "heuristic"


@dataclass(frozen=True)
class BottleneckWarning:
    warning_id: str
    kind: BottleneckKind
    severity: RiskLevel
    message: str
    recommended_action: str
    resource_id: Optional[str] = None
    skill: Optional[str] = None
    demand_hours: float = 0.0
    capacity_hours: float = 0.0
    utilization: float = 0.0
    shortfall_percentage: float = 0.0
    affected_task_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OptimizationWarning:
    kind: WarningKind
    severity: RiskLevel
    message: str
    value: float = 0.0
    threshold: float = 0.0


@dataclass(frozen=True)
class AlternativeAllocation:
    rank: int
    fitness: float
    allocations: Tuple[TaskAllocation, ...]
    total_cost: float
    completion_hours: float
    difference_ratio: float
    # ML estimates for this allocation
    predicted_cost: float = 0.0
    predicted_completion_hours: float = 0.0
    confidence: float = 0.0


@dataclass(frozen=True)
class OptimizationMetrics:
    baseline_cost: float
    cost_savings: float
    cost_savings_percentage: float
    feasibility_score: float
    average_utilization: float
    violations: int


@dataclass
class OptimizationResult:
    result_id: str
    request_id: str
    project_id: str
    allocations: Tuple[TaskAllocation, ...]
    fitness: float
    total_cost: float
    completion_hours: float
    completion_date: datetime
    resource_utilization: Dict[str, float]
    recommendations: Tuple[Recommendation, ...]
    bottlenecks: Tuple[BottleneckWarning, ...]
    alternatives: Tuple[AlternativeAllocation, ...]
    warnings: Tuple[OptimizationWarning, ...]
    metrics: OptimizationMetrics
    generations_run: int
    termination_reason: TerminationReason
    partial: bool = False
    computation_time_ms: float = field(default=0.0, compare=False)
    generated_at: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def average_utilization(self) -> float:
        if not self.resource_utilization:
            return 0.0
        return sum(self.resource_utilization.values()) / len(
            self.resource_utilization
        )

    def allocation_for(self, task_id: str) -> Optional[TaskAllocation]:
        for allocation in self.allocations:
            if allocation.task_id == task_id:
                return allocation
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible primitives"""

        def _convert(value):
            if isinstance(value, Enum):
                return value.value
            if isinstance(value, datetime):
                return value.isoformat()
            if isinstance(value, dict):
                return {k: _convert(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_convert(v) for v in value]
            return value

        return _convert(asdict(self))
