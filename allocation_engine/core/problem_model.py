# allocation_engine/core/problem_model.py

"""
Input snapshots consumed by the optimizer and forecaster.

All snapshots are frozen: a request works on an immutable copy of the tasks,
resources and history it was given.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from enum import Enum
import logging

from ..config import GeneticAlgorithmConfig, OptimizationGoal

logger = logging.getLogger(__name__)


class ResourceCategory(Enum):
    WORKER = "worker"
    EQUIPMENT = "equipment"
    MATERIAL = "material"


@dataclass(frozen=True)
class WorkingHours:
    """Daily working window. ``working_days`` uses 0=Monday .. 6=Sunday."""

    start_hour: int = 8
    end_hour: int = 17
    working_days: Tuple[int, ...] = (0, 1, 2, 3, 4)

    @property
    def hours_per_day(self) -> int:
        return self.end_hour - self.start_hour

    def validate(self) -> List[str]:
        errors = []
        if not (0 <= self.start_hour < 24 and 0 < self.end_hour <= 24):
            errors.append("working hours must lie within 0..24")
        if self.start_hour >= self.end_hour:
            errors.append("working hours start must be before end")
        if not self.working_days:
            errors.append("at least one working day is required")
        if any(d < 0 or d > 6 for d in self.working_days):
            errors.append("working days must be within 0..6")
        return errors


@dataclass(frozen=True)
class TimeHorizon:
    """Planning horizon starting at midnight of ``start``'s date."""

    start: datetime
    days: int = 30

    @property
    def origin(self) -> datetime:
        return datetime(self.start.year, self.start.month, self.start.day)

    @property
    def total_hours(self) -> int:
        return self.days * 24

    @property
    def end(self) -> datetime:
        return self.origin + timedelta(days=self.days)

    def to_offset(self, moment: datetime) -> int:
        """Hours from the horizon origin, clamped to the horizon."""
        hours = int((moment - self.origin).total_seconds() // 3600)
        return max(0, min(self.total_hours, hours))

    def to_datetime(self, offset_hours: float) -> datetime:
        return self.origin + timedelta(hours=offset_hours)


@dataclass(frozen=True)
class TaskHistoryRecord:
    """One past execution of a similar task"""

    estimated_hours: float
    actual_hours: float
    delay_days: float = 0.0
    cost: float = 0.0
    team_size: int = 1


@dataclass(frozen=True)
class Resource:
    id: str
    name: str
    category: ResourceCategory = ResourceCategory.WORKER
    skills: FrozenSet[str] = frozenset()
    cost_rate: float = 0.0
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    productivity: float = 1.0
    quality_rating: float = 0.8
    crew_size: int = 1
    experience_years: float = 0.0

    def has_skills(self, skills) -> bool:
        return set(skills).issubset(self.skills)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["skills"] = sorted(self.skills)
        for key in ("available_from", "available_until"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        def _dt(value):
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            category=ResourceCategory(data.get("category", "worker")),
            skills=frozenset(data.get("skills", ())),
            cost_rate=float(data.get("cost_rate", 0.0)),
            available_from=_dt(data.get("available_from")),
            available_until=_dt(data.get("available_until")),
            productivity=float(data.get("productivity", 1.0)),
            quality_rating=float(data.get("quality_rating", 0.8)),
            crew_size=int(data.get("crew_size", 1)),
            experience_years=float(data.get("experience_years", 0.0)),
        )


@dataclass(frozen=True)
class Task:
    id: str
    name: str
    required_skills: FrozenSet[str] = frozenset()
    effort_hours: float = 8.0
    dependencies: Tuple[str, ...] = ()
    project_id: Optional[str] = None
    complexity: int = 5
    history: Tuple[TaskHistoryRecord, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "required_skills": sorted(self.required_skills),
            "effort_hours": self.effort_hours,
            "dependencies": list(self.dependencies),
            "project_id": self.project_id,
            "complexity": self.complexity,
            "history": [asdict(record) for record in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            required_skills=frozenset(data.get("required_skills", ())),
            effort_hours=float(data.get("effort_hours", 8.0)),
            dependencies=tuple(str(d) for d in data.get("dependencies", ())),
            project_id=data.get("project_id"),
            complexity=int(data.get("complexity", 5)),
            history=tuple(
                TaskHistoryRecord(**record) for record in data.get("history", ())
            ),
        )


@dataclass(frozen=True)
class ProjectHistoryPoint:
    """Daily project observation used by the forecasters"""

    day: date
    cost: float
    progress_pct: float = 0.0
    incidents: int = 0
    labor_hours: float = 0.0
    active_resources: int = 0


@dataclass(frozen=True)
class OptimizationConstraints:
    budget_limit: Optional[float] = None
    deadline: Optional[datetime] = None
    required_skills: FrozenSet[str] = frozenset()
    max_workers_per_task: Optional[int] = None
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    mandatory_resources: FrozenSet[str] = frozenset()
    excluded_resources: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class OptimizationPreferences:
    """Optional override of the goal's fitness weight vector, plus overtime.

    With ``allow_overtime`` each working day gains up to
    ``max_overtime_hours_per_day`` bookable hours after the regular window.
    Overtime hours are billed at ``overtime_rate_multiplier`` times the
    resource rate.
    """

    weights: Optional[Dict[str, float]] = None
    allow_overtime: bool = False
    max_overtime_hours_per_day: int = 2
    overtime_rate_multiplier: float = 1.5

    @property
    def overtime_hours(self) -> int:
        return self.max_overtime_hours_per_day if self.allow_overtime else 0


@dataclass(frozen=True)
class OptimizationRequest:
    project_id: str
    task_ids: Tuple[str, ...]
    resource_ids: Tuple[str, ...]
    time_horizon: TimeHorizon
    goal: OptimizationGoal = OptimizationGoal.BALANCE_COST_TIME
    constraints: OptimizationConstraints = field(
        default_factory=OptimizationConstraints
    )
    preferences: OptimizationPreferences = field(
        default_factory=OptimizationPreferences
    )
    seed: Optional[int] = None
    timeout_seconds: Optional[float] = None
    ga_parameters: Optional[GeneticAlgorithmConfig] = None
    request_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class ProblemSnapshot:
    """Request plus the resolved task/resource snapshots it refers to"""

    request: OptimizationRequest
    tasks: Tuple[Task, ...]
    resources: Tuple[Resource, ...]

    @property
    def task_index(self) -> Dict[str, int]:
        return {task.id: i for i, task in enumerate(self.tasks)}

    @property
    def resource_index(self) -> Dict[str, int]:
        return {resource.id: i for i, resource in enumerate(self.resources)}
