# allocation_engine/utils/validation.py

"""
Request validation. Collects every problem found and raises a single
ValidationError listing them.
"""

import math
from typing import Iterable, List, Sequence

from ..core.exceptions import ValidationError
from ..core.problem_model import OptimizationRequest, Resource, Task


def _is_finite(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def validate_request_shape(request: OptimizationRequest) -> None:
    """Checks that need only the request itself"""
    errors: List[str] = []

    if not request.task_ids:
        errors.append("at least one task is required")
    if not request.resource_ids:
        errors.append("at least one resource is required")
    if len(set(request.task_ids)) != len(request.task_ids):
        errors.append("task ids must be unique")
    if len(set(request.resource_ids)) != len(request.resource_ids):
        errors.append("resource ids must be unique")
    if request.time_horizon.days < 1:
        errors.append("time horizon must span at least one day")
    if request.timeout_seconds is not None and request.timeout_seconds <= 0:
        errors.append("timeout_seconds must be positive")

    constraints = request.constraints
    if constraints.budget_limit is not None and (
        not _is_finite(constraints.budget_limit) or constraints.budget_limit <= 0
    ):
        errors.append("budget limit must be a positive number")
    if constraints.deadline is not None and (
        constraints.deadline <= request.time_horizon.origin
    ):
        errors.append("deadline must be after the start of the time horizon")
    if constraints.max_workers_per_task is not None and (
        constraints.max_workers_per_task < 1
    ):
        errors.append("max workers per task must be at least 1")
    errors.extend(constraints.working_hours.validate())

    overlap = constraints.mandatory_resources & constraints.excluded_resources
    if overlap:
        errors.append(
            f"resources both mandatory and excluded: {', '.join(sorted(overlap))}"
        )
    unknown_mandatory = constraints.mandatory_resources - set(request.resource_ids)
    if unknown_mandatory:
        errors.append(
            "mandatory resources missing from the pool: "
            + ", ".join(sorted(unknown_mandatory))
        )

    if request.preferences.weights:
        for name, weight in request.preferences.weights.items():
            if not _is_finite(weight) or weight < 0:
                errors.append(f"preference weight '{name}' must be non-negative")
    if request.preferences.allow_overtime:
        preferences = request.preferences
        if preferences.max_overtime_hours_per_day < 1:
            errors.append("max overtime hours per day must be at least 1")
        elif constraints.working_hours.end_hour + preferences.max_overtime_hours_per_day > 24:
            errors.append("overtime must end by midnight")
        if (
            not _is_finite(preferences.overtime_rate_multiplier)
            or preferences.overtime_rate_multiplier < 1.0
        ):
            errors.append("overtime rate multiplier must be at least 1")

    if request.ga_parameters is not None:
        errors.extend(request.ga_parameters.validate())

    if errors:
        raise ValidationError(
            "Invalid optimization request",
            errors=errors,
            context={"request_id": request.request_id},
        )


def validate_snapshots(tasks: Sequence[Task], resources: Sequence[Resource]) -> None:
    """Checks on the resolved task and resource snapshots"""
    errors: List[str] = []
    task_ids = {task.id for task in tasks}

    for task in tasks:
        if not _is_finite(task.effort_hours) or task.effort_hours <= 0:
            errors.append(f"task {task.id}: effort_hours must be positive")
        for dep in task.dependencies:
            if dep == task.id:
                errors.append(f"task {task.id}: depends on itself")
            elif dep not in task_ids:
                errors.append(f"task {task.id}: unknown dependency {dep}")

    for resource in resources:
        if not _is_finite(resource.cost_rate) or resource.cost_rate < 0:
            errors.append(f"resource {resource.id}: cost_rate must be >= 0")
        if not _is_finite(resource.productivity) or resource.productivity <= 0:
            errors.append(f"resource {resource.id}: productivity must be positive")
        if resource.crew_size < 1:
            errors.append(f"resource {resource.id}: crew_size must be >= 1")
        if (
            resource.available_from is not None
            and resource.available_until is not None
            and resource.available_from >= resource.available_until
        ):
            errors.append(f"resource {resource.id}: empty availability window")

    if _has_cycle(tasks):
        errors.append("task dependencies contain a cycle")

    if errors:
        raise ValidationError("Invalid task or resource data", errors=errors)


def _has_cycle(tasks: Iterable[Task]) -> bool:
    graph = {task.id: list(task.dependencies) for task in tasks}
    state = {}

    def visit(node) -> bool:
        state[node] = 1
        for dep in graph.get(node, ()):
            if state.get(dep) == 1:
                return True
            if dep not in state and dep in graph and visit(dep):
                return True
        state[node] = 2
        return False

    return any(node not in state and visit(node) for node in graph)
