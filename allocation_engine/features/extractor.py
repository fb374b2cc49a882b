# allocation_engine/features/extractor.py

"""
Feature extraction for the ML models.

- allocation scoring: 25 features per (task, resource) pair
- duration prediction: 15 features per history step, variable length
- cost forecasting: 10 features per day
- schedule forecasting: 8 features per day
- risk analysis: 15 most recent incident observations
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.exceptions import ValidationError
from ..core.problem_model import Resource, ResourceCategory, Task

ALLOCATION_FEATURE_COUNT = 25
DURATION_FEATURE_COUNT = 15
COST_FEATURE_COUNT = 10
SCHEDULE_FEATURE_COUNT = 8
RISK_FEATURE_COUNT = 15

COST_FEATURE_COLUMNS = [
    "cost",
    "cost_diff",
    "cost_mean_7",
    "cost_std_7",
    "progress_pct",
    "incidents",
    "labor_hours",
    "active_resources",
    "dow_sin",
    "dow_cos",
]

SCHEDULE_FEATURE_COLUMNS = [
    "progress_pct",
    "progress_diff",
    "progress_diff_mean_7",
    "cost",
    "incidents",
    "labor_hours",
    "dow_sin",
    "dow_cos",
]


@dataclass(frozen=True)
class AllocationContext:
    """Request-level values that scale the pair features"""

    horizon_hours: float
    pool_mean_rate: float
    start_offset_hours: float = 0.0
    available_hours: Optional[float] = None
    deadline_offset_hours: Optional[float] = None
    budget_limit: Optional[float] = None


def estimated_duration_hours(task: Task, resource: Resource) -> float:
    return task.effort_hours / (resource.productivity * resource.crew_size)


def _history_stats(task: Task):
    if not task.history:
        return 1.0, 0.0, 0, 0.0
    ratios = np.array(
        [
            record.actual_hours / record.estimated_hours
            if record.estimated_hours > 0
            else 1.0
            for record in task.history
        ]
    )
    delays = np.array([record.delay_days for record in task.history])
    return float(ratios.mean()), float(delays.mean()), len(task.history), float(
        ratios.std()
    )


def allocation_features(
    task: Task, resource: Resource, context: AllocationContext
) -> np.ndarray:
    """25-feature vector describing one candidate assignment"""
    horizon = max(context.horizon_hours, 1.0)
    required = len(task.required_skills)
    matched = len(task.required_skills & resource.skills)
    duration = estimated_duration_hours(task, resource)
    cost = resource.cost_rate * duration
    available = context.available_hours if context.available_hours is not None else horizon

    if context.deadline_offset_hours is not None:
        slack = (context.deadline_offset_hours - context.start_offset_hours - duration) / horizon
    else:
        slack = (horizon - context.start_offset_hours - duration) / horizon
    budget_share = cost / context.budget_limit if context.budget_limit else 0.0
    ratio_mean, delay_mean, history_count, ratio_std = _history_stats(task)

    features = np.array(
        [
            task.effort_hours,
            task.complexity,
            required,
            len(task.dependencies),
            matched / required if required else 1.0,
            len(resource.skills - task.required_skills),
            resource.cost_rate,
            resource.cost_rate / context.pool_mean_rate if context.pool_mean_rate else 1.0,
            resource.productivity,
            resource.quality_rating,
            resource.crew_size,
            resource.experience_years,
            duration,
            cost,
            context.start_offset_hours / horizon,
            min(available / horizon, 1.0),
            slack,
            budget_share,
            ratio_mean,
            delay_mean,
            history_count,
            ratio_std,
            float(resource.category is ResourceCategory.WORKER),
            float(resource.category is ResourceCategory.EQUIPMENT),
            float(resource.category is ResourceCategory.MATERIAL),
        ],
        dtype=np.float64,
    )
    _check_finite(features, f"allocation features for {task.id}/{resource.id}")
    return features


def duration_sequence(task: Task, resource: Resource) -> np.ndarray:
    """One 15-feature step per past record, plus the pending execution"""
    rows: List[List[float]] = []
    task_part = [
        task.effort_hours,
        task.complexity,
        len(task.required_skills),
        resource.productivity,
        resource.quality_rating,
        resource.crew_size,
        resource.experience_years,
        resource.cost_rate,
    ]
    for record in task.history:
        ratio = (
            record.actual_hours / record.estimated_hours
            if record.estimated_hours > 0
            else 1.0
        )
        rows.append(
            [
                record.estimated_hours,
                record.actual_hours,
                ratio,
                record.delay_days,
                record.cost,
                record.team_size,
            ]
            + task_part
            + [0.0]
        )

    estimate = estimated_duration_hours(task, resource)
    rows.append(
        [
            task.effort_hours,
            estimate,
            1.0,
            0.0,
            resource.cost_rate * estimate,
            resource.crew_size,
        ]
        + task_part
        + [1.0]
    )
    sequence = np.asarray(rows, dtype=np.float64)
    _check_finite(sequence, f"duration sequence for {task.id}")
    return sequence


def history_frame(points: Sequence) -> pd.DataFrame:
    """Daily history points to a date-indexed frame with no gaps"""
    if not points:
        raise ValidationError("History is empty")
    frame = pd.DataFrame(
        [
            {
                "day": pd.Timestamp(point.day),
                "cost": point.cost,
                "progress_pct": point.progress_pct,
                "incidents": point.incidents,
                "labor_hours": point.labor_hours,
                "active_resources": point.active_resources,
            }
            for point in points
        ]
    )
    frame = frame.groupby("day").agg(
        {
            "cost": "sum",
            "progress_pct": "max",
            "incidents": "sum",
            "labor_hours": "sum",
            "active_resources": "max",
        }
    )
    frame = frame.asfreq("D")
    # Missing days: no spend, progress carried forward
    frame[["cost", "incidents", "labor_hours"]] = frame[
        ["cost", "incidents", "labor_hours"]
    ].fillna(0.0)
    frame[["progress_pct", "active_resources"]] = frame[
        ["progress_pct", "active_resources"]
    ].ffill()
    _check_finite(frame.to_numpy(dtype=np.float64), "project history")
    return frame


def _calendar_columns(frame: pd.DataFrame) -> pd.DataFrame:
    dow = frame.index.dayofweek.to_numpy(dtype=np.float64)
    frame = frame.copy()
    frame["dow_sin"] = np.sin(2 * np.pi * dow / 7.0)
    frame["dow_cos"] = np.cos(2 * np.pi * dow / 7.0)
    return frame


def cost_feature_matrix(frame: pd.DataFrame) -> np.ndarray:
    """(days, 10) matrix for the cost forecaster"""
    data = _calendar_columns(frame)
    data["cost_diff"] = data["cost"].diff().fillna(0.0)
    data["cost_mean_7"] = data["cost"].rolling(7, min_periods=1).mean()
    data["cost_std_7"] = data["cost"].rolling(7, min_periods=1).std().fillna(0.0)
    return data[COST_FEATURE_COLUMNS].to_numpy(dtype=np.float64)


def schedule_feature_matrix(frame: pd.DataFrame) -> np.ndarray:
    """(days, 8) matrix for the schedule forecaster"""
    data = _calendar_columns(frame)
    data["progress_diff"] = data["progress_pct"].diff().fillna(0.0)
    data["progress_diff_mean_7"] = data["progress_diff"].rolling(7, min_periods=1).mean()
    return data[SCHEDULE_FEATURE_COLUMNS].to_numpy(dtype=np.float64)


def risk_feature_vector(incidents: Sequence[float]) -> np.ndarray:
    """Most recent 15 incident observations, oldest first"""
    values = np.asarray(incidents, dtype=np.float64)
    if values.shape[0] < RISK_FEATURE_COUNT:
        raise ValidationError(
            f"Risk features need {RISK_FEATURE_COUNT} observations, got {values.shape[0]}"
        )
    vector = values[-RISK_FEATURE_COUNT:]
    _check_finite(vector, "risk features")
    return vector


def sliding_windows(matrix: np.ndarray, target: np.ndarray, window: int):
    """Windows of ``window`` rows paired with the next target value"""
    count = matrix.shape[0] - window
    if count < 1:
        raise ValidationError(
            f"Need at least {window + 1} rows for window {window}, got {matrix.shape[0]}"
        )
    inputs = np.stack([matrix[i : i + window] for i in range(count)])
    targets = np.asarray(target[window:], dtype=np.float64)
    return inputs, targets


def _check_finite(values: np.ndarray, name: str) -> None:
    if not np.all(np.isfinite(values)):
        raise ValidationError(f"{name} contains missing or non-finite values")
