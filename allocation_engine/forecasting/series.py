# allocation_engine/forecasting/series.py

"""Time-series helpers shared by the forecasters."""

from statistics import NormalDist
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import ForecastConfigDefaults
from ..core.solution import RiskLevel


def z_value(confidence_level: float) -> float:
    """Two-sided standard normal quantile for a confidence level"""
    return NormalDist().inv_cdf(0.5 + confidence_level / 2.0)


def interval(
    point: float,
    std: float,
    confidence_level: float,
    lower_bound: Optional[float] = None,
    upper_bound: Optional[float] = None,
) -> Tuple[float, float]:
    half_width = z_value(confidence_level) * max(std, 0.0)
    lower, upper = point - half_width, point + half_width
    if lower_bound is not None:
        lower = max(lower, lower_bound)
    if upper_bound is not None:
        upper = min(upper, upper_bound)
    return lower, upper


def detect_trend(values: Sequence[float], threshold: float) -> str:
    """Least-squares slope relative to the mean level"""
    series = np.asarray(values, dtype=np.float64)
    if series.size < 2:
        return "stable"
    slope = np.polyfit(np.arange(series.size, dtype=np.float64), series, 1)[0]
    scale = float(np.mean(np.abs(series)))
    relative = slope / scale if scale > 1e-9 else 0.0
    if relative > threshold:
        return "increasing"
    if relative < -threshold:
        return "decreasing"
    return "stable"


def exponential_smoothing(values: Sequence[float], alpha: float) -> np.ndarray:
    return pd.Series(values, dtype=np.float64).ewm(alpha=alpha, adjust=False).mean().to_numpy()


def extend_frame(frame: pd.DataFrame, **values) -> pd.DataFrame:
    """Append the next day; unspecified columns carry their recent level"""
    next_day = frame.index[-1] + pd.Timedelta(days=1)
    recent = frame.tail(7)
    row = {
        "cost": float(recent["cost"].mean()),
        "progress_pct": float(frame["progress_pct"].iloc[-1]),
        "incidents": float(recent["incidents"].mean()),
        "labor_hours": float(recent["labor_hours"].mean()),
        "active_resources": float(frame["active_resources"].iloc[-1]),
    }
    row.update(values)
    addition = pd.DataFrame([row], index=pd.DatetimeIndex([next_day]))
    return pd.concat([frame, addition[frame.columns]])


def days_to_completion(
    current_progress: float, path: Sequence[float]
) -> Optional[float]:
    """Days until progress reaches 100%, extrapolating past the path's end"""
    if current_progress >= 100.0:
        return 0.0
    for step, value in enumerate(path, start=1):
        if value >= 100.0:
            return float(step)
    if len(path) == 0:
        return None
    rate = (path[-1] - current_progress) / len(path)
    if rate <= 1e-9:
        return None
    return float(len(path)) + (100.0 - path[-1]) / rate


def level_from_percentage(pct: float, defaults: ForecastConfigDefaults) -> RiskLevel:
    if pct > defaults.critical_threshold_pct:
        return RiskLevel.CRITICAL
    if pct > defaults.high_threshold_pct:
        return RiskLevel.HIGH
    if pct > defaults.medium_threshold_pct:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def level_from_score(score: float, defaults: ForecastConfigDefaults) -> RiskLevel:
    critical, high, medium = defaults.risk_score_thresholds
    if score >= critical:
        return RiskLevel.CRITICAL
    if score >= high:
        return RiskLevel.HIGH
    if score >= medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
