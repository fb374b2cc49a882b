# allocation_engine/forecasting/forecast_service.py

"""
Forecast Service - cost, schedule and risk forecasts from project history.

Each forecaster slides a fixed window over the daily history, predicts one
step, appends the prediction and repeats until the horizon is reached. A
registered forecaster is used when one exists; otherwise an ephemeral LSTM
is trained on the project's own history. Intervals widen with the square
root of the number of steps rolled forward.
"""

import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import (
    FORECASTER_MODEL_IDS,
    EngineConfig,
    ForecastType,
    ModelSpec,
    get_logger,
)
from ..core.data_provider import ProjectDataProvider
from ..core.exceptions import ConvergenceTimeout, InsufficientHistoryError, ValidationError
from ..core.problem_model import ProjectHistoryPoint
from ..core.solution import RiskLevel
from ..features.extractor import (
    RISK_FEATURE_COUNT,
    cost_feature_matrix,
    history_frame,
    risk_feature_vector,
    schedule_feature_matrix,
    sliding_windows,
)
from ..ml.manager import MLModelManager
from ..ml.models import Model, TrainingDataset
from ..utils.concurrency import CancellationToken
from .series import (
    days_to_completion,
    detect_trend,
    exponential_smoothing,
    extend_frame,
    interval,
    level_from_percentage,
    level_from_score,
)

logger = get_logger("forecasting.forecast_service")

SEVERITY_POINTS = 25.0


@dataclass(frozen=True)
class ForecastConfig:
    horizon_days: int = 30
    confidence_level: float = 0.95
    budget: Optional[float] = None
    planned_completion_days: Optional[float] = None
    timeout_seconds: Optional[float] = None
    seed: Optional[int] = 0
    epochs: Optional[int] = None


@dataclass(frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float
    confidence_level: float


@dataclass(frozen=True)
class Forecast:
    forecast_type: ForecastType
    point_estimate: float
    confidence_interval: ConfidenceInterval
    risk_level: RiskLevel
    horizon: int
    predictions: Tuple[float, ...] = ()
    trend: str = "stable"
    change_percentage: float = 0.0
    projected_variance_pct: float = 0.0
    days_to_completion: Optional[float] = None
    model_source: str = "ephemeral"
    partial: bool = False


@dataclass(frozen=True)
class ForecastWarning:
    forecast_type: ForecastType
    severity: RiskLevel
    message: str
    value: float
    threshold: float


@dataclass
class ForecastResponse:
    project_id: str
    forecasts: Dict[ForecastType, Forecast]
    warnings: List[ForecastWarning] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.now)
    computation_time_ms: float = 0.0
    partial: bool = False


def build_forecaster_dataset(
    points: Sequence[ProjectHistoryPoint], forecast_type: ForecastType, window: int
) -> TrainingDataset:
    """Windowed training set for registering a cost or schedule forecaster"""
    frame = history_frame(points)
    if len(frame) < window + 1:
        raise InsufficientHistoryError(
            f"{forecast_type.value} history has {len(frame)} days, needs {window + 1}",
            required=window + 1,
            available=len(frame),
        )
    if forecast_type is ForecastType.COST:
        matrix, target = cost_feature_matrix(frame), frame["cost"].to_numpy()
    elif forecast_type is ForecastType.SCHEDULE:
        matrix, target = schedule_feature_matrix(frame), frame["progress_pct"].to_numpy()
    else:
        raise ValidationError("Risk models are trained on labelled feature vectors")
    inputs, targets = sliding_windows(matrix, target, window)
    return TrainingDataset.from_windows(inputs, targets, observations=len(frame))


class ForecastService:
    """Generates project forecasts on top of the model manager"""

    def __init__(
        self,
        model_manager: MLModelManager,
        data_provider: ProjectDataProvider,
        config: Optional[EngineConfig] = None,
    ):
        self.model_manager = model_manager
        self.data_provider = data_provider
        self.config = config or EngineConfig()
        self.defaults = self.config.forecast

    # Entry point -------------------------------------------------------------

    def generate_forecast(
        self,
        project_id: str,
        forecast_types: Sequence[ForecastType],
        config: Optional[ForecastConfig] = None,
        token: Optional[CancellationToken] = None,
    ) -> ForecastResponse:
        started = time.perf_counter()
        config = config or ForecastConfig(
            horizon_days=self.defaults.horizon_days,
            confidence_level=self.defaults.confidence_level,
        )
        self._validate(forecast_types, config)
        token = token or CancellationToken(config.timeout_seconds)

        points = self.data_provider.get_history(project_id)
        logger.info(
            f"Forecasting {[t.value for t in forecast_types]} for project {project_id} "
            f"from {len(points)} history points, horizon={config.horizon_days}d"
        )

        forecasts: Dict[ForecastType, Forecast] = {}
        warnings: List[ForecastWarning] = []
        for forecast_type in forecast_types:
            if forecast_type is ForecastType.COST:
                forecast = self._forecast_cost(points, config, token)
            elif forecast_type is ForecastType.SCHEDULE:
                forecast = self._forecast_schedule(points, config, token)
            else:
                forecast = self._forecast_risk(points, config, token)
            forecasts[forecast_type] = forecast
            warning = self._warning_for(forecast)
            if warning is not None:
                warnings.append(warning)

        response = ForecastResponse(
            project_id=project_id,
            forecasts=forecasts,
            warnings=warnings,
            computation_time_ms=(time.perf_counter() - started) * 1000.0,
            partial=any(f.partial for f in forecasts.values()),
        )
        logger.info(
            f"Forecast for {project_id} done in {response.computation_time_ms:.0f}ms, "
            f"{len(warnings)} warning(s), partial={response.partial}"
        )
        return response

    def _validate(self, forecast_types: Sequence[ForecastType], config: ForecastConfig) -> None:
        errors = []
        if not forecast_types:
            errors.append("at least one forecast type is required")
        if config.horizon_days < 1:
            errors.append("horizon must be at least one day")
        if config.confidence_level not in self.defaults.allowed_confidence_levels:
            errors.append(
                f"confidence level must be one of {self.defaults.allowed_confidence_levels}"
            )
        if config.budget is not None and config.budget <= 0:
            errors.append("budget must be positive")
        if config.planned_completion_days is not None and config.planned_completion_days <= 0:
            errors.append("planned completion days must be positive")
        if errors:
            raise ValidationError("Invalid forecast configuration", errors=errors)

    # Models ------------------------------------------------------------------

    def _frame(self, points, forecast_type: ForecastType, window: int) -> pd.DataFrame:
        # Windows are cut from the gap-filled daily frame, not raw points
        frame = history_frame(points) if points else None
        days = 0 if frame is None else len(frame)
        if days < window + 1:
            raise InsufficientHistoryError(
                f"{forecast_type.value} forecast needs {window + 1} days of history, "
                f"got {days}",
                required=window + 1,
                available=days,
            )
        return frame

    def _forecaster(
        self,
        forecast_type: ForecastType,
        matrix: np.ndarray,
        target: np.ndarray,
        config: ForecastConfig,
    ) -> Tuple[Model, str]:
        model_id = FORECASTER_MODEL_IDS[forecast_type]
        spec: ModelSpec = self.config.model_specs[model_id]
        registered = self.model_manager.try_load(model_id)
        if (
            registered is not None
            and registered.spec.sequence_length == spec.sequence_length
            and registered.spec.input_size == spec.input_size
        ):
            return registered, "registry"

        inputs, targets = sliding_windows(matrix, target, spec.sequence_length)
        dataset = TrainingDataset.from_windows(inputs, targets, observations=matrix.shape[0])
        ephemeral_spec = replace(
            spec,
            epochs=config.epochs or self.defaults.ephemeral_epochs,
            patience=self.defaults.ephemeral_patience,
        )
        model, _ = self.model_manager.train_ephemeral(ephemeral_spec, dataset, seed=config.seed)
        return model, "ephemeral"

    @staticmethod
    def _sigma(model: Model, target: np.ndarray) -> float:
        if model.residual_std > 0:
            return model.residual_std
        diffs = np.diff(target)
        return float(np.std(diffs)) if diffs.size else 0.0

    # Cost --------------------------------------------------------------------

    def _forecast_cost(self, points, config: ForecastConfig, token: CancellationToken) -> Forecast:
        window = self.config.model_specs[FORECASTER_MODEL_IDS[ForecastType.COST]].sequence_length
        frame = self._frame(points, ForecastType.COST, window)
        target = frame["cost"].to_numpy(dtype=np.float64)
        model, source = self._forecaster(
            ForecastType.COST, cost_feature_matrix(frame), target, config
        )
        sigma = self._sigma(model, target)

        predictions, partial = [], False
        extended = frame
        for step in range(config.horizon_days):
            if self._expired(token, ForecastType.COST, step):
                partial = True
                break
            window_matrix = cost_feature_matrix(extended)[-window:]
            value = max(0.0, model.predict(window_matrix)[0].value)
            predictions.append(value)
            extended = extend_frame(extended, cost=value)

        spent = float(target.sum())
        steps = len(predictions)
        point = spent + float(sum(predictions))
        lower, upper = interval(
            point, sigma * math.sqrt(max(steps, 1)), config.confidence_level, lower_bound=spent
        )

        recent_rate = float(target[-window:].mean())
        if config.budget is not None:
            reference = config.budget
        else:
            reference = spent + recent_rate * steps
        variance_pct = (point - reference) / reference * 100.0 if reference > 0 else 0.0
        change = (
            (float(np.mean(predictions)) - recent_rate) / recent_rate * 100.0
            if predictions and recent_rate > 0
            else 0.0
        )

        return Forecast(
            forecast_type=ForecastType.COST,
            point_estimate=point,
            confidence_interval=ConfidenceInterval(lower, upper, config.confidence_level),
            risk_level=level_from_percentage(max(variance_pct, 0.0), self.defaults),
            horizon=steps,
            predictions=tuple(predictions),
            trend=detect_trend(predictions, self.defaults.trend_threshold),
            change_percentage=change,
            projected_variance_pct=variance_pct,
            model_source=source,
            partial=partial,
        )

    # Schedule ----------------------------------------------------------------

    def _forecast_schedule(
        self, points, config: ForecastConfig, token: CancellationToken
    ) -> Forecast:
        window = self.config.model_specs[
            FORECASTER_MODEL_IDS[ForecastType.SCHEDULE]
        ].sequence_length
        frame = self._frame(points, ForecastType.SCHEDULE, window)
        target = frame["progress_pct"].to_numpy(dtype=np.float64)
        model, source = self._forecaster(
            ForecastType.SCHEDULE, schedule_feature_matrix(frame), target, config
        )
        sigma = self._sigma(model, target)

        current = float(target[-1])
        predictions, partial = [], False
        extended = frame
        for step in range(config.horizon_days):
            if self._expired(token, ForecastType.SCHEDULE, step):
                partial = True
                break
            window_matrix = schedule_feature_matrix(extended)[-window:]
            previous = float(extended["progress_pct"].iloc[-1])
            # Progress is cumulative: never falls, never passes 100%
            value = min(100.0, max(previous, model.predict(window_matrix)[0].value))
            predictions.append(value)
            extended = extend_frame(extended, progress_pct=value)

        steps = len(predictions)
        point = predictions[-1] if predictions else current
        lower, upper = interval(
            point,
            sigma * math.sqrt(max(steps, 1)),
            config.confidence_level,
            lower_bound=current,
            upper_bound=100.0,
        )

        completion_days = days_to_completion(current, predictions)
        planned = config.planned_completion_days
        if planned is None:
            daily = np.diff(target)
            pace = float(daily[daily > 0].mean()) if np.any(daily > 0) else 0.0
            planned = (100.0 - current) / pace if pace > 0 else None

        if completion_days is None:
            delay_pct = 100.0
        elif planned:
            delay_pct = (completion_days - planned) / planned * 100.0
        else:
            delay_pct = 0.0

        return Forecast(
            forecast_type=ForecastType.SCHEDULE,
            point_estimate=point,
            confidence_interval=ConfidenceInterval(lower, upper, config.confidence_level),
            risk_level=level_from_percentage(max(delay_pct, 0.0), self.defaults),
            horizon=steps,
            predictions=tuple(predictions),
            trend=detect_trend(predictions, self.defaults.trend_threshold),
            change_percentage=point - current,
            projected_variance_pct=delay_pct,
            days_to_completion=completion_days,
            model_source=source,
            partial=partial,
        )

    # Risk --------------------------------------------------------------------

    def _risk_score(self, incidents: np.ndarray) -> Tuple[float, float, str]:
        """(score 0..100, std, source) for the latest incident window"""
        prediction = self.model_manager.predict_risk(risk_feature_vector(incidents))
        if prediction is not None:
            levels = np.arange(len(prediction.probabilities)) * SEVERITY_POINTS
            probabilities = np.asarray(prediction.probabilities)
            score = float(np.dot(probabilities, levels))
            std = float(np.sqrt(np.dot(probabilities, (levels - score) ** 2)))
            return min(score, 100.0), std, "registry"

        recent = float(np.mean(incidents[-7:]))
        baseline = float(np.mean(incidents))
        spread = float(np.std(incidents)) or 1.0
        z = (recent - baseline) / spread
        score = float(np.clip((2.0 + z) * SEVERITY_POINTS, 0.0, 100.0))
        return score, SEVERITY_POINTS / 2.0, "heuristic"

    def _forecast_risk(self, points, config: ForecastConfig, token: CancellationToken) -> Forecast:
        frame = self._frame(points, ForecastType.RISK, RISK_FEATURE_COUNT)
        incidents = frame["incidents"].to_numpy(dtype=np.float64)

        scores, partial = [], False
        std, source = 0.0, "heuristic"
        series = incidents
        for step in range(config.horizon_days):
            if self._expired(token, ForecastType.RISK, step):
                partial = True
                break
            level = exponential_smoothing(series, self.defaults.smoothing_alpha)[-1]
            series = np.append(series, level)
            score, std, source = self._risk_score(series)
            scores.append(score)

        if not scores:
            score, std, source = self._risk_score(incidents)
            point = score
        else:
            point = scores[-1]
        lower, upper = interval(
            point, std, config.confidence_level, lower_bound=0.0, upper_bound=100.0
        )
        current, _, _ = self._risk_score(incidents)

        return Forecast(
            forecast_type=ForecastType.RISK,
            point_estimate=point,
            confidence_interval=ConfidenceInterval(lower, upper, config.confidence_level),
            risk_level=level_from_score(point, self.defaults),
            horizon=len(scores),
            predictions=tuple(scores),
            trend=detect_trend(scores, self.defaults.trend_threshold),
            change_percentage=point - current,
            projected_variance_pct=point,
            model_source=source,
            partial=partial,
        )

    # Helpers -----------------------------------------------------------------

    @staticmethod
    def _expired(token: CancellationToken, forecast_type: ForecastType, step: int) -> bool:
        try:
            token.raise_if_expired()
        except ConvergenceTimeout as timeout:
            logger.warning(
                f"{forecast_type.value} rollout stopped after {step} steps: {timeout.message}"
            )
            return True
        return False

    def _warning_for(self, forecast: Forecast) -> Optional[ForecastWarning]:
        defaults = self.defaults
        if forecast.forecast_type is ForecastType.RISK:
            if forecast.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                return ForecastWarning(
                    forecast_type=forecast.forecast_type,
                    severity=forecast.risk_level,
                    message=f"Projected risk score {forecast.point_estimate:.0f}/100",
                    value=forecast.point_estimate,
                    threshold=defaults.risk_score_thresholds[1],
                )
            return None

        pct = forecast.projected_variance_pct
        if pct <= defaults.warning_threshold_pct:
            return None
        what = "cost overrun" if forecast.forecast_type is ForecastType.COST else "schedule delay"
        return ForecastWarning(
            forecast_type=forecast.forecast_type,
            severity=(
                RiskLevel.CRITICAL if pct > defaults.critical_threshold_pct else RiskLevel.HIGH
            ),
            message=f"Projected {what} of {pct:.1f}%",
            value=pct,
            threshold=defaults.warning_threshold_pct,
        )
