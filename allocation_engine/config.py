# allocation_engine/config.py

"""
Configuration module for the allocation engine.

Algorithm parameters live here as dataclasses; runtime/deployment settings
(paths, worker counts, retry policy) are read from the environment by
``allocation_engine.settings``.
"""

from typing import Dict, List, Optional, Tuple
from enum import Enum
from dataclasses import dataclass, field
import logging


class OptimizationGoal(Enum):
    """Optimization goals a request can ask for"""

    MINIMIZE_COST = "minimize_cost"
    MINIMIZE_DURATION = "minimize_duration"
    MAXIMIZE_QUALITY = "maximize_quality"
    BALANCE_COST_TIME = "balance_cost_time"
    MAXIMIZE_UTILIZATION = "maximize_utilization"
    MINIMIZE_IDLE_TIME = "minimize_idle_time"


class ForecastType(Enum):
    """Kinds of project forecasts"""

    COST = "cost"
    SCHEDULE = "schedule"
    RISK = "risk"


class ModelFamily(Enum):
    """Model families served by the model manager"""

    CLASSIFIER = "feedforward_classifier"
    SEQUENCE = "lstm_regressor"


class NormalizationMethod(Enum):
    ZSCORE = "zscore"
    MINMAX = "minmax"


# Sub-score names understood by the fitness function
FITNESS_COMPONENTS = ("cost", "utilization", "duration", "quality", "idle")

# Per-goal weight vectors. Weights plus "baseline" sum to 1.0 so that a
# violation-free individual with perfect sub-scores reaches exactly 1.0.
GOAL_WEIGHT_TABLE: Dict[OptimizationGoal, Dict[str, float]] = {
    OptimizationGoal.MINIMIZE_COST: {
        "cost": 0.6,
        "utilization": 0.2,
        "baseline": 0.2,
    },
    OptimizationGoal.MINIMIZE_DURATION: {
        "duration": 0.6,
        "utilization": 0.2,
        "baseline": 0.2,
    },
    OptimizationGoal.MAXIMIZE_QUALITY: {
        "quality": 0.6,
        "cost": 0.2,
        "baseline": 0.2,
    },
    OptimizationGoal.BALANCE_COST_TIME: {
        "cost": 0.4,
        "utilization": 0.4,
        "baseline": 0.2,
    },
    OptimizationGoal.MAXIMIZE_UTILIZATION: {
        "utilization": 0.6,
        "cost": 0.2,
        "baseline": 0.2,
    },
    OptimizationGoal.MINIMIZE_IDLE_TIME: {
        "idle": 0.6,
        "utilization": 0.2,
        "baseline": 0.2,
    },
}


@dataclass
class GeneticAlgorithmConfig:
    """Configuration for the genetic algorithm search"""

    population_size: int = 100
    max_generations: int = 200
    tournament_size: int = 5
    crossover_rate: float = 0.8
    mutation_rate: float = 0.1
    elite_ratio: float = 0.1

    # Convergence: stop when the best fitness improves by less than
    # ``convergence_epsilon`` for ``stagnation_generations`` generations
    convergence_epsilon: float = 0.001
    stagnation_generations: int = 20

    # Constraint handling
    max_repair_attempts: int = 50
    violation_penalty: float = 0.1

    # Alternatives
    max_alternatives: int = 3
    diversity_threshold: float = 0.2

    # Top individuals whose agreement with the best genome sets per-task
    # recommendation confidence
    support_pool_size: int = 10

    # Parallel fitness evaluation; None means "size from CPU count"
    evaluation_workers: Optional[int] = None
    parallel_threshold: int = 64

    def validate(self) -> List[str]:
        errors = []
        if self.population_size < 2:
            errors.append("population_size must be at least 2")
        if self.max_generations < 1:
            errors.append("max_generations must be at least 1")
        if not 1 <= self.tournament_size:
            errors.append("tournament_size must be positive")
        for name in ("crossover_rate", "mutation_rate", "elite_ratio"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1], got {value}")
        if self.support_pool_size < 1:
            errors.append("support_pool_size must be at least 1")
        if self.max_repair_attempts < 1:
            errors.append("max_repair_attempts must be at least 1")
        return errors


@dataclass
class ModelSpec:
    """Architecture and training defaults for one registered model"""

    model_id: str
    family: ModelFamily
    input_size: int
    output_size: int

    # Dense classifier layout
    hidden_layers: Tuple[int, ...] = ()
    dropout: Tuple[float, ...] = ()

    # Sequence layout (sequence_length None means variable length)
    sequence_length: Optional[int] = None
    lstm_units: int = 64
    dense_units: int = 32

    # Training
    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 0.001
    validation_split: float = 0.2
    patience: int = 10
    normalization: NormalizationMethod = NormalizationMethod.ZSCORE

    @property
    def min_samples(self) -> int:
        """Smallest dataset the model can be trained on"""
        return (self.sequence_length or 1) + 1


MODEL_SPECS: Dict[str, ModelSpec] = {
    "resource_allocation_nn": ModelSpec(
        model_id="resource_allocation_nn",
        family=ModelFamily.CLASSIFIER,
        input_size=25,
        output_size=10,
        hidden_layers=(64, 32, 16),
        dropout=(0.3, 0.2, 0.0),
        epochs=100,
    ),
    "risk_analysis_nn": ModelSpec(
        model_id="risk_analysis_nn",
        family=ModelFamily.CLASSIFIER,
        input_size=15,
        output_size=5,
        hidden_layers=(48, 24, 12),
        dropout=(0.3, 0.2, 0.0),
        epochs=60,
    ),
    "duration_predictor_lstm": ModelSpec(
        model_id="duration_predictor_lstm",
        family=ModelFamily.SEQUENCE,
        input_size=15,
        output_size=1,
        lstm_units=64,
        dense_units=32,
        epochs=80,
    ),
    "cost_forecaster_lstm": ModelSpec(
        model_id="cost_forecaster_lstm",
        family=ModelFamily.SEQUENCE,
        input_size=10,
        output_size=1,
        sequence_length=30,
        lstm_units=64,
        dense_units=32,
        epochs=50,
    ),
    "schedule_forecaster_lstm": ModelSpec(
        model_id="schedule_forecaster_lstm",
        family=ModelFamily.SEQUENCE,
        input_size=8,
        output_size=1,
        sequence_length=20,
        lstm_units=48,
        dense_units=24,
        epochs=40,
    ),
}

FORECASTER_MODEL_IDS: Dict[ForecastType, str] = {
    ForecastType.COST: "cost_forecaster_lstm",
    ForecastType.SCHEDULE: "schedule_forecaster_lstm",
    ForecastType.RISK: "risk_analysis_nn",
}


@dataclass
class ForecastConfigDefaults:
    """Defaults and thresholds for the forecast service"""

    horizon_days: int = 30
    confidence_level: float = 0.95
    allowed_confidence_levels: Tuple[float, ...] = (0.80, 0.90, 0.95, 0.99)

    # Risk level thresholds on projected overrun/delay percentage
    critical_threshold_pct: float = 20.0
    high_threshold_pct: float = 10.0
    medium_threshold_pct: float = 5.0
    warning_threshold_pct: float = 10.0

    # Risk score thresholds (0..100 scale)
    risk_score_thresholds: Tuple[float, float, float] = (75.0, 50.0, 25.0)

    smoothing_alpha: float = 0.3
    trend_threshold: float = 0.05

    # Ephemeral model training when no forecaster is registered
    ephemeral_epochs: int = 30
    ephemeral_patience: int = 5


@dataclass
class RecommendationConfig:
    """Thresholds for recommendations, bottlenecks and warnings"""

    rank_weight: float = 0.5
    certainty_weight: float = 0.5
    utilization_threshold: float = 0.95
    budget_warning_ratio: float = 0.95
    low_confidence_threshold: float = 0.5
    high_risk_severity: int = 3

    # Uncertainty assumed for heuristic estimates (fraction of the value)
    heuristic_uncertainty: float = 0.25


@dataclass
class EngineConfig:
    """Main configuration for the allocation engine"""

    genetic_algorithm: GeneticAlgorithmConfig = field(
        default_factory=GeneticAlgorithmConfig
    )
    forecast: ForecastConfigDefaults = field(default_factory=ForecastConfigDefaults)
    recommendations: RecommendationConfig = field(default_factory=RecommendationConfig)
    goal_weights: Dict[OptimizationGoal, Dict[str, float]] = field(
        default_factory=dict
    )
    model_specs: Dict[str, ModelSpec] = field(default_factory=dict)

    def __post_init__(self):
        if not self.goal_weights:
            self.goal_weights = {
                goal: dict(weights) for goal, weights in GOAL_WEIGHT_TABLE.items()
            }
        if not self.model_specs:
            self.model_specs = dict(MODEL_SPECS)

    def weights_for(self, goal: OptimizationGoal) -> Dict[str, float]:
        return dict(self.goal_weights[goal])


def get_logger(name: str) -> logging.Logger:
    """Get configured logger for the allocation engine"""
    logger = logging.getLogger(f"allocation_engine.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
