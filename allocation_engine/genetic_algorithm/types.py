# allocation_engine/genetic_algorithm/types.py

"""
Types Module - Shared data structures for the GA modules.

Kept separate so chromosome.py, fitness.py, operators.py and
evolution_manager.py can import them without importing each other.
"""

import numpy as np
from typing import Dict, List, Optional
from dataclasses import dataclass, field, asdict
import logging

from ..core.solution import TerminationReason

logger = logging.getLogger(__name__)

# Column layout of the score matrix returned by fitness.evaluate_block
SCORE_COLUMNS = (
    "fitness",
    "cost_score",
    "utilization_score",
    "duration_score",
    "quality_score",
    "idle_score",
    "violations",
    "total_cost",
    "makespan_hours",
)
FITNESS_COL = 0


@dataclass(frozen=True)
class FitnessResult:
    """Scalar fitness in [0, 1] plus the sub-scores it was built from"""

    fitness: float
    cost_score: float
    utilization_score: float
    duration_score: float
    quality_score: float
    idle_score: float
    violations: int
    violation_penalty: float
    total_cost: float
    makespan_hours: float

    @classmethod
    def from_row(cls, row: np.ndarray, penalty_per_violation: float) -> "FitnessResult":
        violations = int(row[6])
        return cls(
            fitness=float(row[0]),
            cost_score=float(row[1]),
            utilization_score=float(row[2]),
            duration_score=float(row[3]),
            quality_score=float(row[4]),
            idle_score=float(row[5]),
            violations=violations,
            violation_penalty=violations * penalty_per_violation,
            total_cost=float(row[7]),
            makespan_hours=float(row[8]),
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class GenerationStats:
    """Statistics for a single generation"""

    generation: int
    best_fitness: float
    average_fitness: float
    worst_fitness: float
    fitness_std: float
    diversity: float
    evaluations: int


@dataclass
class Candidate:
    """A genome pulled out of the arena together with its scores"""

    resources: np.ndarray
    slots: np.ndarray
    fitness: FitnessResult
    rank: int
    rank_score: float
    difference_ratio: float = 0.0


@dataclass
class EvolutionReport:
    """Outcome of one GA run"""

    best: Candidate
    alternatives: List[Candidate] = field(default_factory=list)
    # Per task: rank-weighted share of the top individuals agreeing with best
    gene_support: Optional[np.ndarray] = None
    history: List[GenerationStats] = field(default_factory=list)
    generations_run: int = 0
    evaluations: int = 0
    termination_reason: TerminationReason = TerminationReason.MAX_GENERATIONS
    partial: bool = False
    total_time: float = 0.0

    @property
    def best_fitness_history(self) -> List[float]:
        return [stats.best_fitness for stats in self.history]

    def get_summary_stats(self) -> Dict[str, float]:
        """Get summary statistics for the run"""
        if not self.history:
            return {}
        return {
            "initial_best": self.history[0].best_fitness,
            "final_best": self.history[-1].best_fitness,
            "improvement": self.history[-1].best_fitness - self.history[0].best_fitness,
            "final_diversity": self.history[-1].diversity,
            "generations": self.generations_run,
            "evaluations": self.evaluations,
        }
