# allocation_engine/genetic_algorithm/fitness.py

"""
Fitness evaluation.

``evaluate_block`` is a pure function of a block of genomes and the
read-only :class:`FitnessTables`, so it can run in worker processes. The
tables are shipped once per worker through the pool initializer instead of
with every generation.

fitness = clip(sum(weight_k * score_k) + baseline - penalty * violations, 0, 1)

Sub-scores (each in [0, 1], higher is better):
- cost: position of the total cost (overtime premium included) between the
  cheapest and dearest regular-hour feasible totals
- utilization: mean busy/available ratio of the resources in use
- duration: makespan relative to the critical-path lower bound
- quality: mean quality rating of the assigned resources
- idle: one minus the mean idle share inside each used resource's span

Soft violations: budget overrun, each task finishing after the deadline,
each dependency started before its predecessor finished, each overlapping
pair of bookings on one resource, each unused mandatory resource.
"""

import multiprocessing
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from ..config import FITNESS_COMPONENTS, get_logger
from .types import SCORE_COLUMNS

logger = get_logger("genetic_algorithm.fitness")


@dataclass(frozen=True)
class FitnessTables:
    durations: np.ndarray
    costs: np.ndarray
    quality: np.ndarray
    capacity: np.ndarray
    working_slots: np.ndarray
    overtime_prefix: np.ndarray
    overtime_rates: np.ndarray
    dependencies: np.ndarray
    mandatory: np.ndarray
    deadline_offset: Optional[int]
    budget_limit: Optional[float]
    min_cost: float
    max_cost: float
    duration_lower_bound: float
    weights: Dict[str, float]
    violation_penalty: float

    @classmethod
    def from_encoding(cls, encoding, weights: Dict[str, float], violation_penalty: float):
        min_cost, max_cost = encoding.cost_bounds()
        return cls(
            durations=encoding.durations,
            costs=encoding.costs,
            quality=encoding.quality,
            capacity=encoding.capacity,
            working_slots=encoding.working_slots,
            overtime_prefix=encoding.overtime_prefix,
            overtime_rates=encoding.rates * encoding.overtime_premium,
            dependencies=encoding.dependencies,
            mandatory=encoding.mandatory,
            deadline_offset=encoding.deadline_offset,
            budget_limit=encoding.budget_limit,
            min_cost=min_cost,
            max_cost=max_cost,
            duration_lower_bound=encoding.duration_lower_bound(),
            weights=normalize_weights(weights),
            violation_penalty=violation_penalty,
        )


def normalize_weights(weights: Dict[str, float]) -> Dict[str, float]:
    """Scale component weights and baseline so they sum to 1"""
    unknown = set(weights) - set(FITNESS_COMPONENTS) - {"baseline"}
    if unknown:
        raise ValueError(f"Unknown fitness components: {sorted(unknown)}")
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Fitness weights must not all be zero")
    return {name: value / total for name, value in weights.items()}


def count_overlaps(resources: np.ndarray, starts: np.ndarray, ends: np.ndarray) -> int:
    """Pairs of bookings on the same resource whose slot ranges intersect"""
    overlaps = 0
    for r in np.unique(resources):
        mask = resources == r
        if np.count_nonzero(mask) < 2:
            continue
        s = starts[mask]
        e = ends[mask]
        order = np.argsort(s, kind="stable")
        s, e = s[order], e[order]
        # booking j overlaps every earlier booking i whose end is after s[j]
        for j in range(1, s.shape[0]):
            overlaps += int(np.count_nonzero(e[:j] > s[j]))
    return overlaps


def evaluate_genome(resources: np.ndarray, slots: np.ndarray, tables: FitnessTables) -> np.ndarray:
    """Score one genome; returns a row laid out as SCORE_COLUMNS"""
    tasks = np.arange(resources.shape[0])
    durations = tables.durations[tasks, resources]
    end_slots = slots + durations
    end_hours = tables.working_slots[end_slots - 1] + 1
    overtime = tables.overtime_prefix[end_slots] - tables.overtime_prefix[slots]
    total_cost = float(
        tables.costs[tasks, resources].sum()
        + (tables.overtime_rates[resources] * overtime).sum()
    )

    # Cost
    cost_range = tables.max_cost - tables.min_cost
    if cost_range > 1e-9:
        cost_score = 1.0 - (total_cost - tables.min_cost) / cost_range
    else:
        cost_score = 1.0

    # Utilization and idle time over resources in use
    used = np.unique(resources)
    utilization = []
    idle = []
    for r in used:
        mask = resources == r
        busy = float(durations[mask].sum())
        capacity = tables.capacity[r]
        utilization.append(min(busy / capacity, 1.0) if capacity > 0 else 1.0)
        span = float(end_slots[mask].max() - slots[mask].min())
        idle.append(max(0.0, 1.0 - busy / span) if span > 0 else 0.0)
    utilization_score = float(np.mean(utilization)) if utilization else 0.0
    idle_score = 1.0 - float(np.mean(idle)) if idle else 1.0

    # Duration
    makespan = float(end_slots.max())
    horizon = float(tables.working_slots.shape[0])
    lower = tables.duration_lower_bound
    if horizon - lower > 1e-9:
        duration_score = 1.0 - (makespan - lower) / (horizon - lower)
    else:
        duration_score = 1.0

    quality_score = float(tables.quality[tasks, resources].mean())

    # Soft violations
    violations = 0
    if tables.budget_limit is not None and total_cost > tables.budget_limit:
        violations += 1
    if tables.deadline_offset is not None:
        violations += int(np.count_nonzero(end_hours > tables.deadline_offset))
    if tables.dependencies.size:
        pred, succ = tables.dependencies[:, 0], tables.dependencies[:, 1]
        violations += int(np.count_nonzero(slots[succ] < end_slots[pred]))
    violations += count_overlaps(resources, slots, end_slots)
    if tables.mandatory.size:
        violations += int(np.count_nonzero(~np.isin(tables.mandatory, resources)))

    scores = {
        "cost": min(max(cost_score, 0.0), 1.0),
        "utilization": utilization_score,
        "duration": min(max(duration_score, 0.0), 1.0),
        "quality": quality_score,
        "idle": idle_score,
    }
    weighted = sum(tables.weights.get(name, 0.0) * value for name, value in scores.items())
    weighted += tables.weights.get("baseline", 0.0)
    fitness = min(max(weighted - tables.violation_penalty * violations, 0.0), 1.0)

    makespan_hours = float(end_hours.max()) if end_hours.size else 0.0
    return np.array(
        [
            fitness,
            scores["cost"],
            scores["utilization"],
            scores["duration"],
            scores["quality"],
            scores["idle"],
            violations,
            total_cost,
            makespan_hours,
        ],
        dtype=np.float64,
    )


def evaluate_block(resources: np.ndarray, slots: np.ndarray, tables: FitnessTables) -> np.ndarray:
    """Score every row of a genome block; shape (rows, len(SCORE_COLUMNS))"""
    scores = np.empty((resources.shape[0], len(SCORE_COLUMNS)), dtype=np.float64)
    for i in range(resources.shape[0]):
        scores[i] = evaluate_genome(resources[i], slots[i], tables)
    return scores


# Worker-process state, set once by the pool initializer
_worker_tables: Optional[FitnessTables] = None


def _init_worker(tables: FitnessTables) -> None:
    global _worker_tables
    _worker_tables = tables


def _evaluate_in_worker(resources: np.ndarray, slots: np.ndarray) -> np.ndarray:
    return evaluate_block(resources, slots, _worker_tables)


def pool_context():
    """Start method for fitness workers.

    Pools are opened from request threads of a process that has loaded torch,
    so workers are never forked from it directly.
    """
    methods = multiprocessing.get_all_start_methods()
    return multiprocessing.get_context("forkserver" if "forkserver" in methods else "spawn")


class FitnessEvaluator:
    """Evaluates genome blocks inline or across a bounded process pool.

    Results are reassembled in row order, so the outcome does not depend on
    the number of workers. ``evaluate`` returns only when every chunk is
    done, which is the per-generation barrier.
    """

    def __init__(self, tables: FitnessTables, workers: int = 1, parallel_threshold: int = 64):
        self.tables = tables
        self.workers = max(1, workers)
        self.parallel_threshold = parallel_threshold
        self._pool: Optional[ProcessPoolExecutor] = None
        self.evaluations = 0

    def __enter__(self) -> "FitnessEvaluator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_pool(self) -> ProcessPoolExecutor:
        if self._pool is None:
            self._pool = ProcessPoolExecutor(
                max_workers=self.workers,
                mp_context=pool_context(),
                initializer=_init_worker,
                initargs=(self.tables,),
            )
            logger.debug(f"Started fitness pool with {self.workers} workers")
        return self._pool

    def evaluate(self, resources: np.ndarray, slots: np.ndarray) -> np.ndarray:
        rows = resources.shape[0]
        self.evaluations += rows
        if self.workers == 1 or rows < self.parallel_threshold:
            return evaluate_block(resources, slots, self.tables)

        pool = self._ensure_pool()
        chunks = np.array_split(np.arange(rows), self.workers)
        futures = [
            pool.submit(_evaluate_in_worker, resources[idx], slots[idx])
            for idx in chunks
            if idx.size
        ]
        return np.concatenate([future.result() for future in futures], axis=0)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
