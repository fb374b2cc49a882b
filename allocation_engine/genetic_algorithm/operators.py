# allocation_engine/genetic_algorithm/operators.py

"""
Genetic operators on arena rows.

All randomness comes from the run's ``numpy.random.Generator`` so a seeded
run draws the same sequence regardless of how fitness evaluation is
scheduled.
"""

from typing import Tuple

import numpy as np

from .chromosome import ProblemEncoding

# Standard deviation, in working hours, of the start-slot shift on mutation
SLOT_JITTER = 16.0


def tournament_select(
    rng: np.random.Generator, fitness: np.ndarray, tournament_size: int
) -> int:
    """Index of the fittest of ``tournament_size`` random contestants"""
    size = min(tournament_size, fitness.shape[0])
    contestants = rng.choice(fitness.shape[0], size=size, replace=False)
    return int(contestants[np.argmax(fitness[contestants])])


def single_point_crossover(
    rng: np.random.Generator,
    parent1: Tuple[np.ndarray, np.ndarray],
    parent2: Tuple[np.ndarray, np.ndarray],
) -> Tuple[Tuple[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray]]:
    """Swap gene tails after a random cut; genes move whole"""
    r1, s1 = parent1
    r2, s2 = parent2
    length = r1.shape[0]
    if length < 2:
        return (r1.copy(), s1.copy()), (r2.copy(), s2.copy())
    cut = int(rng.integers(1, length))
    child1 = (
        np.concatenate([r1[:cut], r2[cut:]]),
        np.concatenate([s1[:cut], s2[cut:]]),
    )
    child2 = (
        np.concatenate([r2[:cut], r1[cut:]]),
        np.concatenate([s2[:cut], s1[cut:]]),
    )
    return child1, child2


def mutate(
    rng: np.random.Generator,
    encoding: ProblemEncoding,
    resources: np.ndarray,
    slots: np.ndarray,
    mutation_rate: float,
    slot_jitter: float = SLOT_JITTER,
) -> int:
    """Per-gene reassignment with immediate repair; returns genes touched"""
    mask = rng.random(resources.shape[0]) < mutation_rate
    touched = np.flatnonzero(mask)
    for t in touched:
        resources[t] = rng.integers(0, encoding.num_resources)
        slots[t] = slots[t] + int(round(rng.normal(0.0, slot_jitter)))
        encoding.repair_gene(rng, resources, slots, int(t))
    return int(touched.size)


def hamming_ratio(
    resources_a: np.ndarray, slots_a: np.ndarray, resources_b: np.ndarray, slots_b: np.ndarray
) -> float:
    """Share of genes whose resource or start slot differ"""
    if resources_a.shape[0] == 0:
        return 0.0
    differ = (resources_a != resources_b) | (slots_a != slots_b)
    return float(np.count_nonzero(differ)) / resources_a.shape[0]


def population_diversity(resources: np.ndarray) -> float:
    """Mean per-task share of distinct resource choices across the population"""
    if resources.size == 0:
        return 0.0
    distinct = [np.unique(resources[:, t]).size for t in range(resources.shape[1])]
    return float(np.mean(distinct)) / resources.shape[0]


def gene_support(
    pool_resources: np.ndarray, best_resources: np.ndarray, rank_scores: np.ndarray
) -> np.ndarray:
    """Per-task agreement of a ranked pool with the best genome.

    Each pool row votes for the best genome's resource choice with its rank
    score, so agreement from fitter individuals counts for more. Returns one
    value in [0, 1] per task.
    """
    if pool_resources.shape[0] == 0:
        return np.ones(best_resources.shape[0], dtype=np.float64)
    weights = np.asarray(rank_scores, dtype=np.float64)
    total = weights.sum()
    if total <= 0:
        weights = np.ones_like(weights)
        total = weights.sum()
    agree = (pool_resources == best_resources[None, :]).astype(np.float64)
    return weights @ agree / total
