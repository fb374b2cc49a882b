# allocation_engine/genetic_algorithm/deap_setup.py

"""
DEAP Setup Module - toolbox, statistics and logbook for the allocation GA.

Genomes live in a numpy arena rather than DEAP individuals, so only the
DEAP pieces that work on plain callables and sequences are used: the
Toolbox as the operator registry, Statistics for per-generation fitness
summaries and the Logbook as the generation record.
"""

from functools import partial

import numpy as np
from deap import base, tools

from ..config import GeneticAlgorithmConfig, get_logger
from .chromosome import ProblemEncoding
from .fitness import FitnessEvaluator
from .operators import mutate, single_point_crossover, tournament_select

logger = get_logger("genetic_algorithm.deap_setup")


def create_toolbox(
    encoding: ProblemEncoding,
    config: GeneticAlgorithmConfig,
    rng: np.random.Generator,
    evaluator: FitnessEvaluator,
) -> base.Toolbox:
    """Register the run's operators, all bound to the same seeded generator"""
    toolbox = base.Toolbox()
    toolbox.register("individual", encoding.sample_genome, rng, config.max_repair_attempts)
    toolbox.register("select", tournament_select, rng, tournament_size=config.tournament_size)
    toolbox.register("mate", single_point_crossover, rng)
    toolbox.register(
        "mutate", partial(mutate, rng, encoding), mutation_rate=config.mutation_rate
    )
    toolbox.register("evaluate", evaluator.evaluate)
    logger.debug(
        f"Toolbox ready: tournament={config.tournament_size}, "
        f"cx={config.crossover_rate}, mut={config.mutation_rate}"
    )
    return toolbox


def create_statistics() -> tools.Statistics:
    stats = tools.Statistics()
    stats.register("max", np.max)
    stats.register("avg", np.mean)
    stats.register("min", np.min)
    stats.register("std", np.std)
    return stats


def create_logbook() -> tools.Logbook:
    logbook = tools.Logbook()
    logbook.header = ["gen", "nevals", "max", "avg", "min", "std", "diversity"]
    return logbook
