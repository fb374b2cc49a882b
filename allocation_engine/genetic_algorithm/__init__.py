# allocation_engine/genetic_algorithm/__init__.py

"""Genetic algorithm search over task-resource allocations."""

from .chromosome import GenomeArena, ProblemEncoding, working_hour_offsets
from .evolution_manager import EvolutionManager
from .fitness import FitnessEvaluator, FitnessTables, evaluate_block, evaluate_genome
from .types import Candidate, EvolutionReport, FitnessResult, GenerationStats

__all__ = [
    "Candidate",
    "EvolutionManager",
    "EvolutionReport",
    "FitnessEvaluator",
    "FitnessResult",
    "FitnessTables",
    "GenerationStats",
    "GenomeArena",
    "ProblemEncoding",
    "evaluate_block",
    "evaluate_genome",
    "working_hour_offsets",
]
