# allocation_engine/genetic_algorithm/evolution_manager.py

"""
Evolution Manager - the generational loop of the allocation GA.

Each generation: copy the elite into the back buffer, fill the rest with
tournament-selected, crossed-over and mutated offspring, evaluate the
offspring (possibly in parallel), swap buffers, record statistics and check
termination. Elites keep their scores, so the best fitness never decreases.
"""

import math
import time
from typing import Callable, Dict, List, Optional

import numpy as np

from ..config import GeneticAlgorithmConfig, get_logger
from ..core.exceptions import ConvergenceTimeout
from ..core.solution import TerminationReason
from ..utils.concurrency import CancellationToken, default_worker_count
from .chromosome import GenomeArena, ProblemEncoding
from .deap_setup import create_logbook, create_statistics, create_toolbox
from .fitness import FitnessEvaluator, FitnessTables
from .operators import gene_support, hamming_ratio, population_diversity
from .types import (
    FITNESS_COL,
    Candidate,
    EvolutionReport,
    FitnessResult,
    GenerationStats,
)

logger = get_logger("genetic_algorithm.evolution_manager")


class EvolutionManager:
    """Runs one seeded GA search over a problem encoding"""

    def __init__(
        self,
        encoding: ProblemEncoding,
        weights: Dict[str, float],
        config: Optional[GeneticAlgorithmConfig] = None,
        seed: Optional[int] = None,
    ):
        self.encoding = encoding
        self.config = config or GeneticAlgorithmConfig()
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.tables = FitnessTables.from_encoding(
            encoding, weights, self.config.violation_penalty
        )
        self.arena = GenomeArena(self.config.population_size, encoding.num_tasks)
        self.elite_count = max(
            1, int(math.ceil(self.config.population_size * self.config.elite_ratio))
        )
        self.logbook = create_logbook()
        self.statistics = create_statistics()
        self.history: List[GenerationStats] = []
        self.progress_callbacks: List[Callable[[GenerationStats], None]] = []

    def add_progress_callback(self, callback: Callable[[GenerationStats], None]) -> None:
        self.progress_callbacks.append(callback)

    def _notify_progress(self, stats: GenerationStats) -> None:
        for callback in self.progress_callbacks:
            try:
                callback(stats)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # Main loop ---------------------------------------------------------------

    def run(self, token: Optional[CancellationToken] = None) -> EvolutionReport:
        token = token or CancellationToken()
        start_time = time.perf_counter()
        workers = default_worker_count(self.config.evaluation_workers)

        with FitnessEvaluator(
            self.tables, workers=workers, parallel_threshold=self.config.parallel_threshold
        ) as evaluator:
            toolbox = create_toolbox(self.encoding, self.config, self.rng, evaluator)

            logger.info(
                f"Step 1: initializing population of {self.config.population_size} "
                f"for {self.encoding.num_tasks} tasks / {self.encoding.num_resources} resources"
            )
            self._initialize_population(toolbox)
            self._record_generation(0, self.config.population_size)

            reason = TerminationReason.MAX_GENERATIONS
            partial = False
            stagnant = 0
            generation = 0
            best = self.history[-1].best_fitness

            logger.info("Step 2: evolving")
            for generation in range(1, self.config.max_generations + 1):
                try:
                    token.raise_if_expired()
                except ConvergenceTimeout as timeout:
                    reason = (
                        TerminationReason.CANCELLED
                        if timeout.context.get("cancelled")
                        else TerminationReason.DEADLINE
                    )
                    partial = True
                    generation -= 1
                    logger.warning(
                        f"{timeout.message} after {generation} generations; "
                        "returning best so far"
                    )
                    break

                evaluated = self._next_generation(toolbox)
                stats = self._record_generation(generation, evaluated)

                if stats.best_fitness - best < self.config.convergence_epsilon:
                    stagnant += 1
                else:
                    stagnant = 0
                best = stats.best_fitness

                if stagnant >= self.config.stagnation_generations:
                    reason = TerminationReason.CONVERGED
                    logger.info(
                        f"Converged at generation {generation}: no improvement above "
                        f"{self.config.convergence_epsilon} for {stagnant} generations"
                    )
                    break

            logger.info("Step 3: collecting best individual and alternatives")
            report = self._build_report(generation, reason, partial, evaluator.evaluations)

        report.total_time = time.perf_counter() - start_time
        logger.info(
            f"GA finished: best={report.best.fitness.fitness:.4f}, "
            f"generations={report.generations_run}, reason={reason.value}, "
            f"time={report.total_time:.2f}s"
        )
        return report

    def _initialize_population(self, toolbox) -> None:
        resources = self.arena.front_resources
        slots = self.arena.front_slots
        for i in range(self.config.population_size):
            resources[i], slots[i] = toolbox.individual()
        self.arena.front_scores = toolbox.evaluate(resources, slots)

    def _next_generation(self, toolbox) -> int:
        """Write the next generation into the back buffer and swap"""
        fitness = self.arena.front_scores[:, FITNESS_COL]
        front_r, front_s = self.arena.front_resources, self.arena.front_slots
        back_r, back_s = self.arena.back_resources, self.arena.back_slots
        size = self.config.population_size

        elite = np.argsort(-fitness, kind="stable")[: self.elite_count]
        back_scores = np.empty_like(self.arena.front_scores)
        back_r[: self.elite_count] = front_r[elite]
        back_s[: self.elite_count] = front_s[elite]
        back_scores[: self.elite_count] = self.arena.front_scores[elite]

        i = self.elite_count
        while i < size:
            p1 = toolbox.select(fitness)
            p2 = toolbox.select(fitness)
            child1 = (front_r[p1].copy(), front_s[p1].copy())
            child2 = (front_r[p2].copy(), front_s[p2].copy())
            if self.rng.random() < self.config.crossover_rate:
                child1, child2 = toolbox.mate(child1, child2)
            for child in (child1, child2):
                if i >= size:
                    break
                toolbox.mutate(*child)
                back_r[i], back_s[i] = child
                i += 1

        back_scores[self.elite_count :] = toolbox.evaluate(
            back_r[self.elite_count :], back_s[self.elite_count :]
        )
        self.arena.back_scores = back_scores
        self.arena.swap()
        return size - self.elite_count

    def _record_generation(self, generation: int, evaluations: int) -> GenerationStats:
        fitness = self.arena.front_scores[:, FITNESS_COL]
        record = self.statistics.compile(fitness)
        diversity = population_diversity(self.arena.front_resources)
        self.logbook.record(gen=generation, nevals=evaluations, diversity=diversity, **record)

        stats = GenerationStats(
            generation=generation,
            best_fitness=float(record["max"]),
            average_fitness=float(record["avg"]),
            worst_fitness=float(record["min"]),
            fitness_std=float(record["std"]),
            diversity=diversity,
            evaluations=evaluations,
        )
        self.history.append(stats)
        if generation % 10 == 0:
            logger.debug(
                f"Gen {generation}: best={stats.best_fitness:.4f} "
                f"avg={stats.average_fitness:.4f} diversity={diversity:.3f}"
            )
        self._notify_progress(stats)
        return stats

    # Reporting ---------------------------------------------------------------

    def _candidate(self, index: int, rank: int) -> Candidate:
        size = self.config.population_size
        resources, slots = self.arena.individual(index)
        return Candidate(
            resources=resources,
            slots=slots,
            fitness=FitnessResult.from_row(
                self.arena.front_scores[index], self.config.violation_penalty
            ),
            rank=rank,
            rank_score=1.0 - rank / (size - 1) if size > 1 else 1.0,
        )

    def _build_report(
        self,
        generation: int,
        reason: TerminationReason,
        partial: bool,
        evaluations: int,
    ) -> EvolutionReport:
        fitness = self.arena.front_scores[:, FITNESS_COL]
        order = np.argsort(-fitness, kind="stable")
        best = self._candidate(int(order[0]), 0)

        alternatives: List[Candidate] = []
        chosen = [best]
        for rank, index in enumerate(order[1:], start=1):
            if len(alternatives) >= self.config.max_alternatives:
                break
            candidate = self._candidate(int(index), rank)
            distances = [
                hamming_ratio(candidate.resources, candidate.slots, c.resources, c.slots)
                for c in chosen
            ]
            if min(distances) >= self.config.diversity_threshold:
                candidate.difference_ratio = distances[0]
                alternatives.append(candidate)
                chosen.append(candidate)

        pool = order[: max(1, min(self.config.support_pool_size, order.size))]
        size = self.config.population_size
        pool_scores = np.array(
            [1.0 - rank / (size - 1) if size > 1 else 1.0 for rank in range(pool.size)]
        )
        support = gene_support(self.arena.front_resources[pool], best.resources, pool_scores)

        return EvolutionReport(
            best=best,
            alternatives=alternatives,
            gene_support=support,
            history=list(self.history),
            generations_run=generation,
            evaluations=evaluations,
            termination_reason=reason,
            partial=partial,
        )
