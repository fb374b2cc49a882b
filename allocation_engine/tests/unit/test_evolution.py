# allocation_engine/tests/unit/test_evolution.py

"""
Tests for genetic operators, DEAP wiring and the evolution loop.
"""

from dataclasses import replace

import numpy as np
import pytest

from allocation_engine.config import GOAL_WEIGHT_TABLE, OptimizationGoal
from allocation_engine.core.solution import TerminationReason
from allocation_engine.genetic_algorithm.chromosome import ProblemEncoding
from allocation_engine.genetic_algorithm.deap_setup import create_logbook, create_statistics
from allocation_engine.genetic_algorithm.evolution_manager import EvolutionManager
from allocation_engine.genetic_algorithm.operators import (
    gene_support,
    hamming_ratio,
    mutate,
    population_diversity,
    single_point_crossover,
    tournament_select,
)
from allocation_engine.utils.concurrency import CancellationToken

COST_WEIGHTS = GOAL_WEIGHT_TABLE[OptimizationGoal.MINIMIZE_COST]


class TestOperators:
    """Tests for selection, crossover and mutation"""

    def test_tournament_picks_fittest_contestant(self):
        rng = np.random.default_rng(0)
        fitness = np.array([0.1, 0.9, 0.2, 0.3])

        # A tournament over the whole population always returns the best
        assert tournament_select(rng, fitness, tournament_size=4) == 1

    def test_crossover_swaps_whole_genes(self):
        rng = np.random.default_rng(2)
        p1 = (np.zeros(6, dtype=np.int64), np.zeros(6, dtype=np.int64))
        p2 = (np.ones(6, dtype=np.int64), np.full(6, 5, dtype=np.int64))
        (r1, s1), (r2, s2) = single_point_crossover(rng, p1, p2)

        cut = int(np.argmax(r1 == 1))
        assert 1 <= cut < 6
        assert np.all(r1[:cut] == 0) and np.all(r1[cut:] == 1)
        # Resource and slot travel together
        assert np.all((r1 == 1) == (s1 == 5))
        assert np.all(r2 + r1 == 1)
        assert np.all(s1 + s2 == 5)

    def test_mutation_keeps_genome_valid(self, make_snapshot):
        encoding = ProblemEncoding(make_snapshot())
        rng = np.random.default_rng(4)
        resources, slots = encoding.sample_genome(rng, 5)

        touched = mutate(rng, encoding, resources, slots, mutation_rate=1.0)

        assert touched == encoding.num_tasks
        assert encoding.genome_is_valid(resources, slots)

    def test_zero_rate_mutation_is_noop(self, make_snapshot):
        encoding = ProblemEncoding(make_snapshot())
        rng = np.random.default_rng(4)
        resources, slots = encoding.sample_genome(rng, 5)
        before = (resources.copy(), slots.copy())

        assert mutate(rng, encoding, resources, slots, mutation_rate=0.0) == 0
        assert np.array_equal(resources, before[0]) and np.array_equal(slots, before[1])

    def test_hamming_ratio(self):
        a = np.array([0, 1, 2, 3])
        b = np.array([0, 1, 0, 3])
        slots = np.zeros(4)

        assert hamming_ratio(a, slots, b, slots) == pytest.approx(0.25)
        assert hamming_ratio(a, slots, a, slots) == 0.0

    def test_gene_support_weights_agreement_by_rank(self):
        best = np.array([0, 1, 2])
        pool = np.array([[0, 1, 2], [0, 1, 0], [0, 2, 0]])
        scores = np.array([1.0, 0.5, 0.5])

        support = gene_support(pool, best, scores)

        assert support == pytest.approx([1.0, 0.75, 0.5])
        # Only the best itself
        assert gene_support(pool[:1], best, scores[:1]) == pytest.approx([1.0, 1.0, 1.0])

    def test_population_diversity(self):
        uniform = np.zeros((4, 3), dtype=np.int64)
        varied = np.array([[0, 1], [1, 2], [2, 3], [3, 0]])

        assert population_diversity(uniform) == pytest.approx(0.25)
        assert population_diversity(varied) == pytest.approx(1.0)


class TestDeapSetup:
    def test_statistics_compile_over_fitness_column(self):
        record = create_statistics().compile(np.array([0.2, 0.4, 0.6]))

        assert record["max"] == pytest.approx(0.6)
        assert record["avg"] == pytest.approx(0.4)
        assert record["min"] == pytest.approx(0.2)

    def test_logbook_header(self):
        assert create_logbook().header[0] == "gen"


class TestEvolutionManager:
    """Tests for the generational loop"""

    def test_best_fitness_never_decreases(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        for seed in (0, 1, 7):
            report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=seed).run()
            history = report.best_fitness_history

            assert all(b >= a - 1e-12 for a, b in zip(history, history[1:]))
            assert report.best.fitness.fitness == pytest.approx(history[-1])

    def test_same_seed_same_outcome(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        first = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=11).run()
        second = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=11).run()

        assert np.array_equal(first.best.resources, second.best.resources)
        assert np.array_equal(first.best.slots, second.best.slots)
        assert first.best_fitness_history == second.best_fitness_history

    def test_best_genome_is_valid(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=3).run()

        assert report.best.resources.shape == (encoding.num_tasks,)
        assert encoding.genome_is_valid(report.best.resources, report.best.slots)

    def test_stops_on_stagnation(self, make_snapshot, small_ga):
        config = replace(
            small_ga, max_generations=500, stagnation_generations=3, convergence_epsilon=1.0
        )
        encoding = ProblemEncoding(make_snapshot())
        report = EvolutionManager(encoding, COST_WEIGHTS, config, seed=0).run()

        assert report.termination_reason is TerminationReason.CONVERGED
        assert report.generations_run == 3

    def test_expired_token_returns_partial_best(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        token = CancellationToken()
        token.cancel()
        report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=0).run(token)

        assert report.partial
        assert report.termination_reason is TerminationReason.CANCELLED
        assert report.generations_run == 0
        assert encoding.genome_is_valid(report.best.resources, report.best.slots)

    def test_deadline_marks_reason(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        token = CancellationToken(timeout_seconds=0.0)
        report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=0).run(token)

        assert report.partial
        assert report.termination_reason is TerminationReason.DEADLINE

    def test_alternatives_are_diverse(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=5).run()

        assert len(report.alternatives) <= small_ga.max_alternatives
        for alternative in report.alternatives:
            distance = hamming_ratio(
                alternative.resources, alternative.slots, report.best.resources, report.best.slots
            )
            assert distance >= small_ga.diversity_threshold
            assert alternative.fitness.fitness <= report.best.fitness.fitness

    def test_progress_callback_receives_every_generation(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        manager = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=0)
        seen = []
        manager.add_progress_callback(lambda stats: seen.append(stats.generation))
        report = manager.run()

        assert seen == list(range(report.generations_run + 1))
        assert len(manager.logbook) == len(seen)

    def test_report_carries_gene_support(self, make_snapshot, small_ga):
        encoding = ProblemEncoding(make_snapshot())
        report = EvolutionManager(encoding, COST_WEIGHTS, small_ga, seed=2).run()
        support = report.gene_support

        assert support.shape == (encoding.num_tasks,)
        assert np.all((support > 0.0) & (support <= 1.0))

        single = replace(small_ga, support_pool_size=1)
        report = EvolutionManager(encoding, COST_WEIGHTS, single, seed=2).run()
        assert np.all(report.gene_support == 1.0)
