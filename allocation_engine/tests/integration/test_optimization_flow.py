# allocation_engine/tests/integration/test_optimization_flow.py

"""
End-to-end tests for OptimizationCoordinator: validation, GA search,
ML estimates and result assembly.
"""

from datetime import datetime

import numpy as np
import pytest

from allocation_engine.config import OptimizationGoal
from allocation_engine.core.exceptions import ConstraintInfeasibleError, ValidationError
from allocation_engine.core.problem_model import (
    OptimizationConstraints,
    OptimizationPreferences,
    Task,
    TimeHorizon,
)
from allocation_engine.core.solution import (
    BottleneckKind,
    RiskLevel,
    TerminationReason,
    WarningKind,
)
from allocation_engine.genetic_algorithm.chromosome import ProblemEncoding
from allocation_engine.genetic_algorithm.evolution_manager import EvolutionManager
from allocation_engine.genetic_algorithm.fitness import FitnessTables, evaluate_genome
from allocation_engine.hybrid.coordinator import OptimizationCoordinator, OptimizationPhase


pytestmark = pytest.mark.integration

MONDAY = datetime(2024, 1, 1)


@pytest.fixture
def coordinator(model_manager, engine_config):
    return OptimizationCoordinator(model_manager, engine_config)


def _random_baseline(snapshot, engine_config, samples=10):
    """Mean fitness of random feasible genomes"""
    request = snapshot.request
    encoding = ProblemEncoding(snapshot)
    tables = FitnessTables.from_encoding(
        encoding,
        engine_config.weights_for(request.goal),
        violation_penalty=request.ga_parameters.violation_penalty,
    )
    rng = np.random.default_rng(123)
    scores = []
    for _ in range(samples):
        resources, slots = encoding.sample_genome(rng, 10)
        scores.append(evaluate_genome(resources, slots, tables)[0])
    return float(np.mean(scores))


class TestOptimize:
    """Tests for a full optimization run"""

    def test_beats_random_assignment(self, coordinator, make_snapshot, engine_config):
        snapshot = make_snapshot()
        result = coordinator.optimize(snapshot)

        assert result.fitness >= _random_baseline(snapshot, engine_config)
        assert result.result_id == "opt_req-1"
        assert result.generations_run <= 50
        assert result.termination_reason in (
            TerminationReason.MAX_GENERATIONS,
            TerminationReason.CONVERGED,
        )
        assert not result.partial

    def test_allocations_respect_hard_constraints(self, coordinator, make_snapshot, tasks, resources):
        result = coordinator.optimize(make_snapshot())
        by_id = {r.id: r for r in resources}

        assert [a.task_id for a in result.allocations] == [t.id for t in tasks]
        for task, allocation in zip(tasks, result.allocations):
            assert by_id[allocation.resource_id].has_skills(task.required_skills)
            assert allocation.end_offset_hours > allocation.start_offset_hours
            # Working hours 8..17 on weekdays
            assert 8 <= allocation.start_time.hour < 17
            assert allocation.start_time.weekday() < 5

    def test_same_seed_same_result(self, coordinator, make_snapshot):
        first = coordinator.optimize(make_snapshot())
        second = coordinator.optimize(make_snapshot())

        assert first == second

    def test_different_seed_still_valid(self, coordinator, make_request, make_snapshot):
        result = coordinator.optimize(make_snapshot(request=make_request(seed=7)))
        assert len(result.allocations) == 10

    def test_missing_skill_raises_infeasible(self, coordinator, make_request, make_snapshot, tasks):
        welding = Task(id="X", name="Welding", required_skills=frozenset({"welding"}))
        request = make_request(task_ids=tuple(t.id for t in tasks) + ("X",))

        with pytest.raises(ConstraintInfeasibleError) as exc_info:
            coordinator.optimize(make_snapshot(request=request, task_list=tasks + [welding]))
        assert "X" in exc_info.value.diagnostics

    def test_invalid_request_rejected_before_search(self, coordinator, make_request, make_snapshot):
        phases = []
        coordinator.add_progress_callback(lambda info: phases.append(info["phase"]))
        request = make_request(
            constraints=OptimizationConstraints(budget_limit=-1.0)
        )

        with pytest.raises(ValidationError):
            coordinator.optimize(make_snapshot(request=request))
        assert phases == [OptimizationPhase.VALIDATION.value]

    def test_progress_phases_in_order(self, coordinator, make_snapshot):
        phases = []
        coordinator.add_progress_callback(lambda info: phases.append(info["phase"]))
        coordinator.add_progress_callback(lambda info: 1 / 0)
        coordinator.optimize(make_snapshot())

        assert phases == [phase.value for phase in OptimizationPhase]


class TestResultStructure:
    """Tests for recommendations, bottlenecks, warnings and metrics"""

    def test_recommendations_ranked(self, coordinator, make_snapshot):
        result = coordinator.optimize(make_snapshot())
        recommendations = result.recommendations

        assert [r.rank for r in recommendations] == list(range(1, 11))
        assert {r.task_id for r in recommendations} == {a.task_id for a in result.allocations}
        confidences = [r.confidence for r in recommendations]
        assert confidences == sorted(confidences, reverse=True)
        for rec in recommendations:
            assert 0.0 <= rec.confidence <= 1.0
            assert rec.recommendation_id == f"opt_req-1:{rec.task_id}"
            assert rec.prediction_source == "heuristic"

    def test_confidence_follows_gene_support(
        self, coordinator, make_snapshot, monkeypatch
    ):
        """Test tasks the top individuals disagree on rank lower"""
        run = EvolutionManager.run

        def run_with_support(manager, token=None):
            report = run(manager, token)
            report.gene_support = np.linspace(1.0, 0.1, report.best.resources.shape[0])
            return report

        monkeypatch.setattr(EvolutionManager, "run", run_with_support)
        result = coordinator.optimize(make_snapshot())
        by_task = {r.task_id: r for r in result.recommendations}

        confidences = [by_task[a.task_id].confidence for a in result.allocations]
        assert len(set(confidences)) == len(confidences)
        # Heuristic duration confidence is 0.8
        assert confidences[0] == pytest.approx(0.5 * 1.0 + 0.5 * 0.8)
        assert confidences[-1] == pytest.approx(0.5 * 0.1 + 0.5 * 0.8)
        assert [r.task_id for r in result.recommendations] == [
            a.task_id for a in result.allocations
        ]

    def test_alternatives_carry_estimates(self, coordinator, make_snapshot):
        result = coordinator.optimize(make_snapshot())

        for alternative in result.alternatives:
            assert alternative.predicted_cost > 0
            assert alternative.predicted_completion_hours > 0
            assert 0.0 < alternative.confidence <= 1.0

    def test_short_horizon_reports_bottlenecks(
        self, coordinator, make_request, make_snapshot, resources
    ):
        """Test one generalist plus a weak designer over a single week"""
        pool = [resources[0], resources[4]]
        request = make_request(
            resource_ids=("R0", "R4"),
            time_horizon=TimeHorizon(start=MONDAY, days=5),
        )
        result = coordinator.optimize(make_snapshot(request=request, resource_list=pool))
        kinds = {(b.kind, b.resource_id or b.skill) for b in result.bottlenecks}

        assert (BottleneckKind.OVER_UTILIZATION, "R0") in kinds
        assert (BottleneckKind.SKILL_SHORTAGE, "design") in kinds

        shortage = next(b for b in result.bottlenecks if b.skill == "design")
        # 36h of design work against 45h at 0.7 productivity
        assert shortage.shortfall_percentage == pytest.approx(12.5)
        assert shortage.severity is RiskLevel.MEDIUM
        assert set(shortage.affected_task_ids) == {"T2", "T5", "T8"}
        assert result.resource_utilization["R0"] > 1.0

    def test_overtime_allocations_flagged_and_billed(
        self, coordinator, make_request, make_snapshot, resources
    ):
        pool = [resources[0], resources[4]]
        request = make_request(
            resource_ids=("R0", "R4"),
            time_horizon=TimeHorizon(start=MONDAY, days=5),
            preferences=OptimizationPreferences(allow_overtime=True),
        )
        result = coordinator.optimize(make_snapshot(request=request, resource_list=pool))
        flagged = {r.task_id for r in result.recommendations if "overtime" in r.risk_flags}
        rates = {r.id: r.cost_rate for r in pool}

        assert flagged == {a.task_id for a in result.allocations if a.overtime_hours}
        for allocation in result.allocations:
            # Regular window 8..17 plus two overtime hours
            assert 8 <= allocation.start_time.hour < 19
            regular = rates[allocation.resource_id] * allocation.duration_hours
            premium = rates[allocation.resource_id] * 0.5 * allocation.overtime_hours
            assert allocation.cost == pytest.approx(regular + premium)

    def test_budget_warning(self, coordinator, make_request, make_snapshot):
        request = make_request(constraints=OptimizationConstraints(budget_limit=100.0))
        result = coordinator.optimize(make_snapshot(request=request))
        budget = [w for w in result.warnings if w.kind is WarningKind.BUDGET]

        assert len(budget) == 1
        assert budget[0].severity is RiskLevel.CRITICAL
        assert budget[0].threshold == 100.0
        assert result.metrics.violations >= 1

    def test_metrics_and_serialization(self, coordinator, make_snapshot):
        result = coordinator.optimize(make_snapshot())
        metrics = result.metrics

        assert metrics.baseline_cost > 0
        assert metrics.cost_savings == pytest.approx(metrics.baseline_cost - result.total_cost)
        assert 0.0 < metrics.feasibility_score <= 1.0
        assert result.completion_date >= MONDAY

        data = result.to_dict()
        assert data["termination_reason"] in {r.value for r in TerminationReason}
        assert data["allocations"][0]["start_time"].startswith("2024-01")

    def test_quality_goal_runs(self, coordinator, make_request, make_snapshot):
        request = make_request(goal=OptimizationGoal.MAXIMIZE_QUALITY)
        result = coordinator.optimize(make_snapshot(request=request))
        assert result.fitness > 0
