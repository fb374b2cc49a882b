# allocation_engine/hybrid/coordinator.py

"""
Optimization Coordinator - orchestrates GA search and ML estimates.

Pipeline for one request:
1. validate the request and its task/resource snapshots
2. encode the problem; raise ConstraintInfeasibleError when the hard
   constraints cannot be met
3. run the GA under the caller's deadline
4. ask the model manager for duration, cost and quality estimates of the
   winning allocation and each alternative
5. assemble recommendations, bottleneck warnings, alternatives and metrics
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EngineConfig, get_logger
from ..core.exceptions import ConstraintInfeasibleError
from ..core.problem_model import ProblemSnapshot
from ..core.solution import (
    AlternativeAllocation,
    BottleneckKind,
    BottleneckWarning,
    OptimizationMetrics,
    OptimizationResult,
    OptimizationWarning,
    Recommendation,
    RiskLevel,
    TaskAllocation,
    WarningKind,
)
from ..features.extractor import AllocationContext
from ..genetic_algorithm.chromosome import ProblemEncoding
from ..genetic_algorithm.evolution_manager import EvolutionManager
from ..genetic_algorithm.types import Candidate, EvolutionReport
from ..ml.manager import MLModelManager
from ..ml.models import Prediction
from ..utils.concurrency import CancellationToken
from ..utils.performance import PerformanceMonitor
from ..utils.validation import validate_request_shape, validate_snapshots

logger = get_logger("hybrid.coordinator")


class OptimizationPhase(Enum):
    """Phases in the optimization process"""

    VALIDATION = "validation"
    ENCODING = "encoding"
    GA_EVOLUTION = "ga_evolution"
    PREDICTION = "prediction"
    FINALIZATION = "finalization"


@dataclass
class TaskEstimate:
    """ML estimate for one task of an allocation"""

    duration: Prediction
    quality: Prediction
    cost: float
    cost_std: float
    projected_start_hour: float
    projected_end_hour: float


class OptimizationCoordinator:
    """Runs one optimization request end to end"""

    def __init__(
        self,
        model_manager: MLModelManager,
        config: Optional[EngineConfig] = None,
        evaluation_workers: Optional[int] = None,
    ):
        self.model_manager = model_manager
        self.config = config or EngineConfig()
        self.evaluation_workers = evaluation_workers
        self.progress_callbacks: List[Callable[[Dict[str, Any]], None]] = []

    def add_progress_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Add callback for progress updates"""
        self.progress_callbacks.append(callback)

    def _notify_progress(self, request_id: str, phase: OptimizationPhase, **info) -> None:
        info.update(
            {
                "request_id": request_id,
                "phase": phase.value,
                "timestamp": datetime.now().isoformat(),
            }
        )
        for callback in self.progress_callbacks:
            try:
                callback(info)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # Entry point -------------------------------------------------------------

    def optimize(
        self, snapshot: ProblemSnapshot, token: Optional[CancellationToken] = None
    ) -> OptimizationResult:
        request = snapshot.request
        token = token or CancellationToken(request.timeout_seconds)
        monitor = PerformanceMonitor(f"optimization {request.request_id}")

        logger.info(
            f"Optimizing request {request.request_id}: {len(snapshot.tasks)} tasks, "
            f"{len(snapshot.resources)} resources, goal={request.goal.value}"
        )

        with monitor.stage(OptimizationPhase.VALIDATION.value):
            self._notify_progress(request.request_id, OptimizationPhase.VALIDATION)
            validate_request_shape(request)
            validate_snapshots(snapshot.tasks, snapshot.resources)

        with monitor.stage(OptimizationPhase.ENCODING.value):
            self._notify_progress(request.request_id, OptimizationPhase.ENCODING)
            encoding = ProblemEncoding(snapshot)
            if encoding.infeasible_tasks:
                logger.warning(
                    f"Tasks without a feasible resource: {encoding.infeasible_tasks}"
                )

        ga_config = request.ga_parameters or self.config.genetic_algorithm
        if ga_config.evaluation_workers is None and self.evaluation_workers is not None:
            ga_config = replace(ga_config, evaluation_workers=self.evaluation_workers)
        weights = request.preferences.weights or self.config.weights_for(request.goal)

        with monitor.stage(OptimizationPhase.GA_EVOLUTION.value):
            self._notify_progress(request.request_id, OptimizationPhase.GA_EVOLUTION)
            manager = EvolutionManager(encoding, weights, ga_config, seed=request.seed)
            try:
                report = manager.run(token)
            except ConstraintInfeasibleError as e:
                logger.error(f"Request {request.request_id} is infeasible: {e.message}")
                raise

        with monitor.stage(OptimizationPhase.PREDICTION.value):
            self._notify_progress(request.request_id, OptimizationPhase.PREDICTION)
            estimates = self._estimate(encoding, report.best)
            alternative_estimates = [
                self._estimate(encoding, candidate) for candidate in report.alternatives
            ]

        with monitor.stage(OptimizationPhase.FINALIZATION.value):
            result = self._build_result(encoding, report, estimates, alternative_estimates)

        result.computation_time_ms = monitor.elapsed_ms
        self._notify_progress(
            request.request_id,
            OptimizationPhase.FINALIZATION,
            fitness=result.fitness,
            partial=result.partial,
        )
        logger.info(
            f"Request {request.request_id} done: fitness={result.fitness:.4f}, "
            f"cost={result.total_cost:.2f}, partial={result.partial}, "
            f"stages={monitor.stage_durations()}"
        )
        logger.debug(f"Performance: {monitor.summary()}")
        return result

    # Decoding ----------------------------------------------------------------

    def _decode(self, encoding: ProblemEncoding, candidate: Candidate) -> Tuple[TaskAllocation, ...]:
        horizon = encoding.horizon
        allocations = []
        for t, task in enumerate(encoding.tasks):
            r = int(candidate.resources[t])
            slot = int(candidate.slots[t])
            start = encoding.start_hour(slot)
            end = encoding.end_hour(t, r, slot)
            allocations.append(
                TaskAllocation(
                    task_id=task.id,
                    resource_id=encoding.resources[r].id,
                    start_offset_hours=start,
                    end_offset_hours=end,
                    start_time=horizon.to_datetime(start),
                    end_time=horizon.to_datetime(end),
                    duration_hours=int(encoding.durations[t, r]),
                    cost=encoding.gene_cost(t, r, slot),
                    overtime_hours=encoding.overtime_hours(t, r, slot),
                )
            )
        return tuple(allocations)

    def _allocation_context(self, encoding: ProblemEncoding, t: int, r: int, slot: int):
        return AllocationContext(
            horizon_hours=float(encoding.horizon.total_hours),
            pool_mean_rate=float(np.mean([res.cost_rate for res in encoding.resources])),
            start_offset_hours=float(encoding.start_hour(slot)),
            available_hours=float(encoding.capacity[r]),
            deadline_offset_hours=encoding.deadline_offset,
            budget_limit=encoding.budget_limit,
        )

    def _estimate(self, encoding: ProblemEncoding, candidate: Candidate) -> List[TaskEstimate]:
        pairs = []
        contexts = []
        for t, task in enumerate(encoding.tasks):
            r = int(candidate.resources[t])
            pairs.append((task, encoding.resources[r]))
            contexts.append(self._allocation_context(encoding, t, r, int(candidate.slots[t])))

        durations = self.model_manager.predict_durations(pairs)
        qualities = self.model_manager.predict_allocation_quality(pairs, contexts)

        estimates = []
        for t, (task, resource) in enumerate(pairs):
            r = int(candidate.resources[t])
            slot = int(candidate.slots[t])
            start = encoding.start_hour(slot)
            end = encoding.end_hour(t, r, slot)
            duration = durations[t]
            scale = duration.value / encoding.durations[t, r]
            overtime_premium = encoding.gene_cost(t, r, slot) - float(encoding.costs[t, r])
            estimates.append(
                TaskEstimate(
                    duration=duration,
                    quality=qualities[t],
                    cost=resource.cost_rate * duration.value + overtime_premium,
                    cost_std=resource.cost_rate * duration.std,
                    projected_start_hour=float(start),
                    projected_end_hour=start + (end - start) * scale,
                )
            )
        return estimates

    def _baseline(self, encoding: ProblemEncoding, t: int) -> Tuple[float, float, float]:
        """Expected duration, cost and quality of a random feasible assignment"""
        allowed = encoding.allowed[t]
        if allowed.size == 0:
            return 0.0, 0.0, 0.0
        return (
            float(encoding.durations[t, allowed].mean()),
            float(encoding.costs[t, allowed].mean()),
            float(encoding.quality[t, allowed].mean()),
        )

    # Result assembly ---------------------------------------------------------

    def _utilization(self, encoding: ProblemEncoding, candidate: Candidate) -> Dict[str, float]:
        busy = np.zeros(encoding.num_resources, dtype=np.float64)
        for t in range(encoding.num_tasks):
            r = int(candidate.resources[t])
            busy[r] += encoding.durations[t, r]
        utilization = {}
        for r, resource in enumerate(encoding.resources):
            capacity = encoding.capacity[r]
            utilization[resource.id] = float(busy[r] / capacity) if capacity > 0 else 0.0
        return utilization

    def _build_result(
        self,
        encoding: ProblemEncoding,
        report: EvolutionReport,
        estimates: List[TaskEstimate],
        alternative_estimates: Sequence[List[TaskEstimate]] = (),
    ) -> OptimizationResult:
        request = encoding.snapshot.request
        result_id = f"opt_{request.request_id}"
        best = report.best

        allocations = self._decode(encoding, best)
        utilization = self._utilization(encoding, best)
        total_cost = float(sum(e.cost for e in estimates))
        completion = max((e.projected_end_hour for e in estimates), default=0.0)

        recommendations = self._recommendations(
            encoding, report, allocations, estimates, utilization, result_id
        )
        bottlenecks = self._bottlenecks(encoding, allocations, utilization, result_id)
        warnings = self._warnings(encoding, total_cost, completion, best)

        baseline_cost = float(sum(self._baseline(encoding, t)[1] for t in range(encoding.num_tasks)))
        savings = baseline_cost - total_cost
        used = [utilization[encoding.resources[int(r)].id] for r in np.unique(best.resources)]
        metrics = OptimizationMetrics(
            baseline_cost=baseline_cost,
            cost_savings=savings,
            cost_savings_percentage=(savings / baseline_cost * 100.0) if baseline_cost else 0.0,
            feasibility_score=1.0 / (1.0 + best.fitness.violations),
            average_utilization=float(np.mean(used)) if used else 0.0,
            violations=best.fitness.violations,
        )

        alternatives = []
        for i, candidate in enumerate(report.alternatives):
            predicted = alternative_estimates[i] if i < len(alternative_estimates) else []
            certainty = (
                float(np.mean([e.duration.confidence for e in predicted])) if predicted else 0.0
            )
            alternatives.append(
                AlternativeAllocation(
                    rank=candidate.rank,
                    fitness=candidate.fitness.fitness,
                    allocations=self._decode(encoding, candidate),
                    total_cost=candidate.fitness.total_cost,
                    completion_hours=candidate.fitness.makespan_hours,
                    difference_ratio=candidate.difference_ratio,
                    predicted_cost=float(sum(e.cost for e in predicted)),
                    predicted_completion_hours=max(
                        (e.projected_end_hour for e in predicted), default=0.0
                    ),
                    confidence=self._blend_confidence(candidate.rank_score, certainty),
                )
            )

        return OptimizationResult(
            result_id=result_id,
            request_id=request.request_id,
            project_id=request.project_id,
            allocations=allocations,
            fitness=best.fitness.fitness,
            total_cost=total_cost,
            completion_hours=completion,
            completion_date=encoding.horizon.to_datetime(completion),
            resource_utilization=utilization,
            recommendations=recommendations,
            bottlenecks=bottlenecks,
            alternatives=tuple(alternatives),
            warnings=warnings,
            metrics=metrics,
            generations_run=report.generations_run,
            termination_reason=report.termination_reason,
            partial=report.partial,
        )

    def _recommendations(
        self,
        encoding: ProblemEncoding,
        report: EvolutionReport,
        allocations: Sequence[TaskAllocation],
        estimates: Sequence[TaskEstimate],
        utilization: Dict[str, float],
        result_id: str,
    ) -> Tuple[Recommendation, ...]:
        settings = self.config.recommendations
        task_index = encoding.snapshot.task_index
        overbooked = self._overbooked_tasks(allocations)
        support = report.gene_support
        if support is None:
            support = np.full(encoding.num_tasks, report.best.rank_score)

        recommendations = []
        for t, (allocation, estimate) in enumerate(zip(allocations, estimates)):
            task = encoding.tasks[t]
            base_duration, base_cost, base_quality = self._baseline(encoding, t)

            flags = []
            if (
                encoding.deadline_offset is not None
                and estimate.projected_end_hour > encoding.deadline_offset
            ):
                flags.append("deadline_risk")
            for dep in task.dependencies:
                pred = allocations[task_index[dep]]
                if allocation.start_offset_hours < pred.end_offset_hours:
                    flags.append("dependency_conflict")
                    break
            if allocation.overtime_hours:
                flags.append("overtime")
            if task.id in overbooked:
                flags.append("resource_overbooked")
            if utilization.get(allocation.resource_id, 0.0) > settings.utilization_threshold:
                flags.append("high_utilization")
            if estimate.duration.confidence < settings.low_confidence_threshold:
                flags.append("low_model_confidence")

            confidence = self._blend_confidence(
                float(support[t]), estimate.duration.confidence
            )
            recommendations.append(
                Recommendation(
                    recommendation_id=f"{result_id}:{task.id}",
                    task_id=task.id,
                    resource_id=allocation.resource_id,
                    start_time=allocation.start_time,
                    predicted_duration_hours=estimate.duration.value,
                    predicted_cost=estimate.cost,
                    confidence=confidence,
                    cost_delta=estimate.cost - base_cost,
                    time_delta=estimate.duration.value - base_duration,
                    quality_delta=estimate.quality.value - base_quality,
                    risk_flags=tuple(flags),
                    prediction_source=estimate.duration.source,
                )
            )

        # Rank: most confident first, cheaper first on ties
        ordered = sorted(
            recommendations, key=lambda rec: (-rec.confidence, rec.cost_delta, rec.task_id)
        )
        return tuple(replace(rec, rank=i + 1) for i, rec in enumerate(ordered))

    def _blend_confidence(self, rank_signal: float, certainty: float) -> float:
        """GA rank agreement blended with model certainty, clipped to [0, 1]"""
        settings = self.config.recommendations
        value = settings.rank_weight * rank_signal + settings.certainty_weight * certainty
        return min(max(value, 0.0), 1.0)

    @staticmethod
    def _overbooked_tasks(allocations: Sequence[TaskAllocation]) -> set:
        overbooked = set()
        by_resource: Dict[str, List[TaskAllocation]] = {}
        for allocation in allocations:
            by_resource.setdefault(allocation.resource_id, []).append(allocation)
        for bookings in by_resource.values():
            bookings.sort(key=lambda a: a.start_offset_hours)
            for i, current in enumerate(bookings):
                for other in bookings[i + 1 :]:
                    if other.start_offset_hours < current.end_offset_hours:
                        overbooked.update((current.task_id, other.task_id))
        return overbooked

    def _bottlenecks(
        self,
        encoding: ProblemEncoding,
        allocations: Sequence[TaskAllocation],
        utilization: Dict[str, float],
        result_id: str,
    ) -> Tuple[BottleneckWarning, ...]:
        threshold = self.config.recommendations.utilization_threshold
        excluded = encoding.snapshot.request.constraints.excluded_resources
        warnings = []

        for r, resource in enumerate(encoding.resources):
            value = utilization[resource.id]
            if value <= threshold:
                continue
            affected = tuple(a.task_id for a in allocations if a.resource_id == resource.id)
            busy = float(sum(a.duration_hours for a in allocations if a.resource_id == resource.id))
            severity = (
                RiskLevel.CRITICAL if value > 1.2 else RiskLevel.HIGH if value >= 1.0 else RiskLevel.MEDIUM
            )
            warnings.append(
                BottleneckWarning(
                    warning_id=f"{result_id}:resource:{resource.id}",
                    kind=BottleneckKind.OVER_UTILIZATION,
                    severity=severity,
                    message=(
                        f"{resource.name} is booked for {value:.0%} of its available hours"
                    ),
                    recommended_action="Add capacity or move work to another resource",
                    resource_id=resource.id,
                    demand_hours=busy,
                    capacity_hours=float(encoding.capacity[r]),
                    utilization=value,
                    shortfall_percentage=max(0.0, (value - 1.0) * 100.0),
                    affected_task_ids=affected,
                )
            )

        skills = sorted({skill for task in encoding.tasks for skill in task.required_skills})
        for skill in skills:
            demand_tasks = [task for task in encoding.tasks if skill in task.required_skills]
            demand = float(sum(task.effort_hours for task in demand_tasks))
            capacity = float(
                sum(
                    encoding.capacity[r] * resource.productivity * resource.crew_size
                    for r, resource in enumerate(encoding.resources)
                    if skill in resource.skills and resource.id not in excluded
                )
            )
            if capacity >= demand:
                continue
            shortfall = (demand - capacity) / demand * 100.0 if demand else 0.0
            severity = (
                RiskLevel.CRITICAL
                if shortfall > 50
                else RiskLevel.HIGH
                if shortfall > 25
                else RiskLevel.MEDIUM
                if shortfall > 10
                else RiskLevel.LOW
            )
            warnings.append(
                BottleneckWarning(
                    warning_id=f"{result_id}:skill:{skill}",
                    kind=BottleneckKind.SKILL_SHORTAGE,
                    severity=severity,
                    message=(
                        f"Skill '{skill}' needs {demand:.0f}h but the pool offers {capacity:.0f}h"
                    ),
                    recommended_action=f"Hire or train resources with '{skill}'",
                    skill=skill,
                    demand_hours=demand,
                    capacity_hours=capacity,
                    utilization=demand / capacity if capacity else math.inf,
                    shortfall_percentage=shortfall,
                    affected_task_ids=tuple(task.id for task in demand_tasks),
                )
            )

        if warnings:
            logger.info(f"{len(warnings)} bottleneck warning(s) for {result_id}")
        return tuple(warnings)

    def _warnings(
        self,
        encoding: ProblemEncoding,
        total_cost: float,
        completion_hours: float,
        best: Candidate,
    ) -> Tuple[OptimizationWarning, ...]:
        settings = self.config.recommendations
        warnings = []

        budget = encoding.budget_limit
        if budget is not None and total_cost > budget * settings.budget_warning_ratio:
            over = total_cost > budget
            warnings.append(
                OptimizationWarning(
                    kind=WarningKind.BUDGET,
                    severity=RiskLevel.CRITICAL if over else RiskLevel.HIGH,
                    message=(
                        f"Projected cost {total_cost:.2f} "
                        f"{'exceeds' if over else 'is within 5% of'} the budget {budget:.2f}"
                    ),
                    value=total_cost,
                    threshold=budget,
                )
            )

        deadline = encoding.deadline_offset
        if deadline is not None and completion_hours > deadline:
            warnings.append(
                OptimizationWarning(
                    kind=WarningKind.DEADLINE,
                    severity=RiskLevel.HIGH,
                    message="Projected completion is after the deadline",
                    value=completion_hours,
                    threshold=float(deadline),
                )
            )

        if best.fitness.violations:
            warnings.append(
                OptimizationWarning(
                    kind=WarningKind.CONSTRAINT_VIOLATION,
                    severity=RiskLevel.MEDIUM,
                    message=f"Best allocation still breaks {best.fitness.violations} soft constraint(s)",
                    value=float(best.fitness.violations),
                )
            )
        return tuple(warnings)
