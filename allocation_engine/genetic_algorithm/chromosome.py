# allocation_engine/genetic_algorithm/chromosome.py

"""
Chromosome encoding for task-resource allocation.

An individual is one row of a genome arena: for every task (in request order)
a resource index into the request's pool and a start slot. Start slots index
the horizon's working hours (plus overtime hours when the request allows
them), so a task assigned slot ``s`` with a duration of
``d`` working hours occupies slots ``s .. s+d-1``.

Hard constraints are checked per gene and precomputed into two tables:
``feasible[t, r]`` and the inclusive start-slot range ``[slot_lo, slot_hi]``.
"""

import math
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..core.exceptions import ConstraintInfeasibleError
from ..core.problem_model import ProblemSnapshot, Resource, Task, TimeHorizon, WorkingHours
from ..config import get_logger

logger = get_logger("genetic_algorithm.chromosome")


def working_hour_offsets(horizon: TimeHorizon, hours: WorkingHours) -> np.ndarray:
    """Calendar hour offsets (from the horizon origin) that are working hours"""
    return working_hour_grid(horizon, hours)[0]


def working_hour_grid(
    horizon: TimeHorizon, hours: WorkingHours, overtime_hours: int = 0
) -> Tuple[np.ndarray, np.ndarray]:
    """Bookable hour offsets plus a mask of the ones that are overtime.

    Overtime hours follow the regular window on each working day and never
    run past midnight.
    """
    offsets = []
    overtime = []
    origin = horizon.origin
    working_days = set(hours.working_days)
    overtime_end = min(24, hours.end_hour + max(0, overtime_hours))
    for day in range(horizon.days):
        weekday = (origin.weekday() + day) % 7
        if weekday not in working_days:
            continue
        base = day * 24
        offsets.extend(range(base + hours.start_hour, base + overtime_end))
        overtime.extend(hour >= hours.end_hour for hour in range(hours.start_hour, overtime_end))
    return np.asarray(offsets, dtype=np.int64), np.asarray(overtime, dtype=bool)


class ProblemEncoding:
    """Read-only lookup tables shared by every individual of a run"""

    def __init__(self, snapshot: ProblemSnapshot):
        self.snapshot = snapshot
        request = snapshot.request
        constraints = request.constraints
        self.tasks: Tuple[Task, ...] = snapshot.tasks
        self.resources: Tuple[Resource, ...] = snapshot.resources
        self.num_tasks = len(self.tasks)
        self.num_resources = len(self.resources)
        self.horizon = request.time_horizon

        preferences = request.preferences
        self.working_slots, self.overtime_slots = working_hour_grid(
            self.horizon, constraints.working_hours, preferences.overtime_hours
        )
        self.num_slots = int(self.working_slots.shape[0])
        # overtime_prefix[i] counts overtime slots before slot i
        self.overtime_prefix = np.concatenate(
            [[0], np.cumsum(self.overtime_slots, dtype=np.int64)]
        )
        self.overtime_premium = max(0.0, preferences.overtime_rate_multiplier - 1.0)
        self.rates = np.asarray([r.cost_rate for r in snapshot.resources], dtype=np.float64)

        T, R = self.num_tasks, self.num_resources
        self.durations = np.zeros((T, R), dtype=np.int64)
        self.costs = np.zeros((T, R), dtype=np.float64)
        self.quality = np.zeros((T, R), dtype=np.float64)
        self.feasible = np.zeros((T, R), dtype=bool)
        self.slot_lo = np.full((T, R), -1, dtype=np.int64)
        self.slot_hi = np.full((T, R), -1, dtype=np.int64)
        self.capacity = np.zeros(R, dtype=np.float64)

        self.infeasible_reasons: Dict[str, List[str]] = {}
        self._build_tables()

        self.allowed: List[np.ndarray] = [
            np.flatnonzero(self.feasible[t]) for t in range(T)
        ]

        task_index = snapshot.task_index
        self.dependencies = np.asarray(
            [
                (task_index[dep], t)
                for t, task in enumerate(self.tasks)
                for dep in task.dependencies
                if dep in task_index
            ],
            dtype=np.int64,
        ).reshape(-1, 2)

        resource_index = snapshot.resource_index
        self.mandatory = np.asarray(
            sorted(resource_index[r] for r in constraints.mandatory_resources),
            dtype=np.int64,
        )
        self.deadline_offset: Optional[int] = (
            self.horizon.to_offset(constraints.deadline)
            if constraints.deadline is not None
            else None
        )
        self.budget_limit = constraints.budget_limit

    # Table construction ------------------------------------------------------

    def _availability_offsets(self, resource: Resource) -> Tuple[int, int]:
        start = (
            self.horizon.to_offset(resource.available_from)
            if resource.available_from is not None
            else 0
        )
        end = (
            self.horizon.to_offset(resource.available_until)
            if resource.available_until is not None
            else self.horizon.total_hours
        )
        return start, end

    def _build_tables(self) -> None:
        constraints = self.snapshot.request.constraints
        slots = self.working_slots
        S = self.num_slots

        for r, resource in enumerate(self.resources):
            start, end = self._availability_offsets(resource)
            # Capacity is regular hours; overtime shows up as utilization above 1
            regular = (slots >= start) & (slots < end) & ~self.overtime_slots
            self.capacity[r] = float(np.count_nonzero(regular))

        for t, task in enumerate(self.tasks):
            reasons = []
            for r, resource in enumerate(self.resources):
                hours = task.effort_hours / (resource.productivity * resource.crew_size)
                duration = max(1, int(math.ceil(hours - 1e-9)))
                self.durations[t, r] = duration
                self.costs[t, r] = resource.cost_rate * duration
                self.quality[t, r] = resource.quality_rating

                if resource.id in constraints.excluded_resources:
                    reasons.append(f"{resource.id}: excluded")
                    continue
                if not resource.has_skills(task.required_skills):
                    reasons.append(f"{resource.id}: missing task skills")
                    continue
                if not resource.has_skills(constraints.required_skills):
                    reasons.append(f"{resource.id}: missing required skills")
                    continue
                if (
                    constraints.max_workers_per_task is not None
                    and resource.crew_size > constraints.max_workers_per_task
                ):
                    reasons.append(f"{resource.id}: crew exceeds worker cap")
                    continue
                if duration > S:
                    reasons.append(f"{resource.id}: task longer than horizon")
                    continue

                avail_start, avail_end = self._availability_offsets(resource)
                lo = int(np.searchsorted(slots, avail_start, side="left"))
                # end hour of a task starting at slot i is slots[i + d - 1] + 1
                end_hours = slots[duration - 1 :] + 1
                hi = int(np.searchsorted(end_hours, avail_end, side="right")) - 1
                if lo > hi:
                    reasons.append(f"{resource.id}: no working window in availability")
                    continue

                self.feasible[t, r] = True
                self.slot_lo[t, r] = lo
                self.slot_hi[t, r] = hi

            if not self.feasible[t].any():
                self.infeasible_reasons[task.id] = reasons

    # Queries -----------------------------------------------------------------

    @property
    def infeasible_tasks(self) -> List[str]:
        return list(self.infeasible_reasons)

    def cost_bounds(self) -> Tuple[float, float]:
        """Cheapest and most expensive feasible total cost"""
        masked_min = np.where(self.feasible, self.costs, np.inf).min(axis=1)
        masked_max = np.where(self.feasible, self.costs, -np.inf).max(axis=1)
        if not np.all(np.isfinite(masked_min)):
            return 0.0, 0.0
        return float(masked_min.sum()), float(masked_max.sum())

    def duration_lower_bound(self) -> float:
        """Critical path length using each task's fastest feasible resource"""
        fastest = np.where(self.feasible, self.durations, np.iinfo(np.int64).max).min(axis=1)
        if np.any(fastest == np.iinfo(np.int64).max):
            return 0.0
        finish = fastest.astype(np.float64).copy()
        # Dependencies form a DAG; relax edges T times to settle longest paths
        for _ in range(self.num_tasks):
            changed = False
            for pred, succ in self.dependencies:
                candidate = finish[pred] + fastest[succ]
                if candidate > finish[succ]:
                    finish[succ] = candidate
                    changed = True
            if not changed:
                break
        return float(finish.max()) if finish.size else 0.0

    def gene_is_valid(self, task: int, resource: int, slot: int) -> bool:
        if not 0 <= resource < self.num_resources or not self.feasible[task, resource]:
            return False
        return self.slot_lo[task, resource] <= slot <= self.slot_hi[task, resource]

    def genome_is_valid(self, resources: np.ndarray, slots: np.ndarray) -> bool:
        return resources.shape[0] == self.num_tasks and all(
            self.gene_is_valid(t, int(resources[t]), int(slots[t]))
            for t in range(self.num_tasks)
        )

    def repair_gene(
        self, rng: np.random.Generator, resources: np.ndarray, slots: np.ndarray, task: int
    ) -> bool:
        """Make gene ``task`` satisfy the hard constraints in place.

        An infeasible resource is replaced by a random feasible one; a start
        slot outside the resource's window is redrawn inside it. Returns False
        when the task has no feasible resource at all.
        """
        allowed = self.allowed[task]
        if allowed.size == 0:
            return False
        r = int(resources[task])
        if not (0 <= r < self.num_resources) or not self.feasible[task, r]:
            r = int(allowed[rng.integers(allowed.size)])
            resources[task] = r
        lo, hi = self.slot_lo[task, r], self.slot_hi[task, r]
        if not lo <= slots[task] <= hi:
            slots[task] = int(rng.integers(lo, hi + 1))
        return True

    def repair(self, rng: np.random.Generator, resources: np.ndarray, slots: np.ndarray) -> bool:
        return all(self.repair_gene(rng, resources, slots, t) for t in range(self.num_tasks))

    def sample_genome(
        self, rng: np.random.Generator, max_attempts: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Random genes over the whole pool, repaired; re-sampled on failure"""
        for attempt in range(max_attempts):
            resources = rng.integers(0, self.num_resources, size=self.num_tasks)
            slots = rng.integers(0, max(self.num_slots, 1), size=self.num_tasks)
            if self.repair(rng, resources, slots) and self.genome_is_valid(resources, slots):
                return resources, slots
        raise ConstraintInfeasibleError(
            f"No allocation satisfies the hard constraints after {max_attempts} "
            "repair attempts",
            diagnostics={
                task_id: reasons for task_id, reasons in self.infeasible_reasons.items()
            },
            context={
                "request_id": self.snapshot.request.request_id,
                "infeasible_tasks": self.infeasible_tasks,
            },
        )

    # Decoding ----------------------------------------------------------------

    def start_hour(self, slot: int) -> int:
        return int(self.working_slots[slot])

    def end_hour(self, task: int, resource: int, slot: int) -> int:
        return int(self.working_slots[slot + self.durations[task, resource] - 1]) + 1

    def overtime_hours(self, task: int, resource: int, slot: int) -> int:
        end = slot + int(self.durations[task, resource])
        return int(self.overtime_prefix[end] - self.overtime_prefix[slot])

    def gene_cost(self, task: int, resource: int, slot: int) -> float:
        """Regular cost plus the premium on any overtime hours"""
        premium = self.rates[resource] * self.overtime_premium * self.overtime_hours(
            task, resource, slot
        )
        return float(self.costs[task, resource] + premium)


class GenomeArena:
    """Double-buffered population storage.

    Two blocks of ``population_size`` rows; the front block holds the
    current generation and is only read while the back block is written,
    then :meth:`swap` flips them.
    """

    def __init__(self, population_size: int, genome_length: int):
        self.population_size = population_size
        self.genome_length = genome_length
        self._resources = np.zeros((2, population_size, genome_length), dtype=np.int64)
        self._slots = np.zeros((2, population_size, genome_length), dtype=np.int64)
        self._scores: List[Optional[np.ndarray]] = [None, None]
        self._front = 0

    @property
    def front_resources(self) -> np.ndarray:
        return self._resources[self._front]

    @property
    def front_slots(self) -> np.ndarray:
        return self._slots[self._front]

    @property
    def back_resources(self) -> np.ndarray:
        return self._resources[1 - self._front]

    @property
    def back_slots(self) -> np.ndarray:
        return self._slots[1 - self._front]

    @property
    def front_scores(self) -> np.ndarray:
        return self._scores[self._front]

    @front_scores.setter
    def front_scores(self, scores: np.ndarray) -> None:
        self._scores[self._front] = scores

    @property
    def back_scores(self) -> np.ndarray:
        return self._scores[1 - self._front]

    @back_scores.setter
    def back_scores(self, scores: np.ndarray) -> None:
        self._scores[1 - self._front] = scores

    def swap(self) -> None:
        self._front = 1 - self._front

    def individual(self, index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of one front-buffer genome"""
        return self.front_resources[index].copy(), self.front_slots[index].copy()
