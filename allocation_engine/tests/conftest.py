# allocation_engine/tests/conftest.py

"""
Pytest configuration and fixtures for allocation engine tests.
"""

import logging
from datetime import date, datetime, timedelta

import numpy as np
import pytest

from allocation_engine.config import (
    EngineConfig,
    GeneticAlgorithmConfig,
    OptimizationGoal,
)
from allocation_engine.core.data_provider import InMemoryDataProvider
from allocation_engine.core.problem_model import (
    OptimizationConstraints,
    OptimizationRequest,
    ProblemSnapshot,
    ProjectHistoryPoint,
    Resource,
    Task,
    TaskHistoryRecord,
    TimeHorizon,
)
from allocation_engine.ml.manager import MLModelManager
from allocation_engine.ml.registry import ModelRegistry
from allocation_engine.settings import EngineSettings

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# A Monday, so the first working slot is hour 8 of day 0
HORIZON_START = datetime(2024, 1, 1)


@pytest.fixture
def horizon():
    return TimeHorizon(start=HORIZON_START, days=30)


@pytest.fixture
def tasks():
    """Ten tasks over three skills with a short dependency chain"""
    skills = ["python", "sql", "design"]
    result = []
    for i in range(10):
        result.append(
            Task(
                id=f"T{i}",
                name=f"Task {i}",
                required_skills=frozenset({skills[i % 3]}),
                effort_hours=8.0 + 4.0 * (i % 4),
                dependencies=(f"T{i - 1}",) if i in (3, 6) else (),
                project_id="P1",
                complexity=3 + i % 5,
                history=(
                    TaskHistoryRecord(estimated_hours=10.0, actual_hours=12.0, delay_days=1.0),
                )
                if i % 2 == 0
                else (),
            )
        )
    return result


@pytest.fixture
def resources():
    """Five resources covering every skill at different rates"""
    return [
        Resource(id="R0", name="Ada", skills=frozenset({"python", "sql"}), cost_rate=50.0,
                 productivity=1.0, quality_rating=0.9, experience_years=6),
        Resource(id="R1", name="Bo", skills=frozenset({"python", "design"}), cost_rate=35.0,
                 productivity=0.8, quality_rating=0.7, experience_years=2),
        Resource(id="R2", name="Cy", skills=frozenset({"sql", "design"}), cost_rate=60.0,
                 productivity=1.2, quality_rating=0.95, experience_years=9),
        Resource(id="R3", name="Di", skills=frozenset({"python", "sql", "design"}),
                 cost_rate=80.0, productivity=1.5, quality_rating=0.85, experience_years=12),
        Resource(id="R4", name="Ed", skills=frozenset({"design"}), cost_rate=25.0,
                 productivity=0.7, quality_rating=0.6, experience_years=1),
    ]


@pytest.fixture
def small_ga():
    return GeneticAlgorithmConfig(
        population_size=20,
        max_generations=50,
        evaluation_workers=1,
    )


@pytest.fixture
def make_request(tasks, resources, horizon, small_ga):
    """Factory for requests over the standard tasks and resources"""

    def _make(**overrides):
        values = dict(
            project_id="P1",
            task_ids=tuple(t.id for t in tasks),
            resource_ids=tuple(r.id for r in resources),
            time_horizon=horizon,
            goal=OptimizationGoal.MINIMIZE_COST,
            constraints=OptimizationConstraints(),
            seed=42,
            ga_parameters=small_ga,
            request_id="req-1",
        )
        values.update(overrides)
        return OptimizationRequest(**values)

    return _make


@pytest.fixture
def make_snapshot(make_request, tasks, resources):
    def _make(request=None, task_list=None, resource_list=None):
        return ProblemSnapshot(
            request=request or make_request(),
            tasks=tuple(task_list if task_list is not None else tasks),
            resources=tuple(resource_list if resource_list is not None else resources),
        )

    return _make


def make_history(days, start=date(2024, 1, 1), seed=0, daily_cost=1000.0, pace=1.5):
    """Deterministic synthetic project history"""
    rng = np.random.default_rng(seed)
    points = []
    progress = 0.0
    for i in range(days):
        progress = min(100.0, progress + pace * (0.8 + 0.4 * rng.random()))
        points.append(
            ProjectHistoryPoint(
                day=start + timedelta(days=i),
                cost=float(daily_cost * (0.9 + 0.2 * rng.random())),
                progress_pct=progress,
                incidents=int(rng.poisson(1.0)),
                labor_hours=float(40.0 + 8.0 * rng.random()),
                active_resources=int(4 + rng.integers(0, 3)),
            )
        )
    return points


@pytest.fixture
def history_factory():
    return make_history


@pytest.fixture
def provider(tasks, resources):
    data = InMemoryDataProvider(tasks=tasks, resources=resources)
    data.set_history("P1", make_history(60))
    return data


@pytest.fixture
def registry(tmp_path):
    store = ModelRegistry(tmp_path / "models")
    yield store
    store.close()


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def model_manager(registry, engine_config):
    return MLModelManager(registry, engine_config)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        model_store_dir=tmp_path / "engine_store",
        evaluation_workers=1,
        request_workers=2,
        max_cached_results=2,
    )
