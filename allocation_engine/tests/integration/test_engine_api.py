# allocation_engine/tests/integration/test_engine_api.py

"""
Tests for the async AllocationEngine facade.
"""

import asyncio
from dataclasses import replace

import numpy as np
import pytest

from allocation_engine import AllocationEngine
from allocation_engine.config import ForecastType
from allocation_engine.core.exceptions import (
    ModelNotFoundError,
    ResultNotFoundError,
    ValidationError,
)
from allocation_engine.forecasting.forecast_service import ForecastConfig
from allocation_engine.ml.manager import RISK_MODEL_ID
from allocation_engine.ml.models import TrainingDataset

pytestmark = pytest.mark.integration


@pytest.fixture
def engine(provider, settings):
    instance = AllocationEngine(provider, settings=settings)
    yield instance
    instance.close()


@pytest.fixture
def quick_request(make_request, small_ga):
    ga = replace(small_ga, population_size=10, max_generations=5)

    def _make(request_id="req-1", **overrides):
        return make_request(request_id=request_id, ga_parameters=ga, **overrides)

    return _make


def _risk_dataset():
    rng = np.random.default_rng(0)
    inputs = rng.poisson(1.0, size=(40, 15)).astype(float)
    labels = np.clip(inputs.sum(axis=1) // 4, 0, 4).astype(np.int64)
    return TrainingDataset(inputs=inputs, targets=labels)


class TestOptimizationApi:
    """Tests for request_optimization and result lookups"""

    async def test_request_and_lookup(self, engine, quick_request):
        result = await engine.request_optimization(quick_request())

        assert engine.get_result(result.result_id) is result
        recommendations = engine.get_recommendations(result.result_id)
        assert [r.rank for r in recommendations] == list(range(1, 11))
        assert isinstance(engine.get_bottlenecks(result.result_id), list)

    async def test_unknown_result(self, engine):
        with pytest.raises(ResultNotFoundError) as exc_info:
            engine.get_recommendations("opt_nope")
        assert exc_info.value.context == {"result_id": "opt_nope"}

    async def test_unknown_task_id_rejected(self, engine, quick_request):
        with pytest.raises(ValidationError):
            await engine.request_optimization(quick_request(task_ids=("T0", "T99")))

    async def test_result_store_evicts_least_recent(self, engine, quick_request):
        await engine.request_optimization(quick_request("a"))
        await engine.request_optimization(quick_request("b"))
        engine.get_result("opt_a")
        await engine.request_optimization(quick_request("c"))

        # max_cached_results is 2 and "a" was touched after "b"
        assert engine.get_result("opt_a").request_id == "a"
        assert engine.get_result("opt_c").request_id == "c"
        with pytest.raises(ResultNotFoundError):
            engine.get_result("opt_b")

    async def test_concurrent_requests(self, engine, quick_request):
        results = await asyncio.gather(
            engine.request_optimization(quick_request("x", seed=1)),
            engine.request_optimization(quick_request("y", seed=2)),
        )
        assert [r.result_id for r in results] == ["opt_x", "opt_y"]


class TestModelApi:
    async def test_train_list_delete(self, engine):
        task = asyncio.create_task(
            engine.train_model(RISK_MODEL_ID, _risk_dataset(), {"epochs": 2})
        )
        metadata = await task

        assert metadata.version == 1
        assert not engine.is_training(RISK_MODEL_ID)
        assert [m.model_id for m in engine.list_models()] == [RISK_MODEL_ID]
        assert engine.load_model(RISK_MODEL_ID).trained

        assert engine.delete_model(RISK_MODEL_ID) == 1
        with pytest.raises(ModelNotFoundError):
            engine.load_model(RISK_MODEL_ID)

    async def test_trained_model_survives_restart(self, provider, settings):
        async with AllocationEngine(provider, settings=settings) as first:
            await first.train_model(RISK_MODEL_ID, _risk_dataset(), {"epochs": 2})

        async with AllocationEngine(provider, settings=settings) as second:
            assert second.list_models()[0].version == 1


class TestForecastApi:
    async def test_generate_forecast(self, engine):
        response = await engine.generate_forecast(
            "P1",
            [ForecastType.COST, ForecastType.RISK],
            ForecastConfig(horizon_days=3, epochs=2),
        )

        assert set(response.forecasts) == {ForecastType.COST, ForecastType.RISK}
        assert response.project_id == "P1"


async def test_closed_engine_rejects_work(provider, settings, quick_request):
    engine = AllocationEngine(provider, settings=settings)
    engine.close()
    engine.close()

    with pytest.raises(RuntimeError):
        await engine.request_optimization(quick_request())
