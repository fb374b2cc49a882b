# allocation_engine/tests/unit/test_manager.py

"""
Tests for MLModelManager: training, persistence, caching and fallbacks.
"""

import threading
import time
from unittest.mock import patch

import numpy as np
import pytest

from allocation_engine.core.exceptions import (
    InsufficientDataError,
    ModelNotFoundError,
    ValidationError,
)
from allocation_engine.features.extractor import AllocationContext, duration_sequence
from allocation_engine.ml.manager import (
    ALLOCATION_MODEL_ID,
    DURATION_MODEL_ID,
    RISK_MODEL_ID,
    MLModelManager,
)
from allocation_engine.ml.models import TrainingDataset, build_model
from allocation_engine.ml.registry import ModelMetadata

FAST = {"epochs": 2, "batch_size": 16, "seed": 0}


def _risk_dataset(samples=40):
    rng = np.random.default_rng(0)
    inputs = rng.poisson(1.0, size=(samples, 15)).astype(float)
    labels = np.clip(inputs.sum(axis=1) // 4, 0, 4).astype(np.int64)
    return TrainingDataset(inputs=inputs, targets=labels)


class TestTraining:
    """Tests for train_model"""

    def test_train_persists_new_version(self, model_manager):
        first = model_manager.train_model(RISK_MODEL_ID, _risk_dataset(), FAST)
        second = model_manager.train_model(RISK_MODEL_ID, _risk_dataset(), FAST)

        assert (first.version, second.version) == (1, 2)
        assert first.model_type == "feedforward_classifier"
        assert first.hyperparameters["spec"]["epochs"] == 2
        assert "inputs" in first.normalization_params

    def test_failed_training_keeps_previous_version(self, model_manager):
        model_manager.train_model(RISK_MODEL_ID, _risk_dataset(), FAST)
        empty = TrainingDataset(inputs=np.zeros((0, 15)), targets=np.zeros(0, dtype=np.int64))

        with pytest.raises(InsufficientDataError):
            model_manager.train_model(RISK_MODEL_ID, empty, FAST)
        assert model_manager.registry.get_metadata(RISK_MODEL_ID).version == 1

    def test_unknown_model_needs_base(self, model_manager):
        with pytest.raises(ValidationError):
            model_manager.train_model("custom", _risk_dataset(), FAST)

        stored = model_manager.train_model(
            "custom", _risk_dataset(), {**FAST, "base_model": RISK_MODEL_ID}
        )
        assert stored.model_id == "custom"

    def test_one_training_job_per_model(self, model_manager):
        """Test a second job for the same id waits for the first"""
        active = []
        overlap = []
        original = build_model

        def slow_build(spec):
            active.append(spec.model_id)
            if len(active) > 1:
                overlap.append(True)
            time.sleep(0.05)
            model = original(spec)
            active.pop()
            return model

        with patch("allocation_engine.ml.manager.build_model", side_effect=slow_build):
            threads = [
                threading.Thread(
                    target=model_manager.train_model,
                    args=(RISK_MODEL_ID, _risk_dataset(), FAST),
                )
                for _ in range(2)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert not overlap
        assert model_manager.registry.get_metadata(RISK_MODEL_ID).version == 2


class TestPersistence:
    """Tests for save/load/list/delete"""

    def test_save_then_load_gives_identical_predictions(self, model_manager, registry, engine_config):
        spec, _ = model_manager.spec_for(RISK_MODEL_ID, {"epochs": 2})
        model = build_model(spec)
        model.train(_risk_dataset(), seed=1)
        model_manager.save_model(RISK_MODEL_ID, model)

        # A fresh manager has an empty cache and must read the registry
        reloaded = MLModelManager(registry, engine_config).load_model(RISK_MODEL_ID)
        sample = _risk_dataset(5).inputs

        assert reloaded is not model
        assert [p.probabilities for p in reloaded.predict(sample)] == [
            p.probabilities for p in model.predict(sample)
        ]

    def test_save_leaves_caller_metadata_untouched(self, model_manager):
        spec, _ = model_manager.spec_for(RISK_MODEL_ID, {"epochs": 2})
        model = build_model(spec)
        model.train(_risk_dataset(), seed=1)
        metadata = ModelMetadata(
            model_id=RISK_MODEL_ID, model_type="classifier", hyperparameters={"note": "manual"}
        )

        stored = model_manager.save_model(RISK_MODEL_ID, model, metadata)

        assert metadata.hyperparameters == {"note": "manual"}
        assert metadata.normalization_params == {}
        assert stored.hyperparameters["note"] == "manual"
        assert stored.hyperparameters["spec"]["model_id"] == RISK_MODEL_ID
        assert stored.normalization_params == model.normalization_params()

    def test_load_is_cached(self, model_manager):
        model_manager.train_model(RISK_MODEL_ID, _risk_dataset(), FAST)

        assert model_manager.load_model(RISK_MODEL_ID) is model_manager.load_model(RISK_MODEL_ID)

    def test_untrained_model_not_saved(self, model_manager):
        spec, _ = model_manager.spec_for(RISK_MODEL_ID)
        with pytest.raises(ValidationError):
            model_manager.save_model(RISK_MODEL_ID, build_model(spec))

    def test_delete_clears_cache(self, model_manager):
        model_manager.train_model(RISK_MODEL_ID, _risk_dataset(), FAST)
        model_manager.load_model(RISK_MODEL_ID)

        assert model_manager.delete_model(RISK_MODEL_ID) == 1
        assert model_manager.list_models() == []
        with pytest.raises(ModelNotFoundError):
            model_manager.load_model(RISK_MODEL_ID)
        assert model_manager.try_load(RISK_MODEL_ID) is None


class TestServing:
    """Tests for predictions with and without registered models"""

    def test_heuristic_duration_without_model(self, model_manager, tasks, resources):
        predictions = model_manager.predict_durations([(tasks[1], resources[1])])

        # 12h effort at 0.8 productivity, no history
        assert predictions[0].value == pytest.approx(15.0)
        assert predictions[0].std == pytest.approx(15.0 * 0.25)
        assert predictions[0].source == "heuristic"

    def test_heuristic_duration_scales_by_history(self, model_manager, tasks, resources):
        # T0 history: 12 actual for 10 estimated
        prediction = model_manager.predict_durations([(tasks[0], resources[0])])[0]
        assert prediction.value == pytest.approx(8.0 * 1.2)

    def test_heuristic_quality_is_rating_times_coverage(self, model_manager, tasks, resources):
        context = AllocationContext(horizon_hours=720.0, pool_mean_rate=50.0)
        covered, uncovered = model_manager.predict_allocation_quality(
            [(tasks[0], resources[0]), (tasks[0], resources[4])], [context, context]
        )

        assert covered.value == pytest.approx(resources[0].quality_rating)
        assert uncovered.value == 0.0

    def test_duration_model_used_when_registered(self, model_manager, tasks, resources):
        sequences = [duration_sequence(t, r) for t in tasks for r in resources[:2]]
        targets = np.array([t.effort_hours for t in tasks for _ in resources[:2]])
        model_manager.train_model(
            DURATION_MODEL_ID,
            TrainingDataset(inputs=sequences, targets=targets),
            {"epochs": 2, "lstm_units": 8, "dense_units": 4, "seed": 0},
        )

        prediction = model_manager.predict_durations([(tasks[0], resources[0])])[0]
        assert prediction.source == "model"
        assert prediction.value >= 0.1

    def test_allocation_model_returns_expected_bin(self, model_manager, tasks, resources):
        rng = np.random.default_rng(0)
        dataset = TrainingDataset(
            inputs=rng.normal(size=(30, 25)), targets=rng.integers(0, 10, size=30)
        )
        model_manager.train_model(ALLOCATION_MODEL_ID, dataset, FAST)
        context = AllocationContext(horizon_hours=720.0, pool_mean_rate=50.0)

        prediction = model_manager.predict_allocation_quality(
            [(tasks[0], resources[0])], [context]
        )[0]
        assert 0.05 <= prediction.value <= 0.95
        assert prediction.source == "model"

    def test_risk_prediction_none_without_model(self, model_manager):
        assert model_manager.predict_risk(np.zeros(15)) is None
