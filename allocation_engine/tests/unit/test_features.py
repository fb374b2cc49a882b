# allocation_engine/tests/unit/test_features.py

"""
Tests for feature extraction and normalization.
"""

import math
from datetime import date

import numpy as np
import pytest

from allocation_engine.config import NormalizationMethod
from allocation_engine.core.exceptions import ValidationError
from allocation_engine.core.problem_model import ProjectHistoryPoint, Task
from allocation_engine.features.extractor import (
    ALLOCATION_FEATURE_COUNT,
    COST_FEATURE_COUNT,
    DURATION_FEATURE_COUNT,
    RISK_FEATURE_COUNT,
    SCHEDULE_FEATURE_COUNT,
    AllocationContext,
    allocation_features,
    cost_feature_matrix,
    duration_sequence,
    history_frame,
    risk_feature_vector,
    schedule_feature_matrix,
    sliding_windows,
)
from allocation_engine.features.normalizer import Normalizer


class TestNormalizer:
    """Tests for Normalizer"""

    def test_zscore_centers_and_scales(self):
        """Test z-score output has zero mean and unit std per feature"""
        values = np.array([[1.0, 10.0], [2.0, 20.0], [3.0, 30.0]])
        scaled = Normalizer(NormalizationMethod.ZSCORE).fit_transform(values)

        assert np.allclose(scaled.mean(axis=0), 0.0)
        assert np.allclose(scaled.std(axis=0), 1.0)

    def test_minmax_maps_to_unit_range(self):
        """Test min-max output spans [0, 1]"""
        values = np.array([[1.0, -5.0], [3.0, 5.0], [2.0, 0.0]])
        scaled = Normalizer(NormalizationMethod.MINMAX).fit_transform(values)

        assert scaled.min() == pytest.approx(0.0)
        assert scaled.max() == pytest.approx(1.0)

    def test_constant_feature_does_not_divide_by_zero(self):
        """Test a constant column maps to zero"""
        values = np.array([[4.0, 1.0], [4.0, 2.0]])
        scaled = Normalizer().fit_transform(values)

        assert np.all(np.isfinite(scaled))
        assert np.allclose(scaled[:, 0], 0.0)

    def test_three_dimensional_windows_use_last_axis(self):
        """Test windows are normalized per feature across all steps"""
        windows = np.random.default_rng(0).normal(5.0, 2.0, size=(6, 4, 3))
        normalizer = Normalizer().fit(windows)

        assert normalizer.center.shape == (3,)
        assert normalizer.transform(windows).shape == windows.shape

    def test_round_trip_through_dict(self):
        """Test serialized parameters reproduce the same transform"""
        values = np.array([[1.0, 2.0], [3.0, 8.0], [5.0, 4.0]])
        original = Normalizer(NormalizationMethod.MINMAX).fit(values)
        restored = Normalizer.from_dict(original.to_dict())

        assert restored.method is NormalizationMethod.MINMAX
        assert np.array_equal(restored.transform(values), original.transform(values))

    def test_inverse_transform_of_targets(self):
        """Test 1-D targets invert exactly"""
        targets = np.array([10.0, 12.0, 9.0, 15.0])
        normalizer = Normalizer().fit(targets)

        assert np.allclose(normalizer.inverse_transform(normalizer.transform(targets)), targets)

    def test_unfitted_normalizer_raises(self):
        with pytest.raises(ValidationError):
            Normalizer().transform([[1.0]])

    def test_feature_count_mismatch_raises(self):
        normalizer = Normalizer().fit(np.ones((3, 2)))
        with pytest.raises(ValidationError):
            normalizer.transform(np.ones((3, 4)))


class TestAllocationFeatures:
    """Tests for per-pair feature vectors"""

    def test_vector_length(self, tasks, resources):
        context = AllocationContext(horizon_hours=720.0, pool_mean_rate=50.0)
        features = allocation_features(tasks[0], resources[0], context)

        assert features.shape == (ALLOCATION_FEATURE_COUNT,)
        assert np.all(np.isfinite(features))

    def test_skill_match_ratio(self, tasks, resources):
        """Test the skill coverage feature reflects matched skills"""
        context = AllocationContext(horizon_hours=720.0, pool_mean_rate=50.0)
        # T0 needs python; R4 only has design
        covered = allocation_features(tasks[0], resources[0], context)
        uncovered = allocation_features(tasks[0], resources[4], context)

        assert covered[4] == 1.0
        assert uncovered[4] == 0.0

    def test_non_finite_input_raises(self, resources):
        task = Task(id="bad", name="bad", effort_hours=math.nan)
        context = AllocationContext(horizon_hours=720.0, pool_mean_rate=50.0)

        with pytest.raises(ValidationError):
            allocation_features(task, resources[0], context)


class TestDurationSequence:
    """Tests for variable-length duration sequences"""

    def test_one_step_per_history_record_plus_current(self, tasks, resources):
        with_history = duration_sequence(tasks[0], resources[0])
        without_history = duration_sequence(tasks[1], resources[0])

        assert with_history.shape == (2, DURATION_FEATURE_COUNT)
        assert without_history.shape == (1, DURATION_FEATURE_COUNT)
        # Last step is flagged as the pending execution
        assert with_history[-1, -1] == 1.0
        assert with_history[0, -1] == 0.0


class TestHistoryFeatures:
    """Tests for the daily history frame and forecaster matrices"""

    def test_gaps_are_filled(self):
        """Test missing days get zero spend and carried progress"""
        points = [
            ProjectHistoryPoint(day=date(2024, 3, 1), cost=100.0, progress_pct=10.0),
            ProjectHistoryPoint(day=date(2024, 3, 4), cost=50.0, progress_pct=20.0),
        ]
        frame = history_frame(points)

        assert len(frame) == 4
        assert frame["cost"].tolist() == [100.0, 0.0, 0.0, 50.0]
        assert frame["progress_pct"].tolist() == [10.0, 10.0, 10.0, 20.0]

    def test_empty_history_raises(self):
        with pytest.raises(ValidationError):
            history_frame([])

    def test_matrix_widths(self, history_factory):
        frame = history_frame(history_factory(40))

        assert cost_feature_matrix(frame).shape == (40, COST_FEATURE_COUNT)
        assert schedule_feature_matrix(frame).shape == (40, SCHEDULE_FEATURE_COUNT)

    def test_risk_vector_uses_latest_observations(self):
        incidents = list(range(20))
        vector = risk_feature_vector(incidents)

        assert vector.shape == (RISK_FEATURE_COUNT,)
        assert vector[0] == 5.0 and vector[-1] == 19.0

    def test_risk_vector_needs_full_window(self):
        with pytest.raises(ValidationError):
            risk_feature_vector([1, 2, 3])

    def test_sliding_windows_pair_with_next_value(self):
        matrix = np.arange(20, dtype=float).reshape(10, 2)
        target = np.arange(10, dtype=float)
        inputs, targets = sliding_windows(matrix, target, window=3)

        assert inputs.shape == (7, 3, 2)
        assert targets.tolist() == [3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0]
        assert np.array_equal(inputs[0], matrix[0:3])

    def test_sliding_windows_need_window_plus_one_rows(self):
        with pytest.raises(ValidationError):
            sliding_windows(np.ones((3, 2)), np.ones(3), window=3)
