# allocation_engine/ml/manager.py

"""
ML Model Manager.

Trains, persists, loads and serves the allocation, risk, duration and
forecasting models. When a model has not been registered yet the manager
answers with a heuristic estimate flagged ``source="heuristic"`` instead of
failing, so the optimizer keeps working on a fresh install.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EngineConfig, ModelSpec, get_logger
from ..core.exceptions import ModelNotFoundError, ValidationError
from ..core.problem_model import Resource, Task
from ..features.extractor import (
    AllocationContext,
    allocation_features,
    duration_sequence,
    estimated_duration_hours,
)
from ..utils.concurrency import KeyedLock
from .models import (
    Model,
    Prediction,
    TrainingDataset,
    TrainingReport,
    build_model,
    resolve_spec,
    spec_from_dict,
    spec_to_dict,
)
from .registry import ModelMetadata, ModelRegistry

logger = get_logger("ml.manager")

ALLOCATION_MODEL_ID = "resource_allocation_nn"
RISK_MODEL_ID = "risk_analysis_nn"
DURATION_MODEL_ID = "duration_predictor_lstm"


class MLModelManager:
    """Facade over the registry plus an in-memory cache of loaded models"""

    def __init__(self, registry: ModelRegistry, config: Optional[EngineConfig] = None):
        self.registry = registry
        self.config = config or EngineConfig()
        self._cache: Dict[Tuple[str, int], Model] = {}
        self._cache_lock = threading.Lock()
        self._training_locks = KeyedLock()

    # Specs -------------------------------------------------------------------

    def spec_for(
        self, model_id: str, hyperparameters: Optional[Dict[str, Any]] = None
    ) -> Tuple[ModelSpec, Optional[int]]:
        """Resolve the architecture for ``model_id`` plus the training seed.

        Unknown ids may borrow an architecture with ``base_model``.
        """
        params = dict(hyperparameters or {})
        base_model = params.pop("base_model", None)
        seed = params.pop("seed", None)

        base_id = base_model or model_id
        if base_id not in self.config.model_specs:
            raise ValidationError(
                f"Unknown model '{model_id}'",
                errors=[
                    "pass hyperparameters['base_model'] naming one of: "
                    + ", ".join(sorted(self.config.model_specs))
                ],
            )
        spec = replace(self.config.model_specs[base_id], model_id=model_id)
        return resolve_spec(spec, params), seed

    # Training ----------------------------------------------------------------

    def train_model(
        self,
        model_id: str,
        dataset: TrainingDataset,
        hyperparameters: Optional[Dict[str, Any]] = None,
    ) -> ModelMetadata:
        """Train and persist a new version.

        Only one training job per model id runs at a time. A failed run
        raises before anything is written, so the previous version stays
        current.
        """
        spec, seed = self.spec_for(model_id, hyperparameters)
        with self._training_locks.hold(model_id):
            logger.info(f"Training {model_id} on {len(dataset)} samples")
            model = build_model(spec)
            report = model.train(dataset, seed=seed)
            metadata = self._metadata_for(model, report, seed)
            stored = self.registry.save(model_id, model.state_bytes(), metadata)

        with self._cache_lock:
            self._cache[(model_id, stored.version)] = model
        logger.info(
            f"{model_id} v{stored.version} trained: accuracy={stored.accuracy:.3f}"
        )
        return stored

    def train_ephemeral(
        self, spec: ModelSpec, dataset: TrainingDataset, seed: Optional[int] = None
    ) -> Tuple[Model, TrainingReport]:
        """Train a throwaway model that is never persisted"""
        model = build_model(spec)
        report = model.train(dataset, seed=seed)
        return model, report

    def is_training(self, model_id: str) -> bool:
        return self._training_locks.locked(model_id)

    def _metadata_for(
        self, model: Model, report: Optional[TrainingReport], seed: Optional[int] = None
    ) -> ModelMetadata:
        metrics = report.to_metrics() if report else {}
        return ModelMetadata(
            model_id=model.spec.model_id,
            model_type=model.family.value,
            trained_at=datetime.now(timezone.utc),
            accuracy=report.accuracy if report else 0.0,
            normalization_params=model.normalization_params(),
            hyperparameters={"spec": spec_to_dict(model.spec), "seed": seed},
            training_samples=report.training_samples if report else 0,
            residual_std=model.residual_std,
            metrics=metrics,
        )

    # Persistence -------------------------------------------------------------

    def save_model(
        self, model_id: str, model: Model, metadata: Optional[ModelMetadata] = None
    ) -> ModelMetadata:
        if not model.trained:
            raise ValidationError(f"Refusing to save untrained model {model_id}")
        metadata = metadata or self._metadata_for(model, None)
        hyperparameters = {"spec": spec_to_dict(model.spec), **metadata.hyperparameters}
        metadata = replace(
            metadata,
            normalization_params=model.normalization_params(),
            hyperparameters=hyperparameters,
        )
        stored = self.registry.save(model_id, model.state_bytes(), metadata)
        with self._cache_lock:
            self._cache[(model_id, stored.version)] = model
        return stored

    def load_model(self, model_id: str, version: Optional[int] = None) -> Model:
        metadata = self.registry.get_metadata(model_id, version)
        key = (model_id, metadata.version)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        blob, metadata = self.registry.load(model_id, metadata.version)
        spec = spec_from_dict(metadata.hyperparameters["spec"])
        model = build_model(spec)
        model.apply_normalization_params(metadata.normalization_params)
        model.load_state_bytes(blob)
        model.residual_std = metadata.residual_std

        with self._cache_lock:
            self._cache[key] = model
        logger.debug(f"Loaded {model_id} v{metadata.version}")
        return model

    def try_load(self, model_id: str) -> Optional[Model]:
        try:
            return self.load_model(model_id)
        except ModelNotFoundError:
            return None

    def list_models(self, all_versions: bool = False) -> List[ModelMetadata]:
        return self.registry.list(all_versions=all_versions)

    def delete_model(self, model_id: str) -> int:
        removed = self.registry.delete(model_id)
        with self._cache_lock:
            for key in [k for k in self._cache if k[0] == model_id]:
                del self._cache[key]
        return removed

    # Serving -----------------------------------------------------------------

    def predict_durations(self, pairs: Sequence[Tuple[Task, Resource]]) -> List[Prediction]:
        """Duration in working hours for each (task, resource) pair"""
        if not pairs:
            return []
        model = self.try_load(DURATION_MODEL_ID)
        if model is None:
            return [self._heuristic_duration(task, resource) for task, resource in pairs]

        predictions = model.predict([duration_sequence(t, r) for t, r in pairs])
        return [
            replace(p, value=max(p.value, 0.1), source="model") for p in predictions
        ]

    def _heuristic_duration(self, task: Task, resource: Resource) -> Prediction:
        estimate = estimated_duration_hours(task, resource)
        if task.history:
            ratios = [
                r.actual_hours / r.estimated_hours
                for r in task.history
                if r.estimated_hours > 0
            ]
            if ratios:
                estimate *= float(np.mean(ratios))
        uncertainty = self.config.recommendations.heuristic_uncertainty
        return Prediction(
            value=estimate,
            std=estimate * uncertainty,
            confidence=1.0 / (1.0 + uncertainty),
            source="heuristic",
        )

    def predict_allocation_quality(
        self, pairs: Sequence[Tuple[Task, Resource]], contexts: Sequence[AllocationContext]
    ) -> List[Prediction]:
        """Expected success rate (0..1) of each assignment"""
        if not pairs:
            return []
        model = self.try_load(ALLOCATION_MODEL_ID)
        if model is None:
            results = []
            for task, resource in pairs:
                required = len(task.required_skills)
                coverage = (
                    len(task.required_skills & resource.skills) / required
                    if required
                    else 1.0
                )
                results.append(
                    Prediction(
                        value=resource.quality_rating * coverage,
                        confidence=0.5,
                        source="heuristic",
                    )
                )
            return results

        features = np.stack(
            [allocation_features(t, r, c) for (t, r), c in zip(pairs, contexts)]
        )
        bins = (np.arange(model.spec.output_size) + 0.5) / model.spec.output_size
        results = []
        for prediction in model.predict(features):
            expected = float(np.dot(prediction.probabilities, bins))
            results.append(replace(prediction, value=expected, source="model"))
        return results

    def predict_risk(self, features: np.ndarray) -> Optional[Prediction]:
        """Severity class (0..4) from a risk feature vector, None if untrained"""
        model = self.try_load(RISK_MODEL_ID)
        if model is None:
            return None
        return replace(model.predict(features)[0], source="model")
