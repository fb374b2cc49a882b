# allocation_engine/ml/models.py

"""
Model wrappers around the torch networks.

Both families expose ``predict(inputs)`` and ``train(dataset)``, carry their
own normalization parameters, and serialize weights to an opaque byte blob
for the registry.
"""

import copy
import io
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from ..config import ModelFamily, ModelSpec, NormalizationMethod, get_logger
from ..core.exceptions import InsufficientDataError, ValidationError
from ..features.normalizer import Normalizer
from .networks import DenseClassifier, LSTMRegressor

logger = get_logger("ml.models")

TUNABLE_FIELDS = {
    "hidden_layers",
    "dropout",
    "sequence_length",
    "lstm_units",
    "dense_units",
    "epochs",
    "batch_size",
    "learning_rate",
    "validation_split",
    "patience",
    "normalization",
}


@dataclass
class TrainingDataset:
    """Supervised samples.

    ``inputs`` is an (n, features) array for classifiers and a sequence of
    (steps, features) arrays for sequence models. ``observations`` is the
    number of raw data points the samples were derived from; windowed series
    datasets set it to the series length.
    """

    inputs: Any
    targets: Any
    observations: Optional[int] = None

    def __len__(self) -> int:
        return len(self.targets)

    @property
    def size(self) -> int:
        if self.observations is not None:
            return self.observations
        first = self.inputs[0] if len(self.inputs) else None
        if first is not None and np.ndim(first) == 2 and _is_uniform(self.inputs):
            # n windows of length w come from n + w observations
            return len(self.inputs) + len(first)
        return len(self.targets)

    @classmethod
    def from_windows(cls, inputs: np.ndarray, targets: np.ndarray, observations: int):
        return cls(inputs=inputs, targets=targets, observations=observations)


@dataclass(frozen=True)
class Prediction:
    value: float
    std: float = 0.0
    confidence: float = 1.0
    label: Optional[int] = None
    probabilities: Optional[Tuple[float, ...]] = None
    source: str = "model"


@dataclass
class TrainingReport:
    epochs_run: int
    best_validation_loss: float
    accuracy: float
    residual_std: float
    stopped_early: bool
    training_samples: int
    validation_samples: int
    loss_history: List[float] = field(default_factory=list)

    def to_metrics(self) -> Dict[str, float]:
        return {
            "epochs_run": self.epochs_run,
            "best_validation_loss": self.best_validation_loss,
            "stopped_early": self.stopped_early,
            "validation_samples": self.validation_samples,
        }


def _is_uniform(sequences) -> bool:
    return len({np.shape(s) for s in sequences}) == 1


def resolve_spec(spec: ModelSpec, hyperparameters: Optional[Dict[str, Any]]) -> ModelSpec:
    """Apply caller overrides to a model spec"""
    if not hyperparameters:
        return spec
    unknown = set(hyperparameters) - TUNABLE_FIELDS - {"seed"}
    if unknown:
        raise ValidationError(
            "Unknown hyperparameters", errors=[f"unknown: {name}" for name in sorted(unknown)]
        )
    overrides = {k: v for k, v in hyperparameters.items() if k in TUNABLE_FIELDS}
    if "hidden_layers" in overrides:
        overrides["hidden_layers"] = tuple(overrides["hidden_layers"])
    if "dropout" in overrides:
        overrides["dropout"] = tuple(overrides["dropout"])
    if isinstance(overrides.get("normalization"), str):
        overrides["normalization"] = NormalizationMethod(overrides["normalization"])
    return replace(spec, **overrides)


def spec_to_dict(spec: ModelSpec) -> Dict[str, Any]:
    data = {}
    for f in fields(spec):
        value = getattr(spec, f.name)
        if isinstance(value, (ModelFamily, NormalizationMethod)):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        data[f.name] = value
    return data


def spec_from_dict(data: Dict[str, Any]) -> ModelSpec:
    values = dict(data)
    values["family"] = ModelFamily(values["family"])
    values["normalization"] = NormalizationMethod(values["normalization"])
    values["hidden_layers"] = tuple(values.get("hidden_layers", ()))
    values["dropout"] = tuple(values.get("dropout", ()))
    return ModelSpec(**values)


class Model(ABC):
    """Common training loop and serialization for both families"""

    family: ModelFamily

    def __init__(self, spec: ModelSpec):
        if spec.family is not self.family:
            raise ValidationError(
                f"Spec for {spec.model_id} is {spec.family.value}, not {self.family.value}"
            )
        self.spec = spec
        self.input_normalizer = Normalizer(spec.normalization)
        self.residual_std = 0.0
        self.trained = False
        self.network = self._build_network()

    @abstractmethod
    def _build_network(self) -> nn.Module: ...

    @abstractmethod
    def predict(self, inputs) -> List[Prediction]: ...

    @abstractmethod
    def train(self, dataset: TrainingDataset, seed: Optional[int] = None) -> TrainingReport: ...

    # Persistence -------------------------------------------------------------

    def state_bytes(self) -> bytes:
        buffer = io.BytesIO()
        torch.save(self.network.state_dict(), buffer)
        return buffer.getvalue()

    def load_state_bytes(self, blob: bytes) -> None:
        state = torch.load(io.BytesIO(blob), map_location="cpu", weights_only=True)
        self.network.load_state_dict(state)
        self.network.eval()
        self.trained = True

    def normalization_params(self) -> Dict[str, Any]:
        return {"inputs": self.input_normalizer.to_dict()}

    def apply_normalization_params(self, params: Dict[str, Any]) -> None:
        self.input_normalizer = Normalizer.from_dict(params["inputs"])

    # Training helpers --------------------------------------------------------

    def _check_size(self, dataset: TrainingDataset) -> None:
        if len(dataset) == 0 or dataset.size < self.spec.min_samples:
            raise InsufficientDataError(
                f"{self.spec.model_id} needs at least {self.spec.min_samples} "
                f"observations, got {dataset.size}",
                required=self.spec.min_samples,
                available=dataset.size,
                context={"model_id": self.spec.model_id},
            )

    def _split(self, count: int, seed: Optional[int]) -> Tuple[np.ndarray, np.ndarray]:
        order = np.random.default_rng(seed).permutation(count)
        if count < 2:
            return order, order
        validation = max(1, int(round(count * self.spec.validation_split)))
        validation = min(validation, count - 1)
        return order[validation:], order[:validation]

    def _fit(
        self,
        train_tensors: Sequence[torch.Tensor],
        val_tensors: Sequence[torch.Tensor],
        loss_fn: nn.Module,
        seed: Optional[int],
    ) -> Tuple[int, float, bool, List[float]]:
        """Adam + early stopping on validation loss; restores the best weights"""
        generator = torch.Generator()
        if seed is not None:
            generator.manual_seed(seed)
        loader = DataLoader(
            TensorDataset(*train_tensors),
            batch_size=self.spec.batch_size,
            shuffle=True,
            generator=generator,
        )
        optimizer = torch.optim.Adam(self.network.parameters(), lr=self.spec.learning_rate)

        best_loss = math.inf
        best_state = copy.deepcopy(self.network.state_dict())
        stale_epochs = 0
        history: List[float] = []
        epoch = 0
        stopped_early = False

        for epoch in range(1, self.spec.epochs + 1):
            self.network.train()
            for batch in loader:
                optimizer.zero_grad()
                output = self._forward(batch[:-1])
                loss = loss_fn(output, batch[-1])
                loss.backward()
                optimizer.step()

            self.network.eval()
            with torch.no_grad():
                val_loss = loss_fn(self._forward(val_tensors[:-1]), val_tensors[-1]).item()
            history.append(val_loss)

            if val_loss < best_loss - 1e-7:
                best_loss = val_loss
                best_state = copy.deepcopy(self.network.state_dict())
                stale_epochs = 0
            else:
                stale_epochs += 1
                if stale_epochs >= self.spec.patience:
                    stopped_early = True
                    break

            if epoch % 10 == 0:
                logger.debug(f"{self.spec.model_id}: epoch {epoch}, val_loss {val_loss:.5f}")

        self.network.load_state_dict(best_state)
        self.network.eval()
        return epoch, best_loss, stopped_early, history

    def _forward(self, tensors: Sequence[torch.Tensor]) -> torch.Tensor:
        return self.network(*tensors)


class FeedForwardClassifier(Model):
    """Dense classifier; confidence is the max softmax probability"""

    family = ModelFamily.CLASSIFIER

    def _build_network(self) -> nn.Module:
        return DenseClassifier(
            self.spec.input_size,
            self.spec.output_size,
            self.spec.hidden_layers,
            self.spec.dropout,
        )

    def _as_matrix(self, inputs) -> np.ndarray:
        matrix = np.asarray(inputs, dtype=np.float64)
        if matrix.ndim == 1:
            matrix = matrix[None, :]
        if matrix.ndim != 2 or matrix.shape[1] != self.spec.input_size:
            raise ValidationError(
                f"{self.spec.model_id} expects {self.spec.input_size} features, "
                f"got shape {matrix.shape}"
            )
        if not np.all(np.isfinite(matrix)):
            raise ValidationError(f"{self.spec.model_id}: non-finite feature values")
        return matrix

    def train(self, dataset: TrainingDataset, seed: Optional[int] = None) -> TrainingReport:
        self._check_size(dataset)
        features = self._as_matrix(dataset.inputs)
        labels = np.asarray(dataset.targets, dtype=np.int64)
        if labels.shape[0] != features.shape[0]:
            raise ValidationError("inputs and targets differ in length")
        if labels.min() < 0 or labels.max() >= self.spec.output_size:
            raise ValidationError(
                f"labels must lie in [0, {self.spec.output_size - 1}]"
            )

        if seed is not None:
            torch.manual_seed(seed)
        self.network = self._build_network()
        train_idx, val_idx = self._split(len(labels), seed)
        self.input_normalizer = Normalizer(self.spec.normalization).fit(features[train_idx])
        scaled = self.input_normalizer.transform(features).astype(np.float32)

        x = torch.from_numpy(scaled)
        y = torch.from_numpy(labels)
        epochs, best_loss, stopped, history = self._fit(
            (x[train_idx], y[train_idx]),
            (x[val_idx], y[val_idx]),
            nn.CrossEntropyLoss(),
            seed,
        )

        with torch.no_grad():
            predicted = self.network(x[val_idx]).argmax(dim=1)
        accuracy = float((predicted == y[val_idx]).float().mean().item())
        self.trained = True

        logger.info(
            f"{self.spec.model_id}: trained {epochs} epochs, "
            f"val_loss={best_loss:.4f}, accuracy={accuracy:.3f}"
        )
        return TrainingReport(
            epochs_run=epochs,
            best_validation_loss=best_loss,
            accuracy=accuracy,
            residual_std=0.0,
            stopped_early=stopped,
            training_samples=len(train_idx),
            validation_samples=len(val_idx),
            loss_history=history,
        )

    def predict(self, inputs) -> List[Prediction]:
        matrix = self._as_matrix(inputs)
        scaled = self.input_normalizer.transform(matrix).astype(np.float32)
        self.network.eval()
        with torch.no_grad():
            probabilities = torch.softmax(self.network(torch.from_numpy(scaled)), dim=1)
        results = []
        for row in probabilities.numpy():
            label = int(row.argmax())
            results.append(
                Prediction(
                    value=float(label),
                    confidence=float(row[label]),
                    label=label,
                    probabilities=tuple(float(p) for p in row),
                )
            )
        return results


class SequenceRegressor(Model):
    """LSTM regressor with a residual-based standard deviation"""

    family = ModelFamily.SEQUENCE

    def __init__(self, spec: ModelSpec):
        super().__init__(spec)
        self.target_normalizer = Normalizer(NormalizationMethod.ZSCORE)

    def _build_network(self) -> nn.Module:
        return LSTMRegressor(
            self.spec.input_size,
            self.spec.output_size,
            self.spec.lstm_units,
            self.spec.dense_units,
        )

    def _as_sequences(self, inputs) -> List[np.ndarray]:
        if isinstance(inputs, np.ndarray) and inputs.ndim == 2:
            inputs = [inputs]
        sequences = [np.asarray(s, dtype=np.float64) for s in inputs]
        for sequence in sequences:
            if sequence.ndim != 2 or sequence.shape[1] != self.spec.input_size:
                raise ValidationError(
                    f"{self.spec.model_id} expects steps x {self.spec.input_size} "
                    f"inputs, got shape {sequence.shape}"
                )
            if self.spec.sequence_length and sequence.shape[0] != self.spec.sequence_length:
                raise ValidationError(
                    f"{self.spec.model_id} expects windows of "
                    f"{self.spec.sequence_length} steps, got {sequence.shape[0]}"
                )
            if not np.all(np.isfinite(sequence)):
                raise ValidationError(f"{self.spec.model_id}: non-finite feature values")
        return sequences

    def _pad(self, sequences: List[np.ndarray]) -> Tuple[torch.Tensor, torch.Tensor]:
        lengths = torch.tensor([s.shape[0] for s in sequences], dtype=torch.int64)
        padded = np.zeros(
            (len(sequences), int(lengths.max()), self.spec.input_size), dtype=np.float32
        )
        for i, sequence in enumerate(sequences):
            padded[i, : sequence.shape[0]] = self.input_normalizer.transform(sequence)
        return torch.from_numpy(padded), lengths

    def _forward(self, tensors: Sequence[torch.Tensor]) -> torch.Tensor:
        x, lengths = tensors
        if self.spec.sequence_length:
            return self.network(x).squeeze(-1)
        return self.network(x, lengths).squeeze(-1)

    def normalization_params(self) -> Dict[str, Any]:
        params = super().normalization_params()
        params["target"] = self.target_normalizer.to_dict()
        return params

    def apply_normalization_params(self, params: Dict[str, Any]) -> None:
        super().apply_normalization_params(params)
        self.target_normalizer = Normalizer.from_dict(params["target"])

    def train(self, dataset: TrainingDataset, seed: Optional[int] = None) -> TrainingReport:
        self._check_size(dataset)
        sequences = self._as_sequences(dataset.inputs)
        targets = np.asarray(dataset.targets, dtype=np.float64).reshape(-1)
        if targets.shape[0] != len(sequences):
            raise ValidationError("inputs and targets differ in length")
        if not np.all(np.isfinite(targets)):
            raise ValidationError(f"{self.spec.model_id}: non-finite targets")

        if seed is not None:
            torch.manual_seed(seed)
        self.network = self._build_network()
        train_idx, val_idx = self._split(len(targets), seed)

        self.input_normalizer = Normalizer(self.spec.normalization).fit(
            np.concatenate([sequences[i] for i in train_idx])
        )
        self.target_normalizer = Normalizer(NormalizationMethod.ZSCORE).fit(
            targets[train_idx]
        )
        x, lengths = self._pad(sequences)
        y = torch.from_numpy(self.target_normalizer.transform(targets).astype(np.float32))

        epochs, best_loss, stopped, history = self._fit(
            (x[train_idx], lengths[train_idx], y[train_idx]),
            (x[val_idx], lengths[val_idx], y[val_idx]),
            nn.MSELoss(),
            seed,
        )

        with torch.no_grad():
            scaled = self._forward((x[val_idx], lengths[val_idx])).numpy()
        predicted = self.target_normalizer.inverse_transform(scaled)
        residuals = targets[val_idx] - predicted
        self.residual_std = float(np.sqrt(np.mean(residuals**2)))
        scale = float(np.mean(np.abs(targets[val_idx]))) or 1.0
        accuracy = max(0.0, 1.0 - float(np.mean(np.abs(residuals))) / scale)
        self.trained = True

        logger.info(
            f"{self.spec.model_id}: trained {epochs} epochs, val_loss={best_loss:.4f}, "
            f"residual_std={self.residual_std:.4f}"
        )
        return TrainingReport(
            epochs_run=epochs,
            best_validation_loss=best_loss,
            accuracy=accuracy,
            residual_std=self.residual_std,
            stopped_early=stopped,
            training_samples=len(train_idx),
            validation_samples=len(val_idx),
            loss_history=history,
        )

    def predict(self, inputs) -> List[Prediction]:
        sequences = self._as_sequences(inputs)
        x, lengths = self._pad(sequences)
        self.network.eval()
        with torch.no_grad():
            scaled = self._forward((x, lengths)).numpy().reshape(-1)
        values = self.target_normalizer.inverse_transform(scaled)
        results = []
        for value in values:
            relative = self.residual_std / abs(value) if abs(value) > 1e-9 else 1.0
            results.append(
                Prediction(
                    value=float(value),
                    std=self.residual_std,
                    confidence=1.0 / (1.0 + relative),
                )
            )
        return results


MODEL_CLASSES = {
    ModelFamily.CLASSIFIER: FeedForwardClassifier,
    ModelFamily.SEQUENCE: SequenceRegressor,
}


def build_model(spec: ModelSpec) -> Model:
    return MODEL_CLASSES[spec.family](spec)
