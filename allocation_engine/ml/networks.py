# allocation_engine/ml/networks.py

"""Torch network definitions for the two model families."""

from typing import Optional, Sequence

import torch
import torch.nn as nn


class DenseClassifier(nn.Module):
    """Feed-forward classifier: Linear/ReLU/Dropout stack, logits out"""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        hidden_layers: Sequence[int],
        dropout: Sequence[float] = (),
    ):
        super().__init__()
        layers = []
        previous = input_size
        for i, units in enumerate(hidden_layers):
            layers.append(nn.Linear(previous, units))
            layers.append(nn.ReLU())
            rate = dropout[i] if i < len(dropout) else 0.0
            if rate > 0:
                layers.append(nn.Dropout(rate))
            previous = units
        layers.append(nn.Linear(previous, output_size))
        self.net = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.net(x)


class LSTMRegressor(nn.Module):
    """LSTM over a (batch, steps, features) input, dense head on the last state.

    Variable-length batches are right-padded and passed with ``lengths`` so the
    head reads the state at each sequence's own final step.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int = 1,
        lstm_units: int = 64,
        dense_units: int = 32,
        dropout: float = 0.2,
    ):
        super().__init__()
        self.lstm = nn.LSTM(input_size, lstm_units, batch_first=True)
        self.head = nn.Sequential(
            nn.Dropout(dropout),
            nn.Linear(lstm_units, dense_units),
            nn.ReLU(),
            nn.Linear(dense_units, output_size),
        )

    def forward(
        self, x: torch.Tensor, lengths: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        if lengths is None:
            _, (hidden, _) = self.lstm(x)
        else:
            packed = nn.utils.rnn.pack_padded_sequence(
                x, lengths.cpu(), batch_first=True, enforce_sorted=False
            )
            _, (hidden, _) = self.lstm(packed)
        return self.head(hidden[-1])
