"""Prediction head mapping the final hidden state to a direction."""
import math
from typing import Optional

import torch
import torch.nn as nn

from stoxlstm.models.types import StoxLSTMConfig


class DirectionHead(nn.Module):
    """Direction head: position = tanh(Linear(h)).

    The position lies in (-1, 1); its sign is the direction and its
    magnitude drives confidence. Equivalently prob_up = (1 + position) / 2
    = sigmoid(2 * Linear(h)).

    Args:
        config: Model configuration
        generator: Random source for weight initialization
    """

    def __init__(self, config: StoxLSTMConfig, generator: Optional[torch.Generator] = None):
        super().__init__()
        self.config = config
        self.linear = nn.Linear(config.hidden_size, 1)

        scale = math.sqrt(2.0 / (config.hidden_size + 1))
        with torch.no_grad():
            self.linear.weight.copy_(
                torch.randn(1, config.hidden_size, generator=generator) * scale
            )
            self.linear.bias.zero_()

    def forward(self, hidden_state: torch.Tensor) -> torch.Tensor:
        """Predict positions.

        Args:
            hidden_state: Final hidden state (batch, hidden_size)

        Returns:
            positions: (batch,) in (-1, 1)
        """
        logits = self.linear(hidden_state).squeeze(-1)
        return torch.tanh(logits)
