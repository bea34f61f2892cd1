"""Sequence network unrolling the Stochastic xLSTM cell over a lookback window."""
from typing import NamedTuple, Optional

import torch
import torch.nn as nn

from stoxlstm.models.cell import StochasticXLSTMCell
from stoxlstm.models.heads import DirectionHead
from stoxlstm.models.types import StoxLSTMConfig, StoxLSTMState


class NetworkOutput(NamedTuple):
    """Output of a forward pass over a window batch.

    Attributes:
        positions: Head output for the final step (batch,) in (-1, 1)
        final_state: Cell state after the last step
        hidden_states: Hidden trajectory (batch, lookback_length, hidden_size)
    """
    positions: torch.Tensor
    final_state: StoxLSTMState
    hidden_states: torch.Tensor


class StoxLSTMNetwork(nn.Module):
    """Stochastic xLSTM cell + direction head.

    The state is reset to zeros at the start of every window and carried
    across the window's steps. Only the last ``lookback_length`` steps of a
    longer window are used.

    Args:
        input_size: Width of each input vector
        config: Model configuration
        generator: Random source shared with the cell
    """

    def __init__(
        self,
        input_size: int,
        config: StoxLSTMConfig,
        generator: Optional[torch.Generator] = None,
    ):
        super().__init__()
        self.config = config
        self.input_size = input_size
        self.cell = StochasticXLSTMCell(input_size, config, generator=generator)
        self.head = DirectionHead(config, generator=generator)

    def forward(self, x: torch.Tensor, training: bool = False) -> NetworkOutput:
        """Unroll the cell over a batch of windows.

        Args:
            x: Windows (batch, seq_len, input_size), seq_len >= lookback_length
            training: Enable latent sampling and dropout in the cell

        Returns:
            NetworkOutput
        """
        if x.dim() != 3:
            raise ValueError(f"expected (batch, seq_len, input_size), got {tuple(x.shape)}")
        seq_len = x.shape[1]
        lookback = self.config.lookback_length
        if seq_len < lookback:
            raise ValueError(f"sequence length ({seq_len}) must be >= lookback_length ({lookback})")

        return self.unroll(x[:, seq_len - lookback:, :], training=training)

    def unroll(self, x: torch.Tensor, training: bool = False) -> NetworkOutput:
        """Unroll the cell over every step of ``x`` from a zero state.

        Used directly for online updates on windows shorter than the lookback.
        """
        batch_size, seq_len, _ = x.shape
        state = StoxLSTMState.zeros(
            batch_size,
            self.config.hidden_size,
            self.config.latent_size,
            device=x.device,
            dtype=x.dtype,
        )

        hidden_states = []
        for t in range(seq_len):
            state = self.cell(x[:, t, :], state, training=training)
            hidden_states.append(state.hidden_state)

        positions = self.head(state.hidden_state)

        return NetworkOutput(
            positions=positions,
            final_state=state,
            hidden_states=torch.stack(hidden_states, dim=1),
        )
