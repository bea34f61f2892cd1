"""Stochastic extended LSTM (xLSTM) recurrent cell."""
import logging
import math
from typing import Dict, Optional

import torch
import torch.nn as nn

from stoxlstm.models.types import LOG_VAR_MAX, LOG_VAR_MIN, StoxLSTMConfig, StoxLSTMState

logger = logging.getLogger(__name__)

LAYER_NORM_EPS = 1e-8


def _scaled_normal(rows: int, cols: int, generator: Optional[torch.Generator]) -> torch.Tensor:
    scale = math.sqrt(2.0 / (rows + cols))
    return torch.randn(rows, cols, generator=generator) * scale


class StochasticXLSTMCell(nn.Module):
    """One recurrence step of the Stochastic xLSTM.

    Architecture (per step, h/c from the previous state):
        gate_k = act_k(expgate(x W_k + h U_k + b_k))        k in {i, f, o, g}
        c' = f * c + i * g
        c' = m * c + (1 - m) * c',   m = sigmoid(h W_mix + b_mix)   (memory mixing)
        c_norm = LayerNorm(c') * gamma + beta
        mu, logvar = h W_mu + b_mu, h W_logvar + b_logvar
        z = mu + exp(logvar / 2) * eps   (training)   |   z = mu   (inference)
        h' = o * tanh(c_norm) + beta_reg * (z P)

    The latent parameters are projected from the *previous* hidden state, so
    they describe the uncertainty carried into the step. P is a random
    projection fixed at construction and stored as a buffer, so it is saved
    and restored together with the weights.

    Args:
        input_size: Width of each input vector
        config: Model configuration
        generator: Random source for initialization and training noise
    """

    GATES = ("i", "f", "o", "g")

    def __init__(
        self,
        input_size: int,
        config: StoxLSTMConfig,
        generator: Optional[torch.Generator] = None,
    ):
        super().__init__()
        if input_size <= 0:
            raise ValueError(f"input_size ({input_size}) must be positive")
        self.input_size = input_size
        self.hidden_size = config.hidden_size
        self.latent_size = config.latent_size
        self.config = config
        self.generator = generator

        H, L = self.hidden_size, self.latent_size

        # Gate weights: input-to-hidden W_*, hidden-to-hidden U_*, bias b_*
        self.W_i = nn.Parameter(_scaled_normal(input_size, H, generator))
        self.U_i = nn.Parameter(_scaled_normal(H, H, generator))
        self.b_i = nn.Parameter(torch.zeros(H))

        self.W_f = nn.Parameter(_scaled_normal(input_size, H, generator))
        self.U_f = nn.Parameter(_scaled_normal(H, H, generator))
        self.b_f = nn.Parameter(torch.ones(H))  # remember by default

        self.W_o = nn.Parameter(_scaled_normal(input_size, H, generator))
        self.U_o = nn.Parameter(_scaled_normal(H, H, generator))
        self.b_o = nn.Parameter(torch.zeros(H))

        self.W_g = nn.Parameter(_scaled_normal(input_size, H, generator))
        self.U_g = nn.Parameter(_scaled_normal(H, H, generator))
        self.b_g = nn.Parameter(torch.zeros(H))

        # Latent posterior projections
        self.W_mu = nn.Parameter(_scaled_normal(H, L, generator))
        self.b_mu = nn.Parameter(torch.zeros(L))
        self.W_logvar = nn.Parameter(_scaled_normal(H, L, generator))
        self.b_logvar = nn.Parameter(torch.zeros(L))

        # Memory mixing
        self.W_mix = nn.Parameter(_scaled_normal(H, H, generator))
        self.b_mix = nn.Parameter(torch.zeros(H))

        # Layer normalization affine
        self.gamma = nn.Parameter(torch.ones(H))
        self.beta = nn.Parameter(torch.zeros(H))

        self.register_buffer(
            "enhancement_projection", torch.randn(L, H, generator=generator)
        )

    def named_weights(self) -> Dict[str, torch.Tensor]:
        """Name -> tensor view of every parameter and buffer (persistence/debugging)."""
        return dict(self.state_dict())

    def input_weight_norms(self) -> torch.Tensor:
        """L2 norm of each input feature's weights across all four gates, shape (input_size,)."""
        stacked = torch.cat([getattr(self, f"W_{gate}") for gate in self.GATES], dim=1)
        return stacked.detach().norm(dim=1)

    def _gate(self, x: torch.Tensor, h: torch.Tensor, name: str) -> torch.Tensor:
        W = getattr(self, f"W_{name}")
        U = getattr(self, f"U_{name}")
        b = getattr(self, f"b_{name}")

        linear = x @ W + h @ U + b
        if self.config.use_exponential_gating:
            linear = linear * torch.sigmoid(linear * self.config.exponential_gating_scale)

        if name == "g":
            return torch.tanh(linear)
        return torch.sigmoid(linear)

    def _layer_norm(self, c: torch.Tensor) -> torch.Tensor:
        if not self.config.use_layer_normalization:
            return c
        mean = c.mean(dim=-1, keepdim=True)
        var = c.var(dim=-1, unbiased=False, keepdim=True)
        normalized = (c - mean) / torch.sqrt(var + LAYER_NORM_EPS)
        return normalized * self.gamma + self.beta

    def forward(
        self,
        x: torch.Tensor,
        prev_state: StoxLSTMState,
        training: bool = False,
    ) -> StoxLSTMState:
        """Run one recurrence step.

        Args:
            x: Input batch (batch, input_size)
            prev_state: State after the previous step (or a zero state)
            training: Sample the latent and apply dropout when True

        Returns:
            New StoxLSTMState; rows that produced non-finite values are zeroed
            and marked invalid.
        """
        if x.dim() != 2 or x.shape[1] != self.input_size:
            raise ValueError(
                f"input must have shape (batch, {self.input_size}), got {tuple(x.shape)}"
            )
        if x.shape[0] != prev_state.batch_size:
            raise ValueError(
                f"input batch ({x.shape[0]}) does not match state batch ({prev_state.batch_size})"
            )

        h_prev = prev_state.hidden_state
        c_prev = prev_state.cell_state
        beta_reg = self.config.stochastic_regularization

        input_gate = self._gate(x, h_prev, "i")
        forget_gate = self._gate(x, h_prev, "f")
        output_gate = self._gate(x, h_prev, "o")
        candidate = self._gate(x, h_prev, "g")

        cell = forget_gate * c_prev + input_gate * candidate
        if self.config.use_memory_mixing:
            mix_gate = torch.sigmoid(h_prev @ self.W_mix + self.b_mix)
            cell = mix_gate * c_prev + (1.0 - mix_gate) * cell

        normalized_cell = self._layer_norm(cell)

        mu = h_prev @ self.W_mu + self.b_mu
        log_var = (h_prev @ self.W_logvar + self.b_logvar).clamp(LOG_VAR_MIN, LOG_VAR_MAX)

        if training:
            eps = torch.randn(
                mu.shape, generator=self.generator, device=mu.device, dtype=mu.dtype
            )
            latent = mu + torch.exp(0.5 * log_var) * eps
        else:
            latent = mu

        enhancement = (latent @ self.enhancement_projection) * beta_reg
        hidden = output_gate * torch.tanh(normalized_cell) + enhancement

        if training and beta_reg > 0:
            keep = torch.rand(
                hidden.shape, generator=self.generator, device=hidden.device
            ) >= beta_reg
            hidden = hidden * keep.to(hidden.dtype) / (1.0 - beta_reg)

        fields = (hidden, cell, normalized_cell, mu, log_var, latent, enhancement)
        row_finite = torch.ones_like(prev_state.valid)
        for tensor in fields:
            row_finite = row_finite & torch.isfinite(tensor).all(dim=-1)

        if not bool(row_finite.all()):
            logger.warning(
                "Non-finite values in %d of %d rows; zeroing them",
                int((~row_finite).sum()), row_finite.numel()
            )
            keep_rows = row_finite.unsqueeze(-1)
            fields = tuple(
                torch.where(keep_rows, t, torch.zeros_like(t)) for t in fields
            )
            hidden, cell, normalized_cell, mu, log_var, latent, enhancement = fields

        return StoxLSTMState(
            hidden_state=hidden,
            cell_state=cell,
            normalized_cell_state=normalized_cell,
            latent_mean=mu,
            latent_log_variance=log_var,
            stochastic_latent=latent,
            stochastic_enhancement=enhancement,
            valid=prev_state.valid & row_finite,
        )
