"""Type definitions for the Stochastic xLSTM model."""
import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, NamedTuple, Optional

import torch

from stoxlstm.models.losses import kl_divergence_loss

# Clamp range for latent log-variance so exp(logvar) stays finite
LOG_VAR_MIN = -10.0
LOG_VAR_MAX = 10.0


@dataclass(frozen=True)
class StoxLSTMConfig:
    """Configuration for the Stochastic xLSTM cell and sequence model.

    Attributes:
        hidden_size: Dimension of hidden/cell state
        latent_size: Dimension of the stochastic latent
        use_exponential_gating: Scale gate pre-activations by sigmoid(scale * linear)
        use_memory_mixing: Blend previous cell state into the update via a learned gate
        use_layer_normalization: Normalize the cell state across the hidden dimension
        exponential_gating_scale: Scale applied inside the exponential gate sigmoid
        stochastic_regularization: beta; weights latent enhancement, KL term and dropout
        lookback_length: Timesteps unrolled per prediction window
        learning_rate: Adam learning rate
        epochs: Passes over the training windows per train() call
        batch_size: Windows per optimizer step
        grad_clip_norm: Max gradient norm before each optimizer step
        signal_threshold: |position| above which a directional signal is emitted
        min_training_windows: Fewest windows a train() call accepts
        max_model_age_days: Age after which retraining is advised
        retrain_update_limit: Online updates after which retraining is advised
    """
    hidden_size: int = 64
    latent_size: int = 16
    use_exponential_gating: bool = True
    use_memory_mixing: bool = True
    use_layer_normalization: bool = True
    exponential_gating_scale: float = 0.5
    stochastic_regularization: float = 0.01
    lookback_length: int = 60
    learning_rate: float = 1e-3
    epochs: int = 10
    batch_size: int = 32
    grad_clip_norm: float = 1.0
    signal_threshold: float = 0.1
    min_training_windows: int = 1
    max_model_age_days: int = 30
    retrain_update_limit: int = 100

    def __post_init__(self):
        """Validate configuration parameters."""
        for name in ("hidden_size", "latent_size", "lookback_length", "epochs",
                     "batch_size", "min_training_windows", "max_model_age_days",
                     "retrain_update_limit"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} ({value}) must be positive")
        if not math.isfinite(self.exponential_gating_scale):
            raise ValueError(
                f"exponential_gating_scale ({self.exponential_gating_scale}) must be finite"
            )
        if not 0 <= self.stochastic_regularization < 1:
            raise ValueError(
                f"stochastic_regularization ({self.stochastic_regularization}) must be in [0, 1)"
            )
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate ({self.learning_rate}) must be positive")
        if self.grad_clip_norm <= 0:
            raise ValueError(f"grad_clip_norm ({self.grad_clip_norm}) must be positive")
        if not 0 <= self.signal_threshold < 1:
            raise ValueError(f"signal_threshold ({self.signal_threshold}) must be in [0, 1)")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "StoxLSTMConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**dict(values))


@dataclass(frozen=True, eq=False)
class StoxLSTMState:
    """Recurrent state of one sequence batch after a cell step.

    Attributes:
        hidden_state: (batch, hidden_size)
        cell_state: (batch, hidden_size)
        normalized_cell_state: (batch, hidden_size), derived from cell_state
        latent_mean: Posterior mean mu (batch, latent_size)
        latent_log_variance: Posterior log-variance (batch, latent_size), clamped
        stochastic_latent: Latent sample (training) or mu (inference)
        stochastic_enhancement: Latent contribution added to hidden_state
        valid: (batch,) rows that have stayed finite through every step so far
    """
    hidden_state: torch.Tensor
    cell_state: torch.Tensor
    normalized_cell_state: torch.Tensor
    latent_mean: torch.Tensor
    latent_log_variance: torch.Tensor
    stochastic_latent: torch.Tensor
    stochastic_enhancement: torch.Tensor
    valid: torch.Tensor

    @classmethod
    def zeros(
        cls,
        batch_size: int,
        hidden_size: int,
        latent_size: int,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "StoxLSTMState":
        """Fresh zero state for the start of a sequence."""
        def hidden():
            return torch.zeros(batch_size, hidden_size, device=device, dtype=dtype)

        def latent():
            return torch.zeros(batch_size, latent_size, device=device, dtype=dtype)

        return cls(
            hidden_state=hidden(),
            cell_state=hidden(),
            normalized_cell_state=hidden(),
            latent_mean=latent(),
            latent_log_variance=latent(),
            stochastic_latent=latent(),
            stochastic_enhancement=hidden(),
            valid=torch.ones(batch_size, dtype=torch.bool, device=device),
        )

    @property
    def batch_size(self) -> int:
        return self.hidden_state.shape[0]

    def kl_divergence(self) -> torch.Tensor:
        """Closed-form KL(N(mu, sigma^2) || N(0, I)) per row, shape (batch,)."""
        return kl_divergence_loss(self.latent_mean, self.latent_log_variance)


class Signal(str, Enum):
    """Directional trading signal."""
    UP = "up"
    DOWN = "down"
    HOLD = "hold"


@dataclass(frozen=True)
class Prediction:
    """Immutable result of one predict() call.

    Attributes:
        signal: Direction implied by the final hidden state
        confidence: Confidence in [0, 1]
        position: Raw head output in (-1, 1)
        diagnostics: Read-only scalars (uncertainty, kl_divergence, entropy, ...)
        feature_importance: Read-only share of the decision attributed to each
            named feature (empty when the model has no feature schema)
        model_name: Name of the producing model
        is_default: True when the model could not produce a real forecast
        reason: Why the default was returned (empty for real forecasts)
        symbol: Optional instrument identifier set by batch callers
        timestamp: Creation time
    """
    signal: Signal
    confidence: float
    position: float
    diagnostics: Mapping[str, float]
    model_name: str
    is_default: bool = False
    reason: str = ""
    symbol: Optional[str] = None
    feature_importance: Mapping[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence ({self.confidence}) must be in [0, 1]")
        # Freeze a private copy so callers cannot mutate diagnostics
        object.__setattr__(self, "diagnostics", MappingProxyType(dict(self.diagnostics)))
        object.__setattr__(
            self, "feature_importance", MappingProxyType(dict(self.feature_importance))
        )

    @property
    def uncertainty(self) -> float:
        return self.diagnostics["uncertainty"]

    @property
    def kl_divergence(self) -> float:
        return self.diagnostics["kl_divergence"]

    @property
    def entropy(self) -> float:
        return self.diagnostics["entropy"]

    @property
    def expected_return(self) -> float:
        return self.diagnostics["expected_return"]

    def price_target(self, current_price: float) -> float:
        """Price implied by applying expected_return to ``current_price``."""
        return current_price * (1.0 + self.expected_return)

    @classmethod
    def default(cls, model_name: str, reason: str, symbol: Optional[str] = None) -> "Prediction":
        """Neutral low-confidence prediction used when no forecast is possible."""
        return cls(
            signal=Signal.HOLD,
            confidence=0.1,
            position=0.0,
            diagnostics={
                "prob_up": 0.5,
                "prob_down": 0.5,
                "uncertainty": 1.0,
                "kl_divergence": 0.0,
                "entropy": math.log(2.0),
                "expected_return": 0.0,
                "stochastic_enhancement": 0.0,
                "hidden_norm": 0.0,
            },
            model_name=model_name,
            is_default=True,
            reason=reason,
            symbol=symbol,
        )


class TrainingResult(NamedTuple):
    """Outcome of a train() call; truthy iff training succeeded.

    Attributes:
        success: Whether weights were updated and the model is ready
        reason: Failure reason, or "ok"
        loss: Mean loss of the last epoch (nan when nothing was trained)
        windows_used: Windows that entered the optimizer
        windows_skipped: Windows rejected for non-finite values
        batches_skipped: Optimizer steps skipped for non-finite loss/gradients
    """
    success: bool
    reason: str
    loss: float = float("nan")
    windows_used: int = 0
    windows_skipped: int = 0
    batches_skipped: int = 0

    def __bool__(self) -> bool:
        return self.success
