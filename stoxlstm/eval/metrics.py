"""Uncertainty diagnostics and model performance metrics."""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Optional

import torch

ENTROPY_EPS = 1e-8


def kl_divergence(mu: torch.Tensor, log_var: torch.Tensor) -> float:
    """KL(N(mu, sigma^2) || N(0, I)) summed over the latent, averaged over rows.

    Rounding can push the exact-zero case slightly negative; such results are
    reported as 0.
    """
    mu, log_var = mu.detach(), log_var.detach()
    kl = (0.5 * (log_var.exp() + mu.pow(2) - 1.0 - log_var).sum(dim=-1)).mean().item()
    return max(kl, 0.0)


def binary_entropy(prob_up: torch.Tensor) -> float:
    """Entropy (nats) of the up/down distribution, averaged over rows."""
    p = prob_up.detach().double().clamp(ENTROPY_EPS, 1.0 - ENTROPY_EPS)
    entropy = -(p * p.log() + (1.0 - p) * (1.0 - p).log())
    return max(entropy.mean().item(), 0.0)


def latent_uncertainty(log_var: torch.Tensor) -> float:
    """Mean posterior variance exp(logvar) across the latent."""
    return log_var.detach().exp().mean().item()


def enhancement_norm(enhancement: torch.Tensor) -> float:
    """L2 norm of the stochastic contribution, averaged over rows."""
    return enhancement.detach().norm(dim=-1).mean().item()


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


class PerformanceTracker:
    """Rolling record of realized outcomes against the model's predictions.

    Args:
        window: Number of recent outcomes kept
    """

    def __init__(self, window: int = 50):
        self.window = window
        self.total = 0
        self.correct = 0
        self._hits: Deque[float] = deque(maxlen=window)
        self._errors: Deque[float] = deque(maxlen=window)

    def record(self, direction: int, position: float, outcome: float) -> None:
        """Record one outcome.

        Args:
            direction: Predicted direction in {-1, 0, 1} (0 = hold)
            position: Raw predicted position, used for the squared error
            outcome: Realized target, typically in {-1, 0, 1}
        """
        hit = direction == _sign(outcome)
        self.total += 1
        self.correct += int(hit)
        self._hits.append(float(hit))
        self._errors.append((position - outcome) ** 2)

    @property
    def recent_count(self) -> int:
        return len(self._hits)

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    @property
    def recent_accuracy(self) -> float:
        return sum(self._hits) / len(self._hits) if self._hits else 0.0

    @property
    def recent_error(self) -> float:
        return sum(self._errors) / len(self._errors) if self._errors else 0.0


@dataclass
class ModelMetrics:
    """Snapshot of a model's training state and observed performance."""
    model_name: str
    is_ready: bool
    last_training_time: Optional[datetime]
    training_windows: int
    total_predictions: int
    total_outcomes: int
    correct_predictions: int
    accuracy: float
    recent_accuracy: float
    recent_error: float
    updates_since_training: int
    numerical_failures: int
    additional_metrics: Dict[str, float] = field(default_factory=dict)
