"""Loss functions for the Stochastic xLSTM model."""
from typing import Optional

import torch


def kl_divergence_loss(mu: torch.Tensor, log_var: torch.Tensor) -> torch.Tensor:
    """KL divergence of N(mu, sigma^2) from the standard normal prior.

    KL = 0.5 * sum(exp(logvar) + mu^2 - 1 - logvar)

    Args:
        mu: Posterior mean (batch, latent_size)
        log_var: Posterior log-variance (batch, latent_size)

    Returns:
        kl: Per-row divergence (batch,)
    """
    return 0.5 * (log_var.exp() + mu.pow(2) - 1.0 - log_var).sum(dim=-1)


def direction_loss(positions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """Squared error between predicted positions and direction targets.

    Args:
        positions: Predicted positions (batch,) in (-1, 1)
        target: Targets (batch,), typically in {-1, 0, 1}

    Returns:
        loss: Per-row squared error (batch,)
    """
    if positions.shape != target.shape:
        raise ValueError(
            f"positions {tuple(positions.shape)} and target {tuple(target.shape)} must match"
        )
    return (positions - target).pow(2)


def joint_stochastic_loss(
    positions: torch.Tensor,
    target: torch.Tensor,
    mu: torch.Tensor,
    log_var: torch.Tensor,
    beta: float,
    valid: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Task loss plus beta-weighted KL regularization, averaged over valid rows.

    L = mean_valid[(z - y)^2 + beta * KL(q(z | h) || N(0, I))]

    Args:
        positions: Predicted positions (batch,)
        target: Targets (batch,)
        mu: Final-step posterior mean (batch, latent_size)
        log_var: Final-step posterior log-variance (batch, latent_size)
        beta: KL weight (stochastic_regularization)
        valid: Optional (batch,) mask; rows outside it do not contribute

    Returns:
        loss: Scalar
    """
    per_row = direction_loss(positions, target) + beta * kl_divergence_loss(mu, log_var)

    if valid is not None:
        if not bool(valid.any()):
            raise ValueError("No valid rows to compute loss over")
        # Index rather than multiply so NaN rows cannot leak through 0 * nan
        per_row = per_row[valid]

    return per_row.mean()
