"""Uncertainty diagnostics and performance tracking."""
from stoxlstm.eval.metrics import (
    ModelMetrics,
    PerformanceTracker,
    binary_entropy,
    enhancement_norm,
    kl_divergence,
    latent_uncertainty,
)

__all__ = [
    "ModelMetrics",
    "PerformanceTracker",
    "binary_entropy",
    "enhancement_norm",
    "kl_divergence",
    "latent_uncertainty",
]
