"""Instance normalization of feature windows."""
from typing import Tuple

import numpy as np

NORMALIZE_EPS = 1e-8


def instance_normalize(series: np.ndarray) -> Tuple[np.ndarray, float, float]:
    """Standardize a series by its own mean and population std.

    Args:
        series: 1-D values

    Returns:
        (normalized, mean, std); std excludes the epsilon used for division
    """
    series = np.asarray(series, dtype=np.float64)
    if series.size == 0:
        return series.copy(), 0.0, 1.0
    mean = float(series.mean())
    std = float(series.std())
    return (series - mean) / (std + NORMALIZE_EPS), mean, std


def normalize_window(window: np.ndarray) -> np.ndarray:
    """Instance-normalize every feature column of a (timesteps, features) window.

    Each window is scaled by its own statistics only, so no information from
    outside the window (including the labeled future move) enters it.
    """
    window = np.asarray(window, dtype=np.float64)
    if window.ndim != 2:
        raise ValueError(f"window must be 2-D (timesteps, features), got shape {window.shape}")
    columns = [instance_normalize(window[:, j])[0] for j in range(window.shape[1])]
    if not columns:
        return window.copy()
    return np.stack(columns, axis=1)
