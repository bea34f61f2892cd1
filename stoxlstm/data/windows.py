"""Labeled training windows from aligned feature and price series."""
from typing import List, NamedTuple

import numpy as np
import pandas as pd


class TrainingWindow(NamedTuple):
    """One labeled lookback window.

    Attributes:
        features: (lookback, num_features) feature rows ending at ``end``
        target: Direction of the move from ``end`` to the next period
        end: Index label of the last feature row
    """
    features: np.ndarray
    target: float
    end: object


def direction_labels(prices: pd.Series, threshold: float = 0.001) -> pd.Series:
    """Label each period by the direction of the next-period return.

    +1 if the next return exceeds ``threshold``, -1 if it is below
    ``-threshold``, else 0. The last period has no next return and is dropped.

    Args:
        prices: Price series indexed by date
        threshold: Dead band around zero return (default 0.1%)

    Returns:
        Series of {-1.0, 0.0, 1.0} aligned to the period the label is known at
    """
    if threshold < 0:
        raise ValueError(f"threshold ({threshold}) must be non-negative")

    next_return = prices.pct_change(fill_method=None).shift(-1)
    labels = pd.Series(
        np.select([next_return > threshold, next_return < -threshold], [1.0, -1.0], 0.0),
        index=prices.index,
        name="direction",
    )
    return labels[next_return.notna()]


def build_training_windows(
    features: pd.DataFrame,
    prices: pd.Series,
    lookback: int,
    threshold: float = 0.001,
    stride: int = 1,
) -> List[TrainingWindow]:
    """Cut (features, next-direction) windows from aligned series.

    Window k covers feature rows [t - lookback + 1, t] and is labeled with
    the direction of the price move t -> t + 1, so no future feature row
    leaks into a window.

    Args:
        features: Feature frame indexed like ``prices``
        prices: Price series
        lookback: Rows per window
        threshold: Dead band passed to direction_labels
        stride: Step between consecutive window ends

    Returns:
        List of TrainingWindow, oldest first
    """
    if lookback <= 0:
        raise ValueError(f"lookback ({lookback}) must be positive")
    if stride <= 0:
        raise ValueError(f"stride ({stride}) must be positive")
    if not features.index.equals(prices.index):
        raise ValueError("features and prices must share the same index")

    labels = direction_labels(prices, threshold)
    values = features.to_numpy(dtype=np.float64)
    index = features.index

    windows: List[TrainingWindow] = []
    for end in range(lookback - 1, len(features), stride):
        label = index[end]
        if label not in labels.index:
            continue
        windows.append(TrainingWindow(
            features=values[end - lookback + 1:end + 1],
            target=float(labels.loc[label]),
            end=label,
        ))
    return windows
