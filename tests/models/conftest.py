"""Shared fixtures for model tests."""
import pytest
import torch
import numpy as np

from stoxlstm.models.types import StoxLSTMConfig


INPUT_SIZE = 4


@pytest.fixture
def small_config():
    """Small configuration so unrolled training stays fast."""
    return StoxLSTMConfig(
        hidden_size=8,
        latent_size=4,
        lookback_length=5,
        epochs=2,
        batch_size=8,
    )


@pytest.fixture
def generator():
    g = torch.Generator()
    g.manual_seed(0)
    return g


@pytest.fixture
def input_size():
    return INPUT_SIZE


@pytest.fixture
def training_windows():
    """40 seeded (features, target) windows of 5 steps x 4 features.

    The target is the sign of the mean of the first feature over the window,
    so the direction is learnable.
    """
    rng = np.random.default_rng(7)
    windows = []
    for _ in range(40):
        features = rng.normal(0, 1, (5, INPUT_SIZE))
        target = float(np.sign(features[:, 0].mean()))
        windows.append((features, target))
    return windows


@pytest.fixture
def trained_model(small_config, training_windows):
    """Seeded model trained on training_windows."""
    from stoxlstm.models.stoxlstm import StochasticXLSTMModel

    model = StochasticXLSTMModel(input_size=INPUT_SIZE, config=small_config, seed=123)
    result = model.train(training_windows)
    assert result.success
    return model
