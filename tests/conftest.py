"""Shared test fixtures for stoxlstm tests."""
import pytest
import pandas as pd
import numpy as np

FEATURE_NAMES = ["ret_1d", "ret_5d", "ret_21d", "vol_21d"]


@pytest.fixture
def sample_prices():
    """Random-walk daily prices for one asset."""
    dates = pd.date_range('2020-01-01', '2020-06-30', freq='D')
    rng = np.random.default_rng(42)
    return pd.Series(100 + np.cumsum(rng.normal(0, 1, len(dates))), index=dates, name='price')


@pytest.fixture
def sample_features(sample_prices):
    """Simple return/volatility features aligned to sample_prices (no NaNs)."""
    returns = sample_prices.pct_change().fillna(0.0)
    features = pd.DataFrame({
        'ret_1d': returns,
        'ret_5d': sample_prices.pct_change(5).fillna(0.0),
        'ret_21d': sample_prices.pct_change(21).fillna(0.0),
        'vol_21d': returns.rolling(21, min_periods=1).std().fillna(0.0),
    }, index=sample_prices.index)
    return features[FEATURE_NAMES]


@pytest.fixture
def feature_names():
    return list(FEATURE_NAMES)


@pytest.fixture
def temp_parquet_data(tmp_path, sample_prices, sample_features):
    """Per-symbol parquet files holding a price column plus feature columns."""
    data_dir = tmp_path / "processed"
    data_dir.mkdir(parents=True)

    for i, symbol in enumerate(['ES', 'CL', 'GC']):
        df = sample_features.copy()
        df['price'] = sample_prices * (1 + i)
        df.index.name = 'date'
        df.to_parquet(data_dir / f"{symbol}.parquet")

    return data_dir
