#!/usr/bin/env python3
"""Predict next-day direction for every symbol with a trained Stochastic xLSTM.

Loads a checkpoint written by ``scripts/train_stoxlstm.py``, takes the last
``lookback_length`` feature rows of each ``[SYMBOL].parquet`` file and prints
one signal per symbol. Symbols are predicted concurrently through
``stoxlstm.serving.predict_batch``; a symbol that does not finish within
``--timeout`` seconds gets the neutral default prediction.

Usage example:

    python scripts/predict_stoxlstm.py \
        --checkpoint checkpoints/stoxlstm.pt \
        --data-path data/processed \
        --output predictions.csv
"""

from __future__ import annotations

import argparse
import warnings
from typing import Dict

import pandas as pd
from tqdm import tqdm

from stoxlstm.data import ParquetFeatureSource, normalize_window
from stoxlstm.models import StochasticXLSTMModel
from stoxlstm.serving import predict_batch
from stoxlstm.utils.logging import configure_logging


def main():
    parser = argparse.ArgumentParser(description="Predict directions with a trained Stochastic xLSTM")
    parser.add_argument("--checkpoint", type=str, default="checkpoints/stoxlstm.pt",
                        help="Checkpoint written by train_stoxlstm.py")
    parser.add_argument("--data-path", type=str, default="data/processed",
                        help="Directory of [SYMBOL].parquet files")
    parser.add_argument("--symbols", type=str, nargs="*", default=None,
                        help="Symbols to predict (default: every file under --data-path)")
    parser.add_argument("--as-of", type=str, default=None,
                        help="Predict from data up to this date (default: latest row)")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Seconds to wait for the whole batch")
    parser.add_argument("--workers", type=int, default=4, help="Prediction threads")
    parser.add_argument("--instance-norm", action="store_true", default=False,
                        help="Normalize each window as in training with --instance-norm")
    parser.add_argument("--output", type=str, default=None, help="Optional CSV output path")
    parser.add_argument("--log-level", type=str, default="WARNING")

    args = parser.parse_args()
    configure_logging(args.log_level)

    model = StochasticXLSTMModel.from_checkpoint(args.checkpoint)
    if not model.is_ready():
        warnings.warn(f"{args.checkpoint} holds an untrained model; every prediction will be the default")
    feature_names = list(model.schema.names) if model.schema is not None else None
    lookback = model.minimum_window_length

    source = ParquetFeatureSource(root_path=args.data_path)
    symbols = args.symbols or source.symbols()

    windows: Dict[str, pd.DataFrame] = {}
    for symbol in tqdm(symbols, desc="Load"):
        try:
            features, _ = source.load(symbol, end=args.as_of, feature_names=feature_names)
        except (FileNotFoundError, ValueError) as exc:
            warnings.warn(f"Skipping {symbol}: {exc}")
            continue
        window = features.iloc[-lookback:]
        if args.instance_norm:
            window = pd.DataFrame(normalize_window(window.to_numpy()), index=window.index, columns=window.columns)
        windows[symbol] = window

    predictions = predict_batch(model, windows, timeout=args.timeout, max_workers=args.workers)

    rows = []
    for symbol, prediction in predictions.items():
        rows.append({
            "symbol": symbol,
            "as_of": windows[symbol].index[-1],
            "signal": prediction.signal.value,
            "confidence": prediction.confidence,
            "position": prediction.position,
            "expected_return": prediction.expected_return,
            "uncertainty": prediction.uncertainty,
            "entropy": prediction.entropy,
            "is_default": prediction.is_default,
            "reason": prediction.reason,
        })
    table = pd.DataFrame(rows)

    print(table.to_string(index=False))
    if args.output:
        table.to_csv(args.output, index=False)
        print(f"\nPredictions written to {args.output}")


if __name__ == "__main__":
    main()
