#!/usr/bin/env python3
"""Train the Stochastic xLSTM direction model on per-symbol Parquet files.

Each ``[SYMBOL].parquet`` file holds a date index, a ``price`` column and
precomputed feature columns. Windows of ``--lookback`` feature rows ending at
day t are labeled with the direction of the t -> t+1 price move (+1 / -1 / 0
inside a ``--label-threshold`` dead band). Windows ending on or before
``--train-cutoff`` train the model; later windows are used to report
out-of-sample direction accuracy.

Usage example:

    python scripts/train_stoxlstm.py \
        --data-path data/processed \
        --train-cutoff 2021-12-31 \
        --epochs 10 --hidden-size 64 --latent-size 16 --lookback 60

The checkpoint is written to ``<output-dir>/stoxlstm.pt`` together with a
``stoxlstm_history.json`` summary.
"""

from __future__ import annotations

import argparse
import json
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
from tqdm import tqdm

from stoxlstm.data import (
    ParquetFeatureSource,
    TrainingWindow,
    build_training_windows,
    normalize_window,
)
from stoxlstm.models import Signal, StochasticXLSTMModel, StoxLSTMConfig
from stoxlstm.utils.logging import configure_logging

DIRECTION = {Signal.UP: 1.0, Signal.DOWN: -1.0, Signal.HOLD: 0.0}


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


def collect_windows(
    source: ParquetFeatureSource,
    symbols: Sequence[str],
    lookback: int,
    threshold: float,
    start: Optional[str] = None,
    end: Optional[str] = None,
    feature_names: Optional[Sequence[str]] = None,
    instance_norm: bool = False,
) -> Tuple[Dict[str, List[TrainingWindow]], Optional[List[str]]]:
    """Cut labeled windows for every symbol, skipping unusable files.

    The first loaded file fixes the feature columns when none are given, so
    every symbol contributes windows of the same layout.
    With ``instance_norm`` each window is scaled by its own per-column
    statistics (see ``normalize_window``).

    Returns:
        (symbol -> windows, feature column names)
    """
    windows: Dict[str, List[TrainingWindow]] = {}
    for symbol in tqdm(symbols, desc="Windows"):
        try:
            features, prices = source.load(symbol, start=start, end=end, feature_names=feature_names)
        except (FileNotFoundError, ValueError) as exc:
            warnings.warn(f"Skipping {symbol}: {exc}")
            continue
        if feature_names is None:
            feature_names = list(features.columns)
        symbol_windows = build_training_windows(features, prices, lookback, threshold=threshold)
        if not symbol_windows:
            warnings.warn(f"Skipping {symbol}: fewer than {lookback + 1} rows")
            continue
        if instance_norm:
            symbol_windows = [w._replace(features=normalize_window(w.features)) for w in symbol_windows]
        windows[symbol] = symbol_windows
    return windows, (list(feature_names) if feature_names is not None else None)


def split_windows(windows: Sequence[TrainingWindow], cutoff: pd.Timestamp):
    train = [w for w in windows if pd.Timestamp(w.end) <= cutoff]
    val = [w for w in windows if pd.Timestamp(w.end) > cutoff]
    return train, val


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def validate(model: StochasticXLSTMModel, windows: Sequence[TrainingWindow]) -> Dict[str, float]:
    """Direction hit rate of non-default, non-HOLD predictions on held-out windows."""
    hits = 0
    calls = 0
    holds = 0
    for window in tqdm(windows, desc="Val", leave=False):
        prediction = model.predict(window.features)
        if prediction.is_default:
            continue
        if prediction.signal is Signal.HOLD:
            holds += 1
            continue
        calls += 1
        hits += int(DIRECTION[prediction.signal] == window.target)

    return {
        "val_windows": len(windows),
        "val_calls": calls,
        "val_holds": holds,
        "val_hit_rate": hits / calls if calls else float("nan"),
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main():
    parser = argparse.ArgumentParser(
        description="Train the Stochastic xLSTM direction model on Parquet feature files"
    )
    parser.add_argument("--data-path", type=str, default="data/processed",
                        help="Directory of [SYMBOL].parquet files (price + feature columns)")
    parser.add_argument("--symbols", type=str, nargs="*", default=None,
                        help="Symbols to use (default: every file under --data-path)")
    parser.add_argument("--features", type=str, nargs="*", default=None,
                        help="Feature columns in model order (default: every non-price column)")
    parser.add_argument("--start-date", type=str, default=None, help="Earliest date to load")
    parser.add_argument("--train-cutoff", type=str, default="2021-12-31",
                        help="Inclusive train end date; validation starts after this date")
    parser.add_argument("--label-threshold", type=float, default=0.001,
                        help="Dead band on the next-day return for HOLD labels")
    parser.add_argument("--instance-norm", action="store_true", default=False,
                        help="Normalize each window by its own per-feature mean/std")
    parser.add_argument("--hidden-size", type=int, default=64, help="Hidden size")
    parser.add_argument("--latent-size", type=int, default=16, help="Latent size")
    parser.add_argument("--lookback", type=int, default=60, help="Lookback length")
    parser.add_argument("--stochastic-regularization", type=float, default=0.01,
                        help="beta: latent enhancement, KL weight and dropout rate")
    parser.add_argument("--no-exponential-gating", action="store_true", default=False)
    parser.add_argument("--no-memory-mixing", action="store_true", default=False)
    parser.add_argument("--no-layer-norm", action="store_true", default=False)
    parser.add_argument("--epochs", type=int, default=10, help="Number of epochs")
    parser.add_argument("--batch-size", type=int, default=32, help="Batch size")
    parser.add_argument("--lr", type=float, default=1e-3, help="Learning rate")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--output-dir", type=str, default="checkpoints",
                        help="Where to write the checkpoint and history")
    parser.add_argument("--log-level", type=str, default="INFO")

    args = parser.parse_args()
    configure_logging(args.log_level)

    print("=" * 60)
    print("Stochastic xLSTM training")
    print("=" * 60)

    config = StoxLSTMConfig(
        hidden_size=args.hidden_size,
        latent_size=args.latent_size,
        use_exponential_gating=not args.no_exponential_gating,
        use_memory_mixing=not args.no_memory_mixing,
        use_layer_normalization=not args.no_layer_norm,
        stochastic_regularization=args.stochastic_regularization,
        lookback_length=args.lookback,
        learning_rate=args.lr,
        epochs=args.epochs,
        batch_size=args.batch_size,
    )

    source = ParquetFeatureSource(root_path=args.data_path)
    symbols = args.symbols or source.symbols()
    if not symbols:
        raise ValueError(f"No Parquet files found under {args.data_path}")

    windows, feature_names = collect_windows(
        source, symbols, config.lookback_length, args.label_threshold,
        start=args.start_date, feature_names=args.features, instance_norm=args.instance_norm,
    )
    if not windows:
        raise ValueError("No symbol produced any training window")

    cutoff = pd.Timestamp(args.train_cutoff)
    train_windows: List[TrainingWindow] = []
    val_windows: List[TrainingWindow] = []
    for symbol_windows in windows.values():
        train, val = split_windows(symbol_windows, cutoff)
        train_windows.extend(train)
        val_windows.extend(val)

    print(f"Symbols: {len(windows)}  Train windows: {len(train_windows):,}  "
          f"Val windows: {len(val_windows):,}")

    model = StochasticXLSTMModel(config=config, feature_names=feature_names, seed=args.seed)
    result = model.train(((w.features, w.target) for w in train_windows), progress=True)
    if not result:
        raise RuntimeError(f"Training failed: {result.reason}")

    print(f"  loss: {result.loss:.4f}  windows used: {result.windows_used:,}  "
          f"skipped: {result.windows_skipped}  batches skipped: {result.batches_skipped}")

    history = {
        "config": config.to_dict(),
        "symbols": sorted(windows),
        "instance_norm": args.instance_norm,
        **result._asdict(),
    }
    if val_windows:
        history.update(validate(model, val_windows))
        print(f"  val hit rate: {history['val_hit_rate']:.4f} "
              f"({history['val_calls']} calls, {history['val_holds']} holds)")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if not model.save_model(output_dir / "stoxlstm.pt"):
        raise RuntimeError(f"Could not write checkpoint to {output_dir}")

    with open(output_dir / "stoxlstm_history.json", "w") as f:
        json.dump(history, f, indent=2, default=str)

    print(f"\nTraining complete. Checkpoint saved to {output_dir}/stoxlstm.pt")


if __name__ == "__main__":
    main()
