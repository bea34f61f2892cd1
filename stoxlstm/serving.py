"""Batch prediction across independent symbols."""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, Mapping, Optional

from stoxlstm.models.stoxlstm import FeatureWindow, StochasticXLSTMModel
from stoxlstm.models.types import Prediction

logger = logging.getLogger(__name__)


def predict_batch(
    model: StochasticXLSTMModel,
    windows_by_symbol: Mapping[str, FeatureWindow],
    timeout: Optional[float] = None,
    max_workers: int = 4,
) -> Dict[str, Prediction]:
    """Predict every symbol's window, bounded by an overall timeout.

    Symbols whose prediction does not finish within ``timeout`` seconds, or
    whose window is rejected, receive the model's default prediction.

    Args:
        model: Shared model (read access only)
        windows_by_symbol: symbol -> feature window
        timeout: Seconds to wait for the whole batch (None waits indefinitely)
        max_workers: Thread pool size

    Returns:
        symbol -> Prediction, with ``symbol`` set on each prediction
    """
    if max_workers <= 0:
        raise ValueError(f"max_workers ({max_workers}) must be positive")
    if not windows_by_symbol:
        return {}

    results: Dict[str, Prediction] = {}
    executor = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = {
            executor.submit(model.predict, window, symbol): symbol
            for symbol, window in windows_by_symbol.items()
        }
        done, not_done = wait(futures, timeout=timeout)

        for future in done:
            symbol = futures[future]
            try:
                results[symbol] = future.result()
            except ValueError as exc:
                logger.error("Rejected window for %s: %s", symbol, exc)
                results[symbol] = model.default_prediction("invalid_input", symbol)

        for future in not_done:
            symbol = futures[future]
            future.cancel()
            logger.warning("Prediction for %s timed out", symbol)
            results[symbol] = model.default_prediction("timeout", symbol)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return {symbol: results[symbol] for symbol in windows_by_symbol}
