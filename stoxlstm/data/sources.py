"""Local Parquet source of per-symbol prices and precomputed features."""
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

PRICE_COLUMN = "price"


class ParquetFeatureSource:
    """
    Reader for one Parquet file per symbol.

    File structure:
        <root_path>/[SYMBOL].parquet
        - date index
        - 'price' column
        - one column per feature (computed upstream)

    Methods:
        symbols() -> List[str]
        load(symbol, start, end) -> (features DataFrame, price Series)
    """

    def __init__(self, root_path: Union[str, Path] = "data/processed"):
        """
        Args:
            root_path: Directory containing [SYMBOL].parquet files
        """
        self.root_path = Path(root_path)
        if not self.root_path.exists():
            raise ValueError(f"Root path does not exist: {root_path}")

    def symbols(self) -> List[str]:
        """Sorted symbol names (file stems) available under root_path."""
        return sorted(p.stem for p in self.root_path.glob("*.parquet"))

    def load(
        self,
        symbol: str,
        start: Optional[Any] = None,
        end: Optional[Any] = None,
        feature_names: Optional[Sequence[str]] = None,
    ) -> Tuple[pd.DataFrame, pd.Series]:
        """
        Load one symbol's features and prices over a date range.

        Args:
            symbol: Symbol to load (e.g. 'CL')
            start: Inclusive start date (optional)
            end: Inclusive end date (optional)
            feature_names: Columns to keep, in order (default: every non-price column)

        Returns:
            (features, prices) sharing the same sorted date index

        Raises:
            FileNotFoundError: If the symbol file is missing
            ValueError: If the price column or a requested feature is missing,
                or the date range is empty
        """
        path = self.root_path / f"{symbol}.parquet"
        if not path.exists():
            raise FileNotFoundError(f"Symbol not found: {symbol} at {path}")

        df = pd.read_parquet(path).sort_index()
        if PRICE_COLUMN not in df.columns:
            raise ValueError(f"{path} has no '{PRICE_COLUMN}' column")

        if start is not None:
            df = df[df.index >= pd.Timestamp(start)]
        if end is not None:
            df = df[df.index <= pd.Timestamp(end)]
        if len(df) == 0:
            raise ValueError(f"No data for {symbol} in date range: {start} to {end}")

        if feature_names is None:
            feature_names = [c for c in df.columns if c != PRICE_COLUMN]
        missing = [c for c in feature_names if c not in df.columns]
        if missing:
            raise ValueError(f"{symbol} is missing feature columns: {missing}")

        logger.debug("Loaded %s: %d rows, %d features", symbol, len(df), len(feature_names))
        return df.loc[:, list(feature_names)], df[PRICE_COLUMN]
