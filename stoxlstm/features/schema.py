"""Fixed-order feature schema mapping feature names to vector positions."""
from typing import Dict, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd


class FeatureSchema:
    """Ordered feature names, validated once at construction.

    Feature engineering happens upstream; the schema only pins the order in
    which named features become columns of the model input.

    Args:
        names: Feature names in column order
    """

    def __init__(self, names: Sequence[str]):
        names = tuple(names)
        if not names:
            raise ValueError("FeatureSchema requires at least one feature name")
        for name in names:
            if not isinstance(name, str) or not name:
                raise ValueError(f"Feature names must be non-empty strings, got {name!r}")
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate feature names: {duplicates}")

        self.names: Tuple[str, ...] = names
        self._index: Dict[str, int] = {name: i for i, name in enumerate(names)}

    def __len__(self) -> int:
        return len(self.names)

    def __repr__(self) -> str:
        return f"FeatureSchema({list(self.names)!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, FeatureSchema) and self.names == other.names

    def index(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise ValueError(f"Unknown feature {name!r}") from None

    def vector(self, values: Mapping[str, float]) -> np.ndarray:
        """Convert one name -> value mapping to a vector in schema order."""
        missing = [n for n in self.names if n not in values]
        if missing:
            raise ValueError(f"Missing features: {missing}")
        unknown = sorted(set(values) - set(self._index))
        if unknown:
            raise ValueError(f"Unknown features: {unknown}")
        return np.array([float(values[n]) for n in self.names], dtype=np.float64)

    def matrix(self, rows: Union[pd.DataFrame, Sequence[Mapping[str, float]]]) -> np.ndarray:
        """Convert a DataFrame or a sequence of mappings to (timesteps, features)."""
        if isinstance(rows, pd.DataFrame):
            missing = [n for n in self.names if n not in rows.columns]
            if missing:
                raise ValueError(f"Missing features: {missing}")
            return rows.loc[:, list(self.names)].to_numpy(dtype=np.float64)
        if len(rows) == 0:
            return np.empty((0, len(self.names)), dtype=np.float64)
        return np.stack([self.vector(row) for row in rows])
