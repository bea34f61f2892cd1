"""Training window construction, window normalization and data sources."""
from stoxlstm.data.preprocessing import instance_normalize, normalize_window
from stoxlstm.data.sources import ParquetFeatureSource
from stoxlstm.data.windows import TrainingWindow, build_training_windows, direction_labels

__all__ = [
    "TrainingWindow",
    "build_training_windows",
    "direction_labels",
    "instance_normalize",
    "normalize_window",
    "ParquetFeatureSource",
]
