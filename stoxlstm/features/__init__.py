"""Feature schema for named model inputs."""
from stoxlstm.features.schema import FeatureSchema

__all__ = ["FeatureSchema"]
