"""Script helpers."""
from stoxlstm.utils.logging import configure_logging

__all__ = ["configure_logging"]
