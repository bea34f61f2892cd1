"""stoxlstm.models: Stochastic xLSTM cell, network and sequence model."""
from stoxlstm.models.types import (
    LOG_VAR_MAX,
    LOG_VAR_MIN,
    Prediction,
    Signal,
    StoxLSTMConfig,
    StoxLSTMState,
    TrainingResult,
)
from stoxlstm.models.cell import StochasticXLSTMCell
from stoxlstm.models.heads import DirectionHead
from stoxlstm.models.losses import (
    direction_loss,
    joint_stochastic_loss,
    kl_divergence_loss,
)
from stoxlstm.models.network import NetworkOutput, StoxLSTMNetwork
from stoxlstm.models.stoxlstm import StochasticXLSTMModel

__all__ = [
    "LOG_VAR_MAX",
    "LOG_VAR_MIN",
    "Prediction",
    "Signal",
    "StoxLSTMConfig",
    "StoxLSTMState",
    "TrainingResult",
    "StochasticXLSTMCell",
    "DirectionHead",
    "direction_loss",
    "joint_stochastic_loss",
    "kl_divergence_loss",
    "NetworkOutput",
    "StoxLSTMNetwork",
    "StochasticXLSTMModel",
]
