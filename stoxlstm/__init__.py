"""stoxlstm: Stochastic extended LSTM direction forecaster."""
__version__ = "0.1.0"
