"""Stochastic xLSTM sequence model: train / predict / update / persist."""
import logging
import math
import pickle
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import torch
from tqdm import tqdm

from stoxlstm.eval.metrics import (
    ModelMetrics,
    PerformanceTracker,
    binary_entropy,
    enhancement_norm,
    kl_divergence,
    latent_uncertainty,
)
from stoxlstm.features.schema import FeatureSchema
from stoxlstm.models.losses import joint_stochastic_loss
from stoxlstm.models.network import NetworkOutput, StoxLSTMNetwork
from stoxlstm.models.types import Prediction, Signal, StoxLSTMConfig, TrainingResult

logger = logging.getLogger(__name__)

CHECKPOINT_FORMAT_VERSION = 1

# Retraining heuristics
MIN_OUTCOMES_FOR_ACCURACY = 20
RECENT_ACCURACY_FLOOR = 0.45
NUMERICAL_FAILURE_LIMIT = 5

# Expected return at |position| = 1
MAX_EXPECTED_MOVE = 0.02

FeatureWindow = Union[
    np.ndarray,
    torch.Tensor,
    pd.DataFrame,
    Mapping[str, float],
    Sequence[Mapping[str, float]],
    Sequence[Sequence[float]],
]


class StochasticXLSTMModel:
    """Direction forecaster built on the Stochastic xLSTM cell.

    Lifecycle: the model starts untrained; the first successful ``train``
    makes it ready, and later ``train`` / ``update_model`` calls keep it
    ready. ``predict`` works in both states; untrained models return the
    default low-confidence prediction.

    All randomness (weight init, latent noise, dropout, shuffling) comes from
    one ``torch.Generator``, so a fixed ``seed`` reproduces training exactly.
    A single lock serializes train, update, predict and persistence calls.

    Args:
        input_size: Width of each feature vector (inferred from feature_names)
        config: Model configuration (defaults to StoxLSTMConfig())
        feature_names: Optional ordered names; enables mapping/DataFrame input
        seed: Seed for the model's random generator
        generator: Explicit generator (overrides seed)
        model_name: Name reported on predictions and metrics
    """

    def __init__(
        self,
        input_size: Optional[int] = None,
        config: Optional[StoxLSTMConfig] = None,
        feature_names: Optional[Sequence[str]] = None,
        seed: Optional[int] = None,
        generator: Optional[torch.Generator] = None,
        model_name: str = "StochasticXLSTM",
    ):
        self.config = config if config is not None else StoxLSTMConfig()
        self.model_name = model_name

        self.schema: Optional[FeatureSchema] = None
        if feature_names is not None:
            self.schema = FeatureSchema(feature_names)
            if input_size is not None and input_size != len(self.schema):
                raise ValueError(
                    f"input_size ({input_size}) does not match {len(self.schema)} feature names"
                )
            input_size = len(self.schema)
        if input_size is None:
            raise ValueError("Either input_size or feature_names is required")
        self.input_size = input_size

        if generator is None:
            generator = torch.Generator()
            if seed is not None:
                generator.manual_seed(seed)
            else:
                generator.seed()
        self.generator = generator

        self.network = StoxLSTMNetwork(input_size, self.config, generator=generator)
        self.network.eval()
        self._dtype = next(self.network.parameters()).dtype
        self.optimizer = self._make_optimizer()

        self._lock = threading.Lock()
        self._is_trained = False
        self.last_training_time: Optional[datetime] = None
        self.training_windows = 0
        self.total_predictions = 0
        self.updates_since_training = 0
        self.numerical_failures = 0
        self.tracker = PerformanceTracker()
        self.last_diagnostics: Dict[str, float] = {}

        logger.info(
            "Initialized %s: input=%d, hidden=%d, latent=%d, lookback=%d",
            model_name, input_size, self.config.hidden_size,
            self.config.latent_size, self.config.lookback_length,
        )

    # ------------------------------------------------------------------ utils

    def _make_optimizer(self) -> torch.optim.Optimizer:
        return torch.optim.Adam(self.network.parameters(), lr=self.config.learning_rate)

    def _to_array(self, features: FeatureWindow) -> np.ndarray:
        """Coerce caller input to a (timesteps, input_size) float array."""
        if isinstance(features, torch.Tensor):
            array = features.detach().cpu().double().numpy()
        elif isinstance(features, pd.DataFrame):
            if self.schema is not None:
                array = self.schema.matrix(features)
            else:
                array = features.to_numpy(dtype=np.float64)
        elif isinstance(features, Mapping):
            array = self._require_schema().vector(features)
        elif len(features) == 0:
            array = np.empty((0, self.input_size), dtype=np.float64)
        elif isinstance(features[0], Mapping):
            array = self._require_schema().matrix(features)
        else:
            array = np.asarray(features, dtype=np.float64)

        if array.ndim == 1 and array.size == 0:
            array = np.empty((0, self.input_size), dtype=np.float64)
        elif array.ndim == 1:
            array = array.reshape(1, -1)
        if array.ndim != 2 or array.shape[1] != self.input_size:
            raise ValueError(
                f"features must have shape (timesteps, {self.input_size}), got {array.shape}"
            )
        return array

    def _require_schema(self) -> FeatureSchema:
        if self.schema is None:
            raise ValueError("Named features require a model built with feature_names")
        return self.schema

    def _to_tensor(self, array: np.ndarray) -> torch.Tensor:
        return torch.as_tensor(array, dtype=self._dtype)

    def _signal(self, position: float) -> Signal:
        if position > self.config.signal_threshold:
            return Signal.UP
        if position < -self.config.signal_threshold:
            return Signal.DOWN
        return Signal.HOLD

    def _optimizer_step(self, x: torch.Tensor, y: torch.Tensor) -> Optional[float]:
        """One Adam step on a window batch; returns None if the step was skipped."""
        self.optimizer.zero_grad()
        output = self.network.unroll(x, training=True)
        state = output.final_state

        dropped = int((~state.valid).sum())
        if dropped:
            self.numerical_failures += dropped
        if dropped == state.batch_size:
            return None

        loss = joint_stochastic_loss(
            output.positions,
            y,
            state.latent_mean,
            state.latent_log_variance,
            beta=self.config.stochastic_regularization,
            valid=state.valid,
        )
        if not torch.isfinite(loss):
            self.numerical_failures += 1
            return None

        loss.backward()
        grad_norm = torch.nn.utils.clip_grad_norm_(
            self.network.parameters(), max_norm=self.config.grad_clip_norm
        )
        if not torch.isfinite(grad_norm):
            self.optimizer.zero_grad()
            self.numerical_failures += 1
            return None

        self.optimizer.step()
        return loss.item()

    def _diagnostics(self, output: NetworkOutput) -> Dict[str, float]:
        state = output.final_state
        prob_up = (1.0 + output.positions) / 2.0
        up = prob_up.mean().item()
        return {
            "prob_up": up,
            "prob_down": 1.0 - up,
            "uncertainty": latent_uncertainty(state.latent_log_variance),
            "kl_divergence": kl_divergence(state.latent_mean, state.latent_log_variance),
            "entropy": binary_entropy(prob_up),
            "expected_return": output.positions.mean().item() * MAX_EXPECTED_MOVE,
            "stochastic_enhancement": enhancement_norm(state.stochastic_enhancement),
            "hidden_norm": state.hidden_state.norm(dim=-1).mean().item(),
        }

    def _feature_importance(self, features: np.ndarray) -> Dict[str, float]:
        """Share of |x_j| * ||gate weights of feature j|| per named feature, summing to 1."""
        if self.schema is None:
            return {}
        weights = self.network.cell.input_weight_norms().double().cpu().numpy()
        scores = np.abs(features) * weights
        total = scores.sum()
        if total > 0:
            scores = scores / total
        return {name: float(score) for name, score in zip(self.schema.names, scores)}

    # --------------------------------------------------------------- training

    def train(
        self,
        windows: Iterable[Tuple[FeatureWindow, float]],
        progress: bool = False,
    ) -> TrainingResult:
        """Train on labeled windows.

        Each window is ``(features, target)`` with at least ``lookback_length``
        timesteps; only the last ``lookback_length`` are used. Targets are
        direction values, typically in {-1, 0, 1}.

        Args:
            windows: Iterable of (features, target) pairs
            progress: Show a tqdm bar over epochs

        Returns:
            TrainingResult (truthy on success). On failure the weights are
            left unchanged.
        """
        with self._lock:
            return self._train(list(windows), progress)

    def _train(self, windows: list, progress: bool) -> TrainingResult:
        cfg = self.config
        lookback = cfg.lookback_length

        if len(windows) < cfg.min_training_windows:
            logger.warning(
                "Insufficient training windows: %d < %d", len(windows), cfg.min_training_windows
            )
            return TrainingResult(False, "insufficient_windows")

        features, targets = [], []
        skipped = 0
        for i, (window, target) in enumerate(windows):
            try:
                array = self._to_array(window)
            except ValueError as exc:
                logger.error("Rejecting training set, window %d: %s", i, exc)
                return TrainingResult(False, "invalid_window")
            if array.shape[0] < lookback:
                logger.warning(
                    "Window %d has %d timesteps; at least %d required",
                    i, array.shape[0], lookback,
                )
                return TrainingResult(False, "window_too_short")

            array = array[-lookback:]
            target = float(target)
            if not (np.isfinite(array).all() and math.isfinite(target)):
                skipped += 1
                continue
            features.append(array)
            targets.append(target)

        if not features:
            logger.warning("No finite training windows (%d skipped)", skipped)
            return TrainingResult(False, "no_finite_windows", windows_skipped=skipped)

        x = self._to_tensor(np.stack(features))
        y = self._to_tensor(np.asarray(targets))
        n = x.shape[0]

        logger.info("Training %s on %d windows (%d skipped)", self.model_name, n, skipped)

        self.numerical_failures = 0
        epoch_loss = float("nan")
        steps = 0
        batches_skipped = 0

        self.network.train()
        try:
            for epoch in tqdm(range(cfg.epochs), desc="Train", leave=False, disable=not progress):
                order = torch.randperm(n, generator=self.generator)
                total, count = 0.0, 0
                for start in range(0, n, cfg.batch_size):
                    idx = order[start:start + cfg.batch_size]
                    loss = self._optimizer_step(x[idx], y[idx])
                    if loss is None:
                        batches_skipped += 1
                        continue
                    total += loss
                    count += 1
                steps += count
                if count:
                    epoch_loss = total / count
                logger.debug("Epoch %d: loss=%.6f, skipped=%d", epoch, epoch_loss, batches_skipped)
        finally:
            self.network.eval()

        if steps == 0:
            logger.warning("Every training batch was numerically degenerate; model unchanged")
            return TrainingResult(
                False, "non_finite_training",
                windows_skipped=skipped, batches_skipped=batches_skipped,
            )

        self._is_trained = True
        self.last_training_time = datetime.now()
        self.training_windows = n
        self.updates_since_training = 0

        logger.info("Training completed: loss=%.6f, batches skipped=%d", epoch_loss, batches_skipped)
        return TrainingResult(
            True, "ok",
            loss=epoch_loss,
            windows_used=n,
            windows_skipped=skipped,
            batches_skipped=batches_skipped,
        )

    # -------------------------------------------------------------- inference

    def predict(self, features: FeatureWindow, symbol: Optional[str] = None) -> Prediction:
        """Predict the direction for one feature window.

        Args:
            features: (timesteps, input_size) window; the last lookback_length
                steps are used
            symbol: Optional identifier copied onto the prediction

        Returns:
            Prediction. The default prediction is returned when the model is
            untrained, the window is too short, or values are non-finite.

        Raises:
            ValueError: If the feature width does not match input_size.
        """
        array = self._to_array(features)
        with self._lock:
            return self._predict(array, symbol)

    def _predict(self, array: np.ndarray, symbol: Optional[str]) -> Prediction:
        lookback = self.config.lookback_length

        if not self._is_trained:
            return self.default_prediction("model_not_trained", symbol)
        if array.shape[0] < lookback:
            logger.warning("Prediction window has %d timesteps; %d required", array.shape[0], lookback)
            return self.default_prediction("insufficient_history", symbol)
        if not np.isfinite(array).all():
            logger.warning("Prediction window contains non-finite features")
            return self.default_prediction("non_finite_input", symbol)

        x = self._to_tensor(array[-lookback:]).unsqueeze(0)
        with torch.no_grad():
            output = self.network(x, training=False)

        if not bool(output.final_state.valid.all()) or not bool(torch.isfinite(output.positions).all()):
            self.numerical_failures += 1
            logger.warning("Non-finite forward pass; returning default prediction")
            return self.default_prediction("non_finite_output", symbol)

        position = output.positions[0].item()
        diagnostics = self._diagnostics(output)
        discount = 1.0 - min(diagnostics["uncertainty"], 0.5)
        confidence = min(max(abs(position) * discount, 0.0), 1.0)

        self.total_predictions += 1
        self.last_diagnostics = dict(diagnostics)

        return Prediction(
            signal=self._signal(position),
            confidence=confidence,
            position=position,
            diagnostics=diagnostics,
            model_name=self.model_name,
            symbol=symbol,
            feature_importance=self._feature_importance(array[-1]),
        )

    def default_prediction(self, reason: str, symbol: Optional[str] = None) -> Prediction:
        return Prediction.default(self.model_name, reason, symbol=symbol)

    # ---------------------------------------------------------- online update

    def update_model(self, features: FeatureWindow, actual_outcome: float) -> bool:
        """Adapt online to one realized outcome.

        The outcome is first scored against the model's current view of
        ``features`` (for accuracy tracking), then one optimizer step is taken
        on a length-1 window built from the last timestep. Degenerate steps
        are skipped, leaving the weights untouched.

        Args:
            features: A feature vector, or a window whose last row is used
            actual_outcome: Realized direction, typically in {-1, 0, 1}

        Returns:
            True if an optimizer step was applied.
        """
        array = self._to_array(features)
        with self._lock:
            return self._update(array, float(actual_outcome))

    def _update(self, array: np.ndarray, outcome: float) -> bool:
        if not self._is_trained:
            logger.debug("Ignoring update on untrained model")
            return False
        if array.shape[0] == 0:
            logger.warning("Ignoring update with an empty feature window")
            return False
        if not (np.isfinite(array).all() and math.isfinite(outcome)):
            self.numerical_failures += 1
            logger.warning("Skipping update with non-finite features or outcome")
            return False

        lookback = self.config.lookback_length
        scoring = array[-lookback:] if array.shape[0] >= lookback else array[-1:]
        with torch.no_grad():
            scored = self.network.unroll(self._to_tensor(scoring).unsqueeze(0), training=False)
        position = scored.positions[0].item()
        if math.isfinite(position):
            direction = {Signal.UP: 1, Signal.DOWN: -1, Signal.HOLD: 0}[self._signal(position)]
            self.tracker.record(direction, position, outcome)

        x = self._to_tensor(array[-1:]).unsqueeze(0)
        y = self._to_tensor(np.asarray([outcome]))

        self.network.train()
        try:
            loss = self._optimizer_step(x, y)
        finally:
            self.network.eval()

        if loss is None:
            logger.warning("Skipped degenerate online update")
            return False

        self.updates_since_training += 1
        return True

    # -------------------------------------------------------------- lifecycle

    def is_ready(self) -> bool:
        return self._is_trained

    def get_minimum_training_data(self) -> int:
        """Timesteps of a contiguous series needed to cut min_training_windows windows."""
        return self.config.lookback_length + self.config.min_training_windows - 1

    @property
    def minimum_window_length(self) -> int:
        return self.config.lookback_length

    def needs_retraining(self) -> bool:
        """Advisory retraining check based on age, drift and numerical health."""
        if not self._is_trained:
            return True
        if self.last_training_time is not None:
            age = datetime.now() - self.last_training_time
            if age > timedelta(days=self.config.max_model_age_days):
                return True
        if self.updates_since_training > self.config.retrain_update_limit:
            return True
        if (self.tracker.recent_count >= MIN_OUTCOMES_FOR_ACCURACY
                and self.tracker.recent_accuracy < RECENT_ACCURACY_FLOOR):
            return True
        return self.numerical_failures >= NUMERICAL_FAILURE_LIMIT

    def get_metrics(self) -> ModelMetrics:
        additional = {
            "hidden_size": float(self.config.hidden_size),
            "latent_size": float(self.config.latent_size),
            "lookback_length": float(self.config.lookback_length),
            "stochastic_regularization": self.config.stochastic_regularization,
        }
        for name, value in self.last_diagnostics.items():
            additional[f"last_{name}"] = value

        return ModelMetrics(
            model_name=self.model_name,
            is_ready=self._is_trained,
            last_training_time=self.last_training_time,
            training_windows=self.training_windows,
            total_predictions=self.total_predictions,
            total_outcomes=self.tracker.total,
            correct_predictions=self.tracker.correct,
            accuracy=self.tracker.accuracy,
            recent_accuracy=self.tracker.recent_accuracy,
            recent_error=self.tracker.recent_error,
            updates_since_training=self.updates_since_training,
            numerical_failures=self.numerical_failures,
            additional_metrics=additional,
        )

    get_model_metrics = get_metrics

    # ------------------------------------------------------------ persistence

    def _checkpoint(self) -> Dict[str, Any]:
        return {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "model_name": self.model_name,
            "input_size": self.input_size,
            "feature_names": list(self.schema.names) if self.schema is not None else None,
            "config": self.config.to_dict(),
            "state_dict": {k: v.detach().clone() for k, v in self.network.state_dict().items()},
            "training": {
                "is_trained": self._is_trained,
                "last_training_time": (
                    self.last_training_time.isoformat() if self.last_training_time else None
                ),
                "training_windows": self.training_windows,
            },
        }

    def save_model(self, path: Union[str, Path]) -> bool:
        """Write weights, buffers and config to ``path``."""
        path = Path(path)
        with self._lock:
            checkpoint = self._checkpoint()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                torch.save(checkpoint, path)
            except (OSError, RuntimeError) as exc:
                logger.error("Failed to save model to %s: %s", path, exc)
                return False
        logger.info("Model saved to %s", path)
        return True

    @staticmethod
    def _read_checkpoint(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
        path = Path(path)
        if not path.exists():
            logger.warning("Model file does not exist: %s", path)
            return None
        try:
            checkpoint = torch.load(path, map_location="cpu", weights_only=True)
        except (OSError, RuntimeError, EOFError, ValueError, pickle.UnpicklingError) as exc:
            logger.error("Failed to read model file %s: %s", path, exc)
            return None
        if not isinstance(checkpoint, dict) or checkpoint.get("format_version") != CHECKPOINT_FORMAT_VERSION:
            logger.error("Unrecognized model file format: %s", path)
            return None
        return checkpoint

    @staticmethod
    def _training_metadata(checkpoint: Dict[str, Any]) -> Tuple[bool, Optional[datetime], int]:
        """Parse the training section as (is_trained, last_training_time, training_windows).

        Raises:
            ValueError: If any field is malformed.
        """
        training = checkpoint.get("training") or {}
        if not isinstance(training, dict):
            raise ValueError("training metadata must be a mapping")

        is_trained = training.get("is_trained", True)
        if not isinstance(is_trained, bool):
            raise ValueError(f"is_trained must be a bool, got {is_trained!r}")

        trained_at = training.get("last_training_time")
        if trained_at is not None:
            if not isinstance(trained_at, str):
                raise ValueError(f"last_training_time must be an ISO string, got {trained_at!r}")
            trained_at = datetime.fromisoformat(trained_at)

        windows = training.get("training_windows", 0)
        if isinstance(windows, bool) or not isinstance(windows, int) or windows < 0:
            raise ValueError(f"training_windows must be a non-negative int, got {windows!r}")

        return is_trained, trained_at, windows

    def _incompatibility(self, checkpoint: Dict[str, Any]) -> Optional[str]:
        """Describe why a checkpoint cannot be loaded, or None if it can."""
        try:
            self._training_metadata(checkpoint)
        except ValueError as exc:
            return f"invalid training metadata: {exc}"
        if checkpoint.get("input_size") != self.input_size:
            return f"input_size {checkpoint.get('input_size')} != {self.input_size}"
        try:
            saved_config = StoxLSTMConfig.from_dict(checkpoint.get("config") or {})
        except (TypeError, ValueError) as exc:
            return f"invalid config: {exc}"
        if saved_config != self.config:
            return "config differs from this model's config"
        names = checkpoint.get("feature_names")
        if self.schema is not None and names is not None and tuple(names) != self.schema.names:
            return "feature names differ"

        saved = checkpoint.get("state_dict")
        if not isinstance(saved, dict):
            return "missing state_dict"
        current = self.network.state_dict()
        if set(saved) != set(current):
            return f"parameter names differ: {sorted(set(saved) ^ set(current))}"
        for name, tensor in current.items():
            if not isinstance(saved[name], torch.Tensor) or saved[name].shape != tensor.shape:
                return f"shape mismatch for {name}"
            if not bool(torch.isfinite(saved[name]).all()):
                return f"non-finite values in {name}"
        return None

    def load_model(self, path: Union[str, Path]) -> bool:
        """Restore weights saved by a model of the exact same architecture.

        Every tensor is validated before anything is copied, so a rejected
        file leaves the model untouched.
        """
        with self._lock:
            checkpoint = self._read_checkpoint(path)
            if checkpoint is None:
                return False
            reason = self._incompatibility(checkpoint)
            if reason is not None:
                logger.error("Incompatible model file %s: %s", path, reason)
                return False

            is_trained, trained_at, windows = self._training_metadata(checkpoint)
            self.network.load_state_dict(checkpoint["state_dict"])
            self.optimizer = self._make_optimizer()

            self._is_trained = is_trained
            self.last_training_time = trained_at
            self.training_windows = windows
            self.updates_since_training = 0
            self.numerical_failures = 0

        logger.info("Model loaded from %s", path)
        return True

    @classmethod
    def from_checkpoint(
        cls,
        path: Union[str, Path],
        seed: Optional[int] = None,
    ) -> "StochasticXLSTMModel":
        """Build a model with the saved architecture and load its weights.

        Raises:
            ValueError: If the file cannot be read or loaded.
        """
        checkpoint = cls._read_checkpoint(path)
        if checkpoint is None:
            raise ValueError(f"Cannot read model file {path}")
        model = cls(
            input_size=checkpoint.get("input_size"),
            config=StoxLSTMConfig.from_dict(checkpoint.get("config") or {}),
            feature_names=checkpoint.get("feature_names"),
            seed=seed,
            model_name=checkpoint.get("model_name", "StochasticXLSTM"),
        )
        if not model.load_model(path):
            raise ValueError(f"Cannot load model file {path}")
        return model
