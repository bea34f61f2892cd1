"""Tests for the Stochastic xLSTM sequence model."""
import math
from dataclasses import replace
from datetime import datetime, timedelta

import numpy as np
import pandas as pd
import pytest
import torch

from stoxlstm.models.stoxlstm import StochasticXLSTMModel
from stoxlstm.models.types import Signal, StoxLSTMConfig


def _snapshot(model):
    return {k: v.detach().clone() for k, v in model.network.state_dict().items()}


def _same_weights(a, b):
    return a.keys() == b.keys() and all(torch.equal(a[k], b[k]) for k in a)


def _window(seed, length=5, width=4):
    return np.random.default_rng(seed).normal(0, 1, (length, width))


class TestConstruction:
    """Test model construction."""

    def test_requires_input_size_or_names(self, small_config):
        with pytest.raises(ValueError, match="input_size or feature_names"):
            StochasticXLSTMModel(config=small_config)

    def test_names_fix_input_size(self, small_config, feature_names):
        model = StochasticXLSTMModel(config=small_config, feature_names=feature_names)
        assert model.input_size == len(feature_names)

    def test_names_size_mismatch(self, small_config, feature_names):
        with pytest.raises(ValueError, match="does not match"):
            StochasticXLSTMModel(input_size=7, config=small_config, feature_names=feature_names)

    def test_starts_untrained(self, small_config):
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)

        assert not model.is_ready()
        assert model.needs_retraining()
        assert model.last_training_time is None

    def test_same_seed_same_weights(self, small_config):
        a = StochasticXLSTMModel(input_size=4, config=small_config, seed=5)
        b = StochasticXLSTMModel(input_size=4, config=small_config, seed=5)
        assert _same_weights(_snapshot(a), _snapshot(b))

    def test_minimum_training_data(self, small_config):
        """One window needs lookback_length contiguous timesteps."""
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)

        assert model.get_minimum_training_data() == small_config.lookback_length
        assert model.minimum_window_length == small_config.lookback_length

        more = StochasticXLSTMModel(
            input_size=4, config=replace(small_config, min_training_windows=10), seed=0
        )
        assert more.get_minimum_training_data() == small_config.lookback_length + 9


class TestTrain:
    """Test training success and failure paths."""

    def test_train_succeeds(self, small_config, training_windows):
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)
        before = _snapshot(model)

        result = model.train(training_windows)

        assert result
        assert result.reason == "ok"
        assert result.windows_used == len(training_windows)
        assert math.isfinite(result.loss)
        assert model.is_ready()
        assert model.training_windows == len(training_windows)
        assert isinstance(model.last_training_time, datetime)
        assert not _same_weights(before, _snapshot(model))

    def test_short_window_leaves_weights_unchanged(self, small_config, training_windows):
        """A window shorter than the lookback fails the whole call."""
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)
        before = _snapshot(model)
        windows = training_windows + [(_window(0, length=small_config.lookback_length - 1), 1.0)]

        result = model.train(windows)

        assert not result
        assert result.reason == "window_too_short"
        assert not model.is_ready()
        assert _same_weights(before, _snapshot(model))

    def test_short_window_keeps_previous_training(self, trained_model):
        """A failed retrain keeps the earlier trained weights."""
        before = _snapshot(trained_model)
        result = trained_model.train([(_window(0, length=2), 1.0)])

        assert not result
        assert trained_model.is_ready()
        assert _same_weights(before, _snapshot(trained_model))

    def test_insufficient_windows(self, small_config, training_windows):
        config = replace(small_config, min_training_windows=100)
        model = StochasticXLSTMModel(input_size=4, config=config, seed=1)

        result = model.train(training_windows)

        assert not result
        assert result.reason == "insufficient_windows"

    def test_wrong_width_window(self, small_config, training_windows):
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)
        result = model.train(training_windows + [(_window(0, width=3), 1.0)])

        assert not result
        assert result.reason == "invalid_window"

    def test_non_finite_windows_skipped(self, small_config, training_windows):
        """NaN windows and targets are dropped; the rest still train."""
        bad_features = _window(0)
        bad_features[2, 1] = np.nan
        windows = training_windows + [(bad_features, 1.0), (_window(1), float("nan"))]
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)

        result = model.train(windows)

        assert result
        assert result.windows_skipped == 2
        assert result.windows_used == len(training_windows)

    def test_only_non_finite_windows(self, small_config):
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)
        result = model.train([(np.full((5, 4), np.inf), 1.0)])

        assert not result
        assert result.reason == "no_finite_windows"
        assert not model.is_ready()

    def test_longer_windows_trimmed(self, small_config):
        """Windows longer than the lookback are accepted."""
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=1)
        result = model.train([(_window(i, length=12), 1.0 if i % 2 else -1.0) for i in range(10)])
        assert result

    def test_training_reproducible(self, small_config, training_windows):
        """Equal seeds give bit-identical trained weights."""
        a = StochasticXLSTMModel(input_size=4, config=small_config, seed=11)
        b = StochasticXLSTMModel(input_size=4, config=small_config, seed=11)
        a.train(training_windows)
        b.train(training_windows)

        assert _same_weights(_snapshot(a), _snapshot(b))

    def test_reference_configuration(self):
        """Full-size cell with every feature enabled trains on 100 seeded windows."""
        config = StoxLSTMConfig(
            hidden_size=64,
            latent_size=16,
            use_exponential_gating=True,
            use_memory_mixing=True,
            use_layer_normalization=True,
            stochastic_regularization=0.01,
            lookback_length=10,
            epochs=1,
        )
        rng = np.random.default_rng(42)
        windows = [
            (rng.normal(0, 1, (config.lookback_length, 6)), float(rng.choice([-1.0, 0.0, 1.0])))
            for _ in range(100)
        ]
        model = StochasticXLSTMModel(input_size=6, config=config, seed=42)

        assert model.train(windows)
        assert model.is_ready()

        prediction = model.predict(windows[0][0])
        assert not prediction.is_default
        assert prediction.kl_divergence >= 0
        assert prediction.uncertainty >= 0
        assert 0.0 <= prediction.confidence <= 1.0


class TestPredict:
    """Test prediction behaviour."""

    def test_untrained_returns_default(self, small_config):
        """Predicting before training never raises."""
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)
        prediction = model.predict(_window(0))

        assert prediction.is_default
        assert prediction.reason == "model_not_trained"
        assert prediction.signal is Signal.HOLD
        assert 0.0 <= prediction.confidence <= 1.0

    def test_trained_prediction(self, trained_model):
        prediction = trained_model.predict(_window(3), symbol="ES")

        assert not prediction.is_default
        assert prediction.symbol == "ES"
        assert -1.0 < prediction.position < 1.0
        assert 0.0 <= prediction.confidence <= 1.0
        assert prediction.diagnostics["prob_up"] + prediction.diagnostics["prob_down"] == pytest.approx(1.0)
        assert trained_model.total_predictions == 1

    def test_signal_and_confidence_rule(self, trained_model):
        """Signal follows the threshold; confidence is discounted by uncertainty."""
        threshold = trained_model.config.signal_threshold
        for seed in range(30):
            prediction = trained_model.predict(_window(seed))
            position = prediction.position

            if position > threshold:
                assert prediction.signal is Signal.UP
            elif position < -threshold:
                assert prediction.signal is Signal.DOWN
            else:
                assert prediction.signal is Signal.HOLD

            expected = abs(position) * (1.0 - min(prediction.uncertainty, 0.5))
            assert prediction.confidence == pytest.approx(expected)

    def test_diagnostics_non_negative(self, trained_model):
        """Uncertainty, entropy and KL stay non-negative over many random inputs."""
        rng = np.random.default_rng(2024)
        for _ in range(1000):
            features = rng.normal(0, rng.uniform(0.1, 10.0), (5, 4))
            prediction = trained_model.predict(features)

            assert prediction.uncertainty >= 0
            assert prediction.entropy >= 0
            assert prediction.kl_divergence >= 0
            assert 0.0 <= prediction.confidence <= 1.0

    def test_inference_deterministic(self, trained_model):
        window = _window(8)
        first = trained_model.predict(window)
        second = trained_model.predict(window)

        assert first.position == second.position
        assert first.confidence == second.confidence

    def test_short_history(self, trained_model):
        prediction = trained_model.predict(_window(0, length=2))

        assert prediction.is_default
        assert prediction.reason == "insufficient_history"

    @pytest.mark.parametrize("empty", [[], np.empty((0, 4)), np.array([])])
    def test_empty_window(self, trained_model, empty):
        """An empty window is insufficient history, not an error."""
        prediction = trained_model.predict(empty)

        assert prediction.is_default
        assert prediction.reason == "insufficient_history"
        assert prediction.signal is Signal.HOLD

    def test_expected_return_scales_position(self, trained_model):
        """Expected return is the position times a 2% maximum move."""
        prediction = trained_model.predict(_window(5))

        assert prediction.expected_return == pytest.approx(prediction.position * 0.02)
        assert abs(prediction.expected_return) <= 0.02
        assert prediction.price_target(100.0) == pytest.approx(100.0 * (1.0 + prediction.expected_return))

    def test_default_has_zero_expected_return(self, trained_model):
        prediction = trained_model.predict(_window(0, length=2))

        assert prediction.expected_return == 0.0
        assert prediction.price_target(50.0) == 50.0

    def test_unnamed_model_has_no_feature_importance(self, trained_model):
        assert dict(trained_model.predict(_window(5)).feature_importance) == {}

    def test_non_finite_input(self, trained_model):
        window = _window(0)
        window[-1, 0] = np.nan
        prediction = trained_model.predict(window)

        assert prediction.is_default
        assert prediction.reason == "non_finite_input"

    def test_width_mismatch_raises(self, trained_model):
        with pytest.raises(ValueError, match="shape"):
            trained_model.predict(_window(0, width=5))

    def test_accepts_tensor_and_lists(self, trained_model):
        window = _window(4)
        expected = trained_model.predict(window).position

        assert trained_model.predict(torch.tensor(window)).position == pytest.approx(expected)
        assert trained_model.predict(window.tolist()).position == pytest.approx(expected)

    def test_higher_and_lower_beta(self, small_config, training_windows):
        """Models differing only in beta both train and report uncertainty >= 0."""
        window = _window(99)
        for beta in (0.1, 0.001):
            config = replace(small_config, stochastic_regularization=beta)
            model = StochasticXLSTMModel(input_size=4, config=config, seed=3)

            assert model.train(training_windows)
            prediction = model.predict(window)
            assert not prediction.is_default
            assert prediction.uncertainty >= 0


class TestNamedFeatures:
    """Test schema-driven input."""

    @pytest.fixture
    def named_model(self, small_config, feature_names, training_windows):
        model = StochasticXLSTMModel(config=small_config, feature_names=feature_names, seed=4)
        assert model.train(training_windows)
        return model

    def test_dataframe_columns_reordered(self, named_model, feature_names):
        """DataFrame columns are matched by name, not position."""
        window = _window(6)
        frame = pd.DataFrame(window, columns=feature_names)
        shuffled = frame[list(reversed(feature_names))]

        assert named_model.predict(shuffled).position == pytest.approx(named_model.predict(window).position)

    def test_sequence_of_mappings(self, named_model, feature_names):
        window = _window(6)
        rows = [dict(zip(feature_names, row)) for row in window]

        assert named_model.predict(rows).position == pytest.approx(named_model.predict(window).position)

    def test_missing_feature_raises(self, named_model, feature_names):
        rows = [{name: 0.0 for name in feature_names[:-1]}] * 5
        with pytest.raises(ValueError, match="Missing features"):
            named_model.predict(rows)

    def test_feature_importance_normalized(self, named_model, feature_names):
        """Importance is keyed by feature name, non-negative, and sums to 1."""
        importance = named_model.predict(_window(6)).feature_importance

        assert list(importance) == list(feature_names)
        assert all(value >= 0 for value in importance.values())
        assert sum(importance.values()) == pytest.approx(1.0)

    def test_feature_importance_follows_magnitude(self, named_model, feature_names):
        """A feature that is zero at the last step gets no importance."""
        window = _window(6)
        window[-1, 0] = 0.0

        importance = named_model.predict(window).feature_importance

        assert importance[feature_names[0]] == 0.0
        assert sum(importance.values()) == pytest.approx(1.0)

    def test_feature_importance_all_zero_features(self, named_model, feature_names):
        window = _window(6)
        window[-1, :] = 0.0

        importance = named_model.predict(window).feature_importance

        assert set(importance) == set(feature_names)
        assert all(value == 0.0 for value in importance.values())

    def test_mappings_need_schema(self, trained_model):
        with pytest.raises(ValueError, match="feature_names"):
            trained_model.predict([{"a": 1.0, "b": 2.0, "c": 3.0, "d": 4.0}] * 5)


class TestUpdateModel:
    """Test online updates."""

    def test_untrained_update_ignored(self, small_config):
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)

        assert model.update_model(_window(0), 1.0) is False
        assert model.tracker.total == 0

    def test_update_applies_step(self, trained_model):
        before = _snapshot(trained_model)

        assert trained_model.update_model(_window(1), 1.0)
        assert trained_model.updates_since_training == 1
        assert trained_model.tracker.total == 1
        assert not _same_weights(before, _snapshot(trained_model))

    def test_update_with_single_vector(self, trained_model):
        """A single feature vector is a valid update input."""
        assert trained_model.update_model(_window(1)[-1], -1.0)

    def test_empty_window_update_ignored(self, trained_model):
        before = _snapshot(trained_model)

        assert trained_model.update_model([], 1.0) is False
        assert trained_model.updates_since_training == 0
        assert _same_weights(before, _snapshot(trained_model))

    def test_non_finite_outcome_rejected(self, trained_model):
        before = _snapshot(trained_model)

        assert trained_model.update_model(_window(1), float("nan")) is False
        assert trained_model.numerical_failures == 1
        assert _same_weights(before, _snapshot(trained_model))

    def test_train_resets_update_count(self, trained_model, training_windows):
        trained_model.update_model(_window(1), 1.0)
        assert trained_model.train(training_windows)
        assert trained_model.updates_since_training == 0


class TestNeedsRetraining:
    """Test the advisory retraining heuristics."""

    def test_fresh_model_does_not_need_retraining(self, trained_model):
        assert not trained_model.needs_retraining()

    def test_stale_model(self, trained_model):
        trained_model.last_training_time = datetime.now() - timedelta(days=31)
        assert trained_model.needs_retraining()

    def test_too_many_updates(self, small_config, training_windows):
        config = replace(small_config, retrain_update_limit=2)
        model = StochasticXLSTMModel(input_size=4, config=config, seed=1)
        assert model.train(training_windows)

        for seed in range(3):
            model.update_model(_window(seed), 1.0)

        assert model.updates_since_training == 3
        assert model.needs_retraining()

    def test_poor_recent_accuracy(self, trained_model):
        for _ in range(20):
            trained_model.tracker.record(direction=1, position=0.5, outcome=-1.0)
        assert trained_model.needs_retraining()

    def test_repeated_numerical_failures(self, trained_model):
        for _ in range(5):
            trained_model.update_model(_window(0), float("inf"))
        assert trained_model.needs_retraining()


class TestMetrics:
    """Test metrics reporting."""

    def test_metrics_after_activity(self, trained_model):
        trained_model.predict(_window(2))
        trained_model.update_model(_window(2), 1.0)

        metrics = trained_model.get_metrics()

        assert metrics.is_ready
        assert metrics.model_name == "StochasticXLSTM"
        assert metrics.total_predictions == 1
        assert metrics.total_outcomes == 1
        assert metrics.updates_since_training == 1
        assert metrics.training_windows == 40
        assert metrics.additional_metrics["hidden_size"] == 8.0
        assert metrics.additional_metrics["last_kl_divergence"] >= 0
        assert "last_uncertainty" in metrics.additional_metrics

    def test_last_expected_return_reported(self, trained_model):
        prediction = trained_model.predict(_window(2))

        metrics = trained_model.get_metrics()

        assert metrics.additional_metrics["last_expected_return"] == pytest.approx(prediction.expected_return)

    def test_alias(self, trained_model):
        assert trained_model.get_model_metrics().is_ready


class TestPersistence:
    """Test save / load."""

    def test_roundtrip_reproduces_prediction(self, trained_model, small_config, tmp_path):
        path = tmp_path / "model.pt"
        window = _window(12)
        expected = trained_model.predict(window)

        assert trained_model.save_model(path)

        fresh = StochasticXLSTMModel(input_size=4, config=small_config, seed=999)
        assert fresh.load_model(path)
        assert fresh.is_ready()

        restored = fresh.predict(window)
        assert restored.position == expected.position
        assert restored.confidence == expected.confidence
        assert restored.signal is expected.signal

    def test_from_checkpoint(self, trained_model, tmp_path):
        path = tmp_path / "nested" / "model.pt"
        window = _window(13)
        assert trained_model.save_model(path)

        restored = StochasticXLSTMModel.from_checkpoint(path)

        assert restored.config == trained_model.config
        assert restored.predict(window).position == trained_model.predict(window).position

    def test_incompatible_architecture_rejected(self, trained_model, small_config, tmp_path):
        """A shape-incompatible file is rejected and leaves the model untouched."""
        path = tmp_path / "model.pt"
        assert trained_model.save_model(path)

        other = StochasticXLSTMModel(
            input_size=4, config=replace(small_config, hidden_size=16), seed=0
        )
        before = _snapshot(other)

        assert other.load_model(path) is False
        assert not other.is_ready()
        assert _same_weights(before, _snapshot(other))

    def test_input_size_mismatch_rejected(self, trained_model, small_config, tmp_path):
        path = tmp_path / "model.pt"
        trained_model.save_model(path)

        assert StochasticXLSTMModel(input_size=5, config=small_config).load_model(path) is False

    def test_missing_file(self, small_config, tmp_path):
        model = StochasticXLSTMModel(input_size=4, config=small_config)
        assert model.load_model(tmp_path / "absent.pt") is False

    def test_corrupt_file(self, small_config, tmp_path):
        path = tmp_path / "corrupt.pt"
        path.write_bytes(b"not a checkpoint")
        model = StochasticXLSTMModel(input_size=4, config=small_config)

        assert model.load_model(path) is False
        with pytest.raises(ValueError, match="Cannot read"):
            StochasticXLSTMModel.from_checkpoint(path)

    def test_non_finite_weights_rejected(self, trained_model, small_config, tmp_path):
        path = tmp_path / "model.pt"
        trained_model.save_model(path)
        checkpoint = torch.load(path, weights_only=True)
        checkpoint["state_dict"]["cell.W_i"][0, 0] = float("nan")
        torch.save(checkpoint, path)

        assert StochasticXLSTMModel(input_size=4, config=small_config).load_model(path) is False

    def test_save_to_directory_fails(self, trained_model, tmp_path):
        """A path that is an existing directory returns False instead of raising."""
        target = tmp_path / "model_dir"
        target.mkdir()

        assert trained_model.save_model(target) is False

    def test_malformed_training_time_rejected(self, trained_model, small_config, tmp_path):
        """Bad training metadata fails the load before any weight is copied."""
        path = tmp_path / "model.pt"
        trained_model.save_model(path)
        checkpoint = torch.load(path, weights_only=True)
        checkpoint["training"]["last_training_time"] = "not-a-date"
        torch.save(checkpoint, path)

        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)
        before = _snapshot(model)

        assert model.load_model(path) is False
        assert not model.is_ready()
        assert model.last_training_time is None
        assert _same_weights(before, _snapshot(model))

    @pytest.mark.parametrize("field,value", [("is_trained", "yes"), ("training_windows", -1)])
    def test_malformed_training_fields_rejected(self, trained_model, small_config, tmp_path, field, value):
        path = tmp_path / "model.pt"
        trained_model.save_model(path)
        checkpoint = torch.load(path, weights_only=True)
        checkpoint["training"][field] = value
        torch.save(checkpoint, path)

        assert StochasticXLSTMModel(input_size=4, config=small_config).load_model(path) is False

    def test_untrained_roundtrip(self, small_config, tmp_path):
        path = tmp_path / "untrained.pt"
        model = StochasticXLSTMModel(input_size=4, config=small_config, seed=0)
        assert model.save_model(path)

        restored = StochasticXLSTMModel.from_checkpoint(path)
        assert not restored.is_ready()
        assert restored.predict(_window(0)).is_default
