"""Tests for the sequence network and direction head."""
from dataclasses import replace

import pytest
import torch

from stoxlstm.models.heads import DirectionHead
from stoxlstm.models.network import StoxLSTMNetwork


class TestDirectionHead:
    """Test position head."""

    def test_positions_bounded(self, small_config):
        """tanh keeps positions in (-1, 1)."""
        head = DirectionHead(small_config)
        positions = head(torch.randn(16, small_config.hidden_size) * 100)

        assert positions.shape == (16,)
        assert (positions.abs() <= 1).all()


class TestStoxLSTMNetwork:
    """Test unrolling over lookback windows."""

    def test_output_shapes(self, small_config, generator):
        """Positions per window, hidden trajectory per step."""
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        output = network(torch.randn(3, small_config.lookback_length, 4))

        assert output.positions.shape == (3,)
        assert output.hidden_states.shape == (3, small_config.lookback_length, small_config.hidden_size)
        assert output.final_state.batch_size == 3

    def test_uses_last_lookback_steps(self, small_config, generator):
        """Extra leading steps are ignored."""
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        x = torch.randn(2, small_config.lookback_length + 7, 4)

        long_output = network(x)
        trimmed_output = network(x[:, -small_config.lookback_length:, :])

        assert torch.equal(long_output.positions, trimmed_output.positions)

    def test_short_sequence_rejected(self, small_config, generator):
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        with pytest.raises(ValueError, match="lookback_length"):
            network(torch.randn(2, small_config.lookback_length - 1, 4))

    def test_non_3d_rejected(self, small_config, generator):
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        with pytest.raises(ValueError, match="expected"):
            network(torch.randn(small_config.lookback_length, 4))

    def test_unroll_accepts_short_windows(self, small_config, generator):
        """unroll runs over whatever length it is given."""
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        output = network.unroll(torch.randn(1, 1, 4))

        assert output.hidden_states.shape == (1, 1, small_config.hidden_size)

    def test_inference_deterministic(self, small_config, generator):
        network = StoxLSTMNetwork(4, small_config, generator=generator)
        x = torch.randn(2, small_config.lookback_length, 4)

        assert torch.equal(network(x).positions, network(x).positions)

    def test_training_reproducible_from_seed(self, small_config):
        """Two networks with equally seeded generators sample identical noise."""
        x = torch.randn(2, small_config.lookback_length, 4)
        a = StoxLSTMNetwork(4, small_config, generator=torch.Generator().manual_seed(9))
        b = StoxLSTMNetwork(4, small_config, generator=torch.Generator().manual_seed(9))

        assert torch.equal(a(x, training=True).positions, b(x, training=True).positions)

    def test_all_toggle_combinations_finite(self, small_config, generator):
        """Every feature toggle combination produces finite output."""
        x = torch.randn(2, small_config.lookback_length, 4)
        for gating in (True, False):
            for mixing in (True, False):
                for norm in (True, False):
                    config = replace(
                        small_config,
                        use_exponential_gating=gating,
                        use_memory_mixing=mixing,
                        use_layer_normalization=norm,
                    )
                    output = StoxLSTMNetwork(4, config, generator=generator)(x, training=True)
                    assert torch.isfinite(output.positions).all()
