"""
Tests for next-token sampling in the generation loop.

- Temperature scaling
- Top-k filtering (k = 0 keeps the whole vocabulary)
- Greedy decoding at temperature 0
- Reproducibility under a fixed seed
"""

import torch
import pytest
from src.circuitscope.errors import InvalidInputError
from src.circuitscope.sampling import (
    apply_temperature,
    sample_greedy,
    sample_next_token,
    sample_top_k,
)


class TestTemperature:
    """Test temperature scaling."""

    def test_temperature_1_returns_input(self):
        """Temperature of 1.0 hands back the logits untouched."""
        logits = torch.tensor([1.0, 2.0, 3.0])
        assert apply_temperature(logits, temperature=1.0) is logits

    def test_temperature_low_sharpens(self):
        """Dividing by 0.5 doubles the gaps and raises the top probability."""
        logits = torch.tensor([1.0, 2.0, 3.0])
        scaled = apply_temperature(logits, temperature=0.5)

        assert torch.allclose(scaled, torch.tensor([2.0, 4.0, 6.0]))
        assert torch.softmax(scaled, dim=-1).max() > torch.softmax(logits, dim=-1).max()

    def test_temperature_high_flattens(self):
        """Temperature of 2.0 halves the logits and flattens the distribution."""
        logits = torch.tensor([1.0, 2.0, 3.0])
        scaled = apply_temperature(logits, temperature=2.0)

        assert torch.allclose(scaled, torch.tensor([0.5, 1.0, 1.5]))
        assert torch.softmax(scaled, dim=-1).max() < torch.softmax(logits, dim=-1).max()

    @pytest.mark.parametrize("temperature", [0.0, -1.0])
    def test_non_positive_temperature_raises(self, temperature):
        """Zero or negative temperature should raise an error."""
        logits = torch.tensor([1.0, 2.0, 3.0])
        with pytest.raises(ValueError, match="Temperature must be positive"):
            apply_temperature(logits, temperature=temperature)

    def test_error_is_circuitscope_error(self):
        """Bad temperature should raise the package's InvalidInputError."""
        with pytest.raises(InvalidInputError):
            apply_temperature(torch.tensor([1.0]), temperature=0.0)


class TestGreedySampling:
    """Test greedy decoding."""

    def test_greedy_single_sequence(self):
        """Greedy should pick the highest logit."""
        token = sample_greedy(torch.tensor([1.0, 3.0, 2.0, 0.5]))
        assert token.shape == (1,)
        assert token.item() == 1

    def test_greedy_batch(self):
        """Greedy should pick the highest logit per batch row."""
        logits = torch.tensor([
            [1.0, 3.0, 2.0, 0.5],
            [0.5, 1.0, 0.8, 2.0],
        ])
        tokens = sample_greedy(logits)

        assert tokens.shape == (2, 1)
        assert tokens[0].item() == 1
        assert tokens[1].item() == 3


class TestTopKSampling:
    """Test top-k sampling."""

    def test_top_k_filters_correctly(self):
        """Only the k highest logits can ever be drawn."""
        logits = torch.tensor([5.0, 4.0, 3.0, 2.0, 1.0, 0.0])
        samples = {sample_top_k(logits, k=3).item() for _ in range(100)}
        assert samples.issubset({0, 1, 2})

    def test_k_equals_1_like_greedy(self):
        """Top-k with k=1 should always return the argmax."""
        logits = torch.tensor([1.0, 3.0, 2.0, 0.5])
        assert all(sample_top_k(logits, k=1).item() == 1 for _ in range(10))

    def test_k_zero_keeps_whole_vocabulary(self):
        """k = 0 disables filtering instead of raising."""
        torch.manual_seed(0)
        logits = torch.zeros(4)
        samples = {sample_top_k(logits, k=0).item() for _ in range(200)}
        assert samples == {0, 1, 2, 3}

    def test_k_larger_than_vocab_keeps_all(self):
        """k larger than the vocabulary should not fail."""
        logits = torch.tensor([1.0, 2.0, 3.0])
        assert sample_top_k(logits, k=50).shape == (1,)

    def test_negative_k_raises(self):
        """Negative k should raise an error."""
        with pytest.raises(ValueError, match="k must be non-negative"):
            sample_top_k(torch.tensor([1.0, 2.0]), k=-1)

    def test_top_k_batch(self):
        """Top-k should filter each batch row independently."""
        logits = torch.tensor([
            [5.0, 4.0, 3.0, 2.0, 1.0],
            [1.0, 2.0, 3.0, 4.0, 5.0],
        ])
        tokens = sample_top_k(logits, k=2)

        assert tokens.shape == (2, 1)
        assert tokens[0].item() in {0, 1}
        assert tokens[1].item() in {3, 4}

    def test_top_k_respects_probabilities(self):
        """softmax([2, 0, 0, 0]) puts ~73% on the first token."""
        torch.manual_seed(1)
        logits = torch.tensor([2.0, 0.0, 0.0, 0.0])
        samples = [sample_top_k(logits, k=4).item() for _ in range(1000)]
        first = sum(1 for s in samples if s == 0) / 1000
        assert 0.63 < first < 0.83


class TestSampleNextToken:
    """Dispatch used by the generation loop."""

    def test_temperature_zero_is_greedy(self):
        """Temperature 0 should fall back to greedy decoding."""
        logits = torch.tensor([0.1, 0.2, 5.0, 0.3])
        assert all(sample_next_token(logits, temperature=0.0).item() == 2 for _ in range(10))

    def test_same_seed_same_tokens(self):
        """Same seed should give the same sampled tokens."""
        logits = torch.zeros(1, 100)

        torch.manual_seed(123)
        first = [sample_next_token(logits, temperature=1.0, top_k=0).item() for _ in range(20)]
        torch.manual_seed(123)
        second = [sample_next_token(logits, temperature=1.0, top_k=0).item() for _ in range(20)]

        assert first == second

    def test_batched_shape(self):
        """Batched logits should give one token per row."""
        logits = torch.randn(3, 10)
        assert sample_next_token(logits, temperature=0.7, top_k=5).shape == (3, 1)
