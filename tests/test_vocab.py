"""
Tests for vocabulary size inference and final-position logit extraction.
"""

import logging

import torch

from src.circuitscope.vocab import (
    final_position_logits,
    infer_vocab_size,
    known_vocab_size,
)


class TestKnownVocabSizes:
    """Model family lookup."""

    def test_exact_and_substring_matches(self):
        """Known families should match by name or substring."""
        assert known_vocab_size("gpt2") == 50257
        assert known_vocab_size("openai-community/gpt2-medium") == 50257
        assert known_vocab_size("meta-llama/Llama-2-7b-hf") == 32000

    def test_longest_key_wins(self):
        """The most specific model key should win."""
        assert known_vocab_size("microsoft/phi-2") == 51200
        assert known_vocab_size("distilgpt2") == 50257

    def test_unknown(self):
        """Unknown or missing names should return None."""
        assert known_vocab_size("my-custom-model") is None
        assert known_vocab_size(None) is None


class TestInferVocabSize:
    """The explicit > shape > divisor > raw cascade."""

    def test_declared_size_is_explicit(self, caplog):
        """A declared size that fits the logits should be used without warning."""
        logits = torch.zeros(1, 4, 100)
        with caplog.at_level(logging.WARNING):
            result = infer_vocab_size(logits, seq_len=4, declared=100)

        assert (result.size, result.source) == (100, "explicit")
        assert caplog.text == ""

    def test_known_model_size_is_explicit(self):
        """A known model's vocabulary should count as explicit."""
        logits = torch.zeros(2 * 50257)
        result = infer_vocab_size(logits, seq_len=2, model_name="gpt2")
        assert (result.size, result.source) == (50257, "explicit")

    def test_inconsistent_declared_size_ignored(self, caplog):
        """A declared size that contradicts the shape should give way to the shape."""
        logits = torch.zeros(1, 3, 64)
        with caplog.at_level(logging.WARNING):
            result = infer_vocab_size(logits, seq_len=3, declared=100)

        assert (result.size, result.source) == (64, "shape")
        assert "taken from logits shape" in caplog.text

    def test_flat_buffer_matched_to_common_size(self):
        """A flat buffer should be matched against common vocabulary sizes."""
        logits = torch.zeros(3 * 32000)
        result = infer_vocab_size(logits, seq_len=3)
        assert (result.size, result.source) == (32000, "divisor")

    def test_flat_buffer_divided_by_seq_len(self):
        """A flat buffer should otherwise be divided by the sequence length."""
        logits = torch.zeros(5 * 77)
        result = infer_vocab_size(logits, seq_len=5)
        assert (result.size, result.source) == (77, "divisor")

    def test_raw_fallback(self):
        """When nothing divides cleanly the raw length is used."""
        logits = torch.zeros(13)
        result = infer_vocab_size(logits, seq_len=4)
        assert (result.size, result.source) == (13, "raw")


class TestFinalPositionLogits:
    """Slicing out the last position."""

    def test_batched(self):
        """(batch, seq, vocab) logits should give the last position of the first batch."""
        logits = torch.arange(24, dtype=torch.float32).reshape(1, 3, 8)
        assert torch.equal(final_position_logits(logits, 8), logits[0, 2])

    def test_two_dimensional(self):
        """(seq, vocab) logits should give the last row."""
        logits = torch.arange(12, dtype=torch.float32).reshape(3, 4)
        assert torch.equal(final_position_logits(logits, 4), logits[2])

    def test_flat_buffer(self):
        """A flat buffer should give its last vocab_size values."""
        logits = torch.arange(12, dtype=torch.float32)
        assert torch.equal(final_position_logits(logits, 4), torch.tensor([8.0, 9.0, 10.0, 11.0]))

    def test_single_position(self):
        """A single position should be returned as is."""
        logits = torch.arange(4, dtype=torch.float32)
        assert torch.equal(final_position_logits(logits, 4), logits)

    def test_empty(self):
        """Empty or missing logits should give an empty tensor."""
        assert final_position_logits(torch.empty(0), 10).numel() == 0
        assert final_position_logits(None, 10).numel() == 0
