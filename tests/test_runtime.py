"""
Tests for ModelSession against a tiny randomly initialized GPT-2.

No weights are downloaded; the model comes from a config in conftest.py.
"""

from types import SimpleNamespace

import numpy as np
import pytest
import torch

from src.circuitscope.device_utils import get_device
from src.circuitscope.errors import InvalidInputError, ModelRuntimeError
from src.circuitscope.interpretability.attention_source import (
    AttentionSource,
    is_causal_distribution,
    resolve_attention,
)
from src.circuitscope.interpretability.steering import SteeringConfig
from src.circuitscope.outputs import GenerationConfig
from src.circuitscope.runtime import ModelSession, cache_keys, clean_token


PROMPT = "the cat sat on the mat"


class TestForwardPass:
    """Everything one forward pass collects."""

    def test_fields(self, tiny_session):
        """A forward pass should report tokens, logits, vocab, heads and hidden states."""
        output = tiny_session.forward_pass(PROMPT)

        assert output.seq_len == 6
        assert len(output.tokens) == 6
        assert output.logits.shape == (1, 6, 64)
        assert output.vocab_size == 64
        assert output.num_heads == 4
        assert output.has_hidden_states
        assert len(output.hidden_states) == 3

    def test_attention_resolves_to_measured_source(self, tiny_session):
        """Eager attention returns weights; without them the cache is used."""
        output = tiny_session.forward_pass(PROMPT)
        resolved = resolve_attention(output)

        assert resolved.source in (AttentionSource.REAL, AttentionSource.KV_DERIVED)
        assert resolved.attention.shape == (2, 4, 6, 6)
        assert is_causal_distribution(resolved.attention, atol=1e-4)

    def test_keys_collected_from_cache(self, tiny_session):
        """Keys should be read from the model's cache for every layer."""
        output = tiny_session.forward_pass(PROMPT)
        assert output.has_keys
        assert len(output.keys) == 2
        assert output.keys[0].shape[-2:] == (6, 8)

    def test_tensors_on_cpu(self, tiny_session):
        """Returned tensors should be float32 on the CPU."""
        output = tiny_session.forward_pass(PROMPT)
        assert output.logits.device.type == "cpu"
        assert output.logits.dtype == torch.float32

    def test_empty_text_rejected(self, tiny_session):
        """Blank text should be rejected before calling the model."""
        with pytest.raises(InvalidInputError):
            tiny_session.forward_pass("   ")


class TestHiddenStates:
    """Residual stream at the final token."""

    def test_final_hidden_state(self, tiny_session):
        """The final-token hidden state should be a float32 vector of hidden size."""
        state = tiny_session.final_hidden_state(PROMPT)
        assert state.shape == (32,)
        assert state.dtype == np.float32

    def test_layer_selection(self, tiny_session):
        """Embedding and last-layer states should differ."""
        embedding = tiny_session.final_hidden_state(PROMPT, layer=0)
        last = tiny_session.final_hidden_state(PROMPT, layer=-1)
        assert not np.allclose(embedding, last)

    def test_unembed_matches_model_logits(self, tiny_session):
        """Final norm + lm_head over the last hidden state reproduces the logits."""
        output = tiny_session.forward_pass(PROMPT)
        # GPT-2 applies ln_f before reporting the last hidden state
        logits = tiny_session.model.lm_head(output.hidden_states[-1][0, -1])
        assert torch.allclose(logits, output.logits[0, -1], atol=1e-4)
        assert tiny_session.unembed(output.hidden_states[1][0, -1]).shape == (64,)

    def test_metadata(self, tiny_session):
        """Session metadata should come from the model config."""
        assert tiny_session.num_layers == 2
        assert tiny_session.num_heads == 4
        assert tiny_session.hidden_size == 32
        assert tiny_session.model_type == "gpt2"


class TestGeneration:
    """Sampling loop with optional steering."""

    def test_generates_requested_tokens(self, tiny_session):
        """Generation should append exactly max_new_tokens after the prompt."""
        result = tiny_session.generate(PROMPT, GenerationConfig(max_new_tokens=5, seed=0))

        assert len(result.new_token_ids) == 5
        assert result.token_ids[:6] == tiny_session.encode(PROMPT)
        assert not result.steered

    def test_same_seed_same_tokens(self, tiny_session):
        """Same seed should give the same continuation."""
        config = GenerationConfig(max_new_tokens=8, seed=7)
        first = tiny_session.generate(PROMPT, config)
        second = tiny_session.generate(PROMPT, config)
        assert first.new_token_ids == second.new_token_ids

    def test_zero_strength_equals_unsteered(self, tiny_session):
        """Strength 0 and disabled steering should match unsteered output."""
        config = GenerationConfig(max_new_tokens=8, seed=3)
        vector = np.ones(32, dtype=np.float32)

        plain = tiny_session.generate(PROMPT, config)
        zero = tiny_session.generate(PROMPT, config, SteeringConfig(enabled=True, vector=vector, strength=0.0))
        disabled = tiny_session.generate(PROMPT, config, SteeringConfig.disabled())

        assert zero.new_token_ids == plain.new_token_ids
        assert disabled.new_token_ids == plain.new_token_ids
        assert not zero.steered

    def test_strong_steering_changes_greedy_output(self, tiny_session):
        """A large steering vector should change greedy output."""
        config = GenerationConfig(max_new_tokens=6, temperature=0.0)
        rng = np.random.default_rng(0)
        vector = rng.normal(size=32).astype(np.float32)

        plain = tiny_session.generate(PROMPT, config)
        steered = tiny_session.generate(PROMPT, config, SteeringConfig(enabled=True, vector=vector, strength=50.0))

        assert steered.steered
        assert steered.new_token_ids != plain.new_token_ids

    def test_wrong_dimension_rejected(self, tiny_session):
        """A vector of the wrong size should be rejected."""
        steering = SteeringConfig(enabled=True, vector=np.ones(5, dtype=np.float32), strength=1.0)
        with pytest.raises(InvalidInputError):
            tiny_session.generate(PROMPT, GenerationConfig(max_new_tokens=1), steering)

    def test_stops_at_eos(self, tiny_gpt2, word_tokenizer):
        """Generation should stop at the end-of-sequence token."""
        session = ModelSession(tiny_gpt2, word_tokenizer, device=torch.device("cpu"))
        first = session.generate(PROMPT, GenerationConfig(max_new_tokens=1, temperature=0.0))
        word_tokenizer.eos_token_id = first.new_token_ids[0]

        result = session.generate(PROMPT, GenerationConfig(max_new_tokens=10, temperature=0.0))
        assert result.new_token_ids == first.new_token_ids


class TestTokens:
    """Token display helpers."""

    def test_clean_token(self):
        """Byte-level and sentencepiece space markers should become spaces."""
        assert clean_token("Ġcat") == " cat"
        assert clean_token("▁the") == " the"
        assert clean_token("dog") == "dog"

    def test_decode_token(self, tiny_session):
        """Single tokens should decode with their leading space."""
        ids = tiny_session.encode("hello world")
        assert tiny_session.decode_token(ids[1]) == " world"

    def test_decode_token_falls_back_to_id(self, tiny_gpt2):
        """Undecodable ids should show as [id]."""
        class BrokenTokenizer:
            eos_token_id = None

            def decode(self, ids):
                raise KeyError(ids[0])

        session = ModelSession(tiny_gpt2, BrokenTokenizer(), device=torch.device("cpu"))
        assert session.decode_token(17) == "[17]"


class TestCacheKeys:
    """Reading keys out of every cache format transformers has used."""

    def test_legacy_tuples(self):
        """Legacy (key, value) tuples should yield the keys."""
        k = torch.zeros(1, 2, 3, 4)
        assert cache_keys(((k, k), (k, k))) == [k, k]

    def test_key_cache_attribute(self):
        """Caches with key_cache should yield that list."""
        k = torch.zeros(1, 2, 3, 4)
        assert cache_keys(SimpleNamespace(key_cache=[k])) == [k]

    def test_layers_attribute(self):
        """Caches with per-layer objects should yield each layer's keys."""
        k = torch.zeros(1, 2, 3, 4)
        cache = SimpleNamespace(layers=[SimpleNamespace(keys=k), SimpleNamespace(keys=k)])
        assert cache_keys(cache) == [k, k]

    def test_missing_or_partial(self):
        """Missing, partial or empty caches should give None."""
        assert cache_keys(None) is None
        assert cache_keys(SimpleNamespace(layers=[SimpleNamespace(keys=None)])) is None
        assert cache_keys(()) is None


class TestDevice:
    """Explicit device selection."""

    def test_cpu(self):
        """CPU should always be available."""
        device, name = get_device("cpu")
        assert device.type == "cpu"
        assert name == "CPU"

    def test_invalid(self):
        """Unknown device names should raise ValueError."""
        with pytest.raises(ValueError, match="Invalid device type"):
            get_device("tpu")

    def test_unavailable_cuda(self, monkeypatch):
        """Requesting CUDA without it should raise ModelRuntimeError."""
        monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
        with pytest.raises(ModelRuntimeError, match="CUDA requested"):
            get_device("cuda")
