"""
Shared fixtures.

Nothing here downloads weights: the "real" model is a randomly initialized
two-layer GPT-2 built from a config, and FakeRuntime hands back hand-made
forward-pass outputs so analysis code can be tested against exact numbers.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pytest
import torch

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.circuitscope.outputs import ForwardOutput, GenerationResult


class WordTokenizer:
    """
    Whitespace tokenizer with a growing vocabulary.

    Words after the first carry a leading space, like GPT-2 tokens. Ids are
    assigned on first sight and wrap around the vocabulary size.
    """

    def __init__(self, vocab_size: int = 64):
        self.vocab_size = vocab_size
        self.token_to_id: Dict[str, int] = {}
        self.id_to_token: Dict[int, str] = {}
        self.eos_token_id = None

    def _id(self, token: str) -> int:
        if token not in self.token_to_id:
            new_id = len(self.token_to_id) % self.vocab_size
            self.token_to_id[token] = new_id
            self.id_to_token.setdefault(new_id, token)
        return self.token_to_id[token]

    def encode(self, text: str) -> List[int]:
        words = text.split()
        return [self._id(w if i == 0 else " " + w) for i, w in enumerate(words)]

    def decode(self, ids) -> str:
        return "".join(self.id_to_token.get(int(i), f"<{int(i)}>") for i in ids)


def previous_token_attention(seq_len: int, strength: float = 1.0) -> torch.Tensor:
    """(seq, seq) causal attention with `strength` on the sub-diagonal."""
    matrix = torch.zeros(seq_len, seq_len)
    matrix[0, 0] = 1.0
    for i in range(1, seq_len):
        matrix[i, i - 1] = strength
        remaining = 1.0 - strength
        matrix[i, : i + 1] += remaining / (i + 1)
    return matrix


def uniform_attention(num_layers: int, num_heads: int, seq_len: int) -> torch.Tensor:
    """Causal attention spreading each row evenly over positions 0..i."""
    rows = torch.tril(torch.ones(seq_len, seq_len))
    rows = rows / rows.sum(dim=-1, keepdim=True)
    return rows.expand(num_layers, num_heads, seq_len, seq_len).clone()


class FakeRuntime:
    """
    Stand-in for ModelSession returning a prepared ForwardOutput.

    Args:
        tokens: Token strings the "model" sees
        attentions: Per-layer (1, heads, seq, seq) tensors, or None
        keys: Per-layer key tensors, or None
        logits: Final logits, or None
        hidden: Map of text → hidden state for steering construction
    """

    model_type = "fake"

    def __init__(
        self,
        tokens: List[str],
        attentions=None,
        keys=None,
        logits: Optional[torch.Tensor] = None,
        hidden: Optional[Dict[str, np.ndarray]] = None,
        num_heads: Optional[int] = None,
    ):
        self.tokens = tokens
        self.attentions = attentions
        self.keys = keys
        self.logits = logits
        self.hidden = hidden or {}
        self.num_heads = num_heads
        self.forward_calls = 0
        self.hidden_calls: List[str] = []

    def forward_pass(self, text, output_attentions=True, output_hidden_states=True):
        self.forward_calls += 1
        return ForwardOutput(
            tokens=list(self.tokens),
            token_ids=list(range(len(self.tokens))),
            logits=self.logits,
            attentions=self.attentions if output_attentions else None,
            keys=self.keys,
            vocab_size=None if self.logits is None else self.logits.shape[-1],
            num_heads=self.num_heads,
        )

    def final_hidden_state(self, text, layer=-1):
        self.hidden_calls.append(text)
        if text not in self.hidden:
            raise RuntimeError(f"no hidden state for {text!r}")
        return self.hidden[text]

    def decode_token(self, token_id):
        return f"tok{token_id}"

    def generate(self, prompt, config=None, steering=None):
        steered = steering is not None and steering.is_active
        return GenerationResult(prompt, " steered" if steered else " plain", [], [], steered)

    def close(self):
        pass


@pytest.fixture
def word_tokenizer():
    return WordTokenizer(vocab_size=64)


@pytest.fixture
def tiny_gpt2():
    """Two-layer, four-head GPT-2 with random weights and eager attention."""
    from transformers import GPT2Config, GPT2LMHeadModel

    torch.manual_seed(0)
    config = GPT2Config(
        vocab_size=64,
        n_positions=64,
        n_embd=32,
        n_layer=2,
        n_head=4,
        attn_implementation="eager",
    )
    model = GPT2LMHeadModel(config)
    model.eval()
    return model


@pytest.fixture
def tiny_session(tiny_gpt2, word_tokenizer):
    from src.circuitscope.runtime import ModelSession

    return ModelSession(tiny_gpt2, word_tokenizer, device=torch.device("cpu"), model_name="tiny-gpt2")
