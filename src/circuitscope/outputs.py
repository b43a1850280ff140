"""
Plain data exchanged with the model runtime.

A forward pass may or may not carry attention weights, a key/value cache or
hidden states depending on the model, the attention implementation and the
export format. ForwardOutput models that as a set of optional fields with
capability probes, so consumers branch on "what is present" rather than on
which model produced it.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import torch


@dataclass
class ForwardOutput:
    """
    Result of one forward pass over a prompt.

    Attributes:
        tokens: Decoded token strings, one per input position
        token_ids: Input token IDs
        logits: Raw logits, any of (vocab,), (seq, vocab), (batch, seq, vocab)
                or a flat buffer of seq * vocab values
        attentions: Per-layer attention probabilities, usually
                    (batch, heads, seq, seq) each
        keys: Per-layer key projections from the cache, in whatever layout
              the runtime produced
        queries: Per-layer query projections, when the runtime exposes them
        hidden_states: Per-layer residual stream, (batch, seq, hidden) each;
                       index 0 is the embedding output
        vocab_size: Vocabulary size reported by the model, if known
        num_heads: Attention heads per layer reported by the model, if known
    """
    tokens: List[str] = field(default_factory=list)
    token_ids: List[int] = field(default_factory=list)
    logits: Optional[torch.Tensor] = None
    attentions: Optional[Sequence[torch.Tensor]] = None
    keys: Optional[Sequence[torch.Tensor]] = None
    queries: Optional[Sequence[torch.Tensor]] = None
    hidden_states: Optional[Sequence[torch.Tensor]] = None
    vocab_size: Optional[int] = None
    num_heads: Optional[int] = None

    @property
    def seq_len(self) -> int:
        return len(self.token_ids) if self.token_ids else len(self.tokens)

    @property
    def has_attentions(self) -> bool:
        return _non_empty(self.attentions)

    @property
    def has_keys(self) -> bool:
        return _non_empty(self.keys)

    @property
    def has_queries(self) -> bool:
        return _non_empty(self.queries) and len(self.queries) == len(self.keys or [])

    @property
    def has_hidden_states(self) -> bool:
        return _non_empty(self.hidden_states)

    @property
    def num_layers(self) -> Optional[int]:
        """Best guess at the layer count from whatever is present."""
        if self.has_attentions:
            return len(self.attentions)
        if self.has_keys:
            return len(self.keys)
        if self.has_hidden_states:
            # hidden_states includes the embedding output
            return max(len(self.hidden_states) - 1, 0)
        return None


def _non_empty(value: Any) -> bool:
    if value is None:
        return False
    try:
        return len(value) > 0 and all(v is not None for v in value)
    except TypeError:
        return False


@dataclass
class GenerationConfig:
    """Sampling settings for a generation call."""
    max_new_tokens: int = 20
    temperature: float = 1.0
    top_k: int = 50
    seed: Optional[int] = None


@dataclass
class GenerationResult:
    """Text produced by a generation call."""
    prompt: str
    generated_text: str
    token_ids: List[int]
    new_token_ids: List[int]
    steered: bool = False
