"""
Attention Source Resolution

Turns the raw output of one forward pass into a uniform attention tensor of
shape (num_layers, num_heads, seq_len, seq_len), and records where the
numbers came from.

Why is this needed?
-------------------
Not every inference setup hands back attention probabilities:

- Eager attention implementations return them when asked.
- Fused kernels (SDPA, flash attention) and many exported or quantized
  models never materialize them.
- Almost every setup still returns a key/value cache, because generation
  needs it.

So we try three strategies in order, and the first one that works wins:

1. **Direct** (tag: real)
   The model returned per-layer attention probabilities. Reshape each layer
   into num_heads square matrices.

2. **Cache-derived** (tag: real or kv_derived)
   Rebuild attention from the projections the cache holds:

       scores[i][j] = Q[i] · K[j] / sqrt(head_dim)     (queries available → real)
       scores[i][j] = K[i] · K[j] / sqrt(head_dim)     (keys only        → kv_derived)

   then apply the causal mask and a row softmax. With queries this is the
   exact attention formula computed outside the model. With keys only it is
   a key-similarity proxy and is labelled as such.

3. **Synthetic** (tag: synthetic)
   Random causal attention with a bias toward the previous token and the
   diagonal. Only useful for exercising the rest of the pipeline; anything
   concluded from it is meaningless, which is why the tag travels with the
   tensor everywhere.

Cache layouts differ between model families and export formats: some store
keys as (heads, seq, head_dim), others as (seq, heads, head_dim). The layout
is chosen by a small decision table over the dimension sizes, see
detect_kv_layout().

If no dimension information survives at all, the resolver returns an empty
tensor tagged synthetic. An interactive session showing nothing is better
than one that crashes.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch

from src.circuitscope.outputs import ForwardOutput


logger = logging.getLogger(__name__)


class AttentionSource(str, Enum):
    """Where an attention tensor came from."""
    REAL = "real"
    KV_DERIVED = "kv_derived"
    SYNTHETIC = "synthetic"

    @property
    def label(self) -> str:
        return SOURCE_INFO[self]["label"]

    @property
    def description(self) -> str:
        return SOURCE_INFO[self]["description"]

    @property
    def is_research_grade(self) -> bool:
        return self is AttentionSource.REAL


SOURCE_INFO: Dict[AttentionSource, Dict[str, str]] = {
    AttentionSource.REAL: {
        "label": "✓ Real Attention",
        "style": "green",
        "description": "Extracted directly from model - research grade",
    },
    AttentionSource.KV_DERIVED: {
        "label": "~ KV-Derived",
        "style": "yellow",
        "description": "Approximated from K@K^T - shows key similarity patterns",
    },
    AttentionSource.SYNTHETIC: {
        "label": "⚠ Synthetic",
        "style": "red",
        "description": "Generated for demo - NOT research grade",
    },
}


@dataclass
class SyntheticAttentionConfig:
    """Shape and bias settings for the synthetic fallback."""
    base_noise: float = 0.5
    previous_bias: float = 0.3
    self_bias: float = 0.2
    num_layers: int = 6
    num_heads: int = 12
    seed: Optional[int] = None


@dataclass
class ResolvedAttention:
    """
    An attention tensor together with its provenance.

    Attributes:
        attention: (num_layers, num_heads, seq_len, seq_len) float32 tensor
        source: Which strategy produced it
        notes: Human-readable remarks about the resolution (layout swaps etc.)
    """
    attention: torch.Tensor
    source: AttentionSource
    notes: List[str] = field(default_factory=list)

    @property
    def num_layers(self) -> int:
        return self.attention.shape[0]

    @property
    def num_heads(self) -> int:
        return self.attention.shape[1] if self.attention.dim() > 1 else 0

    @property
    def seq_len(self) -> int:
        return self.attention.shape[-1] if self.attention.dim() == 4 else 0

    @property
    def is_empty(self) -> bool:
        return self.attention.numel() == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "source_label": self.source.label,
            "research_grade": self.source.is_research_grade,
            "notes": list(self.notes),
            "shape": list(self.attention.shape),
            "attention": self.attention.tolist(),
        }


def empty_attention() -> torch.Tensor:
    return torch.zeros((0, 0, 0, 0), dtype=torch.float32)


def causal_mask(seq_len: int) -> torch.Tensor:
    """Boolean (seq_len, seq_len) mask, True where j <= i."""
    return torch.tril(torch.ones(seq_len, seq_len, dtype=torch.bool))


def is_causal_distribution(attention: torch.Tensor, atol: float = 1e-6) -> bool:
    """
    Check the attention invariant on a (..., seq, seq) tensor: entries above
    the diagonal are exactly zero and every row sums to 1 within `atol`.
    """
    if attention.numel() == 0:
        return True
    seq_len = attention.shape[-1]
    if torch.any(attention.masked_fill(causal_mask(seq_len), 0.0) != 0):
        return False
    sums = attention.sum(dim=-1)
    return bool(torch.allclose(sums, torch.ones_like(sums), atol=atol))


# ============================================================================
# Strategy 1: direct attention weights
# ============================================================================

def attention_from_weights(
    attentions: Sequence[torch.Tensor],
    seq_len: int
) -> Optional[torch.Tensor]:
    """
    Reshape per-layer attention probabilities into a 4D tensor.

    Each layer may arrive as (batch, heads, seq, seq), (heads, seq, seq) or a
    flat buffer; anything whose size is a whole number of seq_len x seq_len
    matrices is accepted. Returns None if a layer does not fit, or if layers
    disagree on the head count.
    """
    if seq_len <= 0:
        return None

    layers = []
    for layer_attn in attentions:
        t = torch.as_tensor(layer_attn).detach().to("cpu", torch.float32)
        if t.dim() == 4:
            t = t[0]
        if t.numel() == 0 or t.numel() % (seq_len * seq_len) != 0:
            return None
        layers.append(t.reshape(-1, seq_len, seq_len))

    if not layers or len({layer.shape[0] for layer in layers}) != 1:
        return None

    return torch.stack(layers)


# ============================================================================
# Strategy 2: reconstruction from the key/value cache
# ============================================================================

class KVLayout(str, Enum):
    """Axis order of a per-layer projection after the batch axis is removed."""
    HEADS_FIRST = "heads_first"  # (heads, seq, head_dim)
    SEQ_FIRST = "seq_first"      # (seq, heads, head_dim)


# No released decoder uses more key heads than this
MAX_PLAUSIBLE_HEADS = 128

# Decision table over the two leading axes (a, b) of a projection and the
# realized sequence length s. Rows are checked in order; first match wins.
LAYOUT_RULES: List[Tuple[str, Callable[[int, int, int], bool], KVLayout]] = [
    ("second axis matches sequence length", lambda a, b, s: b == s and a != s, KVLayout.HEADS_FIRST),
    ("first axis matches sequence length", lambda a, b, s: a == s and b != s, KVLayout.SEQ_FIRST),
    ("first axis longer than prompt and larger than second",
     lambda a, b, s: a > s and b < a and b <= MAX_PLAUSIBLE_HEADS, KVLayout.SEQ_FIRST),
    ("first axis too large for a head count", lambda a, b, s: a > MAX_PLAUSIBLE_HEADS and a > b, KVLayout.SEQ_FIRST),
    ("default", lambda a, b, s: True, KVLayout.HEADS_FIRST),
]


def detect_kv_layout(a: int, b: int, seq_len: int) -> Tuple[KVLayout, str]:
    """
    Pick the axis order of a (a, b, head_dim) projection.

    Args:
        a: Size of the first non-batch axis
        b: Size of the second non-batch axis
        seq_len: Realized sequence length of the prompt

    Returns:
        Tuple of (layout, name of the rule that decided it)

    Example:
        GPT-2 cache, 12 heads, 7 tokens:   (12, 7, 64)  → HEADS_FIRST
        ONNX export, 7 tokens, 12 heads:   (7, 12, 64)  → SEQ_FIRST
    """
    for name, predicate, layout in LAYOUT_RULES:
        if predicate(a, b, seq_len):
            return layout, name
    return KVLayout.HEADS_FIRST, "default"


def normalize_projection(
    projection: torch.Tensor,
    seq_len: int,
    num_heads: Optional[int] = None
) -> Optional[Tuple[torch.Tensor, KVLayout, str]]:
    """
    Bring one layer's key or query projection to (heads, seq_len, head_dim).

    Accepts (batch, a, b, d), (a, b, d), or (seq, heads * d) when `num_heads`
    is known (a single head otherwise). When the cache holds more positions
    than the prompt, the most recent seq_len positions are kept.

    Returns:
        (projection, layout, rule) or None if the shape cannot be interpreted
    """
    t = torch.as_tensor(projection).detach().to("cpu", torch.float32)

    if t.dim() == 4:
        t = t[0]
    if t.dim() == 2:
        heads = num_heads if num_heads and t.shape[1] % num_heads == 0 else 1
        t = t.reshape(t.shape[0], heads, -1)
        layout, rule = KVLayout.SEQ_FIRST, "flat (seq, heads * head_dim)"
    elif t.dim() == 3:
        layout, rule = detect_kv_layout(t.shape[0], t.shape[1], seq_len)
    else:
        return None

    if layout == KVLayout.SEQ_FIRST:
        t = t.transpose(0, 1)

    if t.shape[1] < seq_len or t.shape[2] == 0 or seq_len <= 0:
        return None

    return t[:, -seq_len:, :].contiguous(), layout, rule


def scaled_dot_attention(queries: torch.Tensor, keys: torch.Tensor) -> torch.Tensor:
    """
    Causal attention probabilities from (heads, seq, d) queries and keys.

    Returns:
        (heads, seq, seq) tensor, rows summing to 1, zero above the diagonal
    """
    head_dim = keys.shape[-1]
    seq_len = keys.shape[1]
    scores = queries @ keys.transpose(-1, -2) / math.sqrt(head_dim)
    scores = scores.masked_fill(~causal_mask(seq_len), float("-inf"))
    weights = torch.softmax(scores, dim=-1)
    # softmax of -inf is 0, but keep the mask exact regardless of rounding
    return weights.masked_fill(~causal_mask(seq_len), 0.0)


def attention_from_cache(
    keys: Sequence[torch.Tensor],
    seq_len: int,
    queries: Optional[Sequence[torch.Tensor]] = None,
    num_heads: Optional[int] = None
) -> Optional[Tuple[torch.Tensor, bool, List[str]]]:
    """
    Reconstruct attention for every layer from cached projections.

    Uses Q·K when queries are given for every layer and their head count is a
    multiple of the key head count (grouped-query attention shares each key
    head among several query heads); otherwise falls back to K·K for all
    layers so the whole tensor carries one consistent meaning.

    Returns:
        (tensor, used_queries, notes) or None if any layer is unreadable
    """
    norm_keys = []
    notes = []
    for layer_idx, layer_keys in enumerate(keys):
        normalized = normalize_projection(layer_keys, seq_len, num_heads)
        if normalized is None:
            return None
        k, layout, rule = normalized
        if layout == KVLayout.SEQ_FIRST and layer_idx == 0:
            notes.append(f"Cache layout treated as (seq, heads, dim): {rule}")
        norm_keys.append(k)

    if not norm_keys or len({k.shape[0] for k in norm_keys}) != 1:
        return None

    norm_queries = None
    if queries is not None and len(queries) == len(norm_keys):
        norm_queries = []
        for layer_queries, k in zip(queries, norm_keys):
            normalized = normalize_projection(layer_queries, seq_len, num_heads)
            if normalized is None or normalized[0].shape[-1] != k.shape[-1]:
                norm_queries = None
                break
            q = normalized[0]
            if q.shape[0] % k.shape[0] != 0:
                norm_queries = None
                break
            norm_queries.append(q)

    layers = []
    if norm_queries is not None:
        for q, k in zip(norm_queries, norm_keys):
            k = k.repeat_interleave(q.shape[0] // k.shape[0], dim=0)
            layers.append(scaled_dot_attention(q, k))
    else:
        for k in norm_keys:
            layers.append(scaled_dot_attention(k, k))

    if len({layer.shape[0] for layer in layers}) != 1:
        return None

    return torch.stack(layers), norm_queries is not None, notes


# ============================================================================
# Strategy 3: synthetic fallback
# ============================================================================

def generate_synthetic_attention(
    seq_len: int,
    num_layers: int,
    num_heads: int,
    config: Optional[SyntheticAttentionConfig] = None
) -> torch.Tensor:
    """
    Random causal attention with previous-token and self bias.

    Every entry j <= i gets uniform noise in [0, base_noise), plus
    previous_bias on j == i - 1 and self_bias on j == i; rows are then
    normalized. The self bias keeps every row sum positive, so the result
    always satisfies the attention invariant whatever the random draw.
    """
    config = config or SyntheticAttentionConfig()
    if seq_len <= 0 or num_layers <= 0 or num_heads <= 0:
        return empty_attention()

    generator = None
    if config.seed is not None:
        generator = torch.Generator().manual_seed(config.seed)

    weights = torch.rand(num_layers, num_heads, seq_len, seq_len, generator=generator)
    weights = weights * config.base_noise
    weights = weights + config.previous_bias * torch.diag(torch.ones(seq_len - 1), -1)
    weights = weights + config.self_bias * torch.eye(seq_len)
    weights = weights.masked_fill(~causal_mask(seq_len), 0.0)

    return weights / weights.sum(dim=-1, keepdim=True)


# ============================================================================
# Resolver
# ============================================================================

def resolve_attention(
    output: ForwardOutput,
    seq_len: Optional[int] = None,
    num_layers: Optional[int] = None,
    num_heads: Optional[int] = None,
    synthetic_config: Optional[SyntheticAttentionConfig] = None
) -> ResolvedAttention:
    """
    Resolve the best available attention tensor for a forward pass.

    Args:
        output: Forward-pass output (any subset of fields may be present)
        seq_len: Realized sequence length (default: from output tokens)
        num_layers: Layer count for the synthetic fallback (default: probed)
        num_heads: Head count for flat caches and the synthetic fallback
        synthetic_config: Settings for the synthetic fallback

    Returns:
        ResolvedAttention. Never raises on degraded input.
    """
    if seq_len is None:
        seq_len = output.seq_len
    num_heads = num_heads or output.num_heads
    config = synthetic_config or SyntheticAttentionConfig()

    if output.has_attentions:
        tensor = attention_from_weights(output.attentions, seq_len)
        if tensor is not None:
            return ResolvedAttention(tensor, AttentionSource.REAL)
        logger.info("Attention weights present but not reshapeable to %d x %d", seq_len, seq_len)

    if output.has_keys:
        derived = attention_from_cache(
            output.keys,
            seq_len,
            queries=output.queries if output.has_queries else None,
            num_heads=num_heads,
        )
        if derived is not None:
            tensor, used_queries, notes = derived
            source = AttentionSource.REAL if used_queries else AttentionSource.KV_DERIVED
            logger.info("Attention reconstructed from cache (%s)", source.value)
            return ResolvedAttention(tensor, source, notes)
        logger.info("Key/value cache present but its layout was not recognised")

    layers = num_layers or output.num_layers or config.num_layers
    heads = num_heads or config.num_heads
    if not seq_len or seq_len <= 0:
        logger.warning("Could not determine sequence length; returning empty attention")
        return ResolvedAttention(
            empty_attention(),
            AttentionSource.SYNTHETIC,
            ["No usable attention data"],
        )

    logger.warning("No attention weights found, generating synthetic data")
    return ResolvedAttention(
        generate_synthetic_attention(seq_len, layers, heads, config),
        AttentionSource.SYNTHETIC,
        ["Synthetic attention - not research grade"],
    )
