"""
Head Ablation Impact Estimation

Estimates what happens to the model's next-token distribution when a set of
attention heads is switched off, without running the model again.

Why estimate instead of re-running?
-----------------------------------
The exact method is to zero the heads' attention weights and run the forward
pass again. That costs a full model call for every mask a user tries, which
is too slow for clicking through heads interactively. Instead we estimate the
effect from data we already have: the attention tensor and the final-position
logits of the original run.

THE RESULT IS A HEURISTIC, NOT A MEASUREMENT. Every report carries
method="heuristic" and the source tag of the attention it was computed from.
The estimator sits behind AblationEstimator so an exact re-run
implementation can replace it without changing the report format.

The Heuristic:
--------------
1. **Head importance** (per ablated head), from the final query row:

       focus   = 1 - entropy(row) / log2(seq_len)       (sharp = important)
       recency = mean attention over the last min(5, seq_len) keys
       importance = (0.6 * focus + 0.4 * recency) * layer_weight

       layer_weight = ((layer + 1) / num_layers)^2 + 0.1

   Later layers sit closer to the output, so they weigh more.

2. **Ablation strength**:

       strength = sqrt(heads_ablated / total_heads) * (0.5 + 1.5 * mean_importance)

   The square root gives diminishing returns: ablating many unimportant
   heads should not flatten the whole distribution.

3. **Counterfactual logits**: only the original top-10 tokens are touched:

       penalty[rank] = strength * prob * exp(-0.3 * rank) * 8

   Ablation is modelled as losing confidence in what was already likely.
   The removed mass spreads over the vocabulary through the softmax.

4. **Comparison**: top token before/after, probability shift, entropy
   change, KL(original || ablated), and how the original top-5 moved.

All constants live in AblationParameters. They are hand-tuned, so treat them
as knobs rather than derived quantities.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch

from src.circuitscope.errors import AblationMaskError
from src.circuitscope.interpretability.attention_source import AttentionSource, causal_mask
from src.circuitscope.tensor_ops import PROB_FLOOR, entropy_bits, kl_divergence, stable_softmax
from src.circuitscope.vocab import final_position_logits


logger = logging.getLogger(__name__)

TokenDecoder = Callable[[int], str]


@dataclass
class AblationParameters:
    """Tunable constants of the heuristic estimator."""
    penalized_top_k: int = 10
    rank_decay: float = 0.3
    penalty_scale: float = 8.0
    recency_window: int = 5
    focus_weight: float = 0.6
    recency_weight: float = 0.4
    strength_base: float = 0.5
    strength_slope: float = 1.5
    layer_weight_floor: float = 0.1
    rank_report_size: int = 5


# ============================================================================
# Ablation mask
# ============================================================================

class AblationMask:
    """
    An ordered set of unique (layer, head) pairs to ablate.

    Duplicates are dropped on construction. Bounds are checked against a
    concrete tensor with validate().

    Example:
        mask = AblationMask([(3, 1), (5, 0)])
        mask = AblationMask.parse(["3.1", "L5H0"])
    """

    def __init__(self, heads: Iterable[Tuple[int, int]] = ()):
        self._heads: List[Tuple[int, int]] = []
        for pair in heads:
            try:
                layer, head = (int(x) for x in pair)
            except (TypeError, ValueError):
                raise AblationMaskError(f"Malformed head reference: {pair!r}")
            if (layer, head) not in self._heads:
                self._heads.append((layer, head))

    @classmethod
    def parse(cls, specs: Iterable[str]) -> "AblationMask":
        """Build a mask from strings like "3.1", "3:1" or "L3H1"."""
        heads = []
        for spec in specs:
            text = spec.strip().upper()
            if text.startswith("L") and "H" in text:
                layer, head = text[1:].split("H", 1)
            else:
                parts = text.replace(":", ".").split(".")
                if len(parts) != 2:
                    raise AblationMaskError(f"Cannot parse head reference {spec!r} (expected LAYER.HEAD)")
                layer, head = parts
            heads.append((layer, head))
        return cls(heads)

    def validate(self, num_layers: int, num_heads: int):
        """Raise AblationMaskError if any pair lies outside the tensor."""
        for layer, head in self._heads:
            if not (0 <= layer < num_layers) or not (0 <= head < num_heads):
                raise AblationMaskError(
                    f"Head L{layer}H{head} does not exist "
                    f"(model has {num_layers} layers x {num_heads} heads)"
                )

    def __iter__(self):
        return iter(self._heads)

    def __len__(self):
        return len(self._heads)

    def __contains__(self, item):
        return tuple(item) in self._heads

    def __repr__(self):
        return f"AblationMask({self._heads!r})"

    def to_list(self) -> List[Tuple[int, int]]:
        return list(self._heads)


# ============================================================================
# Report types
# ============================================================================

class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def description(self) -> str:
        return {
            ImpactLevel.HIGH: "These heads significantly affect model predictions",
            ImpactLevel.MEDIUM: "These heads have moderate influence on predictions",
            ImpactLevel.LOW: "These heads have minimal effect on predictions",
        }[self]


def classify_impact(kl: float, probability_shift: float) -> ImpactLevel:
    """Bucket an impact by min(1, 5 * KL + 2 * |shift|)."""
    effective = min(1.0, kl * 5 + abs(probability_shift) * 2)
    if effective > 0.3:
        return ImpactLevel.HIGH
    if effective > 0.15:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


@dataclass
class RankChange:
    token: str
    original_rank: int
    ablated_rank: int
    prob_change: float


@dataclass
class AblationImpact:
    """How the final-position distribution moved under ablation."""
    original_top_token: str
    original_top_prob: float
    ablated_top_token: str
    ablated_top_prob: float
    probability_shift: float
    entropy_change: float
    kl_divergence: float
    rank_changes: List[RankChange] = field(default_factory=list)

    @property
    def level(self) -> ImpactLevel:
        return classify_impact(self.kl_divergence, self.probability_shift)


@dataclass
class HeadImportance:
    layer: int
    head: int
    importance: float
    percentage: float = 0.0

    @property
    def head_label(self) -> str:
        return f"L{self.layer}H{self.head}"


@dataclass
class AblationReport:
    """
    Full result of one ablation request.

    Attributes:
        impact: Distributional comparison before/after
        contributions: Ablated heads ranked by importance
        ablated_heads: The mask, as (layer, head) pairs
        strength: Combined ablation strength that drove the penalty
        attention_source: Provenance of the attention the estimate used
        method: "heuristic" for estimates; an exact estimator reports its own
        attention_impact: How far the ablated heads' patterns moved, in [0, 1]
    """
    impact: AblationImpact
    contributions: List[HeadImportance]
    ablated_heads: List[Tuple[int, int]]
    strength: float
    attention_source: AttentionSource
    method: str
    attention_impact: Optional[float] = None

    @property
    def is_estimate(self) -> bool:
        return self.method == "heuristic"

    @property
    def disclaimer(self) -> str:
        parts = []
        if self.is_estimate:
            parts.append("Estimated from attention patterns; the model was not re-run.")
        if not self.attention_source.is_research_grade:
            parts.append(f"Attention source: {self.attention_source.label}.")
        return " ".join(parts)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["attention_source"] = self.attention_source.value
        data["impact_level"] = self.impact.level.value
        data["disclaimer"] = self.disclaimer
        return data


# ============================================================================
# Head importance
# ============================================================================

def head_importance(
    attention: torch.Tensor,
    layer: int,
    head: int,
    params: Optional[AblationParameters] = None
) -> float:
    """
    Unweighted importance of one head from its final query row.

    Combines focus (1 - normalized entropy) and recency (mean attention over
    the last few keys). Range is roughly [0, 1].
    """
    params = params or AblationParameters()
    matrix = attention[layer, head]
    seq_len = matrix.shape[0]
    if seq_len == 0:
        return 0.0

    last_row = matrix[seq_len - 1].detach().cpu().numpy().astype(np.float64)

    entropy = entropy_bits(last_row)
    max_entropy = math.log2(seq_len)
    normalized_entropy = entropy / max_entropy if max_entropy > 0 else 0.0
    focus_score = 1.0 - normalized_entropy

    window = min(params.recency_window, seq_len)
    recency_score = float(last_row[seq_len - window:].sum()) / window

    return focus_score * params.focus_weight + recency_score * params.recency_weight


def layer_weight(layer: int, num_layers: int, params: Optional[AblationParameters] = None) -> float:
    """((layer + 1) / num_layers)^2 + floor."""
    params = params or AblationParameters()
    return ((layer + 1) / num_layers) ** 2 + params.layer_weight_floor


def weighted_head_importance(
    attention: torch.Tensor,
    layer: int,
    head: int,
    params: Optional[AblationParameters] = None
) -> float:
    return head_importance(attention, layer, head, params) * layer_weight(layer, attention.shape[0], params)


def analyze_head_contributions(
    attention: torch.Tensor,
    mask: AblationMask,
    params: Optional[AblationParameters] = None
) -> List[HeadImportance]:
    """
    Rank the heads of a mask by weighted importance.

    Returns:
        HeadImportance list, highest first, with each head's share of the
        mask's total importance as a percentage
    """
    if len(mask) == 0 or attention.numel() == 0:
        return []

    contributions = [
        HeadImportance(layer, head, weighted_head_importance(attention, layer, head, params))
        for layer, head in mask
    ]
    contributions.sort(key=lambda c: c.importance, reverse=True)

    total = sum(c.importance for c in contributions)
    for c in contributions:
        c.percentage = (c.importance / total) * 100 if total > 0 else 0.0

    return contributions


def ablation_strength(
    num_ablated: int,
    total_heads: int,
    mean_importance: float,
    params: Optional[AblationParameters] = None
) -> float:
    """sqrt(fraction ablated) * (base + slope * mean importance)."""
    params = params or AblationParameters()
    fraction = num_ablated / total_heads if total_heads > 0 else 0.0
    return math.sqrt(fraction) * (params.strength_base + mean_importance * params.strength_slope)


# ============================================================================
# Distribution comparison
# ============================================================================

def descending_order(probs: np.ndarray) -> np.ndarray:
    """Indices sorted by probability, highest first; ties keep index order."""
    return np.argsort(-probs, kind="stable")


def penalize_top_logits(
    logits: np.ndarray,
    strength: float,
    params: Optional[AblationParameters] = None
) -> np.ndarray:
    """
    Lower the logits of the original top-k tokens by a rank-decaying penalty.

    All other logits are returned unchanged.
    """
    params = params or AblationParameters()
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    probs = stable_softmax(logits)
    order = descending_order(probs)

    penalized = logits.copy()
    for rank, idx in enumerate(order[:params.penalized_top_k]):
        penalty = strength * probs[idx] * math.exp(-rank * params.rank_decay) * params.penalty_scale
        penalized[idx] -= penalty

    return penalized


def safe_decode(decoder: Optional[TokenDecoder], token_id: int) -> str:
    """Decode a token id, falling back to "[id]" on any decoder failure."""
    if decoder is not None:
        try:
            text = decoder(int(token_id))
            if text:
                return text
        except Exception:  # noqa: BLE001 - third-party tokenizers raise anything
            logger.debug("Could not decode token %d", token_id)
    return f"[{int(token_id)}]"


def compare_distributions(
    original_logits,
    ablated_logits,
    decoder: Optional[TokenDecoder] = None,
    report_size: int = 5
) -> AblationImpact:
    """
    Compare two logit vectors over the same vocabulary.

    Args:
        original_logits: Logits of the unmodified run
        ablated_logits: Logits after ablation (estimated or measured)
        decoder: Maps token id to display string
        report_size: How many of the original top tokens to track

    Returns:
        AblationImpact. Ranks are 1-based.
    """
    original_probs = stable_softmax(original_logits)
    ablated_probs = stable_softmax(ablated_logits)

    original_order = descending_order(original_probs)
    ablated_order = descending_order(ablated_probs)

    ablated_rank = np.empty_like(ablated_order)
    ablated_rank[ablated_order] = np.arange(1, len(ablated_order) + 1)

    original_top = int(original_order[0])
    ablated_top = int(ablated_order[0])

    rank_changes = [
        RankChange(
            token=safe_decode(decoder, idx),
            original_rank=rank,
            ablated_rank=int(ablated_rank[idx]),
            prob_change=float(ablated_probs[idx] - original_probs[idx]),
        )
        for rank, idx in enumerate(original_order[:report_size], start=1)
    ]

    return AblationImpact(
        original_top_token=safe_decode(decoder, original_top),
        original_top_prob=float(original_probs[original_top]),
        ablated_top_token=safe_decode(decoder, ablated_top),
        ablated_top_prob=float(ablated_probs[ablated_top]),
        probability_shift=float(ablated_probs[ablated_top] - original_probs[original_top]),
        entropy_change=entropy_bits(ablated_probs) - entropy_bits(original_probs),
        kl_divergence=kl_divergence(original_probs, ablated_probs),
        rank_changes=rank_changes,
    )


# ============================================================================
# Estimators
# ============================================================================

class AblationEstimator(ABC):
    """
    Produces an AblationReport for a mask.

    Subclasses decide how the counterfactual logits are obtained; reporting
    is shared so every estimator yields the same report format.
    """

    method = "abstract"

    def __init__(self, params: Optional[AblationParameters] = None):
        self.params = params or AblationParameters()

    @abstractmethod
    def counterfactual_logits(
        self,
        attention: torch.Tensor,
        mask: AblationMask,
        logits: np.ndarray
    ) -> Tuple[np.ndarray, float]:
        """Return (logits with the mask's heads ablated, strength)."""

    def estimate(
        self,
        attention: torch.Tensor,
        mask: AblationMask,
        logits,
        decoder: Optional[TokenDecoder] = None,
        attention_source: AttentionSource = AttentionSource.REAL
    ) -> Optional[AblationReport]:
        """
        Estimate the impact of ablating `mask`.

        Logits may be (vocab,) or batched; batched logits are read at their
        last position.

        Returns:
            AblationReport, or None when the mask is empty, the logits are
            missing or the attention tensor is empty

        Raises:
            AblationMaskError: If the mask references a head outside the tensor
        """
        if len(mask) == 0 or logits is None or attention is None or attention.numel() == 0:
            return None

        logits = torch.as_tensor(logits).detach().to("cpu", torch.float64)
        if logits.dim() > 1:
            logits = final_position_logits(logits, logits.shape[-1])
        logits = logits.numpy().reshape(-1)
        if logits.size == 0:
            return None

        mask.validate(attention.shape[0], attention.shape[1])

        ablated_logits, strength = self.counterfactual_logits(attention, mask, logits)
        impact = compare_distributions(logits, ablated_logits, decoder, self.params.rank_report_size)

        return AblationReport(
            impact=impact,
            contributions=analyze_head_contributions(attention, mask, self.params),
            ablated_heads=mask.to_list(),
            strength=strength,
            attention_source=AttentionSource(attention_source),
            method=self.method,
        )


class HeuristicAblationEstimator(AblationEstimator):
    """Estimates ablation from attention patterns alone (see module docstring)."""

    method = "heuristic"

    def compute_strength(self, attention: torch.Tensor, mask: AblationMask) -> float:
        num_layers, num_heads = attention.shape[0], attention.shape[1]
        importances = [
            weighted_head_importance(attention, layer, head, self.params)
            for layer, head in mask
        ]
        mean_importance = sum(importances) / len(importances)
        strength = ablation_strength(len(mask), num_layers * num_heads, mean_importance, self.params)
        logger.debug(
            "Ablating %d/%d heads: mean importance %.4f, strength %.4f",
            len(mask), num_layers * num_heads, mean_importance, strength,
        )
        return strength

    def counterfactual_logits(self, attention, mask, logits):
        strength = self.compute_strength(attention, mask)
        return penalize_top_logits(logits, strength, self.params), strength


def estimate_ablation_impact(
    attention: torch.Tensor,
    mask: AblationMask,
    logits,
    decoder: Optional[TokenDecoder] = None,
    attention_source: AttentionSource = AttentionSource.REAL,
    params: Optional[AblationParameters] = None
) -> Optional[AblationReport]:
    """Convenience wrapper around HeuristicAblationEstimator.estimate()."""
    return HeuristicAblationEstimator(params).estimate(
        attention, mask, logits, decoder, attention_source
    )


# ============================================================================
# Attention-level ablation
# ============================================================================

def apply_ablation(attention: torch.Tensor, mask: AblationMask) -> torch.Tensor:
    """
    Copy an attention tensor with the masked heads replaced by uniform causal
    attention (row i spreads 1 / (i + 1) over positions 0..i).

    Uniform rather than zero keeps every row a valid distribution. The input
    is never modified; an empty mask returns an equal, independent copy.
    """
    ablated = attention.clone()
    if len(mask) == 0 or ablated.numel() == 0:
        return ablated

    mask.validate(ablated.shape[0], ablated.shape[1])

    seq_len = ablated.shape[-1]
    positions = torch.arange(1, seq_len + 1, dtype=ablated.dtype).unsqueeze(1)
    uniform = causal_mask(seq_len).to(ablated.dtype) / positions

    for layer, head in mask:
        ablated[layer, head] = uniform

    return ablated


def attention_impact_score(original: torch.Tensor, ablated: torch.Tensor) -> float:
    """
    How much two attention tensors differ: min(1, 2 * mean |original - ablated|)
    over their overlapping region.
    """
    if original is None or ablated is None or original.numel() == 0 or ablated.numel() == 0:
        return 0.0

    region = tuple(slice(0, min(a, b)) for a, b in zip(original.shape, ablated.shape))
    diff = (original[region] - ablated[region]).abs()
    if diff.numel() == 0:
        return 0.0
    return min(1.0, float(diff.mean()) * 2)
