"""
One analysis request, end to end.

    text ──► runtime.forward_pass ──► resolve_attention ──► detect circuits
                                 └──► final-position logits ──► top predictions
                                 └──► hidden states ──► logit lens (optional)

The result holds everything the interface shows, including the attention
source tag. Ablation then reuses the cached attention and logits, so trying
different masks never calls the model again.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import torch

from src.circuitscope.interpretability.ablation import (
    AblationEstimator,
    AblationMask,
    AblationReport,
    HeuristicAblationEstimator,
    apply_ablation,
    attention_impact_score,
)
from src.circuitscope.interpretability.attention_source import (
    AttentionSource,
    ResolvedAttention,
    SyntheticAttentionConfig,
    resolve_attention,
)
from src.circuitscope.interpretability.circuits import (
    CircuitFinding,
    CircuitType,
    DetectorThresholds,
    detect_circuits,
    heads_for_circuits,
)
from src.circuitscope.interpretability.logit_lens import (
    LayerPredictions,
    Prediction,
    find_convergence_layer,
    logit_lens,
    top_predictions,
)
from src.circuitscope.vocab import VocabInference, final_position_logits, infer_vocab_size


logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Everything one analysis produced, as plain data."""
    text: str
    tokens: List[str]
    token_ids: List[int]
    attention: ResolvedAttention
    circuits: List[CircuitFinding]
    final_logits: Optional[torch.Tensor]
    top_predictions: List[Prediction]
    vocab: Optional[VocabInference] = None
    logit_lens: List[LayerPredictions] = field(default_factory=list)

    @property
    def attention_source(self) -> AttentionSource:
        return self.attention.source

    @property
    def convergence_layer(self) -> Optional[LayerPredictions]:
        return find_convergence_layer(self.logit_lens)

    def to_dict(self, include_attention: bool = False) -> Dict:
        attention = self.attention.to_dict()
        if not include_attention:
            attention.pop("attention")
        converged = self.convergence_layer
        return {
            "text": self.text,
            "tokens": list(self.tokens),
            "token_ids": list(self.token_ids),
            "attention_source": self.attention_source.value,
            "attention": attention,
            "circuits": [c.to_dict() for c in self.circuits],
            "top_predictions": [vars(p).copy() for p in self.top_predictions],
            "vocab_size": self.vocab.size if self.vocab else None,
            "logit_lens": [layer.to_dict() for layer in self.logit_lens],
            "convergence_layer": converged.layer_name if converged else None,
        }


class CircuitAnalyzer:
    """
    Runs the analysis pipeline against a model runtime.

    Args:
        runtime: A ModelRuntime (ModelSession or a stand-in)
        thresholds: Circuit detector bands
        estimator: Ablation estimator (heuristic by default)
        synthetic_config: Settings for the synthetic attention fallback
        top_k: Number of next-token predictions to report

    Example:
        analyzer = CircuitAnalyzer(session)
        result = analyzer.analyze("The cat sat on the mat. The cat")
        report = analyzer.ablate(result, circuit_type=CircuitType.INDUCTION)
    """

    def __init__(
        self,
        runtime,
        thresholds: Optional[DetectorThresholds] = None,
        estimator: Optional[AblationEstimator] = None,
        synthetic_config: Optional[SyntheticAttentionConfig] = None,
        top_k: int = 5
    ):
        self.runtime = runtime
        self.thresholds = thresholds or DetectorThresholds()
        self.estimator = estimator or HeuristicAblationEstimator()
        self.synthetic_config = synthetic_config
        self.top_k = top_k

    def decode(self, token_id: int) -> str:
        return self.runtime.decode_token(token_id)

    def analyze(self, text: str, with_logit_lens: bool = False) -> AnalysisResult:
        """Run the model on `text` and analyze the result."""
        output = self.runtime.forward_pass(
            text,
            output_attentions=True,
            output_hidden_states=with_logit_lens,
        )

        resolved = resolve_attention(output, synthetic_config=self.synthetic_config)
        circuits = detect_circuits(resolved.attention, output.tokens, self.thresholds)

        vocab = None
        final_logits = None
        predictions = []
        if output.logits is not None and output.logits.numel() > 0:
            vocab = infer_vocab_size(
                output.logits,
                output.seq_len,
                model_name=getattr(self.runtime, "model_type", None),
                declared=output.vocab_size,
            )
            final_logits = final_position_logits(output.logits, vocab.size)
            predictions = top_predictions(final_logits, self.decode, self.top_k)
        else:
            logger.warning("Model returned no logits; skipping predictions")

        lens = []
        if with_logit_lens:
            unembed = getattr(self.runtime, "unembed", None)
            if output.has_hidden_states and unembed is not None and final_logits is not None:
                lens = logit_lens(output.hidden_states, unembed, final_logits, self.decode, self.top_k)
            else:
                logger.warning("Hidden states unavailable; skipping logit lens")

        return AnalysisResult(
            text=text,
            tokens=list(output.tokens),
            token_ids=list(output.token_ids),
            attention=resolved,
            circuits=circuits,
            final_logits=final_logits,
            top_predictions=predictions,
            vocab=vocab,
            logit_lens=lens,
        )

    def mask_for(
        self,
        result: AnalysisResult,
        heads: Optional[Iterable[Tuple[int, int]]] = None,
        circuit_type: Optional[CircuitType] = None
    ) -> AblationMask:
        """Explicit heads, or every head behind the detected circuits."""
        if heads is not None:
            return heads if isinstance(heads, AblationMask) else AblationMask(heads)
        return AblationMask(heads_for_circuits(result.circuits, circuit_type))

    def ablate(
        self,
        result: AnalysisResult,
        heads: Optional[Iterable[Tuple[int, int]]] = None,
        circuit_type: Optional[CircuitType] = None
    ) -> Optional[AblationReport]:
        """
        Estimate the effect of ablating heads on the next-token distribution.

        With neither `heads` nor `circuit_type`, every head of every detected
        circuit is ablated.

        Returns:
            AblationReport, or None when the mask is empty or there are no
            logits to compare
        """
        mask = self.mask_for(result, heads, circuit_type)
        report = self.estimator.estimate(
            result.attention.attention,
            mask,
            result.final_logits,
            decoder=self.decode,
            attention_source=result.attention_source,
        )
        if report is not None:
            _, report.attention_impact = self.ablated_attention(result, mask)
        return report

    def ablated_attention(
        self,
        result: AnalysisResult,
        heads: Optional[Iterable[Tuple[int, int]]] = None,
        circuit_type: Optional[CircuitType] = None
    ) -> Tuple[torch.Tensor, float]:
        """
        Attention with the masked heads made uniform, and how much it changed.

        Returns:
            (ablated attention tensor, impact score in [0, 1])
        """
        mask = self.mask_for(result, heads, circuit_type)
        ablated = apply_ablation(result.attention.attention, mask)
        return ablated, attention_impact_score(result.attention.attention, ablated)
