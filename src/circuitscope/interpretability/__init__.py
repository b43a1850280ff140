"""
Circuit analysis for pretrained language models.

Key Capabilities:
    - Attention Source Resolution: get an attention tensor from whatever a
      forward pass returns, tagged real, kv_derived or synthetic
    - Circuit Detection: find previous-token, induction and duplicate-token heads
    - Ablation: estimate how switching heads off shifts the next-token
      distribution (heuristic, no model re-run)
    - Steering: build contrastive steering vectors and apply them during
      generation
    - Logit Lens: top predictions at every layer

Example Usage:
    # Via CLI
    python main.py analyze gpt2 --text "The cat sat on the mat. The cat"
    python main.py ablate gpt2 --text "The cat sat on the mat. The cat" --circuit induction

    # Via Python API
    from src.circuitscope.runtime import ModelSession
    from src.circuitscope.interpretability import CircuitAnalyzer

    analyzer = CircuitAnalyzer(ModelSession.from_pretrained("gpt2"))
    result = analyzer.analyze("The cat sat on the mat. The cat")

References:
    - Induction Heads: https://transformer-circuits.pub/2022/in-context-learning-and-induction-heads/
    - Logit Lens: https://www.lesswrong.com/posts/AcKRB8wDpdaN6v6ru/
    - Activation Addition: https://arxiv.org/abs/2312.06681
"""

from .attention_source import (
    AttentionSource,
    ResolvedAttention,
    SyntheticAttentionConfig,
    resolve_attention,
)
from .circuits import (
    CircuitDetector,
    CircuitFinding,
    CircuitType,
    Confidence,
    DetectorThresholds,
    detect_circuits,
)
from .ablation import (
    AblationEstimator,
    AblationImpact,
    AblationMask,
    AblationParameters,
    AblationReport,
    HeuristicAblationEstimator,
    apply_ablation,
)
from .steering import (
    SteeringConfig,
    SteeringVector,
    build_steering_vector,
    compute_steering_vector,
)
from .logit_lens import logit_lens, top_predictions
from .pipeline import AnalysisResult, CircuitAnalyzer

__all__ = [
    "AttentionSource",
    "ResolvedAttention",
    "SyntheticAttentionConfig",
    "resolve_attention",
    "CircuitDetector",
    "CircuitFinding",
    "CircuitType",
    "Confidence",
    "DetectorThresholds",
    "detect_circuits",
    "AblationEstimator",
    "AblationImpact",
    "AblationMask",
    "AblationParameters",
    "AblationReport",
    "HeuristicAblationEstimator",
    "apply_ablation",
    "SteeringConfig",
    "SteeringVector",
    "build_steering_vector",
    "compute_steering_vector",
    "logit_lens",
    "top_predictions",
    "AnalysisResult",
    "CircuitAnalyzer",
]
