"""
Circuit Detection

Scans every attention head for three well-known patterns and reports the
heads that show them, with a score, a confidence label and a concrete piece
of evidence.

The Three Patterns:
-------------------
1. **Previous Token Head**
   Position i attends to position i-1. Score = mean of the sub-diagonal:

       score = mean(attn[i, i-1] for i in 1..seq_len-1)

2. **Induction Head**
   When token X appears again, the head looks at what FOLLOWED the earlier X:

       Tokens:  The  cat  sat  ...  The  [?]
                 0    1    2         7
       Position 7 ("The" again) should attend to position 1 ("cat")

       score = mean(attn[i, j+1] for every equal-token pair j < i with j+1 < i)

3. **Duplicate Token Head**
   When token X appears again, the head looks at the earlier X ITSELF:

       score = mean(attn[i, j] for every equal-token pair j < i)

Induction and duplicate-token heads look almost the same on paper, but one
reads the token after the match and the other reads the match. They are
different circuits (the induction head needs a previous-token head feeding
it; the duplicate head does not), so they are scored separately.

Tokens are compared case-insensitively after stripping whitespace, so " The"
and "the" count as the same token.

Reporting:
----------
Each pattern has its own emit threshold and confidence bands, because the
three scores are not on comparable scales. A head below the emit threshold
produces no finding at all. Findings from all heads and all types are sorted
together by score; one head may appear under several types.

References:
-----------
- In-context Learning and Induction Heads (Olsson et al., 2022)
  https://transformer-circuits.pub/2022/in-context-learning-and-induction-heads/
- Interpretability in the Wild (Wang et al., 2022) - duplicate token heads
  https://arxiv.org/abs/2211.00593
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch


logger = logging.getLogger(__name__)


class CircuitType(str, Enum):
    PREVIOUS_TOKEN = "previous_token"
    INDUCTION = "induction"
    DUPLICATE_TOKEN = "duplicate_token"

    @property
    def display_name(self) -> str:
        return {
            CircuitType.PREVIOUS_TOKEN: "Previous Token Head",
            CircuitType.INDUCTION: "Induction Head",
            CircuitType.DUPLICATE_TOKEN: "Duplicate Token Head",
        }[self]


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ConfidenceBands:
    """
    Score cut-offs for one detector.

    A score must exceed `threshold` to be reported at all. Reported scores
    are labelled high from `high` upward, medium from `medium` upward, and
    low otherwise.
    """
    threshold: float
    medium: float
    high: float

    def classify(self, score: float) -> Confidence:
        if score >= self.high:
            return Confidence.HIGH
        if score >= self.medium:
            return Confidence.MEDIUM
        return Confidence.LOW


@dataclass
class DetectorThresholds:
    """Per-detector bands. Override any of them to tune the detector."""
    previous_token: ConfidenceBands = field(default_factory=lambda: ConfidenceBands(0.3, 0.5, 0.7))
    induction: ConfidenceBands = field(default_factory=lambda: ConfidenceBands(0.2, 0.35, 0.5))
    duplicate_token: ConfidenceBands = field(default_factory=lambda: ConfidenceBands(0.25, 0.4, 0.55))

    def for_type(self, circuit_type: CircuitType) -> ConfidenceBands:
        return getattr(self, circuit_type.value)


@dataclass(frozen=True)
class DetectionResult:
    """Raw output of one detector on one head."""
    score: float
    evidence: str = ""


@dataclass(frozen=True)
class CircuitFinding:
    """A head that shows one of the circuit patterns."""
    type: CircuitType
    layer: int
    head: int
    score: float
    confidence: Confidence
    evidence: str
    explanation: str

    @property
    def head_label(self) -> str:
        return f"L{self.layer}H{self.head}"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["confidence"] = self.confidence.value
        return data


def normalize_token(token: Optional[str]) -> str:
    return (token or "").strip().lower()


def detect_previous_token_head(matrix: np.ndarray) -> DetectionResult:
    """
    Score how strongly a head attends to the immediately preceding position.

    Args:
        matrix: (seq_len, seq_len) attention matrix

    Returns:
        DetectionResult whose evidence names the strongest single position
    """
    seq_len = matrix.shape[0]
    if seq_len < 2:
        return DetectionResult(0.0)

    sub_diagonal = np.array([matrix[i, i - 1] for i in range(1, seq_len)])
    best = int(np.argmax(sub_diagonal))
    best_pos = best + 1
    best_value = float(sub_diagonal[best])

    evidence = ""
    if best_value > 0:
        evidence = f"Position {best_pos} attends {best_value * 100:.0f}% to position {best_pos - 1}"

    return DetectionResult(float(sub_diagonal.mean()), evidence)


def detect_induction_head(matrix: np.ndarray, tokens: Sequence[str]) -> DetectionResult:
    """
    Score attention from a repeated token to the position after its earlier
    occurrence.

    For tokens [A, B, C, A], the second A (position 3) matches position 0, so
    we read attn[3, 1] - attention to B, the token that followed the first A.

    Args:
        matrix: (seq_len, seq_len) attention matrix
        tokens: Token strings for the same positions

    Returns:
        DetectionResult with the best matching example as evidence
    """
    seq_len = min(len(tokens), matrix.shape[0])
    if seq_len < 4:
        return DetectionResult(0.0)

    normalized = [normalize_token(t) for t in tokens[:seq_len]]
    total = 0.0
    pairs = 0
    best_value = 0.0
    best_example = ""

    for i in range(2, seq_len):
        if not normalized[i]:
            continue
        for j in range(i - 1):
            if normalized[j] != normalized[i]:
                continue
            value = float(matrix[i, j + 1])
            total += value
            pairs += 1
            if value > best_value:
                best_value = value
                best_example = (
                    f'"{tokens[i]}" at pos {i} attends {value * 100:.0f}% '
                    f'to pos {j + 1} (after prev "{tokens[j]}")'
                )

    if pairs == 0:
        return DetectionResult(0.0)

    evidence = best_example or f"Found {pairs} potential induction patterns"
    return DetectionResult(total / pairs, evidence)


def detect_duplicate_token_head(matrix: np.ndarray, tokens: Sequence[str]) -> DetectionResult:
    """
    Score attention from a repeated token to its own earlier occurrence.

    Same token pairs as the induction detector, but reads attn[i, j] (the
    match) instead of attn[i, j+1] (what followed the match).
    """
    seq_len = min(len(tokens), matrix.shape[0])
    if seq_len < 2:
        return DetectionResult(0.0)

    normalized = [normalize_token(t) for t in tokens[:seq_len]]
    total = 0.0
    pairs = 0
    best_value = 0.0
    best_example = ""

    for i in range(1, seq_len):
        if not normalized[i]:
            continue
        for j in range(i):
            if normalized[j] != normalized[i]:
                continue
            value = float(matrix[i, j])
            total += value
            pairs += 1
            if value > best_value:
                best_value = value
                best_example = (
                    f'"{tokens[i]}" at pos {i} attends {value * 100:.0f}% '
                    f'to same token at pos {j}'
                )

    if pairs == 0:
        return DetectionResult(0.0)

    evidence = best_example or f"Found {pairs} duplicate token patterns"
    return DetectionResult(total / pairs, evidence)


def _explain(circuit_type: CircuitType, layer: int, head: int, result: DetectionResult) -> str:
    label = f"L{layer}H{head}"
    if circuit_type == CircuitType.PREVIOUS_TOKEN:
        return (
            f"Head {label} primarily attends to the previous token "
            f"(avg {result.score * 100:.0f}% attention). This helps the model "
            f"understand word order and local context."
        )
    if circuit_type == CircuitType.INDUCTION:
        return (
            f"Head {label} shows induction behavior - it copies tokens that "
            f"followed similar previous tokens. {result.evidence}"
        )
    return f"Head {label} attends to duplicate tokens in the sequence. {result.evidence}"


class CircuitDetector:
    """
    Runs all three detectors over every head of an attention tensor.

    Example:
        detector = CircuitDetector()
        findings = detector.detect(resolved.attention, tokens)

        for finding in findings[:5]:
            print(f"{finding.head_label} {finding.type.value}: {finding.score:.2f}")
    """

    def __init__(self, thresholds: Optional[DetectorThresholds] = None):
        self.thresholds = thresholds or DetectorThresholds()

    def scan_head(
        self,
        matrix: np.ndarray,
        tokens: Sequence[str]
    ) -> Dict[CircuitType, DetectionResult]:
        """Raw scores of all three detectors for one head (no thresholding)."""
        return {
            CircuitType.PREVIOUS_TOKEN: detect_previous_token_head(matrix),
            CircuitType.INDUCTION: detect_induction_head(matrix, tokens),
            CircuitType.DUPLICATE_TOKEN: detect_duplicate_token_head(matrix, tokens),
        }

    def detect(self, attention: torch.Tensor, tokens: Sequence[str]) -> List[CircuitFinding]:
        """
        Find circuit heads in a (layers, heads, seq, seq) attention tensor.

        Returns:
            Findings sorted by score, highest first. Empty when the tensor or
            the token list is empty.
        """
        if attention is None or attention.numel() == 0 or not tokens:
            return []

        attn = attention.detach().cpu().numpy()
        num_layers, num_heads = attn.shape[0], attn.shape[1]
        logger.debug(
            "Circuit detection: %d layers, %d heads, %d tokens",
            num_layers, num_heads, len(tokens),
        )

        findings = []
        for layer in range(num_layers):
            for head in range(num_heads):
                results = self.scan_head(attn[layer, head], tokens)
                for circuit_type, result in results.items():
                    bands = self.thresholds.for_type(circuit_type)
                    if result.score <= bands.threshold:
                        continue
                    findings.append(CircuitFinding(
                        type=circuit_type,
                        layer=layer,
                        head=head,
                        score=result.score,
                        confidence=bands.classify(result.score),
                        evidence=result.evidence,
                        explanation=_explain(circuit_type, layer, head, result),
                    ))

        findings.sort(key=lambda f: f.score, reverse=True)
        return findings


def detect_circuits(
    attention: torch.Tensor,
    tokens: Sequence[str],
    thresholds: Optional[DetectorThresholds] = None
) -> List[CircuitFinding]:
    """Convenience wrapper around CircuitDetector.detect()."""
    return CircuitDetector(thresholds).detect(attention, tokens)


def heads_for_circuits(
    findings: Sequence[CircuitFinding],
    circuit_type: Optional[CircuitType] = None
) -> List[Tuple[int, int]]:
    """
    Unique (layer, head) pairs behind a set of findings, in finding order.

    Used to ablate every head that implements a circuit type in one step.
    """
    heads = []
    seen = set()
    for finding in findings:
        if circuit_type is not None and finding.type != circuit_type:
            continue
        key = (finding.layer, finding.head)
        if key not in seen:
            seen.add(key)
            heads.append(key)
    return heads
