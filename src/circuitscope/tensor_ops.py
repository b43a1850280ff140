"""
Vector and distribution helpers.

Steering vectors are plain float32 arrays with a fixed length (the model's
hidden size). The helpers here are the only arithmetic the steering engine
needs, and they all refuse to combine vectors of different lengths rather
than broadcasting silently.

The distribution helpers (softmax, entropy, KL divergence) are shared by the
ablation engine and the logit lens. They work in float64 and follow two
rules so results are reproducible run to run:

    1. Softmax subtracts the maximum logit before exponentiating.
    2. Logarithms are only taken of probabilities above PROB_FLOOR (1e-10);
       smaller terms contribute nothing.

Example:
    >>> a = np.array([1.0, 2.0], dtype=np.float32)
    >>> b = np.array([0.5, 0.5], dtype=np.float32)
    >>> subtract(a, b)
    array([0.5, 1.5], dtype=float32)
"""

from typing import Sequence

import numpy as np

from src.circuitscope.errors import DimensionMismatchError, EmptyExampleSetError


PROB_FLOOR = 1e-10


def as_vector(values) -> np.ndarray:
    """Return `values` as a 1D float32 array (copies lists, keeps arrays)."""
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1:
        vector = vector.reshape(-1)
    return vector


def zeros(length: int) -> np.ndarray:
    return np.zeros(length, dtype=np.float32)


def _check_same_length(a: np.ndarray, b: np.ndarray):
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(
            f"Vector length mismatch: {a.shape[0]} vs {b.shape[0]}"
        )


def add(a, b) -> np.ndarray:
    """Element-wise a + b."""
    a, b = as_vector(a), as_vector(b)
    _check_same_length(a, b)
    return a + b


def subtract(a, b) -> np.ndarray:
    """Element-wise a - b."""
    a, b = as_vector(a), as_vector(b)
    _check_same_length(a, b)
    return a - b


def scale(v, s: float) -> np.ndarray:
    """Multiply every element of v by the scalar s."""
    return (as_vector(v) * np.float32(s)).astype(np.float32)


def mean(vectors: Sequence) -> np.ndarray:
    """
    Element-wise mean of a non-empty list of equal-length vectors.

    Raises:
        EmptyExampleSetError: If `vectors` is empty
        DimensionMismatchError: If any vector's length differs from the first
    """
    if len(vectors) == 0:
        raise EmptyExampleSetError("Cannot compute mean of empty list")

    first = as_vector(vectors[0])
    dim = first.shape[0]
    total = np.zeros(dim, dtype=np.float32)

    for v in vectors:
        v = as_vector(v)
        if v.shape[0] != dim:
            raise DimensionMismatchError(
                f"Vector length mismatch in mean computation: expected {dim}, got {v.shape[0]}"
            )
        total += v

    return scale(total, 1.0 / len(vectors))


# ============================================================================
# Probability distributions
# ============================================================================

def stable_softmax(logits) -> np.ndarray:
    """
    Numerically stable softmax over a 1D logit vector.

    Args:
        logits: Array-like of shape (vocab_size,)

    Returns:
        float64 probabilities summing to 1
    """
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    shifted = logits - logits.max()
    exp = np.exp(shifted)
    return exp / exp.sum()


def entropy_bits(probs) -> float:
    """Shannon entropy in bits, ignoring terms at or below PROB_FLOOR."""
    probs = np.asarray(probs, dtype=np.float64).reshape(-1)
    kept = probs[probs > PROB_FLOOR]
    return float(-(kept * np.log2(kept)).sum())


def kl_divergence(p, q) -> float:
    """
    KL(p || q) in nats.

    Terms where either p or q is at or below PROB_FLOOR are skipped, which
    keeps the result finite when the two distributions have different
    supports. For valid distributions the result is clamped at zero so
    floating-point rounding cannot produce a tiny negative value.
    """
    p = np.asarray(p, dtype=np.float64).reshape(-1)
    q = np.asarray(q, dtype=np.float64).reshape(-1)
    _check_same_length(p, q)

    keep = (p > PROB_FLOOR) & (q > PROB_FLOOR)
    value = float((p[keep] * np.log(p[keep] / q[keep])).sum())
    return max(value, 0.0)
