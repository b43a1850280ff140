"""
Vocabulary size inference and final-position logit extraction.

Most runtimes return logits as (batch, seq, vocab) and the vocabulary size is
just the last dimension. Some exported or quantized runtimes hand back one
flat buffer of seq * vocab values and report a vocabulary size that is
missing or padded. To find the final position's slice we need the real size,
so it is inferred with a cascade of signals, most trusted first:

    1. explicit   - the model's declared size, or a known model family's size,
                    when it is consistent with the buffer
    2. shape      - the last dimension of a multi-dimensional logits tensor
    3. divisor    - a common vocabulary size that divides the buffer into
                    1 or seq_len rows, then buffer / seq_len
    4. raw        - the whole buffer length

Anything below "explicit" is logged as a warning; none of it ever raises.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch


logger = logging.getLogger(__name__)


# Model family → vocabulary size, matched by substring of the model name/type
KNOWN_VOCAB_SIZES = {
    "gpt2": 50257,
    "distilgpt2": 50257,
    "llama": 32000,
    "mistral": 32000,
    "qwen2": 151936,
    "phi-2": 51200,
    "phi": 51200,
    "pythia": 50304,
    "gpt_neox": 50304,
    "gemma": 256000,
    "opt": 50272,
    "smollm": 49152,
}

COMMON_VOCAB_SIZES = sorted(set(KNOWN_VOCAB_SIZES.values()) | {30522, 32768, 50280, 65536, 100277, 128256})


@dataclass(frozen=True)
class VocabInference:
    size: int
    source: str  # "explicit", "shape", "divisor" or "raw"


def known_vocab_size(model_name: Optional[str]) -> Optional[int]:
    """Vocabulary size of a known model family, or None."""
    if not model_name:
        return None
    name = model_name.lower()
    # Longest key first so "distilgpt2" wins over "gpt2" and "phi-2" over "phi"
    for key in sorted(KNOWN_VOCAB_SIZES, key=len, reverse=True):
        if key in name:
            return KNOWN_VOCAB_SIZES[key]
    return None


def _consistent(size: Optional[int], logits: torch.Tensor) -> bool:
    if not size or size <= 0:
        return False
    if logits.dim() >= 2:
        return logits.shape[-1] == size
    return logits.numel() % size == 0


def infer_vocab_size(
    logits: torch.Tensor,
    seq_len: int,
    model_name: Optional[str] = None,
    declared: Optional[int] = None
) -> VocabInference:
    """
    Work out the vocabulary size behind a logits tensor.

    Args:
        logits: Logits in any shape, possibly flat
        seq_len: Number of input positions
        model_name: Model id or config model_type, for the known-size table
        declared: Vocabulary size the model reports, if any

    Returns:
        VocabInference with the size and which signal produced it
    """
    total = logits.numel()

    for candidate in (declared, known_vocab_size(model_name)):
        if _consistent(candidate, logits):
            return VocabInference(int(candidate), "explicit")

    if logits.dim() >= 2 and logits.shape[-1] > 0:
        size = int(logits.shape[-1])
        logger.warning("Vocabulary size %d taken from logits shape", size)
        return VocabInference(size, "shape")

    for candidate in COMMON_VOCAB_SIZES:
        if total % candidate == 0 and total // candidate in (1, seq_len):
            logger.warning("Vocabulary size %d inferred from common vocabulary sizes", candidate)
            return VocabInference(candidate, "divisor")

    if seq_len > 0 and total % seq_len == 0 and total // seq_len > 0:
        size = total // seq_len
        logger.warning("Vocabulary size %d inferred from buffer length / sequence length", size)
        return VocabInference(size, "divisor")

    logger.warning("Could not infer vocabulary size, using raw logits length %d", total)
    return VocabInference(total, "raw")


def final_position_logits(logits: torch.Tensor, vocab_size: int) -> torch.Tensor:
    """
    The (vocab_size,) logits of the last position.

    Accepts (batch, seq, vocab), (seq, vocab), (vocab,) or a flat buffer of
    seq * vocab values. Empty input gives an empty tensor.
    """
    if logits is None or logits.numel() == 0:
        return torch.empty(0)

    if logits.dim() >= 3:
        return logits[0, -1]
    if logits.dim() == 2:
        return logits[-1]

    if vocab_size <= 0 or logits.numel() <= vocab_size:
        return logits
    return logits[-vocab_size:]
