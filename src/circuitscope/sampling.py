"""
Next-token sampling for the generation loop.

The runtime's generation loop produces one logit vector per step and hands it
here to pick the next token. Three pieces:

1. Temperature
   Divide the logits by T before softmax.
     < 1.0: sharper, more predictable
     = 1.0: unchanged
     > 1.0: flatter, more surprising

2. Top-k
   Keep the k highest logits, set the rest to -inf, sample from what is left.
   k = 0 (or k >= vocab size) keeps the whole vocabulary.

3. Greedy
   Temperature 0 means "always take the argmax". No randomness at all.

Reproducibility comes from torch's global generator: seed it once with
torch.manual_seed(seed) before the loop and the same prompt, settings and
steering produce the same tokens.

Shapes:
    Input logits:  (batch, vocab_size) or (vocab_size,)
    Output tokens: (batch, 1) or (1,)
"""

import torch
import torch.nn.functional as F

from src.circuitscope.errors import InvalidInputError


def apply_temperature(logits, temperature=1.0):
    """
    Scale logits by 1 / temperature.

    Example:
        logits [2.0, 1.0, 0.5]  → probs [0.59, 0.24, 0.17]
        T=0.5: logits [4.0, 2.0, 1.0] → probs [0.84, 0.11, 0.05]
    """
    if temperature <= 0:
        raise InvalidInputError(f"Temperature must be positive, got {temperature}")

    if temperature == 1.0:
        return logits

    return logits / temperature


def sample_top_k(logits, k=50, temperature=1.0):
    """
    Sample from the k most probable tokens.

    Args:
        logits: (batch, vocab_size) or (vocab_size,)
        k: Tokens to keep; 0 or anything >= vocab_size keeps all of them
        temperature: Must be > 0

    Returns:
        Sampled token indices, (batch, 1) or (1,)
    """
    original_shape = logits.shape
    if logits.dim() == 1:
        logits = logits.unsqueeze(0)

    if k < 0:
        raise InvalidInputError(f"k must be non-negative, got {k}")

    vocab_size = logits.size(-1)
    logits = apply_temperature(logits, temperature)

    if 0 < k < vocab_size:
        top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)
        filtered_logits = torch.full_like(logits, float('-inf'))
        filtered_logits.scatter_(dim=-1, index=top_k_indices, src=top_k_logits)
    else:
        filtered_logits = logits

    probs = F.softmax(filtered_logits.float(), dim=-1)
    token = torch.multinomial(probs, num_samples=1)

    if len(original_shape) == 1:
        token = token.squeeze(0)

    return token


def sample_greedy(logits):
    """Index of the highest logit, (batch, 1) or (1,)."""
    original_shape = logits.shape
    if logits.dim() == 1:
        logits = logits.unsqueeze(0)

    token = torch.argmax(logits, dim=-1, keepdim=True)

    if len(original_shape) == 1:
        token = token.squeeze(0)

    return token


def sample_next_token(logits, temperature=1.0, top_k=50):
    """
    Pick the next token the way the generation loop does.

    Temperature 0 is greedy; anything above uses top-k sampling.
    """
    if temperature == 0:
        return sample_greedy(logits)
    return sample_top_k(logits, k=top_k, temperature=temperature)
