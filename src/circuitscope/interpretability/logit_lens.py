"""
Next-Token Predictions and the Logit Lens

top_predictions() turns the final-position logits into the model's top-k
guesses for the next token. logit_lens() asks the same question of every
intermediate layer:

    Embeddings → [unembed] → "what would the model say with no layers?"
    Layer 1    → [unembed] → "...after one block?"
    ...
    Final Output (the real logits)

The unembedding is the model's final norm followed by its output projection,
applied to the residual stream at one position:

    logits_at_layer_i = lm_head(final_norm(hidden_states[i][position]))

Hugging Face models return the last hidden state with the final norm already
applied, so the last entry uses the real logits instead of re-normalizing.

Example Insight:
----------------
Input: "The capital of France is"

    Layer 2:  " the" (12%), " a" (9%)
    Layer 8:  " Paris" (31%), " located" (11%)
    Final:    " Paris" (64%)

The answer appears in the middle layers; later layers sharpen it.

References:
-----------
- interpreting GPT: the logit lens (nostalgebraist, 2020)
  https://www.lesswrong.com/posts/AcKRB8wDpdaN6v6ru/
"""

from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import torch

from src.circuitscope.interpretability.ablation import TokenDecoder, descending_order, safe_decode
from src.circuitscope.tensor_ops import stable_softmax


@dataclass
class Prediction:
    token: str
    token_id: int
    probability: float


@dataclass
class LayerPredictions:
    layer_name: str
    predictions: List[Prediction] = field(default_factory=list)

    @property
    def top(self) -> Optional[Prediction]:
        return self.predictions[0] if self.predictions else None

    def to_dict(self) -> Dict:
        return asdict(self)


def top_predictions(
    logits,
    decoder: Optional[TokenDecoder] = None,
    k: int = 5
) -> List[Prediction]:
    """
    The k most probable next tokens under a logit vector.

    Args:
        logits: (vocab_size,) tensor or array
        decoder: Maps token id to display string
        k: How many predictions to return

    Returns:
        Predictions, most probable first. Empty for empty logits.
    """
    if isinstance(logits, torch.Tensor):
        logits = logits.detach().float().cpu().numpy()
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    if logits.size == 0:
        return []

    probs = stable_softmax(logits)
    return [
        Prediction(safe_decode(decoder, idx), int(idx), float(probs[idx]))
        for idx in descending_order(probs)[:k]
    ]


def logit_lens(
    hidden_states: Sequence[torch.Tensor],
    unembed: Callable[[torch.Tensor], torch.Tensor],
    final_logits,
    decoder: Optional[TokenDecoder] = None,
    top_k: int = 5,
    position: int = -1
) -> List[LayerPredictions]:
    """
    Top predictions at every layer for one position.

    Args:
        hidden_states: Per-layer residual stream, (batch, seq, hidden) each,
                       index 0 being the embedding output
        unembed: Maps a (hidden,) vector to (vocab,) logits
        final_logits: The model's real logits at `position`
        decoder: Maps token id to display string
        top_k: Predictions per layer
        position: Sequence position to inspect (-1 = last)

    Returns:
        One LayerPredictions per intermediate layer, then "Final Output"
    """
    layers = []
    for layer_idx, hidden in enumerate(list(hidden_states)[:-1]):
        h = hidden[0, position] if hidden.dim() == 3 else hidden[position]
        name = "Embeddings" if layer_idx == 0 else f"Layer {layer_idx}"
        layers.append(LayerPredictions(name, top_predictions(unembed(h), decoder, top_k)))

    layers.append(LayerPredictions("Final Output", top_predictions(final_logits, decoder, top_k)))
    return layers


def find_convergence_layer(
    layers: Sequence[LayerPredictions],
    threshold: float = 0.5
) -> Optional[LayerPredictions]:
    """
    First layer whose top prediction matches the final answer with at least
    `threshold` probability. None if the final answer never gets there.
    """
    if not layers or layers[-1].top is None:
        return None

    answer = layers[-1].top.token_id
    for layer in layers:
        top = layer.top
        if top is not None and top.token_id == answer and top.probability >= threshold:
            return layer
    return None
