"""
Steering Vectors

A steering vector is a direction in the model's hidden space that separates
two sets of contrastive examples. Adding it to the model's input embeddings
nudges generation toward one side of the contrast.

Construction (contrastive activation addition):
-----------------------------------------------
    positives:  "I love this"  "What a great day"   → final-token hidden states
    negatives:  "I hate this"  "What a bad day"     → final-token hidden states

    vector = mean(positives) - mean(negatives)

Whatever the two sets share (topic, syntax, length) cancels out in the
subtraction. What is left points along the concept that differs.

Application:
------------
    delta = vector * strength
    embeddings[:, every_position, :] += delta

The delta is added at every position, prompt and generated tokens alike, so
the nudge keeps acting on newly generated text. A disabled config or a
strength of 0 produces no delta at all and the unsteered code path runs.

Persistence:
------------
Vectors are stored as base64 of little-endian float32 bytes. Decoding gives
back the exact same bits.

Reference:
    Steering Llama 2 via Contrastive Activation Addition (Rimsky et al., 2023)
    https://arxiv.org/abs/2312.06681
"""

import base64
import binascii
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import torch

from src.circuitscope import tensor_ops
from src.circuitscope.errors import (
    EmptyExampleSetError,
    InvalidInputError,
    VectorSerializationError,
)


logger = logging.getLogger(__name__)


def compute_steering_vector(positives: Sequence, negatives: Sequence) -> np.ndarray:
    """
    mean(positives) - mean(negatives).

    Raises:
        EmptyExampleSetError: If either list is empty
        DimensionMismatchError: If any vector's length differs from the others
    """
    if len(positives) == 0:
        raise EmptyExampleSetError("Need at least one positive example")
    if len(negatives) == 0:
        raise EmptyExampleSetError("Need at least one negative example")

    return tensor_ops.subtract(tensor_ops.mean(positives), tensor_ops.mean(negatives))


def serialize_vector(vector) -> str:
    """Encode a vector as base64 of little-endian float32 bytes."""
    return base64.b64encode(np.asarray(vector, dtype="<f4").tobytes()).decode("ascii")


def deserialize_vector(encoded: str) -> np.ndarray:
    """
    Decode serialize_vector() output back to a float32 array.

    Raises:
        VectorSerializationError: If the text is not base64 or does not hold
            a whole number of float32 values
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise VectorSerializationError(f"Invalid base64 vector data: {e}") from e

    if len(raw) % 4 != 0:
        raise VectorSerializationError(
            f"Vector data is {len(raw)} bytes, not a multiple of 4"
        )

    return np.frombuffer(raw, dtype="<f4").astype(np.float32)


def default_vector_name(positives: Sequence[str], negatives: Sequence[str]) -> str:
    """"<first positive> vs <first negative>", used when no name is given."""
    first_pos = positives[0] if positives else "positive"
    first_neg = negatives[0] if negatives else "negative"
    return f"{first_pos} vs {first_neg}"


@dataclass
class SteeringVector:
    """
    A named steering direction.

    Attributes:
        name: Unique name within a vector library
        vector: float32 array of length hidden_size
        description: Free text, e.g. what the contrast was
        id: Unique identifier
        created_at: Creation time in milliseconds since the epoch
    """
    name: str
    vector: np.ndarray
    description: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self):
        self.vector = tensor_ops.as_vector(self.vector)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    @property
    def norm(self) -> float:
        return float(np.linalg.norm(self.vector))

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "vector_base64": serialize_vector(self.vector),
            "dimension": self.dimension,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SteeringVector":
        try:
            vector = deserialize_vector(data["vector_base64"])
            name = data["name"]
        except KeyError as e:
            raise VectorSerializationError(f"Stored vector is missing field {e}") from e

        dimension = data.get("dimension")
        if dimension is not None and int(dimension) != vector.shape[0]:
            raise VectorSerializationError(
                f"Vector '{name}' declares dimension {dimension} "
                f"but holds {vector.shape[0]} values"
            )

        kwargs = {"name": name, "vector": vector, "description": data.get("description")}
        if data.get("id"):
            kwargs["id"] = data["id"]
        if data.get("created_at") is not None:
            kwargs["created_at"] = int(data["created_at"])
        return cls(**kwargs)


def create_steering_vector(
    name: str,
    positives: Sequence,
    negatives: Sequence,
    description: Optional[str] = None
) -> SteeringVector:
    """Compute a steering vector from hidden states and wrap it in a record."""
    return SteeringVector(
        name=name,
        vector=compute_steering_vector(positives, negatives),
        description=description,
    )


# ============================================================================
# Application
# ============================================================================

@dataclass
class SteeringConfig:
    """What to add to the embeddings during generation."""
    enabled: bool = False
    vector: Optional[np.ndarray] = None
    strength: float = 0.0
    vector_name: Optional[str] = None

    @classmethod
    def disabled(cls) -> "SteeringConfig":
        return cls(enabled=False, vector=None, strength=0.0, vector_name=None)

    @classmethod
    def from_vector(cls, steering_vector: SteeringVector, strength: float) -> "SteeringConfig":
        return cls(
            enabled=True,
            vector=steering_vector.vector,
            strength=strength,
            vector_name=steering_vector.name,
        )

    @property
    def is_active(self) -> bool:
        return self.enabled and self.vector is not None and self.strength != 0

    def effective_delta(self) -> Optional[np.ndarray]:
        """vector * strength, or None when steering has no effect."""
        if not self.is_active:
            return None
        return tensor_ops.scale(self.vector, self.strength)


def apply_steering(embeddings: torch.Tensor, delta) -> torch.Tensor:
    """
    Add a steering delta to every position of an embedding tensor.

    Args:
        embeddings: (..., seq_len, hidden_size)
        delta: (hidden_size,) vector, or None for no steering

    Returns:
        `embeddings` itself when delta is None, otherwise a new tensor
    """
    if delta is None:
        return embeddings

    delta = torch.as_tensor(np.asarray(delta), dtype=embeddings.dtype, device=embeddings.device)
    if delta.shape[-1] != embeddings.shape[-1]:
        raise InvalidInputError(
            f"Steering vector has dimension {delta.shape[-1]}, "
            f"model hidden size is {embeddings.shape[-1]}"
        )
    return embeddings + delta


# ============================================================================
# Construction from text
# ============================================================================

def parse_examples(text: str) -> List[str]:
    """Split newline-separated examples, dropping blank lines."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def collect_hidden_states(
    runtime,
    examples: Sequence[str],
    layer: int = -1,
    progress: Optional[Callable[[str], None]] = None
) -> List[np.ndarray]:
    """
    Final-token hidden state of each example, one runtime call at a time.

    Examples the runtime cannot process are skipped with a warning.
    """
    states = []
    for example in examples:
        if progress is not None:
            progress(example)
        try:
            state = runtime.final_hidden_state(example, layer=layer)
        except Exception as e:  # noqa: BLE001 - one bad example must not abort the batch
            logger.warning("Skipping example %r: %s", example, e)
            continue
        if state is None:
            logger.warning("Skipping example %r: no hidden state available", example)
            continue
        if isinstance(state, torch.Tensor):
            state = state.detach().float().cpu().numpy()
        states.append(tensor_ops.as_vector(state))
    return states


def build_steering_vector(
    runtime,
    positives: Sequence[str],
    negatives: Sequence[str],
    name: Optional[str] = None,
    description: Optional[str] = None,
    layer: int = -1,
    progress: Optional[Callable[[str], None]] = None
) -> SteeringVector:
    """
    Run every example through the model and build a steering vector.

    Args:
        runtime: Anything with final_hidden_state(text, layer=...)
        positives: Examples of the concept to steer toward
        negatives: Examples of the opposite
        name: Defaults to "<first positive> vs <first negative>"
        description: Stored with the vector
        layer: Hidden-state layer to read (-1 = last)
        progress: Called with each example before it is processed

    Raises:
        EmptyExampleSetError: If either side is empty, or every example on
            one side failed
    """
    if not positives or not negatives:
        raise EmptyExampleSetError("Need at least one positive and one negative example")

    pos_states = collect_hidden_states(runtime, positives, layer, progress)
    neg_states = collect_hidden_states(runtime, negatives, layer, progress)

    if not pos_states:
        raise EmptyExampleSetError("No hidden states could be computed for the positive examples")
    if not neg_states:
        raise EmptyExampleSetError("No hidden states could be computed for the negative examples")

    logger.info(
        "Building steering vector from %d positive and %d negative examples",
        len(pos_states), len(neg_states),
    )
    return create_steering_vector(
        name or default_vector_name(positives, negatives),
        pos_states,
        neg_states,
        description,
    )
