"""
Exceptions raised by circuitscope.

Only invalid input is raised. Degraded data (missing attention weights, an
unrecognised cache layout, absent hidden states) is handled by falling back
and labelling the result, never by raising.
"""


class CircuitScopeError(Exception):
    """Base class for all circuitscope errors."""


class InvalidInputError(CircuitScopeError, ValueError):
    """Input rejected at the boundary of an analysis operation."""


class EmptyExampleSetError(InvalidInputError):
    """A contrastive example set (positive or negative) is empty."""


class DimensionMismatchError(InvalidInputError):
    """Two vectors that must share a dimension do not."""


class AblationMaskError(InvalidInputError):
    """An ablation mask references a head that does not exist."""


class VectorSerializationError(InvalidInputError):
    """A serialized steering vector cannot be decoded."""


class VectorNotFoundError(CircuitScopeError, KeyError):
    """No steering vector with the requested id or name."""

    def __str__(self):
        # KeyError would wrap the message in quotes
        return str(self.args[0]) if self.args else ""


class ModelRuntimeError(CircuitScopeError, RuntimeError):
    """The model runtime failed or is not loaded."""
