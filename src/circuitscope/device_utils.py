"""
Device selection for inference.

Picks CUDA/ROCm, Apple MPS or CPU, and seeds torch so sampling runs are
reproducible on the chosen device.
"""

import logging
from typing import Optional, Tuple

import torch

from src.circuitscope.errors import ModelRuntimeError


logger = logging.getLogger(__name__)


def _cuda_name() -> str:
    gpu_name = torch.cuda.get_device_name(0).lower()
    if 'amd' in gpu_name or 'radeon' in gpu_name:
        return "CUDA (AMD GPU via ROCm)"
    return "CUDA (NVIDIA GPU)"


def autodetect_device() -> Tuple[torch.device, str]:
    """
    Best available device. Preference order: CUDA/ROCm > MPS > CPU.

    Returns:
        device: torch.device object
        device_name: Human-readable device description
    """
    if torch.cuda.is_available():
        return torch.device("cuda"), _cuda_name()
    elif torch.backends.mps.is_available():
        return torch.device("mps"), "MPS (Apple Silicon GPU)"
    else:
        return torch.device("cpu"), "CPU"


def get_device(device_type: Optional[str] = None) -> Tuple[torch.device, str]:
    """
    A specific device, or autodetect when device_type is None/empty.

    Raises:
        ModelRuntimeError: If the requested device is not available
        ValueError: If device_type is not cuda, mps or cpu
    """
    if not device_type:
        return autodetect_device()

    device_type = device_type.lower()

    if device_type == "cuda":
        if not torch.cuda.is_available():
            raise ModelRuntimeError("CUDA requested but not available. Install CUDA-enabled PyTorch.")
        return torch.device("cuda"), _cuda_name()
    elif device_type == "mps":
        if not torch.backends.mps.is_available():
            raise ModelRuntimeError("MPS requested but not available. Requires macOS 12.3+ and Apple Silicon.")
        return torch.device("mps"), "MPS (Apple Silicon GPU)"
    elif device_type == "cpu":
        return torch.device("cpu"), "CPU"
    else:
        raise ValueError(f"Invalid device type: {device_type}. Must be 'cuda', 'mps', 'cpu', or None.")


def seed_everything(seed: int, device: Optional[torch.device] = None):
    """Seed torch's generators (and CUDA's, when running there)."""
    torch.manual_seed(seed)
    if device is not None and device.type == "cuda":
        torch.cuda.manual_seed(seed)
    logger.debug("Seeded torch with %d", seed)
