"""
Dataclass configs for the device and the optimizer.
They are optional to use; every consumer also accepts plain keyword arguments.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class DeviceConfig:
    """
    Configuration for :class:`tapegrad.device.Cpu`.
    """

    # Seed for the device's random generator; None draws fresh OS entropy
    seed: Optional[int] = None
    # Default floating point dtype for new tensors and gradient buffers
    dtype: str = "float32"


@dataclass
class OptimizerConfig:
    """
    Hyperparameters for :class:`tapegrad.optim.SGD`.
    """

    lr: float
    momentum: float = 0.0
    weight_decay: float = 0.0
