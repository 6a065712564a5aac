# robot.py

from dataclasses import dataclass, field
from typing import Optional
import numpy as np


@dataclass
class JointFeedback:
    """Joint state sample reported by an actuator group."""
    timestamp: float
    positions: np.ndarray
    velocities: np.ndarray
    efforts: np.ndarray
    gyro: Optional[np.ndarray] = None  # body angular velocity, body frame [rad/s]

    @property
    def size(self) -> int:
        return len(self.positions)


@dataclass
class JointCommand:
    """Joint targets; a None field is left unchanged on the actuators."""
    positions: Optional[np.ndarray] = None
    velocities: Optional[np.ndarray] = None
    efforts: Optional[np.ndarray] = None


@dataclass
class ControlCommand:
    """Operator input sampled once per control cycle."""
    translation_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    quit: bool = False


@dataclass
class Command:
    """Message sent to the simulation server."""
    type: str  # 'command', 'gains', 'feedback', 'stop'
    data: dict  # Command-specific data
