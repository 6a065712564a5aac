# parameters.py
# Geometry, gains and timing of the quadruped kit

import json
import math
from dataclasses import dataclass, field, fields, asdict, MISSING
from pathlib import Path
from typing import Tuple

import numpy as np


FINAL_MODES = ('passive_orient', 'orient', 'walk')


@dataclass
class QuadrupedParameters:
    """Static robot description and controller tuning.

    Leg order is left front, right front, left rear, right rear. Right legs
    take the same mount angle as their left twin; mirroring happens in the leg.
    """

    # --- Leg geometry ---------------------------------------------------------
    mount_angles: Tuple[float, ...] = (math.pi / 6, math.pi / 6, 5 * math.pi / 6, 5 * math.pi / 6)
    leg_sides: Tuple[str, ...] = ('left', 'right', 'left', 'right')
    radial_offset: float = 0.20      # [m] body centre to hip yaw axis
    hip_length: float = 0.07         # [m] hip yaw to hip pitch
    thigh_length: float = 0.325      # [m]
    shin_length: float = 0.325       # [m]
    joint_lower_limits: Tuple[float, ...] = (-math.pi / 3, -math.pi / 2, 0.0)
    joint_upper_limits: Tuple[float, ...] = (math.pi / 3, math.pi / 2, 2.8)
    folded_angles: Tuple[float, ...] = (0.0, -1.2, 2.4)

    # --- Mass model -----------------------------------------------------------
    segment_masses: Tuple[float, ...] = (0.5, 0.6, 0.25)   # [kg] hip, thigh, shin
    body_mass: float = 6.0                                 # [kg] trunk, carried by stance legs
    spring_torques: Tuple[float, ...] = (0.0, -3.75, 0.0)  # [N*m] gas spring shift per joint

    # --- Postures (metres) ----------------------------------------------------
    spread_radius: float = 0.50      # hip pitch to foot, belly on the ground
    spread_height: float = 0.05
    push_radius: float = 0.40
    body_height: float = 0.30
    stance_length: float = 0.60      # front to rear foot distance
    stance_width: float = 0.56       # left to right foot distance

    # --- Timing ---------------------------------------------------------------
    control_period: float = 0.005    # [s] 200 Hz
    startup_seconds: float = 1.9
    swing_time: float = 0.5
    step_height: float = 0.06

    # --- Control --------------------------------------------------------------
    passive_orient_gain: float = 0.031
    orient_tilt_deg: float = 16.0
    max_linear_speed: float = 0.15   # [m/s] at full stick
    max_yaw_rate: float = 0.6        # [rad/s] at full stick
    final_mode: str = 'passive_orient'

    # --- Actuator gains (one triple per leg, repeated) ------------------------
    position_kp: Tuple[float, ...] = (40.0, 60.0, 40.0)
    position_kd: Tuple[float, ...] = (0.5, 0.8, 0.5)

    # --- Diagnostics ----------------------------------------------------------
    feedback_timeout: float = 0.05
    ik_failure_warn_threshold: int = 20
    feedback_miss_warn_threshold: int = 50

    def __post_init__(self):
        self.validate()

    def validate(self):
        if len(self.mount_angles) != 4 or len(self.leg_sides) != 4:
            raise ValueError("Exactly four mount angles and leg sides are required.")
        if any(side not in ('left', 'right') for side in self.leg_sides):
            raise ValueError(f"Leg sides must be 'left' or 'right', got {self.leg_sides}.")
        for name in ('joint_lower_limits', 'joint_upper_limits', 'folded_angles',
                     'segment_masses', 'spring_torques', 'position_kp', 'position_kd'):
            if len(getattr(self, name)) != 3:
                raise ValueError(f"Parameter '{name}' must have 3 elements.")
        if self.control_period <= 0 or self.startup_seconds <= 0 or self.swing_time <= 0:
            raise ValueError("Periods and durations must be positive.")
        if not 0.0 < self.passive_orient_gain < 1.0:
            raise ValueError("Parameter 'passive_orient_gain' must be in (0, 1).")
        if self.final_mode not in FINAL_MODES:
            raise ValueError(f"Parameter 'final_mode' must be one of {FINAL_MODES}, got '{self.final_mode}'.")

    def reset_to_defaults(self):
        for f in fields(self):
            value = f.default if f.default_factory is MISSING else f.default_factory()
            setattr(self, f.name, value)

    # --- Derived --------------------------------------------------------------

    def gains(self) -> Tuple[np.ndarray, np.ndarray]:
        """Per-actuator (kp, kd) for all 12 joints."""
        return np.tile(self.position_kp, 4), np.tile(self.position_kd, 4)

    # --- Files ----------------------------------------------------------------

    @classmethod
    def from_json(cls, path) -> "QuadrupedParameters":
        """Load parameters, keys missing from the file keep their defaults."""
        with open(Path(path), 'r') as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise TypeError(f"Parameter file '{path}' must hold a JSON object.")

        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown parameters in '{path}': {sorted(unknown)}")

        values = {key: tuple(value) if isinstance(value, list) else value for key, value in raw.items()}
        return cls(**values)

    def to_json(self, path):
        with open(Path(path), 'w') as f:
            json.dump(asdict(self), f, indent=2)
