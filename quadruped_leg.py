# quadruped_leg.py
# One 3-DoF leg: hip yaw, hip pitch, knee

from enum import Enum
from typing import Optional

import numpy as np

from kinematics import JointSpec, KinematicChain, STANDARD_GRAVITY
from parameters import QuadrupedParameters


class LegConfiguration(Enum):
    LEFT = 'left'
    RIGHT = 'right'


class IKError(RuntimeError):
    """The IK solver did not reach the foot target inside the joint limits."""

    def __init__(self, leg_index: int, target: np.ndarray, residual: float):
        super().__init__(f"Leg {leg_index}: no IK solution for foot target {np.round(target, 4)} "
                         f"(residual {residual:.4f} m)")
        self.leg_index = leg_index
        self.target = target
        self.residual = residual


# Reflection across the sagittal (x-z) plane
_MIRROR = np.diag([1.0, -1.0, 1.0, 1.0])


class QuadLeg:
    """Kinematics and torque compensation for one leg.

    Foot targets handed to `compute_ik` are in the leg frame, whose origin is
    the hip yaw axis and whose x axis points away from the body. The leg to
    body transform is fixed at construction; right legs are built as the
    mirror image of a left leg with the same mount angle and a reversed hip
    yaw axis, so mirrored foot targets yield identical joint angles.
    """

    NUM_JOINTS = 3

    def __init__(
            self,
            angle_rad: float,
            distance: float,
            current_angles,
            params: QuadrupedParameters,
            index: int,
            configuration: LegConfiguration,
        ):
        if not 0 <= index < 4:
            raise ValueError(f"Leg index must be in 0..3, got {index}.")
        if not isinstance(configuration, LegConfiguration):
            raise TypeError("Parameter 'configuration' must be a LegConfiguration.")

        self._index = index
        self._configuration = configuration
        self._current_angles = self._check_angles(current_angles)
        self._seed_angles = self._current_angles.copy()
        self._spring_torques = np.asarray(params.spring_torques, dtype=float)
        self._base_frame = self._make_base_frame(angle_rad, distance, configuration)
        self._kin = self._make_kinematics(params, index, configuration)
        self._masses = self._kin.masses

    # --- Private methods -----------------------------------------------------

    @classmethod
    def _check_angles(cls, angles) -> np.ndarray:
        angles = np.asarray(angles, dtype=float).reshape(-1)
        if angles.shape != (cls.NUM_JOINTS,):
            raise ValueError(f"A leg has {cls.NUM_JOINTS} joints, got angle vector of shape {angles.shape}.")
        return angles.copy()

    @staticmethod
    def _make_base_frame(angle_rad, distance, configuration) -> np.ndarray:
        c, s = np.cos(angle_rad), np.sin(angle_rad)
        frame = np.eye(4)
        frame[:3, :3] = [[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]]
        frame[:3, 3] = frame[:3, :3] @ np.array([distance, 0.0, 0.0])
        if configuration is LegConfiguration.RIGHT:
            frame = _MIRROR @ frame @ _MIRROR
        return frame

    @staticmethod
    def _make_kinematics(params, index, configuration) -> KinematicChain:
        hip, thigh, shin = params.hip_length, params.thigh_length, params.shin_length
        lower, upper = params.joint_lower_limits, params.joint_upper_limits
        masses = params.segment_masses
        yaw_axis = 'z' if configuration is LegConfiguration.LEFT else '-z'
        joints = [
            JointSpec('hip_yaw', yaw_axis, (0.0, 0.0, 0.0), masses[0], (hip / 2, 0.0, 0.0), lower[0], upper[0]),
            JointSpec('hip_pitch', 'y', (hip, 0.0, 0.0), masses[1], (thigh / 2, 0.0, 0.0), lower[1], upper[1]),
            JointSpec('knee', 'y', (thigh, 0.0, 0.0), masses[2], (shin / 2, 0.0, 0.0), lower[2], upper[2]),
        ]
        return KinematicChain(joints, end_effector_offset=(shin, 0.0, 0.0), name=f'leg_{index}')

    # --- Joint state ---------------------------------------------------------

    @property
    def index(self) -> int:
        return self._index

    @property
    def configuration(self) -> LegConfiguration:
        return self._configuration

    @property
    def masses(self) -> np.ndarray:
        return self._masses.copy()

    @property
    def seed_angles(self) -> np.ndarray:
        return self._seed_angles.copy()

    def set_joint_angles(self, current_angles):
        self._current_angles = self._check_angles(current_angles)

    def get_joint_angles(self) -> np.ndarray:
        return self._current_angles.copy()

    def get_kinematics(self) -> KinematicChain:
        return self._kin

    # --- Frames --------------------------------------------------------------

    def get_base_frame(self) -> np.ndarray:
        """Leg frame to body frame transform (4x4)."""
        return self._base_frame.copy()

    def to_local(self, body_point) -> np.ndarray:
        R, p = self._base_frame[:3, :3], self._base_frame[:3, 3]
        return R.T @ (np.asarray(body_point, dtype=float) - p)

    def to_body(self, local_point) -> np.ndarray:
        R, p = self._base_frame[:3, :3], self._base_frame[:3, 3]
        return R @ np.asarray(local_point, dtype=float) + p

    def foot_position(self, angles=None) -> np.ndarray:
        """Foot position in the leg frame, at the current angles by default."""
        angles = self._current_angles if angles is None else self._check_angles(angles)
        position, _ = self._kin.forward(angles)
        return position

    # --- Solvers -------------------------------------------------------------

    def compute_ik(self, seed_angles: Optional[np.ndarray], foot_position) -> np.ndarray:
        """Joint angles putting the foot at `foot_position` (leg frame).

        The stored seed is replaced only when the solve succeeds.

        Raises:
            IKError: the solver did not converge inside the joint limits.
        """
        seed = self._seed_angles if seed_angles is None else self._check_angles(seed_angles)
        target = np.asarray(foot_position, dtype=float).reshape(3)
        success, angles = self._kin.solve_ik(seed, position=target)
        if not success:
            residual = float(np.linalg.norm(target - self._kin.forward(angles)[0]))
            raise IKError(self._index, target, residual)
        self._seed_angles = angles.copy()
        return angles

    def compute_compensate_torques(self, angles, velocities, gravity_vec, foot_force) -> np.ndarray:
        """Feed-forward joint torques for the given pose.

        Args:
            angles: Joint angles.
            velocities: Joint velocities; not used by the current model.
            gravity_vec: Gravity direction in the body frame (unit vector).
            foot_force: Force the foot exerts on the ground, body frame [N].

        Returns:
            Gravity compensation + spring shift + foot reaction torques.
        """
        angles = self._check_angles(angles)
        R = self._base_frame[:3, :3]
        gravity_local = R.T @ (np.asarray(gravity_vec, dtype=float) * STANDARD_GRAVITY)
        force_local = R.T @ np.asarray(foot_force, dtype=float)

        torques = self._kin.gravity_torques(angles, gravity_local)
        torques += self._spring_torques
        torques += self._kin.jacobian(angles)[:3].T @ force_local
        return torques
