# quadruped.py
# Body model: four legs, trunk orientation and the posture helpers driven by the state machine

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import CubicSpline
from scipy.spatial.transform import Rotation as R

from group import ActuatorGroup
from kinematics import STANDARD_GRAVITY
from parameters import QuadrupedParameters
from quadruped_leg import IKError, LegConfiguration, QuadLeg
from robot import ControlCommand, JointFeedback


logger = logging.getLogger(__name__)

NUM_LEGS = 4
WORLD_DOWN = np.array([0.0, 0.0, -1.0])


class SwingGroup(Enum):
    """Diagonal leg pairs that swing together."""
    A = (0, 3)  # left front, right rear
    B = (1, 2)  # right front, left rear

    @property
    def other(self) -> "SwingGroup":
        return SwingGroup.B if self is SwingGroup.A else SwingGroup.A


@dataclass
class GaitPlan:
    """Body-frame foot trajectories for one swing phase."""
    swing_group: SwingGroup
    duration: float
    splines: List[CubicSpline]

    def foot_targets(self, t: float) -> np.ndarray:
        t = min(max(t, 0.0), self.duration)
        return np.array([spline(t) for spline in self.splines])

    def is_swing(self, leg_index: int) -> bool:
        return leg_index in self.swing_group.value


def interpolate(from_: np.ndarray, to_: np.ndarray, alpha: float) -> np.ndarray:
    """Linear interpolation, alpha clipped to [0, 1]."""
    alpha = min(max(alpha, 0.0), 1.0)
    return from_ * (1 - alpha) + to_ * alpha


def orthonormalize(matrix) -> np.ndarray:
    """Nearest rotation matrix."""
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"Rotation must have shape (3, 3), got {matrix.shape}.")
    if np.linalg.det(matrix) <= 0:
        raise ValueError("Rotation matrix must have a positive determinant.")
    return R.from_matrix(matrix).as_matrix()


class Quadruped:
    """The trunk and its four legs.

    Posture helpers only compute joint targets and feed-forward efforts;
    `send_command` pushes them to the actuator group once per cycle.
    """

    def __init__(self, params: QuadrupedParameters, group: ActuatorGroup, initial_angles=None):
        if group.size != NUM_LEGS * QuadLeg.NUM_JOINTS:
            raise ValueError(f"Actuator group must have {NUM_LEGS * QuadLeg.NUM_JOINTS} modules, got {group.size}.")

        self.params = params
        self._group = group

        if initial_angles is None:
            initial_angles = np.tile(params.folded_angles, NUM_LEGS)
        initial_angles = np.asarray(initial_angles, dtype=float).reshape(NUM_LEGS, QuadLeg.NUM_JOINTS)

        self._legs = tuple(
            QuadLeg(params.mount_angles[i], params.radial_offset, initial_angles[i], params, i,
                    LegConfiguration(params.leg_sides[i]))
            for i in range(NUM_LEGS)
        )

        self._body_R = np.eye(3)
        self._balance_R = np.eye(3)
        self._update_body_r = False

        self._commanded = initial_angles.copy()
        self._efforts = np.zeros((NUM_LEGS, QuadLeg.NUM_JOINTS))
        self._ik_failures = [0] * NUM_LEGS

        self._last_feedback_time: Optional[float] = None
        self._feedback_misses = 0

    @classmethod
    def create(cls, params: QuadrupedParameters, group: ActuatorGroup) -> "Quadruped":
        """Build the model from the group's current joint positions when available."""
        feedback = group.get_next_feedback(timeout=params.feedback_timeout)
        if feedback is None:
            logger.warning("No initial feedback; assuming folded posture")
            return cls(params, group)
        return cls(params, group, feedback.positions)

    # --- Legs ----------------------------------------------------------------

    @property
    def legs(self) -> Tuple[QuadLeg, ...]:
        return self._legs

    def get_leg(self, index: int) -> QuadLeg:
        if not 0 <= index < NUM_LEGS:
            raise IndexError(f"Leg index must be in 0..{NUM_LEGS - 1}, got {index}.")
        return self._legs[index]

    def get_leg_joint_angles(self, index: int) -> np.ndarray:
        return self.get_leg(index).get_joint_angles()

    def joint_angles(self) -> np.ndarray:
        return np.concatenate([leg.get_joint_angles() for leg in self._legs])

    def commanded_angles(self) -> np.ndarray:
        return self._commanded.reshape(-1).copy()

    def commanded_efforts(self) -> np.ndarray:
        return self._efforts.reshape(-1).copy()

    # --- Orientation ---------------------------------------------------------

    def get_body_r(self) -> np.ndarray:
        return self._body_R.copy()

    def set_body_r(self, body_R):
        self._body_R = orthonormalize(body_R)

    def integrate_body_r(self, angular_velocity, dt: float):
        """Apply a body-frame angular velocity for dt seconds."""
        delta = R.from_rotvec(np.asarray(angular_velocity, dtype=float) * dt).as_matrix()
        self.set_body_r(self._body_R @ delta)

    def start_body_r_update(self):
        self._update_body_r = True

    @property
    def tracking_body_r(self) -> bool:
        return self._update_body_r

    def capture_balance_r(self) -> np.ndarray:
        self._balance_R = self._body_R.copy()
        return self._balance_R.copy()

    def get_balance_r(self) -> np.ndarray:
        return self._balance_R.copy()

    def get_gravity_direction(self) -> np.ndarray:
        """Unit gravity vector in the body frame."""
        return self._body_R.T @ WORLD_DOWN

    # --- Feedback ------------------------------------------------------------

    def update_feedback(self, dt: float) -> bool:
        feedback = self._group.get_next_feedback(timeout=self.params.feedback_timeout)
        return self.apply_feedback(feedback, dt)

    def apply_feedback(self, feedback: Optional[JointFeedback], dt: float) -> bool:
        """Ingest one feedback sample. Missing or stale samples are skipped."""
        if feedback is None:
            self._feedback_missed("no feedback received")
            return False
        if self._last_feedback_time is not None and feedback.timestamp <= self._last_feedback_time:
            self._feedback_missed("stale feedback")
            return False
        if feedback.size != NUM_LEGS * QuadLeg.NUM_JOINTS:
            self._feedback_missed(f"feedback has {feedback.size} positions")
            return False

        if self._feedback_misses >= self.params.feedback_miss_warn_threshold:
            logger.info("Feedback recovered after %d missed cycles", self._feedback_misses)
        self._feedback_misses = 0
        self._last_feedback_time = feedback.timestamp

        positions = np.asarray(feedback.positions, dtype=float).reshape(NUM_LEGS, QuadLeg.NUM_JOINTS)
        for leg, angles in zip(self._legs, positions):
            leg.set_joint_angles(angles)
        if self._update_body_r and feedback.gyro is not None:
            self.integrate_body_r(feedback.gyro, dt)
        return True

    def _feedback_missed(self, reason: str):
        self._feedback_misses += 1
        if self._feedback_misses == self.params.feedback_miss_warn_threshold:
            logger.warning("%s for %d consecutive cycles", reason, self._feedback_misses)
        else:
            logger.debug(reason)

    # --- Stance geometry -----------------------------------------------------

    def nominal_stance(self) -> np.ndarray:
        """Body-frame foot positions of the quadruped stance, one row per leg."""
        half_length = self.params.stance_length / 2
        half_width = self.params.stance_width / 2
        feet = np.empty((NUM_LEGS, 3))
        for i, leg in enumerate(self._legs):
            front = i < 2
            left = leg.configuration is LegConfiguration.LEFT
            feet[i] = (half_length if front else -half_length,
                       half_width if left else -half_width,
                       -self.params.body_height)
        return feet

    def _radial_pose(self, radius: float, height: float) -> np.ndarray:
        return np.array([
            leg.to_body((self.params.hip_length + radius, 0.0, -height)) for leg in self._legs
        ])

    def spread_pose(self) -> np.ndarray:
        return self._radial_pose(self.params.spread_radius, self.params.spread_height)

    def push_pose(self) -> np.ndarray:
        return self._radial_pose(self.params.push_radius, self.params.body_height)

    def current_feet(self) -> np.ndarray:
        """Body-frame foot positions at the last commanded joint angles."""
        return np.array([leg.to_body(leg.foot_position(self._commanded[i])) for i, leg in enumerate(self._legs)])

    def _support_forces(self, stance_legs: Sequence[int], share: float = 1.0) -> np.ndarray:
        """Foot forces carrying `share` of the trunk weight, split over the stance legs."""
        forces = np.zeros((NUM_LEGS, 3))
        if stance_legs:
            weight = share * self.params.body_mass * STANDARD_GRAVITY / len(stance_legs)
            for i in stance_legs:
                forces[i] = self.get_gravity_direction() * weight
        return forces

    # --- Commands ------------------------------------------------------------

    def command_feet(self, targets: np.ndarray, foot_forces: np.ndarray) -> bool:
        """Solve IK for body-frame foot targets and update the pending command.

        A leg whose IK fails holds its last commanded angles for this cycle.
        Returns True when every leg reached its target.
        """
        gravity = self.get_gravity_direction()
        all_reached = True
        for i, leg in enumerate(self._legs):
            try:
                angles = leg.compute_ik(None, leg.to_local(targets[i]))
                self._ik_failures[i] = 0
            except IKError as e:
                all_reached = False
                self._ik_failures[i] += 1
                if self._ik_failures[i] == self.params.ik_failure_warn_threshold:
                    logger.warning("%s; holding posture for %d cycles", e, self._ik_failures[i])
                else:
                    logger.debug("%s", e)
                angles = self._commanded[i]

            self._commanded[i] = angles
            self._efforts[i] = leg.compute_compensate_torques(
                angles, np.zeros(QuadLeg.NUM_JOINTS), gravity, foot_forces[i]
            )
        return all_reached

    def ik_failures(self, index: int) -> int:
        """Consecutive IK failures of one leg."""
        return self._ik_failures[index]

    def send_command(self):
        self._group.send_command(positions=self.commanded_angles(), efforts=self.commanded_efforts())

    def set_gains(self) -> bool:
        kp, kd = self.params.gains()
        return self._group.set_gains(kp, kd)

    # --- Stand up ------------------------------------------------------------

    def spread_all_legs(self, ratio: float, start_feet: np.ndarray) -> bool:
        """Move the feet out to the wide, belly-down stance."""
        targets = interpolate(start_feet, self.spread_pose(), ratio)
        return self.command_feet(targets, np.zeros((NUM_LEGS, 3)))

    def push_all_legs(self, t: float, duration: float, start_feet: np.ndarray) -> bool:
        """Push the feet down and in, lifting the trunk off the ground."""
        ratio = t / duration
        targets = interpolate(start_feet, self.push_pose(), ratio)
        return self.command_feet(targets, self._support_forces(range(NUM_LEGS), min(max(ratio, 0.0), 1.0)))

    def prepare_quad_mode(self, ratio: float, start_feet: np.ndarray) -> bool:
        """Bring the feet under the shoulders and hips."""
        targets = interpolate(start_feet, self.nominal_stance(), ratio)
        return self.command_feet(targets, self._support_forces(range(NUM_LEGS)))

    # --- Standing behaviours -------------------------------------------------

    def re_orient(self, target_R) -> bool:
        """Tilt the trunk to target_R while keeping the feet planted."""
        target_R = np.asarray(target_R, dtype=float)
        targets = self.nominal_stance() @ target_R  # row-wise target_R.T @ foot
        return self.command_feet(targets, self._support_forces(range(NUM_LEGS)))

    def plan_gait(self, swing_group: SwingGroup, command: ControlCommand, swing_time: float) -> GaitPlan:
        """Foot trajectories for one phase of a diagonal trot.

        Swing legs land half a stride ahead of the stance position, stance legs
        slide half a stride behind it.
        """
        v = np.zeros(3)
        v[:2] = np.clip(command.translation_velocity[:2], -1.0, 1.0) * self.params.max_linear_speed
        yaw_rate = float(np.clip(command.rotation_velocity[2], -1.0, 1.0)) * self.params.max_yaw_rate

        half_stride = v * swing_time / 2
        half_turn = R.from_rotvec([0.0, 0.0, yaw_rate * swing_time / 2]).as_matrix()

        start = self.current_feet()
        nominal = self.nominal_stance()
        splines = []
        for i in range(NUM_LEGS):
            if i in swing_group.value:
                end = half_turn @ nominal[i] + half_stride
                apex = (start[i] + end) / 2 + np.array([0.0, 0.0, self.params.step_height])
                times, points = [0.0, swing_time / 2, swing_time], [start[i], apex, end]
            else:
                end = half_turn.T @ nominal[i] - half_stride
                times, points = [0.0, swing_time / 2, swing_time], [start[i], (start[i] + end) / 2, end]
            splines.append(CubicSpline(times, np.array(points), axis=0, bc_type='clamped'))
        return GaitPlan(swing_group, swing_time, splines)

    def step_gait(self, plan: GaitPlan, t: float) -> bool:
        stance = [i for i in range(NUM_LEGS) if not plan.is_swing(i)]
        return self.command_feet(plan.foot_targets(t), self._support_forces(stance))
