# kinematics.py
# Serial kinematic chains on top of Pinocchio

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pinocchio as pin


STANDARD_GRAVITY = 9.81

_AXES = {
    'x': np.array([1.0, 0.0, 0.0]),
    'y': np.array([0.0, 1.0, 0.0]),
    'z': np.array([0.0, 0.0, 1.0]),
}


@dataclass
class JointSpec:
    """One revolute joint and the segment it carries."""
    name: str
    axis: str                            # 'x', 'y', 'z', optionally prefixed with '-'
    offset: Sequence[float]              # joint origin in the previous joint frame
    mass: float = 0.0                    # segment mass [kg]
    com: Sequence[float] = (0.0, 0.0, 0.0)
    lower: float = -np.inf
    upper: float = np.inf


def _joint_model(axis: str):
    sign = -1.0 if axis.startswith('-') else 1.0
    key = axis.lstrip('+-')
    if key not in _AXES:
        raise ValueError(f"Joint axis must be one of x, y, z (optionally negated), got '{axis}'.")
    if sign > 0:
        return {'x': pin.JointModelRX, 'y': pin.JointModelRY, 'z': pin.JointModelRZ}[key]()
    return pin.JointModelRevoluteUnaligned(sign * _AXES[key])


class KinematicChain:
    """A fixed-base serial chain with a single end effector.

    All quantities are expressed in the chain root frame.
    """

    def __init__(
            self,
            joints: Sequence[JointSpec],
            end_effector_offset: Sequence[float],
            end_effector_rotation: Optional[np.ndarray] = None,
            name: str = 'chain',
        ):
        if len(joints) == 0:
            raise ValueError("A kinematic chain needs at least one joint.")
        self.joints = list(joints)
        self.model, self.data, self.ee_frame = self._build_model(name, end_effector_offset, end_effector_rotation)
        self.lower_limits = np.array([j.lower for j in self.joints], dtype=float)
        self.upper_limits = np.array([j.upper for j in self.joints], dtype=float)

    # --- Private methods -----------------------------------------------------

    def _build_model(self, name, ee_offset, ee_rotation):
        model = pin.Model()
        model.name = name

        parent = 0
        for spec in self.joints:
            placement = pin.SE3(np.eye(3), np.asarray(spec.offset, dtype=float))
            parent = model.addJoint(parent, _joint_model(spec.axis), placement, spec.name)
            # Small rotational inertia keeps the mass matrix well conditioned
            inertia = pin.Inertia(spec.mass, np.asarray(spec.com, dtype=float), np.eye(3) * 1e-4 * max(spec.mass, 1e-3))
            model.appendBodyToJoint(parent, inertia, pin.SE3.Identity())

        rotation = np.eye(3) if ee_rotation is None else np.asarray(ee_rotation, dtype=float)
        ee_placement = pin.SE3(rotation, np.asarray(ee_offset, dtype=float))
        ee_frame = model.addFrame(
            pin.Frame('end_effector', parent, 0, ee_placement, pin.FrameType.OP_FRAME)
        )
        data = model.createData()
        return model, data, ee_frame

    def _check_q(self, q) -> np.ndarray:
        q = np.asarray(q, dtype=float).reshape(-1)
        if q.shape != (self.num_joints,):
            raise ValueError(f"Joint vector must have shape ({self.num_joints},), got {q.shape}.")
        return q

    # --- Public utility ------------------------------------------------------

    @property
    def num_joints(self) -> int:
        return self.model.nq

    @property
    def masses(self) -> np.ndarray:
        """Mass of each segment, one element per joint."""
        return np.array([self.model.inertias[i].mass for i in range(1, self.model.njoints)])

    def clip(self, q) -> np.ndarray:
        return np.clip(q, self.lower_limits, self.upper_limits)

    def forward(self, q) -> Tuple[np.ndarray, np.ndarray]:
        """End-effector (position, rotation)."""
        q = self._check_q(q)
        pin.forwardKinematics(self.model, self.data, q)
        placement = pin.updateFramePlacement(self.model, self.data, self.ee_frame)
        return placement.translation.copy(), placement.rotation.copy()

    def jacobian(self, q) -> np.ndarray:
        """6xN end-effector Jacobian, linear rows first, root-frame aligned."""
        q = self._check_q(q)
        return pin.computeFrameJacobian(
            self.model, self.data, q, self.ee_frame, pin.ReferenceFrame.LOCAL_WORLD_ALIGNED
        )

    def gravity_torques(self, q, gravity) -> np.ndarray:
        """Joint torques holding every segment against the given gravity acceleration."""
        q = self._check_q(q)
        self.model.gravity = pin.Motion(np.asarray(gravity, dtype=float), np.zeros(3))
        return pin.computeGeneralizedGravity(self.model, self.data, q).copy()

    def solve_ik(
            self,
            seed,
            position=None,
            rotation=None,
            tol: float = 1e-4,
            max_iterations: int = 200,
            damping: float = 1e-6,
            max_step: float = 0.5,
        ) -> Tuple[bool, np.ndarray]:
        """Damped least squares IK for a position and/or SO(3) objective.

        Args:
            seed: Initial joint angles.
            position: Target end-effector position, or None.
            rotation: Target end-effector rotation matrix, or None.

        Returns:
            (success, angles). Angles always respect the joint limits; on
            failure they are the last iterate.
        """
        if position is None and rotation is None:
            raise ValueError("IK needs a position and/or a rotation objective.")

        q = self.clip(self._check_q(seed))
        for _ in range(max_iterations):
            current_position, current_rotation = self.forward(q)

            errors, rows = [], []
            if position is not None:
                errors.append(np.asarray(position, dtype=float) - current_position)
                rows.append(slice(0, 3))
            if rotation is not None:
                errors.append(pin.log3(np.asarray(rotation, dtype=float) @ current_rotation.T))
                rows.append(slice(3, 6))
            error = np.concatenate(errors)

            if np.linalg.norm(error) < tol:
                return True, q

            full = self.jacobian(q)
            J = np.vstack([full[r] for r in rows])
            dq = J.T @ np.linalg.solve(J @ J.T + damping * np.eye(J.shape[0]), error)
            step = np.linalg.norm(dq)
            if step > max_step:
                dq *= max_step / step
            q = self.clip(q + dq)

        return False, q
