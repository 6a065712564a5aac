#!/usr/bin/env python3
"""
arm_control.py - Put everything together to control a 6-DoF arm
Traces the four corners of a box with the end effector pointing straight forward
"""

import argparse
import logging
import pickle
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
from scipy.interpolate import CubicHermiteSpline
from scipy.spatial.transform import Rotation as R

from group import ActuatorGroup, LoopbackGroup, RemoteGroup
from kinematics import JointSpec, KinematicChain, STANDARD_GRAVITY


logger = logging.getLogger(__name__)

NUM_JOINTS = 6

# === Configuration ===
ARM_KP = np.array([50.0, 80.0, 60.0, 20.0, 15.0, 10.0])
ARM_KD = np.array([1.0, 1.5, 1.0, 0.3, 0.2, 0.1])

# Corners of the box [m], one column per corner
XYZ_TARGETS = np.array([
    [0.40, 0.40, 0.40, 0.40],   # x
    [0.20, 0.20, -0.20, -0.20],  # y
    [0.10, 0.50, 0.50, 0.10],   # z
])

# End effector z axis points forward
ROTATION_TARGET = R.from_rotvec([0.0, np.pi / 2, 0.0]).as_matrix()

# "Elbow up" initial configuration for IK [rad]
ELBOW_UP_ANGLES = np.array([0.0, -1.0, 1.6, -0.6, 0.0, 0.0])


def build_arm() -> KinematicChain:
    """Base yaw, shoulder and elbow pitch, and a spherical wrist."""
    joints = [
        JointSpec('base', 'z', (0.0, 0.0, 0.0), 0.50, (0.0, 0.0, 0.05)),
        JointSpec('shoulder', 'y', (0.0, 0.0, 0.10), 0.70, (0.16, 0.0, 0.0)),
        JointSpec('elbow', 'y', (0.325, 0.0, 0.0), 0.60, (0.16, 0.0, 0.0)),
        JointSpec('wrist1', 'y', (0.325, 0.0, 0.0), 0.35),
        JointSpec('wrist2', 'z', (0.0, 0.0, 0.0), 0.35),
        JointSpec('wrist3', 'x', (0.0, 0.0, 0.0), 0.30, (0.05, 0.0, 0.0)),
    ]
    ee_rotation = R.from_rotvec([0.0, np.pi / 2, 0.0]).as_matrix()
    return KinematicChain(joints, end_effector_offset=(0.10, 0.0, 0.0),
                          end_effector_rotation=ee_rotation, name='6-DoF arm')


def solve_waypoints(chain: KinematicChain, xyz_targets: np.ndarray, rotation_target: np.ndarray,
                    seed: np.ndarray) -> np.ndarray:
    """Joint waypoints for each xyz column; the first one is repeated to close the loop."""
    joint_targets = np.zeros((chain.num_joints, xyz_targets.shape[1] + 1))
    for col in range(xyz_targets.shape[1]):
        success, angles = chain.solve_ik(seed, position=xyz_targets[:, col], rotation=rotation_target)
        if not success:
            raise RuntimeError(f"No IK solution for box corner {xyz_targets[:, col]}")
        joint_targets[:, col] = angles
    joint_targets[:, -1] = joint_targets[:, 0]
    return joint_targets


def make_trajectory(start: np.ndarray, end: np.ndarray, duration: float) -> CubicHermiteSpline:
    """Point to point move, at rest at both ends."""
    waypoints = np.vstack([start, end])
    return CubicHermiteSpline([0.0, duration], waypoints, np.zeros_like(waypoints), axis=0)


def execute_trajectory(
        group: ActuatorGroup,
        chain: KinematicChain,
        trajectory: CubicHermiteSpline,
        period: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        log: Optional[List[dict]] = None,
    ):
    """Stream position, velocity and gravity compensation commands along the trajectory."""
    duration = trajectory.x[-1]
    velocity = trajectory.derivative()
    gravity = np.array([0.0, 0.0, -STANDARD_GRAVITY])

    start = clock()
    t = 0.0
    while t < duration:
        # Get feedback and update the timer
        feedback = group.get_next_feedback(timeout=period)
        t = min(clock() - start, duration)

        pos_cmd = trajectory(t)
        vel_cmd = velocity(t)
        measured = pos_cmd if feedback is None else feedback.positions
        eff_cmd = chain.gravity_torques(measured, gravity)

        group.send_command(positions=pos_cmd, velocities=vel_cmd, efforts=eff_cmd)
        if log is not None and feedback is not None:
            log.append({'time': feedback.timestamp, 'positions': feedback.positions.copy(),
                        'velocities': feedback.velocities.copy(), 'command': pos_cmd.copy()})
        sleep(period)


def run_box(
        group: ActuatorGroup,
        chain: KinematicChain,
        approach_time: float = 5.0,
        move_time: float = 3.0,
        **execute_kwargs,
    ) -> np.ndarray:
    """Move to the first corner slowly, then around the box. Returns the joint waypoints."""
    joint_targets = solve_waypoints(chain, XYZ_TARGETS, ROTATION_TARGET, ELBOW_UP_ANGLES)

    feedback = group.get_next_feedback(timeout=1.0)
    if feedback is None:
        raise ConnectionError("No feedback from the arm")

    logger.info("Moving to the first corner")
    execute_trajectory(group, chain, make_trajectory(feedback.positions, joint_targets[:, 0], approach_time),
                       **execute_kwargs)

    for col in range(joint_targets.shape[1] - 1):
        logger.info("Corner %d -> %d", col, (col + 1) % XYZ_TARGETS.shape[1])
        execute_trajectory(group, chain,
                           make_trajectory(joint_targets[:, col], joint_targets[:, col + 1], move_time),
                           **execute_kwargs)
    return joint_targets


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='6-DoF arm box demo')
    parser.add_argument('--host', default='localhost', help='Simulation server host (default: localhost)')
    parser.add_argument('--port', type=int, default=5555, help='Simulation server port (default: 5555)')
    parser.add_argument('--loopback', action='store_true', help='Use an in-memory actuator group')
    parser.add_argument('--log', help='Pickle file for the recorded feedback')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='[%(name)s] %(message)s')

    if args.loopback:
        group = LoopbackGroup(ELBOW_UP_ANGLES)
    else:
        group = RemoteGroup(NUM_JOINTS, args.host, args.port)

    with group:
        if not group.set_gains(ARM_KP, ARM_KD):
            logger.error("Group not found, or could not send gains to the modules. "
                         "Check that the server is running and reachable.")
            return 1

        chain = build_arm()
        records = [] if args.log else None
        run_box(group, chain, log=records)

        if args.log:
            with open(Path(args.log), 'wb') as f:
                pickle.dump(records, f)
            logger.info("Saved %d feedback samples to %s", len(records), args.log)
    return 0


if __name__ == "__main__":
    sys.exit(main())
