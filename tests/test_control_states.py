import numpy as np
import pytest
from scipy.spatial.transform import Rotation as R

from conftest import run_until
from control_states import (
    ControlContext, ControlPhase, ControlStateMachine, NormalGait, PassiveOrient, damped_correction,
    duration_reached, orient_target,
)
from group import LoopbackGroup
from quadruped import Quadruped
from robot import ControlCommand


def rotation_angle(matrix):
    return np.linalg.norm(R.from_matrix(matrix).as_rotvec())


def test_duration_reached_absorbs_quantization():
    assert duration_reached(380 * 0.005, 1.9)
    assert duration_reached(1.9 - 1e-12, 1.9)
    assert not duration_reached(379 * 0.005, 1.9)


def test_stand_up_transition_tick(robot, params):
    machine = ControlStateMachine(robot, params, 0.0)
    assert machine.phase is ControlPhase.STAND_UP_1
    for tick in range(1, 380):
        machine.step(ControlCommand(), tick * 0.005)
        assert machine.phase is ControlPhase.STAND_UP_1
    machine.step(ControlCommand(), 380 * 0.005)
    assert machine.phase is ControlPhase.STAND_UP_2


def test_stand_up_sequence(robot, params):
    machine = ControlStateMachine(robot, params, 0.0)
    dt = params.control_period
    assert run_until(machine, ControlPhase.STAND_UP_2, dt) == 380
    assert run_until(machine, ControlPhase.STAND_UP_3, dt, start_tick=381) == 760
    assert robot.tracking_body_r
    assert run_until(machine, ControlPhase.PASSIVE_ORIENT, dt, start_tick=761) == 1140
    assert all(robot.ik_failures(i) == 0 for i in range(4))
    np.testing.assert_allclose(robot.current_feet(), robot.nominal_stance(), atol=1e-3)


def test_stand_up_is_deterministic(params, clock):
    def run():
        robot = Quadruped(params, LoopbackGroup(np.tile(params.folded_angles, 4), clock=clock))
        machine = ControlStateMachine(robot, params, 0.0)
        phases, angles = [], []
        for tick in range(1, 1200):
            machine.step(ControlCommand(), tick * params.control_period)
            phases.append(machine.phase)
            angles.append(robot.commanded_angles())
        return phases, np.array(angles)

    phases_a, angles_a = run()
    phases_b, angles_b = run()
    assert phases_a == phases_b
    np.testing.assert_array_equal(angles_a, angles_b)


def test_stand_up_feet_move_outward_then_down(robot, params):
    params.startup_seconds = 0.2
    machine = ControlStateMachine(robot, params, 0.0)
    dt = params.control_period

    run_until(machine, ControlPhase.STAND_UP_2, dt)
    np.testing.assert_allclose(robot.current_feet(), robot.spread_pose(), atol=1e-3)

    run_until(machine, ControlPhase.STAND_UP_3, dt, start_tick=41)
    np.testing.assert_allclose(robot.current_feet(), robot.push_pose(), atol=1e-3)
    np.testing.assert_allclose(robot.current_feet()[:, 2], -params.body_height, atol=1e-3)


def test_damped_correction_zero_error():
    target = R.from_euler('xyz', [0.2, -0.1, 0.4]).as_matrix()
    np.testing.assert_allclose(damped_correction(target, target, 0.031), np.eye(3), atol=1e-12)


def test_passive_orient_converges_geometrically():
    gain = 0.031
    target = R.from_euler('xy', [0.3, -0.2]).as_matrix()
    current = np.eye(3)
    errors = [rotation_angle(target @ current.T)]
    for _ in range(200):
        current = damped_correction(target, current, gain) @ current
        errors.append(rotation_angle(target @ current.T))

    errors = np.array(errors)
    assert np.all(np.diff(errors) < 0)
    np.testing.assert_allclose(errors, errors[0] * (1 - gain) ** np.arange(201), rtol=1e-6)


@pytest.mark.parametrize('left, right, euler', [
    (1.0, 0.0, [0.0, 0.0, 16.0]),
    (0.0, 1.0, [0.0, 16.0, 0.0]),
    (-0.5, 0.5, [0.0, 8.0, -8.0]),
    (0.0, 0.0, [0.0, 0.0, 0.0]),
])
def test_orient_target(left, right, euler):
    expected = R.from_euler('ZYX', euler, degrees=True).as_matrix()
    np.testing.assert_allclose(orient_target(left, right, 16.0), expected, atol=1e-12)


def test_orient_target_roll_about_x():
    np.testing.assert_allclose(orient_target(1.0, 0.0, 16.0),
                               R.from_euler('x', 16.0, degrees=True).as_matrix(), atol=1e-12)


def test_passive_orient_integrates_error(standing_robot, params):
    robot = standing_robot
    state = PassiveOrient(0.0, np.eye(3))
    robot.set_body_r(R.from_rotvec([0.1, 0.0, 0.0]).as_matrix())

    ctx = ControlContext(robot, params, ControlCommand(), 0.005)
    assert state.tick(ctx) is state
    np.testing.assert_allclose(R.from_matrix(state.control_R).as_rotvec(),
                               [-0.1 * params.passive_orient_gain, 0.0, 0.0], atol=1e-12)

    first = rotation_angle(state.control_R)
    state.tick(ControlContext(robot, params, ControlCommand(), 0.010))
    # Measured attitude unchanged, so the correction keeps accumulating
    assert rotation_angle(state.control_R) == pytest.approx(2 * first)


def test_orient_mode_follows_sticks(robot, params):
    params.startup_seconds = 0.2
    params.final_mode = 'orient'
    machine = ControlStateMachine(robot, params, 0.0)
    dt = params.control_period
    tick = run_until(machine, ControlPhase.ORIENT, dt)

    machine.step(ControlCommand(), (tick + 1) * dt, left_vert=0.5)
    target_R = orient_target(0.5, 0.0, params.orient_tilt_deg)
    expected = (target_R.T @ robot.nominal_stance().T).T
    np.testing.assert_allclose(robot.current_feet(), expected, atol=1e-3)


def test_walk_mode_alternates_swing_groups(robot, params):
    params.startup_seconds = 0.2
    params.final_mode = 'walk'
    machine = ControlStateMachine(robot, params, 0.0)
    dt = params.control_period
    command = ControlCommand(translation_velocity=np.array([0.5, 0.0, 0.0]))

    first = run_until(machine, ControlPhase.NORMAL_LEFT, dt, command=command)
    assert isinstance(machine.state, NormalGait)

    swing_ticks = round(params.swing_time / dt)
    second = run_until(machine, ControlPhase.NORMAL_RIGHT, dt, start_tick=first + 1, command=command)
    assert second - first == swing_ticks
    third = run_until(machine, ControlPhase.NORMAL_LEFT, dt, start_tick=second + 1, command=command)
    assert third - second == swing_ticks
    assert all(robot.ik_failures(i) == 0 for i in range(4))


def test_walking_forward_moves_swing_feet_forward(robot, params):
    params.startup_seconds = 0.2
    params.final_mode = 'walk'
    machine = ControlStateMachine(robot, params, 0.0)
    dt = params.control_period
    command = ControlCommand(translation_velocity=np.array([1.0, 0.0, 0.0]))

    first = run_until(machine, ControlPhase.NORMAL_LEFT, dt, command=command)
    before = robot.current_feet()
    run_until(machine, ControlPhase.NORMAL_RIGHT, dt, start_tick=first + 1, command=command)
    after = robot.current_feet()

    stride = params.max_linear_speed * params.swing_time / 2
    for i in (0, 3):
        assert after[i, 0] - before[i, 0] == pytest.approx(stride, abs=2e-3)
    for i in (1, 2):
        assert after[i, 0] - before[i, 0] == pytest.approx(-stride, abs=2e-3)
