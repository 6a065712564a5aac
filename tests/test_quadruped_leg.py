import numpy as np
import pytest

from quadruped_leg import IKError, LegConfiguration, QuadLeg

MIRROR = np.diag([1.0, -1.0, 1.0, 1.0])


def make_leg(params, configuration=LegConfiguration.LEFT, angle=np.pi / 6, index=0):
    return QuadLeg(angle, params.radial_offset, params.folded_angles, params, index, configuration)


@pytest.mark.parametrize('angle', [np.pi / 6, 5 * np.pi / 6, -0.4, 0.0])
@pytest.mark.parametrize('distance', [0.0, 0.2, 0.35])
def test_right_base_frame_mirrors_left(params, angle, distance):
    left = QuadLeg(angle, distance, params.folded_angles, params, 0, LegConfiguration.LEFT)
    right = QuadLeg(angle, distance, params.folded_angles, params, 1, LegConfiguration.RIGHT)
    np.testing.assert_allclose(right.get_base_frame(), MIRROR @ left.get_base_frame() @ MIRROR, atol=1e-12)


def test_base_frame_is_rigid_transform(params):
    frame = make_leg(params, LegConfiguration.RIGHT, 5 * np.pi / 6).get_base_frame()
    rotation = frame[:3, :3]
    np.testing.assert_allclose(rotation.T @ rotation, np.eye(3), atol=1e-12)
    assert np.linalg.det(rotation) == pytest.approx(1.0)
    np.testing.assert_allclose(frame[3], [0.0, 0.0, 0.0, 1.0])


def test_hip_position(params):
    frame = make_leg(params, LegConfiguration.RIGHT).get_base_frame()
    expected = params.radial_offset * np.array([np.cos(np.pi / 6), -np.sin(np.pi / 6), 0.0])
    np.testing.assert_allclose(frame[:3, 3], expected, atol=1e-12)


def test_mirrored_targets_give_identical_angles(params):
    left = make_leg(params, LegConfiguration.LEFT)
    right = make_leg(params, LegConfiguration.RIGHT, index=1)
    target = np.array([0.45, 0.12, -0.28])

    left_angles = left.compute_ik(None, target)
    right_angles = right.compute_ik(None, target * [1.0, -1.0, 1.0])
    np.testing.assert_allclose(left_angles, right_angles, atol=1e-6)

    # The same holds in the body frame
    left_body = left.to_body(left.foot_position(left_angles))
    right_body = right.to_body(right.foot_position(right_angles))
    np.testing.assert_allclose(right_body, left_body * [1.0, -1.0, 1.0], atol=1e-6)


def test_frame_round_trip(params):
    leg = make_leg(params, LegConfiguration.RIGHT, 5 * np.pi / 6, 3)
    point = np.array([0.3, -0.2, -0.1])
    np.testing.assert_allclose(leg.to_body(leg.to_local(point)), point, atol=1e-12)


def test_ik_reaches_reachable_target(params):
    leg = make_leg(params)
    q_true = np.array([0.2, -0.3, 1.5])
    target = leg.foot_position(q_true)

    angles = leg.compute_ik(q_true + [0.1, -0.1, 0.1], target)
    np.testing.assert_allclose(leg.foot_position(angles), target, atol=1e-3)
    np.testing.assert_allclose(leg.seed_angles, angles)


def test_ik_failure_keeps_seed(params):
    leg = make_leg(params)
    reachable = leg.foot_position(np.array([0.1, 0.2, 1.2]))
    solved = leg.compute_ik(None, reachable)
    seed_before = leg.seed_angles

    with pytest.raises(IKError) as info:
        leg.compute_ik(None, [1.5, 0.0, 0.0])

    assert info.value.leg_index == 0
    assert info.value.residual > 0.5
    np.testing.assert_array_equal(leg.seed_angles, seed_before)
    np.testing.assert_array_equal(leg.seed_angles, solved)


def test_ik_respects_joint_limits(params):
    leg = make_leg(params)
    # Only reachable with the hip yawed past its limit
    target = leg.foot_position([0.0, 0.2, 1.0])
    target = np.array([target[0] * np.cos(2.0), target[0] * np.sin(2.0), target[2]])
    with pytest.raises(IKError):
        leg.compute_ik(None, target)


@pytest.mark.parametrize('configuration', list(LegConfiguration))
@pytest.mark.parametrize('angles', [(0.0, 0.0, 0.0), (0.3, -0.5, 1.2), (-0.9, 1.1, 2.5)])
def test_zero_gravity_zero_force_gives_spring_torques(params, configuration, angles):
    leg = make_leg(params, configuration)
    torques = leg.compute_compensate_torques(angles, [0.4, -0.2, 1.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0])
    np.testing.assert_array_equal(torques, np.asarray(params.spring_torques))


@pytest.mark.parametrize('configuration', list(LegConfiguration))
def test_gravity_torques_leg_stretched_out(params, configuration):
    leg = make_leg(params, configuration)
    torques = leg.compute_compensate_torques([0.0, 0.0, 0.0], np.zeros(3), [0.0, 0.0, -1.0], np.zeros(3))
    thigh, shin = params.segment_masses[1:]
    pitch = -9.81 * (thigh * params.thigh_length / 2 + shin * (params.thigh_length + params.shin_length / 2))
    knee = -9.81 * shin * params.shin_length / 2
    np.testing.assert_allclose(torques - params.spring_torques, [0.0, pitch, knee], atol=1e-9)


def test_foot_force_torques(params):
    leg = make_leg(params)
    # Foot pushing 10 N straight down with the leg stretched out
    torques = leg.compute_compensate_torques([0.0, 0.0, 0.0], np.zeros(3), np.zeros(3), [0.0, 0.0, -10.0])
    reach = params.thigh_length + params.shin_length
    np.testing.assert_allclose(torques - params.spring_torques,
                               [0.0, 10.0 * reach, 10.0 * params.shin_length], atol=1e-9)


def test_set_joint_angles_wrong_length(params):
    leg = make_leg(params)
    with pytest.raises(ValueError):
        leg.set_joint_angles([0.0, 1.0])


def test_get_joint_angles_returns_copy(params):
    leg = make_leg(params)
    angles = leg.get_joint_angles()
    angles[0] = 42.0
    np.testing.assert_array_equal(leg.get_joint_angles(), params.folded_angles)


def test_masses(params):
    np.testing.assert_allclose(make_leg(params).masses, params.segment_masses)


def test_bad_index(params):
    with pytest.raises(ValueError):
        make_leg(params, index=4)


def test_bad_configuration(params):
    with pytest.raises(TypeError):
        QuadLeg(0.0, 0.2, params.folded_angles, params, 0, 'left')
