# control_states.py
"""Stand-up and locomotion state machine.

Every state is an object carrying only its own scratch data; `tick` runs one
control cycle and returns the state for the next cycle (itself when staying).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from scipy.spatial.transform import Rotation as R

from parameters import QuadrupedParameters
from quadruped import GaitPlan, Quadruped, SwingGroup
from robot import ControlCommand


logger = logging.getLogger(__name__)

# Absorbs float quantization of tick timestamps
_TIME_EPSILON = 1e-9


class ControlPhase(Enum):
    STAND_UP_1 = "stand_up_1"          # spread
    STAND_UP_2 = "stand_up_2"          # push
    STAND_UP_3 = "stand_up_3"          # prepare quad stance
    NORMAL_LEFT = "normal_left"        # swing group A
    NORMAL_RIGHT = "normal_right"      # swing group B
    ORIENT = "orient"
    PASSIVE_ORIENT = "passive_orient"


@dataclass
class ControlContext:
    """Everything a state may read during one cycle."""
    robot: Quadruped
    params: QuadrupedParameters
    command: ControlCommand
    now: float
    left_vert: float = 0.0
    right_vert: float = 0.0


def duration_reached(elapsed: float, duration: float) -> bool:
    return elapsed >= duration - _TIME_EPSILON


def damped_correction(target_R: np.ndarray, current_R: np.ndarray, gain: float) -> np.ndarray:
    """Rotation covering `gain` of the way from current_R to target_R (angle-axis scaled)."""
    error = R.from_matrix(target_R @ current_R.T).as_rotvec()
    return R.from_rotvec(gain * error).as_matrix()


def orient_target(left_vert: float, right_vert: float, tilt_deg: float) -> np.ndarray:
    """Trunk rotation from the two vertical sticks: right stick pitches, left stick rolls."""
    return R.from_euler('ZYX', [0.0, right_vert * tilt_deg, left_vert * tilt_deg], degrees=True).as_matrix()


class ControlState(ABC):
    phase: ControlPhase
    entered_at: float

    def elapsed(self, now: float) -> float:
        return now - self.entered_at

    @abstractmethod
    def tick(self, ctx: ControlContext) -> "ControlState":
        pass


@dataclass
class StandUpSpread(ControlState):
    entered_at: float
    start_feet: np.ndarray
    phase: ControlPhase = field(default=ControlPhase.STAND_UP_1, init=False)

    @classmethod
    def enter(cls, robot: Quadruped, now: float) -> "StandUpSpread":
        return cls(now, robot.current_feet())

    def tick(self, ctx):
        elapsed = self.elapsed(ctx.now)
        duration = ctx.params.startup_seconds
        ctx.robot.spread_all_legs(elapsed / duration, self.start_feet)
        if duration_reached(elapsed, duration):
            return StandUpPush.enter(ctx.robot, ctx.now)
        return self


@dataclass
class StandUpPush(ControlState):
    entered_at: float
    start_feet: np.ndarray
    phase: ControlPhase = field(default=ControlPhase.STAND_UP_2, init=False)

    @classmethod
    def enter(cls, robot: Quadruped, now: float) -> "StandUpPush":
        return cls(now, robot.current_feet())

    def tick(self, ctx):
        elapsed = self.elapsed(ctx.now)
        duration = ctx.params.startup_seconds
        ctx.robot.push_all_legs(elapsed, duration, self.start_feet)
        if duration_reached(elapsed, duration):
            ctx.robot.start_body_r_update()
            return StandUpPrepare.enter(ctx.robot, ctx.now)
        return self


@dataclass
class StandUpPrepare(ControlState):
    entered_at: float
    start_feet: np.ndarray
    phase: ControlPhase = field(default=ControlPhase.STAND_UP_3, init=False)

    @classmethod
    def enter(cls, robot: Quadruped, now: float) -> "StandUpPrepare":
        return cls(now, robot.current_feet())

    def tick(self, ctx):
        elapsed = self.elapsed(ctx.now)
        duration = ctx.params.startup_seconds
        ctx.robot.prepare_quad_mode(elapsed / duration, self.start_feet)
        if not duration_reached(elapsed, duration):
            return self

        balance_R = ctx.robot.capture_balance_r()
        mode = ctx.params.final_mode
        if mode == 'walk':
            return NormalGait.enter(ctx.robot, SwingGroup.A, ctx.command, ctx.params, ctx.now)
        if mode == 'orient':
            return Orient(ctx.now)
        return PassiveOrient(ctx.now, balance_R)


@dataclass
class NormalGait(ControlState):
    """One half of the trot: the legs of `swing_group` swing, the others push."""
    entered_at: float
    swing_group: SwingGroup
    plan: GaitPlan

    @property
    def phase(self) -> ControlPhase:
        return ControlPhase.NORMAL_LEFT if self.swing_group is SwingGroup.A else ControlPhase.NORMAL_RIGHT

    @classmethod
    def enter(cls, robot: Quadruped, swing_group: SwingGroup, command: ControlCommand,
              params: QuadrupedParameters, now: float) -> "NormalGait":
        return cls(now, swing_group, robot.plan_gait(swing_group, command, params.swing_time))

    def tick(self, ctx):
        elapsed = self.elapsed(ctx.now)
        ctx.robot.step_gait(self.plan, elapsed)
        if duration_reached(elapsed, ctx.params.swing_time):
            return NormalGait.enter(ctx.robot, self.swing_group.other, ctx.command, ctx.params, ctx.now)
        return self


@dataclass
class Orient(ControlState):
    """Trunk attitude follows the operator's vertical sticks."""
    entered_at: float
    phase: ControlPhase = field(default=ControlPhase.ORIENT, init=False)

    def tick(self, ctx):
        ctx.robot.start_body_r_update()
        ctx.robot.re_orient(orient_target(ctx.left_vert, ctx.right_vert, ctx.params.orient_tilt_deg))
        return self


@dataclass
class PassiveOrient(ControlState):
    """Keeps the trunk at the attitude it had when standing finished.

    Each cycle a fraction of the error between the balance rotation and the
    measured rotation is integrated into the commanded rotation.
    """
    entered_at: float
    balance_R: np.ndarray
    control_R: np.ndarray = field(default_factory=lambda: np.eye(3))
    phase: ControlPhase = field(default=ControlPhase.PASSIVE_ORIENT, init=False)

    def tick(self, ctx):
        ctx.robot.start_body_r_update()
        correction = damped_correction(self.balance_R, ctx.robot.get_body_r(), ctx.params.passive_orient_gain)
        self.control_R = self.control_R @ correction
        ctx.robot.re_orient(self.control_R)
        return self


class ControlStateMachine:
    """Holds the active state and logs transitions."""

    def __init__(self, robot: Quadruped, params: QuadrupedParameters, now: float):
        self.robot = robot
        self.params = params
        self.state: ControlState = StandUpSpread.enter(robot, now)
        logger.info("Entering %s", self.state.phase.name)

    @property
    def phase(self) -> ControlPhase:
        return self.state.phase

    def step(self, command: ControlCommand, now: float,
             left_vert: float = 0.0, right_vert: float = 0.0) -> ControlState:
        ctx = ControlContext(self.robot, self.params, command, now, left_vert, right_vert)
        next_state = self.state.tick(ctx)
        if next_state is not self.state:
            logger.info("%s -> %s after %.3f s", self.state.phase.name, next_state.phase.name,
                        self.state.elapsed(now))
            self.state = next_state
        return self.state
