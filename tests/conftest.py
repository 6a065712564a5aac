import numpy as np
import pytest

from control_states import ControlPhase, ControlStateMachine
from group import LoopbackGroup
from parameters import QuadrupedParameters
from quadruped import Quadruped
from robot import ControlCommand


class FakeClock:
    """Deterministic clock; sleeping advances time."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def params():
    return QuadrupedParameters()


@pytest.fixture
def group(params, clock):
    return LoopbackGroup(np.tile(params.folded_angles, 4), clock=clock)


@pytest.fixture
def robot(params, group):
    return Quadruped(params, group)


def run_until(machine, phase, dt, start_tick=1, max_ticks=5000, command=None):
    """Step the machine every dt seconds until it reaches phase; returns that tick."""
    command = command or ControlCommand()
    for tick in range(start_tick, start_tick + max_ticks):
        machine.step(command, tick * dt)
        if machine.phase is phase:
            return tick
    raise AssertionError(f"{phase} not reached within {max_ticks} ticks")


@pytest.fixture
def standing_robot(params, robot):
    """A robot that went through the whole stand-up sequence."""
    params.startup_seconds = 0.2
    machine = ControlStateMachine(robot, params, 0.0)
    run_until(machine, ControlPhase.PASSIVE_ORIENT, params.control_period)
    return robot
