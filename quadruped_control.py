#!/usr/bin/env python3
"""
quadruped_control.py - Fixed-rate control loop for the quadruped kit
Run this against a simulation server (sim_server.py) or in loopback mode
"""

import argparse
import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from control_states import ControlPhase, ControlStateMachine
from group import LoopbackGroup, RemoteGroup
from input_manager import InputManager, InputUnavailableError, ZmqInputManager, wait_for_input
from parameters import FINAL_MODES, QuadrupedParameters
from quadruped import Quadruped


logger = logging.getLogger(__name__)


@dataclass
class Telemetry:
    """Copy of the controller state for other threads."""
    phase: Optional[ControlPhase]
    tick: int
    elapsed: float
    body_R: np.ndarray
    joint_angles: np.ndarray


class ControlLoop:
    """Runs the state machine at a fixed period on its own thread.

    The robot model and the input device belong to the control thread; other
    threads see only `snapshot()` and the stop event.
    """

    def __init__(
            self,
            robot: Quadruped,
            input_manager: InputManager,
            params: QuadrupedParameters,
            stop_event: Optional[threading.Event] = None,
            clock: Callable[[], float] = time.monotonic,
            sleep: Callable[[float], None] = time.sleep,
        ):
        self.robot = robot
        self.input = input_manager
        self.params = params
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._sleep = sleep
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[Exception] = None
        self._lock = threading.Lock()
        self._telemetry = Telemetry(None, 0, 0.0, robot.get_body_r(), robot.joint_angles())

    def run(self, max_ticks: Optional[int] = None):
        """Control loop body; returns when stopped, on quit, or after max_ticks cycles."""
        period = self.params.control_period
        start_time = prev_time = self._clock()
        machine = ControlStateMachine(self.robot, self.params, start_time)
        ticks = 0

        while not self.stop_event.is_set():
            # Wait!
            need_to_wait = prev_time + period - self._clock()
            if need_to_wait > 0:
                self._sleep(need_to_wait)

            # Get dt (in seconds)
            now = self._clock()
            dt = now - prev_time
            prev_time = now

            self.robot.update_feedback(dt)

            # Get joystick update
            self.input.update()
            if self.input.get_quit_button_pushed():
                logger.info("Quit button pushed")
                self.stop_event.set()
                break
            command = self.input.read_command()

            machine.step(command, now, self.input.get_left_vert_raw(), self.input.get_right_vert_raw())
            self.robot.send_command()

            ticks += 1
            self._publish(Telemetry(machine.phase, ticks, now - start_time,
                                    self.robot.get_body_r(), self.robot.joint_angles()))
            if max_ticks is not None and ticks >= max_ticks:
                break

        logger.info("Control loop finished after %d cycles", ticks)

    def _publish(self, telemetry: Telemetry):
        with self._lock:
            self._telemetry = telemetry

    def snapshot(self) -> Telemetry:
        with self._lock:
            t = self._telemetry
            return Telemetry(t.phase, t.tick, t.elapsed, t.body_R.copy(), t.joint_angles.copy())

    # --- Thread management ---------------------------------------------------

    def _run_thread(self, max_ticks: Optional[int]):
        try:
            self.run(max_ticks)
        except Exception as e:
            logger.exception("Control loop failed")
            self.error = e
            self.stop_event.set()

    def start(self, max_ticks: Optional[int] = None) -> threading.Thread:
        self.error = None
        self._thread = threading.Thread(target=self._run_thread, args=(max_ticks,), name='control', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self):
        self.stop_event.set()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Quadruped kit controller')
    parser.add_argument('--params', help='JSON parameter file (defaults are used for missing keys)')
    parser.add_argument('--host', default='localhost', help='Simulation server host (default: localhost)')
    parser.add_argument('--port', type=int, default=5555, help='Simulation server port (default: 5555)')
    parser.add_argument('--loopback', action='store_true', help='Use an in-memory actuator group')
    parser.add_argument('--input-host', default='localhost', help='Teleop publisher host')
    parser.add_argument('--input-port', type=int, default=5556, help='Teleop publisher port (default: 5556)')
    parser.add_argument('--mode', choices=FINAL_MODES, help='Behaviour once standing')
    parser.add_argument('--quiet', action='store_true', help='Wait for the input device before starting')
    parser.add_argument('--input-timeout', type=float, default=10.0, help='Seconds to wait in --quiet mode')
    parser.add_argument('--duration', type=float, help='Stop after this many seconds')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(name)s] %(message)s')

    params = QuadrupedParameters.from_json(args.params) if args.params else QuadrupedParameters()
    if args.mode:
        params.final_mode = args.mode

    input_manager = ZmqInputManager(args.input_host, args.input_port)
    # Give the subscription a moment to receive a first frame
    time.sleep(0.2)
    input_manager.update()
    try:
        wait_for_input(input_manager, quiet=args.quiet, timeout=args.input_timeout)
    except InputUnavailableError as e:
        logger.error("%s", e)
        input_manager.close()
        return 1

    if args.loopback:
        group = LoopbackGroup(np.tile(params.folded_angles, 4))
    else:
        group = RemoteGroup(12, args.host, args.port, timeout=params.feedback_timeout)

    quadruped = Quadruped.create(params, group)
    if not quadruped.set_gains():
        logger.error("Could not send gains to the modules. Check that the server is running.")
        group.close()
        input_manager.close()
        return 1

    logger.info("Starting control program")
    loop = ControlLoop(quadruped, input_manager, params)
    loop.start()
    started = time.monotonic()
    try:
        while loop.is_running():
            loop.join(timeout=1.0)
            t = loop.snapshot()
            if t.phase is not None:
                logger.info("t=%.1fs tick=%d state=%s", t.elapsed, t.tick, t.phase.name)
            if args.duration is not None and time.monotonic() - started >= args.duration:
                break
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.stop()
        loop.join()
        group.close()
        input_manager.close()
    if loop.error is not None:
        logger.error("Stopped after a control loop failure: %s", loop.error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
