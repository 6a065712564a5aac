# input_manager.py
"""Operator input devices reduced to velocity commands and a few buttons."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

import numpy as np
import zmq

from robot import ControlCommand


logger = logging.getLogger(__name__)


class InputUnavailableError(TimeoutError):
    """No input device connected before the deadline."""


def _axes(values, size: int = 3) -> np.ndarray:
    values = np.zeros(size) if values is None else np.asarray(values, dtype=float).reshape(-1)
    if values.shape != (size,):
        raise ValueError(f"Expected {size} axis values, got shape {values.shape}.")
    return np.clip(values, -1.0, 1.0)


class InputManager(ABC):
    """Normalized operator commands, all axes in [-1, 1]."""

    def __init__(self):
        self._translation = np.zeros(3)
        self._rotation = np.zeros(3)
        self._quit = False
        self._left_vert = 0.0
        self._right_vert = 0.0

    @abstractmethod
    def update(self):
        """Read the device once; getters return this snapshot until the next call."""

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def reset(self):
        """Try to (re)connect to the device."""

    def close(self):
        pass

    def get_translation_velocity_cmd(self) -> np.ndarray:
        return self._translation.copy()

    def get_rotation_velocity_cmd(self) -> np.ndarray:
        return self._rotation.copy()

    def get_quit_button_pushed(self) -> bool:
        return self._quit

    def get_left_vert_raw(self) -> float:
        return self._left_vert

    def get_right_vert_raw(self) -> float:
        return self._right_vert

    def read_command(self) -> ControlCommand:
        return ControlCommand(
            translation_velocity=self.get_translation_velocity_cmd(),
            rotation_velocity=self.get_rotation_velocity_cmd(),
            quit=self.get_quit_button_pushed(),
        )

    def _apply(self, message: dict):
        self._translation = _axes(message.get('translation'))
        self._rotation = _axes(message.get('rotation'))
        self._quit = bool(message.get('quit', False))
        self._left_vert = float(np.clip(message.get('left_vert', 0.0), -1.0, 1.0))
        self._right_vert = float(np.clip(message.get('right_vert', 0.0), -1.0, 1.0))


class ScriptedInputManager(InputManager):
    """Replays a fixed list of input frames, one per update, then holds the last."""

    def __init__(self, frames: Sequence[dict] = (), connected: bool = True, connect_after_resets: int = 0):
        super().__init__()
        self._frames = list(frames)
        self._cursor = 0
        self._connected = connected
        self._connect_after_resets = connect_after_resets
        self.resets = 0

    def update(self):
        if self._cursor < len(self._frames):
            self._apply(self._frames[self._cursor])
            self._cursor += 1

    def is_connected(self) -> bool:
        return self._connected

    def reset(self):
        self.resets += 1
        if self._connect_after_resets and self.resets >= self._connect_after_resets:
            self._connected = True


class ZmqInputManager(InputManager):
    """Subscribes to JSON input frames published by `teleop_client.py`.

    Frame keys: translation, rotation (3 axes each), quit, left_vert, right_vert.
    The device counts as connected while frames keep arriving.
    """

    def __init__(self, host: str = "localhost", port: int = 5556, stale_after: float = 0.5,
                 context: Optional[zmq.Context] = None, clock: Callable[[], float] = time.monotonic,
                 reset_wait: float = 0.1):
        super().__init__()
        self.endpoint = f"tcp://{host}:{port}"
        self.stale_after = stale_after
        self.reset_wait = reset_wait
        self._context = context or zmq.Context.instance()
        self._clock = clock
        self._last_frame_time: Optional[float] = None
        self._socket = None
        self._connect()

    def _connect(self):
        self._socket = self._context.socket(zmq.SUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.setsockopt(zmq.SUBSCRIBE, b"")
        self._socket.connect(self.endpoint)

    def update(self):
        latest = None
        while True:
            try:
                frame = self._socket.recv_json(flags=zmq.NOBLOCK)
            except zmq.Again:
                break
            except ValueError as e:
                logger.warning("Dropping malformed input frame: %s", e)
                continue
            if isinstance(frame, dict):
                latest = frame
        if latest is not None:
            self._apply(latest)
            self._last_frame_time = self._clock()
        elif not self.is_connected():
            # Lost device: stop moving
            self._apply({})

    def is_connected(self) -> bool:
        return self._last_frame_time is not None and self._clock() - self._last_frame_time < self.stale_after

    def reset(self):
        self._socket.close()
        self._connect()
        # A fresh subscription sees nothing until the publisher notices it
        self._socket.poll(timeout=int(self.reset_wait * 1000))
        self.update()

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None


def wait_for_input(
        input_manager: InputManager,
        quiet: bool,
        timeout: float = 10.0,
        initial_backoff: float = 0.01,
        max_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> bool:
    """Make sure an input device is present before starting the robot.

    Without `quiet` a missing device only produces a warning. With `quiet` the
    device is reset with exponential backoff until it connects.

    Raises:
        InputUnavailableError: `quiet` is set and nothing connected within timeout.
    """
    if input_manager.is_connected():
        logger.info("Found input joystick")
        return True
    if not quiet:
        logger.warning("Could not find input joystick; continuing without it")
        return False

    deadline = clock() + timeout
    backoff = initial_backoff
    attempts = 0
    while True:
        input_manager.reset()
        attempts += 1
        if input_manager.is_connected():
            logger.info("Found input joystick after %d resets", attempts)
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            raise InputUnavailableError(f"No input joystick after {attempts} resets in {timeout:.1f} s")
        sleep(min(backoff, remaining))
        backoff = min(backoff * 2, max_backoff)
        # Frames may have arrived on the open socket while sleeping
        input_manager.update()
        if input_manager.is_connected():
            logger.info("Found input joystick after %d resets", attempts)
            return True
