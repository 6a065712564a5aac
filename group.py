# group.py
"""Actuator groups - send joint commands and receive joint feedback."""

import logging
import pickle
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np
import zmq

from robot import Command, JointCommand, JointFeedback


logger = logging.getLogger(__name__)


class ActuatorGroup(ABC):
    """A fixed set of actuators commanded together."""

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError(f"Group size must be positive, got {size}.")
        self.size = size

    @abstractmethod
    def send_command(self, positions=None, velocities=None, efforts=None):
        pass

    @abstractmethod
    def get_next_feedback(self, timeout: Optional[float] = None) -> Optional[JointFeedback]:
        """Next feedback sample, or None when none arrived within timeout seconds."""

    @abstractmethod
    def set_gains(self, kp: np.ndarray, kd: np.ndarray) -> bool:
        """Send position gains; True when the group acknowledged them."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _check(self, name: str, values) -> Optional[np.ndarray]:
        if values is None:
            return None
        values = np.asarray(values, dtype=float).reshape(-1)
        if values.shape != (self.size,):
            raise ValueError(f"'{name}' must have {self.size} elements, got {values.shape}.")
        return values


class LoopbackGroup(ActuatorGroup):
    """In-memory group whose joints reach every position command instantly."""

    def __init__(self, initial_positions, clock: Callable[[], float] = time.monotonic):
        initial_positions = np.asarray(initial_positions, dtype=float).reshape(-1)
        super().__init__(len(initial_positions))
        self._clock = clock
        self._positions = initial_positions.copy()
        self._velocities = np.zeros(self.size)
        self._efforts = np.zeros(self.size)
        self.gyro: Optional[np.ndarray] = None
        self.gains = None
        self.last_command: Optional[JointCommand] = None
        self.commands_sent = 0

    def send_command(self, positions=None, velocities=None, efforts=None):
        command = JointCommand(
            positions=self._check('positions', positions),
            velocities=self._check('velocities', velocities),
            efforts=self._check('efforts', efforts),
        )
        if command.positions is not None:
            self._positions = command.positions.copy()
        self._velocities = np.zeros(self.size) if command.velocities is None else command.velocities.copy()
        if command.efforts is not None:
            self._efforts = command.efforts.copy()
        self.last_command = command
        self.commands_sent += 1

    def get_next_feedback(self, timeout: Optional[float] = None) -> Optional[JointFeedback]:
        return JointFeedback(
            timestamp=self._clock(),
            positions=self._positions.copy(),
            velocities=self._velocities.copy(),
            efforts=self._efforts.copy(),
            gyro=None if self.gyro is None else np.array(self.gyro, dtype=float),
        )

    def set_gains(self, kp, kd) -> bool:
        self.gains = (self._check('kp', kp), self._check('kd', kd))
        return True


class RemoteGroup(ActuatorGroup):
    """Client of the simulation server over a ZeroMQ REQ socket.

    A request without a reply inside the timeout drops the socket and
    reconnects, so one lost message never wedges the REQ state machine.
    The state returned with each command is kept and handed out by the next
    `get_next_feedback`, so a control cycle costs one round trip.
    """

    def __init__(self, size: int, host: str = "localhost", port: int = 5555,
                 timeout: float = 0.05, context: Optional[zmq.Context] = None):
        super().__init__(size)
        self.endpoint = f"tcp://{host}:{port}"
        self.timeout = timeout
        self._context = context or zmq.Context.instance()
        self._socket = None
        self.last_state: Optional[JointFeedback] = None
        self._connect()

    def _connect(self):
        self._socket = self._context.socket(zmq.REQ)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.connect(self.endpoint)
        logger.info("Connected to actuator server at %s", self.endpoint)

    def _reconnect(self):
        self._socket.close()
        self._connect()

    def _request(self, cmd: Command, timeout: Optional[float] = None) -> Optional[dict]:
        """Send a command and wait for the server's state reply."""
        timeout = self.timeout if timeout is None else timeout
        try:
            self._socket.send(pickle.dumps(cmd))
            if self._socket.poll(timeout=int(timeout * 1000)) & zmq.POLLIN:
                return pickle.loads(self._socket.recv())
        except zmq.ZMQError as e:
            logger.warning("Request '%s' failed: %s", cmd.type, e)
            self._reconnect()
            return None

        logger.warning("No reply to '%s' within %.0f ms; reconnecting", cmd.type, timeout * 1000)
        self._reconnect()
        return None

    # ========== Group API ==========

    def send_command(self, positions=None, velocities=None, efforts=None):
        data = {}
        for name, values in (('positions', positions), ('velocities', velocities), ('efforts', efforts)):
            values = self._check(name, values)
            data[name] = None if values is None else values.tolist()
        # The server answers a command with its state; that serves as the next feedback
        self.last_state = self._to_feedback(self._request(Command(type='command', data=data)))

    def get_next_feedback(self, timeout: Optional[float] = None) -> Optional[JointFeedback]:
        if self.last_state is not None:
            feedback, self.last_state = self.last_state, None
            return feedback
        return self._to_feedback(self._request(Command(type='feedback', data={}), timeout))

    @staticmethod
    def _to_feedback(reply: Optional[dict]) -> Optional[JointFeedback]:
        if reply is None:
            return None
        gyro = reply.get('gyro')
        return JointFeedback(
            timestamp=float(reply['timestamp']),
            positions=np.asarray(reply['positions'], dtype=float),
            velocities=np.asarray(reply['velocities'], dtype=float),
            efforts=np.asarray(reply['efforts'], dtype=float),
            gyro=None if gyro is None else np.asarray(gyro, dtype=float),
        )

    def set_gains(self, kp, kd) -> bool:
        data = {'kp': self._check('kp', kp).tolist(), 'kd': self._check('kd', kd).tolist()}
        return self._request(Command(type='gains', data=data), timeout=max(self.timeout, 1.0)) is not None

    def stop(self):
        """Ask the server to shut down."""
        self._request(Command(type='stop', data={}), timeout=max(self.timeout, 1.0))

    def close(self):
        """Close connection."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None
