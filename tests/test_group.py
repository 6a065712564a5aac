import pickle
import threading
import time

import numpy as np
import pytest
import zmq

from conftest import FakeClock
from group import LoopbackGroup, RemoteGroup


class Responder:
    """Minimal stand-in for the simulation server: records requests, replies with a fixed state."""

    def __init__(self, context, size=12):
        self.socket = context.socket(zmq.REP)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.port = self.socket.bind_to_random_port('tcp://127.0.0.1')
        self.size = size
        self.requests = []
        self.finished = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()

    def _serve(self):
        while not self.finished.is_set():
            if not self.socket.poll(timeout=20):
                continue
            cmd = pickle.loads(self.socket.recv())
            self.requests.append(cmd)
            reply = {
                'timestamp': float(len(self.requests)),
                'positions': [0.1] * self.size,
                'velocities': [0.0] * self.size,
                'efforts': [0.0] * self.size,
                'gyro': [0.0, 0.0, 0.5],
            }
            self.socket.send(pickle.dumps(reply))

    def stop(self):
        self.finished.set()
        self._thread.join()


@pytest.fixture
def context():
    context = zmq.Context()
    yield context
    context.destroy(linger=0)


def test_loopback_follows_commands():
    clock = FakeClock(3.0)
    group = LoopbackGroup(np.zeros(12), clock=clock)
    group.send_command(positions=np.arange(12.0), efforts=np.ones(12))

    feedback = group.get_next_feedback()
    assert feedback.timestamp == 3.0
    np.testing.assert_allclose(feedback.positions, np.arange(12.0))
    np.testing.assert_allclose(feedback.efforts, np.ones(12))
    assert feedback.gyro is None
    assert group.commands_sent == 1


def test_loopback_partial_command_keeps_positions():
    group = LoopbackGroup(np.full(12, 0.5))
    group.send_command(efforts=np.ones(12))
    np.testing.assert_allclose(group.get_next_feedback().positions, 0.5)


def test_loopback_checks_sizes():
    group = LoopbackGroup(np.zeros(12))
    with pytest.raises(ValueError):
        group.send_command(positions=np.zeros(11))
    with pytest.raises(ValueError):
        group.set_gains(np.zeros(12), np.zeros(3))


def test_loopback_reports_gyro():
    group = LoopbackGroup(np.zeros(12))
    group.gyro = [0.0, 0.0, 1.0]
    np.testing.assert_allclose(group.get_next_feedback().gyro, [0.0, 0.0, 1.0])


def test_remote_round_trip(context):
    server = Responder(context)
    server.start()
    try:
        with RemoteGroup(12, '127.0.0.1', server.port, timeout=2.0, context=context) as group:
            assert group.set_gains(np.full(12, 40.0), np.full(12, 0.5))
            group.send_command(positions=np.zeros(12), efforts=np.ones(12))
            feedback = group.get_next_feedback()
            fresh = group.get_next_feedback()
    finally:
        server.stop()

    # The reply to the command is the first feedback; only the second one is requested
    assert [cmd.type for cmd in server.requests] == ['gains', 'command', 'feedback']
    assert server.requests[0].data['kp'] == [40.0] * 12
    command = server.requests[1].data
    assert command['positions'] == [0.0] * 12
    assert command['velocities'] is None
    assert command['efforts'] == [1.0] * 12

    assert feedback.timestamp == 2.0
    assert fresh.timestamp == 3.0
    np.testing.assert_allclose(feedback.positions, 0.1)
    np.testing.assert_allclose(feedback.gyro, [0.0, 0.0, 0.5])
    assert feedback.size == 12


def test_remote_one_round_trip_per_cycle(context):
    server = Responder(context)
    server.start()
    try:
        with RemoteGroup(12, '127.0.0.1', server.port, timeout=2.0, context=context) as group:
            first = group.get_next_feedback()
            timestamps = [first.timestamp]
            for _ in range(5):
                group.send_command(positions=np.zeros(12))
                timestamps.append(group.get_next_feedback().timestamp)
    finally:
        server.stop()

    assert [cmd.type for cmd in server.requests] == ['feedback'] + ['command'] * 5
    assert timestamps == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]


def test_remote_lost_command_reply_falls_back_to_request(context):
    server = Responder(context)
    group = RemoteGroup(12, '127.0.0.1', server.port, timeout=0.05, context=context)
    try:
        # Nobody answers the command, so nothing is kept for the next cycle
        group.send_command(positions=np.zeros(12))
        assert group.last_state is None

        server.start()
        feedback = None
        deadline = time.monotonic() + 5.0
        while feedback is None and time.monotonic() < deadline:
            feedback = group.get_next_feedback(timeout=0.5)
    finally:
        server.stop()
        group.close()

    assert feedback is not None
    assert server.requests[-1].type == 'feedback'


def test_remote_reconnects_after_timeout(context):
    server = Responder(context)
    group = RemoteGroup(12, '127.0.0.1', server.port, timeout=0.05, context=context)

    # Nobody answers yet
    assert group.get_next_feedback() is None

    server.start()
    try:
        feedback = None
        deadline = time.monotonic() + 5.0
        while feedback is None and time.monotonic() < deadline:
            feedback = group.get_next_feedback(timeout=0.5)
    finally:
        server.stop()
        group.close()

    assert feedback is not None
    np.testing.assert_allclose(feedback.positions, 0.1)


def test_remote_checks_sizes(context):
    group = RemoteGroup(12, '127.0.0.1', 5999, context=context)
    with pytest.raises(ValueError):
        group.send_command(positions=np.zeros(3))
    group.close()


def test_group_size_positive():
    with pytest.raises(ValueError):
        RemoteGroup(0)
