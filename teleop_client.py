#!/usr/bin/env python3
"""
teleop_client.py - Operator console for the quadruped controller
Run this to publish joystick-like input frames to quadruped_control.py
"""

import argparse
import logging
import threading
import time
from typing import Optional

import zmq


logger = logging.getLogger(__name__)


class TeleopPublisher:
    """Publishes the current input frame at a fixed rate on a PUB socket."""

    def __init__(self, port: int = 5556, rate_hz: float = 20.0, context: Optional[zmq.Context] = None):
        self._context = context or zmq.Context.instance()
        self.socket = self._context.socket(zmq.PUB)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.bind(f"tcp://*:{port}")
        self.period = 1.0 / rate_hz
        self.lock = threading.Lock()
        self.frame = self.neutral_frame()
        self.finished = threading.Event()
        self._thread = threading.Thread(target=self._publish_loop, name='teleop', daemon=True)

    @staticmethod
    def neutral_frame() -> dict:
        return {'translation': [0.0, 0.0, 0.0], 'rotation': [0.0, 0.0, 0.0],
                'quit': False, 'left_vert': 0.0, 'right_vert': 0.0}

    def start(self):
        self._thread.start()
        logger.info("Publishing input frames at %.0f Hz", 1.0 / self.period)

    def update(self, **changes):
        with self.lock:
            self.frame.update(changes)

    def _publish_loop(self):
        while not self.finished.is_set():
            with self.lock:
                frame = dict(self.frame)
            self.socket.send_json(frame)
            time.sleep(self.period)

    def close(self):
        self.finished.set()
        if self._thread.is_alive():
            self._thread.join()
        self.socket.close()


def _axis(tokens, index, default=1.0) -> float:
    value = float(tokens[index]) if len(tokens) > index else default
    return max(-1.0, min(1.0, value))


def interactive_mode(publisher: TeleopPublisher):
    """Interactive command-line interface"""
    print("\n" + "="*50)
    print("Quadruped Teleop Console")
    print("="*50)
    print("\nAvailable commands:")
    print("  forward [v]       - Walk forward (v: 0-1, default 1)")
    print("  back [v]          - Walk backward")
    print("  left [v] / right [v] - Strafe")
    print("  turn <v>          - Yaw rate (-1..1, positive turns left)")
    print("  tilt <roll> <pitch> - Body tilt sticks (-1..1)")
    print("  stop              - Zero all sticks")
    print("  quit              - Press the quit button and exit")
    print("  exit              - Exit without stopping the robot")
    print("\n")

    while True:
        try:
            tokens = input("Command> ").strip().lower().split()
            if not tokens:
                continue
            cmd = tokens[0]

            if cmd == 'exit':
                break
            elif cmd == 'quit':
                publisher.update(quit=True)
                time.sleep(5 * publisher.period)
                break
            elif cmd == 'forward':
                publisher.update(translation=[_axis(tokens, 1), 0.0, 0.0])
            elif cmd == 'back':
                publisher.update(translation=[-_axis(tokens, 1), 0.0, 0.0])
            elif cmd == 'left':
                publisher.update(translation=[0.0, _axis(tokens, 1), 0.0])
            elif cmd == 'right':
                publisher.update(translation=[0.0, -_axis(tokens, 1), 0.0])
            elif cmd == 'turn':
                publisher.update(rotation=[0.0, 0.0, _axis(tokens, 1, 0.0)])
            elif cmd == 'tilt':
                publisher.update(left_vert=_axis(tokens, 1, 0.0), right_vert=_axis(tokens, 2, 0.0))
            elif cmd == 'stop':
                publisher.update(**publisher.neutral_frame())
            else:
                print(f"Unknown command: {cmd}")

        except KeyboardInterrupt:
            print("\n\nInterrupted by user")
            break
        except ValueError as e:
            print(f"Value error: {e}")


def main():
    parser = argparse.ArgumentParser(description='Quadruped teleop console')
    parser.add_argument('--port', type=int, default=5556, help='PUB port (default: 5556)')
    parser.add_argument('--rate', type=float, default=20.0, help='Publish rate in Hz (default: 20)')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='[%(name)s] %(message)s')
    publisher = TeleopPublisher(port=args.port, rate_hz=args.rate)
    publisher.start()
    try:
        interactive_mode(publisher)
    finally:
        publisher.close()


if __name__ == "__main__":
    main()
