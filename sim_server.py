# sim_server.py
"""Simulation server - runs MuJoCo, plays the actuator group and listens for commands."""

import argparse
import logging
import pickle
import time
from dataclasses import asdict

import mujoco
import mujoco.viewer
import numpy as np
import zmq

from robot import Command, JointFeedback


logger = logging.getLogger(__name__)


class MujocoServer:
    """MuJoCo simulation server.

    The last `model.nu` generalized coordinates are the actuated joints; each
    actuator is a motor driven by a joint-level PD loop plus feed-forward effort.
    """

    def __init__(self, xml_path: str, port: int = 5555, headless: bool = False, realtime: bool = True):
        # Load MuJoCo
        self.model = mujoco.MjModel.from_xml_path(xml_path)
        self.data = mujoco.MjData(self.model)
        self.dt = self.model.opt.timestep
        self.num_joints = self.model.nu
        self.has_floating_base = self.model.njnt > 0 and self.model.jnt_type[0] == mujoco.mjtJoint.mjJNT_FREE
        self.viewer = None if headless else mujoco.viewer.launch_passive(self.model, self.data)
        self.realtime = realtime
        self.running = True

        # ZeroMQ setup - REP (Reply) socket
        context = zmq.Context()
        self.socket = context.socket(zmq.REP)
        self.socket.setsockopt(zmq.LINGER, 0)
        if port:
            self.socket.bind(f"tcp://*:{port}")
            self.port = port
        else:
            # Any free port
            self.port = self.socket.bind_to_random_port("tcp://*")
        logger.info("Simulation server started on port %d (%d actuators)", self.port, self.num_joints)

        # Current joint targets
        self.q_des = self.getJointPositions().copy()
        self.dq_des = np.zeros(self.num_joints)
        self.tau_ff = np.zeros(self.num_joints)
        self.kp = np.zeros(self.num_joints)
        self.kd = np.zeros(self.num_joints)

    def getJointPositions(self) -> np.ndarray:
        return self.data.qpos[-self.num_joints:]

    def getJointVelocities(self) -> np.ndarray:
        return self.data.qvel[-self.num_joints:]

    def getGyro(self):
        """Trunk angular velocity in the trunk frame, when the model has a free base."""
        if not self.has_floating_base:
            return None
        return self.data.qvel[3:6].copy()

    def get_feedback(self) -> JointFeedback:
        """Extract current joint state."""
        return JointFeedback(
            timestamp=self.data.time,
            positions=self.getJointPositions().copy(),
            velocities=self.getJointVelocities().copy(),
            efforts=self.data.ctrl.copy(),
            gyro=self.getGyro(),
        )

    def apply_command(self, cmd: Command):
        """Apply command to simulation."""
        if cmd.type == 'command':
            for name, target in (('positions', 'q_des'), ('velocities', 'dq_des'), ('efforts', 'tau_ff')):
                values = cmd.data.get(name)
                if values is not None:
                    setattr(self, target, np.asarray(values, dtype=float))
        elif cmd.type == 'gains':
            self.kp = np.asarray(cmd.data['kp'], dtype=float)
            self.kd = np.asarray(cmd.data['kd'], dtype=float)
            logger.info("Gains updated")
        elif cmd.type == 'stop':
            self.running = False
        elif cmd.type != 'feedback':
            logger.warning("Unknown command type '%s'", cmd.type)

    def step(self):
        """Step simulation."""
        q = self.getJointPositions()
        dq = self.getJointVelocities()
        self.data.ctrl[:] = self.kp * (self.q_des - q) + self.kd * (self.dq_des - dq) + self.tau_ff

        mujoco.mj_step(self.model, self.data)
        if self.viewer is not None:
            self.viewer.sync()

    def run(self):
        """Main server loop."""
        logger.info("Waiting for commands...")
        wall_start = time.monotonic()
        try:
            while self.running and (self.viewer is None or self.viewer.is_running()):
                # Check for command (non-blocking with timeout)
                if self.socket.poll(timeout=0):
                    cmd = pickle.loads(self.socket.recv())
                    self.apply_command(cmd)
                    self.socket.send(pickle.dumps(asdict(self.get_feedback())))

                self.step()

                if self.realtime:
                    ahead = self.data.time - (time.monotonic() - wall_start)
                    if ahead > 0:
                        time.sleep(ahead)

        except KeyboardInterrupt:
            logger.info("Simulation stopped")
        finally:
            if self.viewer is not None:
                self.viewer.close()
            self.socket.close()
            logger.info("Mujoco simulation is closed.")


def main(argv=None):
    parser = argparse.ArgumentParser(description='MuJoCo actuator group server')
    parser.add_argument('--xml', required=True, help='MJCF scene of the robot')
    parser.add_argument('--port', type=int, default=5555, help='REP port (default: 5555)')
    parser.add_argument('--headless', action='store_true', help='Run without the viewer')
    parser.add_argument('--fast', action='store_true', help='Do not pace the simulation to wall time')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='[%(name)s] %(message)s')
    server = MujocoServer(args.xml, port=args.port, headless=args.headless, realtime=not args.fast)
    server.run()


if __name__ == "__main__":
    main()
