"""
Manifolds of the estimated parameter blocks.

Each manifold maps between the ambient parameterization stored in the graph
and a minimal tangent-space perturbation:

- plus(x, delta): apply a tangent perturbation
- plus_jacobian(x): d plus(x, delta) / d delta at delta = 0 (ambient x minimal)
- lift_jacobian(x): pseudo-inverse of plus_jacobian (minimal x ambient), used to
  turn a minimal Jacobian into an ambient one by right-multiplication
"""

from abc import ABC, abstractmethod

import numpy as np

from vibackend.utils.math_utils import (
    delta_quaternion, quaternion_inverse, quaternion_log,
    quaternion_multiply, quaternion_normalize, quaternion_oplus
)


class Manifold(ABC):
    """Ambient/minimal parameterization of a parameter block."""

    ambient_size: int
    minimal_size: int

    @abstractmethod
    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        """Apply a minimal perturbation to ambient parameters."""

    @abstractmethod
    def minus(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Minimal perturbation delta with plus(y, delta) == x."""

    @abstractmethod
    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        """Jacobian of plus w.r.t. delta at zero."""

    @abstractmethod
    def lift_jacobian(self, x: np.ndarray) -> np.ndarray:
        """Pseudo-inverse of plus_jacobian."""


class PoseManifold(Manifold):
    """
    Pose [x, y, z, qx, qy, qz, qw] with perturbation [dt, dalpha].

    Translation is perturbed additively, rotation multiplicatively from the
    left: q' = dq(dalpha) * q.
    """

    ambient_size = 7
    minimal_size = 6

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        delta = np.asarray(delta, dtype=float)
        q = quaternion_normalize(x[3:7])
        return np.concatenate([
            x[:3] + delta[:3],
            quaternion_multiply(delta_quaternion(delta[3:6]), q)
        ])

    def minus(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        dq = quaternion_multiply(quaternion_normalize(x[3:7]),
                                 quaternion_inverse(quaternion_normalize(y[3:7])))
        return np.concatenate([x[:3] - y[:3], quaternion_log(dq)])

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        q = quaternion_normalize(np.asarray(x, dtype=float)[3:7])
        J = np.zeros((7, 6))
        J[:3, :3] = np.eye(3)
        J[3:, 3:] = 0.5 * quaternion_oplus(q)[:, :3]
        return J

    def lift_jacobian(self, x: np.ndarray) -> np.ndarray:
        q = quaternion_normalize(np.asarray(x, dtype=float)[3:7])
        J = np.zeros((6, 7))
        J[:3, :3] = np.eye(3)
        J[3:, 3:] = 2.0 * quaternion_oplus(quaternion_inverse(q))[:3, :]
        return J


class HomogeneousPointManifold(Manifold):
    """Homogeneous point [x, y, z, w] perturbed in its first three components."""

    ambient_size = 4
    minimal_size = 3

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        return np.concatenate([x[:3] + np.asarray(delta, dtype=float)[:3], x[3:4]])

    def minus(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return np.asarray(x, dtype=float)[:3] - np.asarray(y, dtype=float)[:3]

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        J = np.zeros((4, 3))
        J[:3, :3] = np.eye(3)
        return J

    def lift_jacobian(self, x: np.ndarray) -> np.ndarray:
        J = np.zeros((3, 4))
        J[:3, :3] = np.eye(3)
        return J


POSE_MANIFOLD = PoseManifold()
HOMOGENEOUS_POINT_MANIFOLD = HomogeneousPointManifold()
