"""
Mathematical utilities for pose estimation.

Quaternions are stored as numpy arrays in [x, y, z, w] order (the same
order scipy.spatial.transform.Rotation uses) and follow the Hamilton
convention: q * p rotates by p first, then by q.
"""

import numpy as np
from scipy.spatial.transform import Rotation


IDENTITY_QUATERNION = np.array([0.0, 0.0, 0.0, 1.0])


# ============================================================================
# SO3 Operations
# ============================================================================

def skew(v: np.ndarray) -> np.ndarray:
    """
    Convert 3D vector to skew-symmetric matrix (cross-product matrix).

    Args:
        v: 3x1 vector

    Returns:
        3x3 matrix S such that S @ u == np.cross(v, u)
    """
    v = np.asarray(v, dtype=float).flatten()
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0]
    ])


# ============================================================================
# Quaternion Operations ([x, y, z, w] order)
# ============================================================================

def quaternion_normalize(q: np.ndarray) -> np.ndarray:
    """
    Normalize quaternion to unit norm.

    Args:
        q: Quaternion [x, y, z, w]

    Returns:
        Normalized quaternion (identity if the norm vanishes)
    """
    q = np.asarray(q, dtype=float).flatten()
    norm = np.linalg.norm(q)
    if norm < 1e-12:
        return IDENTITY_QUATERNION.copy()
    return q / norm


def quaternion_multiply(q: np.ndarray, p: np.ndarray) -> np.ndarray:
    """Hamilton product q * p."""
    return quaternion_plus(q) @ np.asarray(p, dtype=float)


def quaternion_inverse(q: np.ndarray) -> np.ndarray:
    """Inverse of a unit quaternion (its conjugate)."""
    q = np.asarray(q, dtype=float)
    return np.array([-q[0], -q[1], -q[2], q[3]])


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to rotation matrix.

    Args:
        q: Quaternion [x, y, z, w], normalized before conversion

    Returns:
        3x3 rotation matrix
    """
    return Rotation.from_quat(quaternion_normalize(q)).as_matrix()


def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert rotation matrix to quaternion [x, y, z, w] with w >= 0."""
    q = Rotation.from_matrix(np.asarray(R, dtype=float)).as_quat()
    return q if q[3] >= 0 else -q


def quaternion_plus(q: np.ndarray) -> np.ndarray:
    """
    Left-multiplication matrix of a quaternion.

    Args:
        q: Quaternion [x, y, z, w]

    Returns:
        4x4 matrix Q such that q * p == Q @ p
    """
    x, y, z, w = np.asarray(q, dtype=float)
    return np.array([
        [w, -z, y, x],
        [z, w, -x, y],
        [-y, x, w, z],
        [-x, -y, -z, w]
    ])


def quaternion_oplus(q: np.ndarray) -> np.ndarray:
    """
    Right-multiplication matrix of a quaternion.

    Args:
        q: Quaternion [x, y, z, w]

    Returns:
        4x4 matrix Q such that p * q == Q @ p
    """
    x, y, z, w = np.asarray(q, dtype=float)
    return np.array([
        [w, z, -y, x],
        [-z, w, x, y],
        [y, -x, w, z],
        [-x, -y, -z, w]
    ])


def delta_quaternion(dalpha: np.ndarray) -> np.ndarray:
    """
    Unit quaternion of a rotation vector.

    Args:
        dalpha: 3x1 rotation vector

    Returns:
        Quaternion [x, y, z, w] rotating by |dalpha| about dalpha
    """
    dalpha = np.asarray(dalpha, dtype=float).flatten()
    half_angle = 0.5 * np.linalg.norm(dalpha)
    # sinc(x) = sin(pi x) / (pi x) in numpy
    scale = 0.5 * np.sinc(half_angle / np.pi)
    return np.concatenate([scale * dalpha, [np.cos(half_angle)]])


def quaternion_log(q: np.ndarray) -> np.ndarray:
    """Rotation vector of a unit quaternion (inverse of delta_quaternion)."""
    q = quaternion_normalize(q)
    if q[3] < 0:
        q = -q
    vec_norm = np.linalg.norm(q[:3])
    if vec_norm < 1e-12:
        return 2.0 * q[:3]
    return 2.0 * np.arctan2(vec_norm, q[3]) * q[:3] / vec_norm
