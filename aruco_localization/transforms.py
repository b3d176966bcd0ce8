"""SE(3) and rotation utilities for marker pose handling."""

import math
from typing import Tuple

import cv2
import numpy as np


def rvec_tvec_to_matrix(rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Convert rotation vector and translation vector to 4x4 transformation matrix.

    Args:
        rvec: Rotation vector (3,) or (3,1)
        tvec: Translation vector (3,) or (3,1)

    Returns:
        4x4 homogeneous transformation matrix
    """
    rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
    tvec = np.asarray(tvec, dtype=np.float64).reshape(3)

    R, _ = cv2.Rodrigues(rvec)

    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = tvec

    return T


def matrix_to_rvec_tvec(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert 4x4 transformation matrix to rotation vector and translation vector.

    Args:
        T: 4x4 homogeneous transformation matrix

    Returns:
        (rvec, tvec) where rvec is (3,1) and tvec is (3,1)
    """
    R = np.ascontiguousarray(T[:3, :3], dtype=np.float64)
    tvec = np.asarray(T[:3, 3], dtype=np.float64).reshape(3, 1)

    rvec, _ = cv2.Rodrigues(R)

    return rvec, tvec


def make_transform(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Build a 4x4 homogeneous matrix from a rotation matrix and a translation."""
    T = np.eye(4)
    T[:3, :3] = np.asarray(R, dtype=np.float64).reshape(3, 3)
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def invert_transform(T: np.ndarray) -> np.ndarray:
    """
    Invert a 4x4 homogeneous transformation matrix.

    For SE(3): T^-1 = [R^T, -R^T * t; 0, 1]

    Args:
        T: 4x4 transformation matrix

    Returns:
        4x4 inverted transformation matrix
    """
    T_inv = np.eye(4)
    R = T[:3, :3]
    t = T[:3, 3]

    R_T = R.T
    T_inv[:3, :3] = R_T
    T_inv[:3, 3] = -R_T @ t

    return T_inv


def is_rotation_matrix(R: np.ndarray, atol: float = 1e-4) -> bool:
    """True if R is orthonormal with determinant +1 (a proper rotation)."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    if not np.allclose(R.T @ R, np.eye(3), atol=atol):
        return False
    return abs(np.linalg.det(R) - 1.0) <= atol


def is_rigid_transform(T: np.ndarray, atol: float = 1e-4) -> bool:
    """True if T is a 4x4 homogeneous matrix with a proper rotation block."""
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=atol):
        return False
    return is_rotation_matrix(T[:3, :3], atol=atol)


def matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """
    Convert a rotation matrix to a unit quaternion (w, x, y, z).

    Uses Shepperd's method: the branch is picked on the largest of the four
    squared components so the division is always well conditioned.
    """
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    if trace > 0.0:
        s = 2.0 * math.sqrt(trace + 1.0)
        w = 0.25 * s
        x = (R[2, 1] - R[1, 2]) / s
        y = (R[0, 2] - R[2, 0]) / s
        z = (R[1, 0] - R[0, 1]) / s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * math.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * math.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * math.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s
    q = np.array([w, x, y, z], dtype=np.float64)
    return q / np.linalg.norm(q)


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    """Convert a quaternion (w, x, y, z) to a 3x3 rotation matrix."""
    w, x, y, z = np.asarray(q, dtype=np.float64).reshape(4) / np.linalg.norm(q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a * b, both in (w, x, y, z) order."""
    w1, x1, y1, z1 = np.asarray(a, dtype=np.float64).reshape(4)
    w2, x2, y2, z2 = np.asarray(b, dtype=np.float64).reshape(4)
    return np.array(
        [
            w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
            w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
            w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
            w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        ],
        dtype=np.float64,
    )


def quaternion_angle(a: np.ndarray, b: np.ndarray) -> float:
    """Rotation angle (radians, in [0, pi]) between two unit quaternions."""
    dot = abs(float(np.dot(np.asarray(a, dtype=np.float64), np.asarray(b, dtype=np.float64))))
    return 2.0 * math.acos(min(1.0, dot))


def average_quaternions(quaternions: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Weighted rotation average of unit quaternions.

    The result is the eigenvector with the largest eigenvalue of
    M = sum_i w_i q_i q_i^T (Markley et al., 2007). M does not depend on the
    sign of each q_i nor on the order of the terms, so neither does the result.

    Args:
        quaternions: (N, 4) array in (w, x, y, z) order
        weights: (N,) non-negative weights

    Returns:
        Unit quaternion (4,) with a non-negative scalar part
    """
    Q = np.asarray(quaternions, dtype=np.float64).reshape(-1, 4)
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if Q.shape[0] != w.shape[0] or Q.shape[0] == 0:
        raise ValueError("quaternions and weights must be non-empty and of equal length")

    M = (Q * w[:, None]).T @ Q
    _, vecs = np.linalg.eigh(M)
    return canonical_quaternion(vecs[:, -1])


def canonical_quaternion(q: np.ndarray) -> np.ndarray:
    """Normalize q and flip its sign so the first non-zero component is positive."""
    q = np.asarray(q, dtype=np.float64).reshape(4)
    q = q / np.linalg.norm(q)
    for value in q:
        if abs(value) > 1e-12:
            return q if value > 0 else -q
    return q


def euler_from_matrix(R: np.ndarray) -> Tuple[float, float, float]:
    """
    Roll, pitch, yaw (radians) of a rotation matrix, R = Rz(yaw) Ry(pitch) Rx(roll).

    At gimbal lock (|pitch| = pi/2) roll is set to zero.
    """
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    pitch = -math.asin(max(-1.0, min(1.0, float(R[2, 0]))))
    if abs(math.cos(pitch)) < 1e-9:
        roll = 0.0
        yaw = math.atan2(-float(R[0, 1]), float(R[1, 1]))
    else:
        roll = math.atan2(float(R[2, 1]), float(R[2, 2]))
        yaw = math.atan2(float(R[1, 0]), float(R[0, 0]))
    return roll, pitch, yaw
