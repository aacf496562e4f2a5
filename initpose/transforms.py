"""Rigid-body transform helpers: quaternions, homogeneous matrices and error metrics."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

Quaternion = tuple[float, float, float, float]


def _as_transform(matrix: object) -> np.ndarray:
    array = np.asarray(matrix, dtype=float)
    if array.shape != (4, 4):
        raise ValueError(f"expected a 4x4 transform, got shape {array.shape}")
    return array


def _as_rotation(matrix: object) -> np.ndarray:
    array = np.asarray(matrix, dtype=float)
    if array.shape == (4, 4):
        array = array[:3, :3]
    if array.shape != (3, 3):
        raise ValueError(f"expected a 3x3 rotation, got shape {array.shape}")
    return array


def quaternion_to_matrix(qx: float, qy: float, qz: float, qw: float) -> np.ndarray:
    """Return the 3x3 rotation matrix of a unit quaternion given as (x, y, z, w)."""
    tx, ty, tz = 2.0 * qx, 2.0 * qy, 2.0 * qz
    twx, twy, twz = tx * qw, ty * qw, tz * qw
    txx, txy, txz = tx * qx, ty * qx, tz * qx
    tyy, tyz, tzz = ty * qy, tz * qy, tz * qz
    return np.array(
        [
            [1.0 - (tyy + tzz), txy - twz, txz + twy],
            [txy + twz, 1.0 - (txx + tzz), tyz - twx],
            [txz - twy, tyz + twx, 1.0 - (txx + tyy)],
        ]
    )


def matrix_to_quaternion(rotation: object) -> Quaternion:
    """Return the quaternion (x, y, z, w) of a rotation matrix (3x3 or 4x4)."""
    m = _as_rotation(rotation)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return (
            float((m[2, 1] - m[1, 2]) * t),
            float((m[0, 2] - m[2, 0]) * t),
            float((m[1, 0] - m[0, 1]) * t),
            float(w),
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    xyz = [0.0, 0.0, 0.0]
    xyz[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    xyz[j] = (m[j, i] + m[i, j]) * t
    xyz[k] = (m[k, i] + m[i, k]) * t
    return (float(xyz[0]), float(xyz[1]), float(xyz[2]), float(w))


def pose_to_matrix(position: Sequence[float], orientation: Sequence[float]) -> np.ndarray:
    """Build a 4x4 transform from a position (x, y, z) and a quaternion (x, y, z, w)."""
    x, y, z = (float(v) for v in position)
    qx, qy, qz, qw = (float(v) for v in orientation)
    transform = np.eye(4)
    transform[:3, :3] = quaternion_to_matrix(qx, qy, qz, qw)
    transform[:3, 3] = (x, y, z)
    return transform


def rotation_about_z(angle: float) -> np.ndarray:
    """Return the 3x3 rotation by ``angle`` radians about the z axis."""
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def translation_error(transform1: object, transform2: object) -> float:
    """Euclidean distance between the translations of two transforms."""
    a = _as_transform(transform1)
    b = _as_transform(transform2)
    return float(np.linalg.norm(a[:3, 3] - b[:3, 3]))


def orientation_error(transform1: object, transform2: object) -> float:
    """Angle in radians between the rotations of two transforms."""
    q1 = np.array(matrix_to_quaternion(_as_transform(transform1)))
    q2 = np.array(matrix_to_quaternion(_as_transform(transform2)))
    dot = min(abs(float(np.dot(q1, q2))), 1.0)
    return 2.0 * math.acos(dot)


@dataclass(frozen=True)
class TransformStamped:
    """A transform between two named frames at a point in time."""

    translation: tuple[float, float, float]
    rotation: Quaternion
    frame_id: str = "map"
    child_frame_id: str = "odom_init"
    stamp: float = 0.0

    @classmethod
    def from_matrix(
        cls,
        matrix: object,
        frame_id: str = "map",
        child_frame_id: str = "odom_init",
        stamp: float = 0.0,
    ) -> TransformStamped:
        """Create a stamped transform from a 4x4 homogeneous matrix."""
        m = _as_transform(matrix)
        translation = (float(m[0, 3]), float(m[1, 3]), float(m[2, 3]))
        return cls(
            translation=translation,
            rotation=matrix_to_quaternion(m),
            frame_id=frame_id,
            child_frame_id=child_frame_id,
            stamp=stamp,
        )

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous matrix of this transform."""
        return pose_to_matrix(self.translation, self.rotation)