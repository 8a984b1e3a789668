"""Quaternion and transform helpers.

Quaternions are unit quaternions stored as [x, y, z, w], the layout used by
glTF and by project files. All helpers take and return float64 numpy arrays.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

IDENTITY = np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float64)

_EPS = 1e-12


def as_quat(q: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return q as a normalized float64 quaternion. Zero-length input yields identity."""
    arr = np.asarray(q, dtype=np.float64).reshape(4)
    n = float(np.sqrt(np.dot(arr, arr)))
    if n < _EPS or not math.isfinite(n):
        return IDENTITY.copy()
    return arr / n


def quat_mul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a * b of two [x, y, z, w] quaternions."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array(
        [
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
            aw * bw - ax * bx - ay * by - az * bz,
        ],
        dtype=np.float64,
    )


def quat_conj(q: np.ndarray) -> np.ndarray:
    return np.array([-q[0], -q[1], -q[2], q[3]], dtype=np.float64)


def quat_inverse(q: np.ndarray) -> np.ndarray:
    n_sq = float(np.dot(q, q))
    if n_sq < _EPS:
        return IDENTITY.copy()
    return quat_conj(q) / n_sq


def quat_rotate(q: np.ndarray, v: Sequence[float] | np.ndarray) -> np.ndarray:
    """Rotate vector v by unit quaternion q. Returns 3-vector."""
    v = np.asarray(v, dtype=np.float64)
    v_quat = np.array([v[0], v[1], v[2], 0.0], dtype=np.float64)
    result = quat_mul(quat_mul(q, v_quat), quat_conj(q))
    return result[:3]


def quat_slerp(a: np.ndarray, b: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation along the shortest arc."""
    a = as_quat(a)
    b = as_quat(b)
    dot = float(np.dot(a, b))
    if dot < 0.0:
        b = -b
        dot = -dot
    if dot > 0.9995:
        # Nearly parallel: normalized lerp is numerically safer
        return as_quat(a + t * (b - a))
    theta_0 = math.acos(min(1.0, dot))
    sin_0 = math.sin(theta_0)
    theta = theta_0 * t
    s_a = math.sin(theta_0 - theta) / sin_0
    s_b = math.sin(theta) / sin_0
    return s_a * a + s_b * b


def quat_from_axis_angle(axis: Sequence[float], angle: float) -> np.ndarray:
    axis_arr = np.asarray(axis, dtype=np.float64)
    n = float(np.linalg.norm(axis_arr))
    if n < _EPS:
        return IDENTITY.copy()
    axis_arr = axis_arr / n
    half = angle / 2.0
    s = math.sin(half)
    return np.array([axis_arr[0] * s, axis_arr[1] * s, axis_arr[2] * s, math.cos(half)])


def quat_from_unit_vectors(v_from: Sequence[float], v_to: Sequence[float]) -> np.ndarray:
    """Shortest rotation taking direction v_from onto v_to."""
    f = np.asarray(v_from, dtype=np.float64)
    t = np.asarray(v_to, dtype=np.float64)
    nf = float(np.linalg.norm(f))
    nt = float(np.linalg.norm(t))
    if nf < _EPS or nt < _EPS:
        return IDENTITY.copy()
    f = f / nf
    t = t / nt
    r = float(np.dot(f, t)) + 1.0
    if r < 1e-6:
        # Opposite vectors: rotate 180 degrees about any perpendicular axis
        if abs(f[0]) > abs(f[2]):
            axis = np.array([-f[1], f[0], 0.0])
        else:
            axis = np.array([0.0, -f[2], f[1]])
        return as_quat([axis[0], axis[1], axis[2], 0.0])
    c = np.cross(f, t)
    return as_quat([c[0], c[1], c[2], r])


def quat_to_matrix(q: np.ndarray) -> np.ndarray:
    """3x3 rotation matrix of unit quaternion q."""
    x, y, z, w = q
    return np.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
            [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
            [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def compose_matrix(
    position: Sequence[float] | np.ndarray,
    rotation: Sequence[float] | np.ndarray,
    scale: Sequence[float] | np.ndarray = (1.0, 1.0, 1.0),
) -> np.ndarray:
    """4x4 matrix T * R * S."""
    mat = np.eye(4, dtype=np.float64)
    mat[:3, :3] = quat_to_matrix(as_quat(rotation)) * np.asarray(scale, dtype=np.float64)
    mat[:3, 3] = np.asarray(position, dtype=np.float64)
    return mat


def world_to_local(
    world_pos: Sequence[float] | np.ndarray,
    world_rot: Sequence[float] | np.ndarray,
    parent_pos: Sequence[float] | np.ndarray | None,
    parent_rot: Sequence[float] | np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    """Express a world transform relative to its parent's world transform.

    With no parent the world transform is returned unchanged. This is the
    single conversion used by the skin binder and the export bake.
    """
    pos = np.asarray(world_pos, dtype=np.float64)
    rot = as_quat(world_rot)
    if parent_pos is None or parent_rot is None:
        return pos.copy(), rot
    inv_parent = quat_inverse(as_quat(parent_rot))
    local_pos = quat_rotate(inv_parent, pos - np.asarray(parent_pos, dtype=np.float64))
    local_rot = as_quat(quat_mul(inv_parent, rot))
    return local_pos, local_rot


def local_to_world(
    local_pos: Sequence[float] | np.ndarray,
    local_rot: Sequence[float] | np.ndarray,
    parent_pos: Sequence[float] | np.ndarray | None,
    parent_rot: Sequence[float] | np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`world_to_local`."""
    pos = np.asarray(local_pos, dtype=np.float64)
    rot = as_quat(local_rot)
    if parent_pos is None or parent_rot is None:
        return pos.copy(), rot
    p_rot = as_quat(parent_rot)
    world_pos = np.asarray(parent_pos, dtype=np.float64) + quat_rotate(p_rot, pos)
    world_rot = as_quat(quat_mul(p_rot, rot))
    return world_pos, world_rot
