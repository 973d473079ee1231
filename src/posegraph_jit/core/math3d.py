"""
SE(2) / SE(3) operations for PoseGraph-JIT.

This module implements the small amount of Lie-group math the pose graph
residuals need. Rotations in 3D are unit quaternions stored as
``(w, x, y, z)``; 2D poses are ``(x, y, heading)`` vectors.

    • Quaternion product, conjugate, point rotation
    • Quaternion <-> angle-axis conversion
    • Shortest-arc quaternion slerp
    • 2D pose interpolation and lifting of 2D poses into 3D
    • Relative transform between two 3D poses

All functions are written in JAX and support:
    - JIT compilation
    - Automatic differentiation (forward and reverse)
    - Evaluation on plain arrays outside of any trace

Value-dependent choices (small-angle fallbacks, shortest-arc sign flips)
are made with `jnp.where` on *safe* operands rather than Python `if`
statements, so the same code path is traced for every input and no NaN
leaks into a Jacobian through the branch that was not selected.

Key Functions
-------------
quaternion_to_angle_axis(q)
    Maps a unit quaternion to its rotation vector; exact derivatives at the
    identity.

quaternion_slerp(q0, q1, t)
    Spherical interpolation along the shortest arc.

interpolate_pose_2d(start, end, t)
    Linear interpolation of (x, y) and shortest-arc interpolation of the
    heading. Returns `start` exactly for t = 0 and `end` exactly for t = 1.

embed_pose_2d(pose)
    Lifts (x, y, heading) into a 3D translation (x, y, 0) and a yaw
    quaternion.

relative_pose_3d(t_a, q_a, t_b, q_b)
    Computes T_a^{-1} T_b.
"""

from __future__ import annotations

import jax.numpy as jnp

_SMALL_ANGLE_EPS = 1e-12


def normalize_angle(angle: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle into [-pi, pi]."""
    two_pi = 2.0 * jnp.pi
    return angle - two_pi * jnp.round(angle / two_pi)


def rotate_2d(angle: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    c = jnp.cos(angle)
    s = jnp.sin(angle)
    return jnp.array([c * v[0] - s * v[1], s * v[0] + c * v[1]])


def quaternion_identity() -> jnp.ndarray:
    return jnp.array([1.0, 0.0, 0.0, 0.0])


def quaternion_conjugate(q: jnp.ndarray) -> jnp.ndarray:
    """Conjugate (= inverse for unit quaternions)."""
    return jnp.array([q[0], -q[1], -q[2], -q[3]])


def quaternion_multiply(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Hamilton product a ⊗ b."""
    aw, ax, ay, az = a[0], a[1], a[2], a[3]
    bw, bx, by, bz = b[0], b[1], b[2], b[3]
    return jnp.array(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ]
    )


def quaternion_rotate(q: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    """
    Rotate a 3-vector by a unit quaternion.

    Uses the expanded form  v' = v + 2 w (u × v) + 2 u × (u × v)
    with q = (w, u), which avoids building the rotation matrix.
    """
    w = q[0]
    u = q[1:4]
    uv = jnp.cross(u, v)
    return v + 2.0 * (w * uv + jnp.cross(u, uv))


def quaternion_from_yaw(yaw: jnp.ndarray) -> jnp.ndarray:
    """Rotation of `yaw` radians about the z axis."""
    half = 0.5 * yaw
    return jnp.array([jnp.cos(half), 0.0 * half, 0.0 * half, jnp.sin(half)])


def quaternion_to_angle_axis(q: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation vector of a unit quaternion, angle in [-pi, pi].

    For q = (w, u) with |u| = sin(theta / 2):

        general:      2 * atan2(|u|, w) / |u| * u
        small angle:  2 / w * u          (first order, exact derivative)

    When w < 0 both atan2 arguments are negated so the returned angle is the
    short way round, matching the equivalent quaternion -q.
    """
    w = q[0]
    u = q[1:4]
    sin_sq = jnp.dot(u, u)
    is_small = sin_sq < _SMALL_ANGLE_EPS

    safe_sin_sq = jnp.where(is_small, 1.0, sin_sq)
    sin_theta = jnp.sqrt(safe_sin_sq)
    sign = jnp.where(w < 0.0, -1.0, 1.0)
    two_theta = 2.0 * jnp.arctan2(sign * sin_theta, sign * w)
    k_general = two_theta / sin_theta

    safe_w = jnp.where(is_small, w, 1.0)
    k_small = 2.0 / safe_w

    k = jnp.where(is_small, k_small, k_general)
    return k * u


def angle_axis_to_quaternion(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map: rotation vector -> unit quaternion.

    Small-angle fallback is (1, w / 2), the first-order expansion.
    """
    theta_sq = jnp.dot(w, w)
    is_small = theta_sq < _SMALL_ANGLE_EPS
    safe_theta = jnp.sqrt(jnp.where(is_small, 1.0, theta_sq))
    half = 0.5 * safe_theta

    general = jnp.concatenate(
        [jnp.cos(half)[None], (jnp.sin(half) / safe_theta) * w]
    )
    small = jnp.concatenate([jnp.ones((1,), dtype=general.dtype), 0.5 * w])
    return jnp.where(is_small, small, general)


def quaternion_slerp(q0: jnp.ndarray, q1: jnp.ndarray, t) -> jnp.ndarray:
    """
    Spherical linear interpolation along the shortest arc.

    Nearly parallel inputs fall back to linear interpolation. At t = 0 the
    result is `q0` exactly.
    """
    q0 = jnp.asarray(q0)
    q1 = jnp.asarray(q1)
    dot = jnp.dot(q0, q1)
    sign = jnp.where(dot < 0.0, -1.0, 1.0)
    q1 = sign * q1
    dot = sign * dot

    is_near = dot > 1.0 - 1e-9
    safe_dot = jnp.where(is_near, 0.5, jnp.clip(dot, -1.0, 1.0))
    theta = jnp.arccos(safe_dot)
    sin_theta = jnp.sin(theta)

    w0 = jnp.where(is_near, 1.0 - t, jnp.sin((1.0 - t) * theta) / sin_theta)
    w1 = jnp.where(is_near, t, jnp.sin(t * theta) / sin_theta)
    return w0 * q0 + w1 * q1


def interpolate_pose_2d(start: jnp.ndarray, end: jnp.ndarray, t) -> jnp.ndarray:
    """
    Interpolate two (x, y, heading) poses.

    Translation is interpolated as ``(1 - t) a + t b``. The heading moves
    along the shortest arc d = normalize(h_end - h_start), stepping forward
    from the start heading for t < 0.5 and backward from the end heading
    otherwise. The result is `start` exactly for t = 0 and `end` exactly
    for t = 1, whatever the raw heading values.
    """
    start = jnp.asarray(start)
    end = jnp.asarray(end)

    xy = (1.0 - t) * start[:2] + t * end[:2]
    d = normalize_angle(end[2] - start[2])
    heading = jnp.where(t < 0.5, start[2] + t * d, end[2] - (1.0 - t) * d)
    return jnp.array([xy[0], xy[1], heading])


def embed_pose_2d(pose: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Lift (x, y, heading) to a 3D translation and a yaw quaternion."""
    pose = jnp.asarray(pose)
    translation = jnp.array([pose[0], pose[1], 0.0 * pose[2]])
    return translation, quaternion_from_yaw(pose[2])


def interpolate_pose_3d(
    start_translation: jnp.ndarray,
    start_rotation: jnp.ndarray,
    end_translation: jnp.ndarray,
    end_rotation: jnp.ndarray,
    t,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    translation = (1.0 - t) * start_translation + t * end_translation
    rotation = quaternion_slerp(start_rotation, end_rotation, t)
    return translation, rotation


def relative_pose_3d(
    t_a: jnp.ndarray,
    q_a: jnp.ndarray,
    t_b: jnp.ndarray,
    q_b: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Relative transform T_a^{-1} T_b:

      t_rel = R_a^T (t_b - t_a)
      q_rel = q_a^{-1} ⊗ q_b
    """
    q_a_inv = quaternion_conjugate(q_a)
    t_rel = quaternion_rotate(q_a_inv, t_b - t_a)
    q_rel = quaternion_multiply(q_a_inv, q_b)
    return t_rel, q_rel


def interpolation_factor(start_time: int, end_time: int, time: int) -> float:
    """
    Fraction of the way from `start_time` to `end_time` at which `time` lies.

    Clamped to [0, 1]; a zero-length interval yields 0.
    """
    if end_time == start_time:
        return 0.0
    t = (time - start_time) / (end_time - start_time)
    return float(min(1.0, max(0.0, t)))
