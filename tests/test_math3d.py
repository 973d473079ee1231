from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from posegraph_jit.core.math3d import (
    angle_axis_to_quaternion,
    embed_pose_2d,
    interpolate_pose_2d,
    interpolation_factor,
    normalize_angle,
    quaternion_from_yaw,
    quaternion_identity,
    quaternion_multiply,
    quaternion_rotate,
    quaternion_slerp,
    quaternion_to_angle_axis,
    relative_pose_3d,
)


def test_angle_axis_roundtrip_small_angle():
    w = jnp.array([0.1, -0.05, 0.02])
    q = angle_axis_to_quaternion(w)
    w_est = quaternion_to_angle_axis(q)
    assert jnp.all(jnp.isfinite(w_est))
    assert jnp.allclose(w_est, w, atol=1e-12)


def test_angle_axis_no_nan_for_identity():
    q = quaternion_identity()
    w = quaternion_to_angle_axis(q)
    assert jnp.all(jnp.isfinite(w))
    assert jnp.linalg.norm(w) < 1e-12

    # Derivative at the identity is 2 * I on the vector part.
    J = jax.jacfwd(quaternion_to_angle_axis)(q)
    assert jnp.all(jnp.isfinite(J))
    assert jnp.allclose(J[:, 1:], 2.0 * jnp.eye(3))


def test_angle_axis_takes_short_way_for_negative_w():
    q = angle_axis_to_quaternion(jnp.array([0.0, 0.0, 0.3]))
    assert jnp.allclose(quaternion_to_angle_axis(-q), jnp.array([0.0, 0.0, 0.3]), atol=1e-12)


def test_quaternion_rotate_yaw():
    q = quaternion_from_yaw(jnp.pi / 2)
    v = quaternion_rotate(q, jnp.array([1.0, 0.0, 0.0]))
    assert jnp.allclose(v, jnp.array([0.0, 1.0, 0.0]), atol=1e-12)


def test_slerp_endpoints_and_midpoint():
    q0 = quaternion_identity()
    q1 = quaternion_from_yaw(0.8)

    assert np.array_equal(np.asarray(quaternion_slerp(q0, q1, 0.0)), np.asarray(q0))
    assert jnp.allclose(quaternion_slerp(q0, q1, 1.0), q1, atol=1e-12)
    assert jnp.allclose(quaternion_slerp(q0, q1, 0.5), quaternion_from_yaw(0.4), atol=1e-12)


def test_slerp_uses_shortest_arc():
    q0 = quaternion_identity()
    q1 = -quaternion_from_yaw(0.2)  # same rotation, opposite hemisphere
    mid = quaternion_slerp(q0, q1, 0.5)
    assert jnp.allclose(mid, quaternion_from_yaw(0.1), atol=1e-12)


def test_interpolate_pose_2d_boundaries_are_exact():
    start = np.array([0.3, -1.7, 0.1])
    end = np.array([2.9, 0.4, 0.7])

    at_start = np.asarray(interpolate_pose_2d(start, end, 0.0))
    at_end = np.asarray(interpolate_pose_2d(start, end, 1.0))

    assert np.array_equal(at_start, start)
    assert np.array_equal(at_end, end)


def test_interpolate_pose_2d_boundaries_are_exact_for_wide_headings():
    """
    Headings more than pi apart (3.5 rad is -2.78 rad the short way round).
    The endpoints must still come back unchanged, not unwrapped.
    """
    start = np.array([0.0, 0.0, 0.0])
    end = np.array([1.0, 2.0, 3.5])

    assert np.array_equal(np.asarray(interpolate_pose_2d(start, end, 0.0)), start)
    assert np.array_equal(np.asarray(interpolate_pose_2d(start, end, 1.0)), end)

    # Halfway along the short arc: -(2 pi - 3.5) / 2
    mid = interpolate_pose_2d(start, end, 0.5)
    assert float(normalize_angle(mid[2] - (3.5 - 2.0 * jnp.pi) / 2.0)) == pytest.approx(0.0, abs=1e-12)


def test_interpolate_pose_2d_heading_is_continuous_across_half():
    start = jnp.array([0.0, 0.0, 0.2])
    end = jnp.array([0.0, 0.0, 7.0])  # 0.2 + (6.8 - 2 pi) the short way

    below = interpolate_pose_2d(start, end, 0.5 - 1e-9)
    above = interpolate_pose_2d(start, end, 0.5)
    assert float(normalize_angle(above[2] - below[2])) == pytest.approx(0.0, abs=1e-8)


def test_interpolate_pose_2d_heading_takes_shortest_arc():
    start = jnp.array([0.0, 0.0, 3.0])
    end = jnp.array([2.0, 0.0, -3.0])

    mid = interpolate_pose_2d(start, end, 0.5)

    assert float(mid[0]) == pytest.approx(1.0)
    # Halfway along the short arc through pi, not through 0.
    assert float(normalize_angle(mid[2] - jnp.pi)) == pytest.approx(0.0, abs=1e-12)


def test_interpolate_same_pose_is_degenerate_but_defined():
    pose = jnp.array([1.0, 2.0, 0.5])
    for t in (0.0, 0.3, 1.0):
        assert jnp.allclose(interpolate_pose_2d(pose, pose, t), pose, atol=1e-15)


def test_embed_pose_2d():
    translation, rotation = embed_pose_2d(jnp.array([1.0, 2.0, 0.5]))
    assert jnp.allclose(translation, jnp.array([1.0, 2.0, 0.0]))
    assert jnp.allclose(quaternion_to_angle_axis(rotation), jnp.array([0.0, 0.0, 0.5]), atol=1e-12)


def test_relative_pose_3d():
    q_a = quaternion_from_yaw(jnp.pi / 2)
    t_a = jnp.array([1.0, 0.0, 0.0])
    t_b = jnp.array([1.0, 1.0, 0.0])
    q_b = quaternion_multiply(q_a, quaternion_from_yaw(0.1))

    t_rel, q_rel = relative_pose_3d(t_a, q_a, t_b, q_b)

    assert jnp.allclose(t_rel, jnp.array([1.0, 0.0, 0.0]), atol=1e-12)
    assert jnp.allclose(q_rel, quaternion_from_yaw(0.1), atol=1e-12)


def test_interpolation_factor_from_timestamps():
    assert interpolation_factor(100, 200, 150) == pytest.approx(0.5)
    assert interpolation_factor(100, 200, 100) == 0.0
    assert interpolation_factor(100, 200, 250) == 1.0
    assert interpolation_factor(100, 100, 100) == 0.0
