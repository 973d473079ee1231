from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from posegraph_jit.core.math3d import quaternion_from_yaw, quaternion_identity
from posegraph_jit.slam.cost_functions import (
    InterpolatedRelativePoseCost2D,
    InterpolatedRelativePoseCost3D,
    RelativePoseCost2D,
    RelativePoseCost2Dto3D,
    RelativePoseCost3D,
)
from posegraph_jit.slam.measurements import interpolated_pose_2d_in_3d


def _interpolated_parameters(t: float = 0.5, **overrides):
    parameters = {
        "first_t_second": {"translation": [0.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
        "translation_weight": 1.0,
        "rotation_weight": 1.0,
        "interpolation_factor": t,
    }
    parameters.update(overrides)
    return parameters


def test_interpolated_residual_concrete_scenario():
    """
    first_start = (0, 0, 0), first_end = (1, 0, 0), t = 0.5
    second      = translation (0.5, 0, 0.2), identity rotation
    expectation = identity, unit weights

    The interpolated first pose is (0.5, 0, 0), so the predicted relative
    transform is a pure 0.2 lift along z.
    """
    cost = InterpolatedRelativePoseCost2D(_interpolated_parameters())

    r = cost(
        jnp.array([0.0, 0.0, 0.0]),
        jnp.array([1.0, 0.0, 0.0]),
        jnp.array([0.5, 0.0, 0.2]),
        quaternion_identity(),
    )

    assert r.shape == (6,)
    assert jnp.allclose(r, jnp.array([0.0, 0.0, 0.2, 0.0, 0.0, 0.0]), atol=1e-12)


def test_interpolated_residual_is_zero_when_prediction_matches():
    parameters = _interpolated_parameters(
        t=0.25,
        first_t_second={"translation": [0.1, -0.2, 0.3], "rotation": [np.cos(0.05), 0.0, 0.0, np.sin(0.05)]},
    )
    cost = InterpolatedRelativePoseCost2D(parameters)

    start = jnp.array([0.0, 0.0, 0.0])
    end = jnp.array([4.0, 0.0, 0.0])
    # Interpolated first pose: (1, 0, 0) with zero heading.
    second_t = jnp.array([1.1, -0.2, 0.3])
    second_q = quaternion_from_yaw(0.1)

    r = cost(start, end, second_t, second_q)
    assert jnp.allclose(r, jnp.zeros(6), atol=1e-12)


def test_interpolated_residual_weights_scale_components():
    base = InterpolatedRelativePoseCost2D(_interpolated_parameters())
    weighted = InterpolatedRelativePoseCost2D(
        _interpolated_parameters(translation_weight=10.0, rotation_weight=3.0)
    )
    blocks = (
        jnp.array([0.0, 0.0, 0.0]),
        jnp.array([1.0, 0.0, 0.2]),
        jnp.array([0.7, 0.1, 0.2]),
        quaternion_from_yaw(0.3),
    )

    r = base(*blocks)
    r_w = weighted(*blocks)

    assert jnp.allclose(r_w[:3], 10.0 * r[:3])
    assert jnp.allclose(r_w[3:], 3.0 * r[3:])


def test_interpolated_pose_boundaries():
    params = InterpolatedRelativePoseCost2D(_interpolated_parameters(t=0.0)).params
    start = jnp.array([0.2, 0.3, 0.1])
    end = jnp.array([1.5, -0.4, 0.6])

    translation, rotation = interpolated_pose_2d_in_3d(start, end, params)
    assert np.array_equal(np.asarray(translation[:2]), np.asarray(start[:2]))
    assert jnp.allclose(rotation, quaternion_from_yaw(0.1), atol=1e-15)

    params = InterpolatedRelativePoseCost2D(_interpolated_parameters(t=1.0)).params
    translation, rotation = interpolated_pose_2d_in_3d(start, end, params)
    assert np.array_equal(np.asarray(translation[:2]), np.asarray(end[:2]))
    assert jnp.allclose(rotation, quaternion_from_yaw(0.6), atol=1e-15)


def test_interpolated_residual_jacobian_is_finite_at_identity():
    cost = InterpolatedRelativePoseCost2D(_interpolated_parameters())
    blocks = (
        jnp.array([0.0, 0.0, 0.0]),
        jnp.array([1.0, 0.0, 0.0]),
        jnp.array([0.5, 0.0, 0.0]),
        quaternion_identity(),
    )

    jacobians = jax.jacfwd(lambda *b: cost(*b), argnums=(0, 1, 2, 3))(*blocks)

    assert [j.shape for j in jacobians] == [(6, 3), (6, 3), (6, 3), (6, 4)]
    for j in jacobians:
        assert jnp.all(jnp.isfinite(j))
    # Moving the second translation moves the residual one-to-one.
    assert jnp.allclose(jacobians[2], jnp.vstack([jnp.eye(3), jnp.zeros((3, 3))]))
    # With t = 0.5 each 2D node carries half of the x dependence.
    assert float(jacobians[0][0, 0]) == pytest.approx(-0.5)
    assert float(jacobians[1][0, 0]) == pytest.approx(-0.5)


def test_gravity_alignment_rotates_predicted_pose():
    tilt = [np.cos(0.05), np.sin(0.05), 0.0, 0.0]
    params = InterpolatedRelativePoseCost2D(
        _interpolated_parameters(
            t=0.0,
            gravity_alignment_first_start=tilt,
            gravity_alignment_first_end=tilt,
        )
    ).params

    _, rotation = interpolated_pose_2d_in_3d(jnp.zeros(3), jnp.zeros(3), params)
    assert jnp.allclose(rotation, jnp.asarray(tilt), atol=1e-12)


def test_interpolation_factor_is_validated():
    with pytest.raises(ValueError, match="interpolation_factor"):
        InterpolatedRelativePoseCost2D(_interpolated_parameters(t=1.5))
    parameters = _interpolated_parameters()
    del parameters["interpolation_factor"]
    with pytest.raises(ValueError, match="interpolation_factor"):
        InterpolatedRelativePoseCost2D(parameters)
    with pytest.raises(ValueError, match="translation_weight"):
        InterpolatedRelativePoseCost2D(_interpolated_parameters(translation_weight=-1.0))


def test_relative_pose_2d_residual():
    cost = RelativePoseCost2D(
        {"first_t_second": {"translation": [1.0, 0.0], "rotation": 0.5}}
    )
    first = jnp.array([1.0, 1.0, jnp.pi / 2])
    # One meter ahead of `first` in its own frame, turned by 0.5 rad.
    second = jnp.array([1.0, 2.0, jnp.pi / 2 + 0.5])

    assert jnp.allclose(cost(first, second), jnp.zeros(3), atol=1e-12)

    wrapped = jnp.array([1.0, 2.0, jnp.pi / 2 + 0.5 + 2.0 * jnp.pi])
    assert jnp.allclose(cost(first, wrapped), jnp.zeros(3), atol=1e-12)


def test_relative_pose_3d_residual():
    cost = RelativePoseCost3D(
        {
            "first_t_second": {"translation": [1.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            "translation_weight": 2.0,
        }
    )
    r = cost(
        jnp.zeros(3),
        quaternion_identity(),
        jnp.array([1.5, 0.0, 0.0]),
        quaternion_identity(),
    )
    assert jnp.allclose(r, jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]), atol=1e-12)


def test_relative_pose_2d_to_3d_residual():
    cost = RelativePoseCost2Dto3D(
        {"first_t_second": {"translation": [0.0, 0.0, 1.0], "rotation": [1.0, 0.0, 0.0, 0.0]}}
    )
    first = jnp.array([2.0, 3.0, 0.4])
    r = cost(first, jnp.array([2.0, 3.0, 1.0]), quaternion_from_yaw(0.4))
    assert jnp.allclose(r, jnp.zeros(6), atol=1e-12)


def test_interpolated_relative_pose_3d_residual():
    cost = InterpolatedRelativePoseCost3D(
        {
            "first_t_second": {"translation": [0.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            "interpolation_factor": 0.5,
        }
    )
    r = cost(
        jnp.zeros(3),
        quaternion_identity(),
        jnp.array([2.0, 0.0, 0.0]),
        quaternion_from_yaw(0.4),
        jnp.array([1.0, 0.0, 0.0]),
        quaternion_from_yaw(0.2),
    )
    assert jnp.allclose(r, jnp.zeros(6), atol=1e-12)


def test_cost_proto_roundtrip():
    parameters = _interpolated_parameters(t=0.3, translation_weight=5.0)
    cost = InterpolatedRelativePoseCost2D(parameters)
    rebuilt = InterpolatedRelativePoseCost2D(cost.to_proto())
    assert rebuilt.to_proto() == cost.to_proto()
    assert rebuilt.interpolation_factor == pytest.approx(0.3)
