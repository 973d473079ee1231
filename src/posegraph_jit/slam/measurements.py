# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Residual models (measurement factors) for PoseGraph-JIT.

Each function here implements a residual

      r(blocks...; params) ∈ ℝᵏ

over one or more pose parameter blocks, written purely in `jax.numpy` so
it can be evaluated on plain arrays or differentiated with
`jax.jacfwd` / `jax.jacrev`. The cost functors in `slam.cost_functions`
bind the `params` dictionary and expose these functions to the
optimization problem.

Parameter blocks
----------------
    • 2D pose:        [x, y, heading]               (3,)
    • 3D translation: [tx, ty, tz]                  (3,)
    • 3D rotation:    unit quaternion [w, x, y, z]  (4,)

Common params
-------------
    "first_t_second_translation" : expected relative translation
    "first_t_second_rotation"    : expected relative rotation
                                   (quaternion for 3D, angle for 2D)
    "translation_weight"         : scale of translation residual entries
    "rotation_weight"            : scale of rotation residual entries

Residual families
-----------------
1. Relative pose constraints
    • `relative_pose_2d_residual`       (2D → 2D, k = 3)
    • `relative_pose_3d_residual`       (3D → 3D, k = 6)
    • `relative_pose_2d_to_3d_residual` (2D lifted → 3D, k = 6)

2. Interpolated relative pose constraints
    • `interpolated_relative_pose_2d_residual`
        first pose interpolated between two 2D nodes, lifted into 3D,
        compared against a 3D node (k = 6).
    • `interpolated_relative_pose_3d_residual`
        first pose interpolated between two 3D nodes (k = 6).

All 3D residuals share `unscaled_error_3d`: the translation part is the
predicted relative translation minus the expected one, the rotation part
is the rotation vector of  q_expected⁻¹ ⊗ q_predicted.  Both vanish only
when the prediction matches the expectation exactly.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from posegraph_jit.core.math3d import (
    embed_pose_2d,
    interpolate_pose_2d,
    interpolate_pose_3d,
    normalize_angle,
    quaternion_conjugate,
    quaternion_multiply,
    quaternion_to_angle_axis,
    relative_pose_3d,
    rotate_2d,
)


def _apply_weight(error: jnp.ndarray, params: Dict[str, jnp.ndarray], translation_dim: int) -> jnp.ndarray:
    """
    Scale the translation entries by params["translation_weight"] and the
    rotation entries by params["rotation_weight"].
    """
    tw = params.get("translation_weight", 1.0)
    rw = params.get("rotation_weight", 1.0)
    return jnp.concatenate([tw * error[:translation_dim], rw * error[translation_dim:]])


def unscaled_error_2d(
    first: jnp.ndarray,
    second: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    """
    first, second: [x, y, heading]

      delta   = R(-h_1) (p_2 - p_1)
      error_t = delta - t_expected
      error_r = normalize((h_2 - h_1) - theta_expected)
    """
    delta = rotate_2d(-first[2], second[:2] - first[:2])
    error_t = delta - params["first_t_second_translation"]
    error_r = normalize_angle((second[2] - first[2]) - params["first_t_second_rotation"])
    return jnp.concatenate([error_t, error_r[None]])


def unscaled_error_3d(
    first_translation: jnp.ndarray,
    first_rotation: jnp.ndarray,
    second_translation: jnp.ndarray,
    second_rotation: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    t_rel, q_rel = relative_pose_3d(
        first_translation, first_rotation, second_translation, second_rotation
    )
    error_t = t_rel - params["first_t_second_translation"]
    q_error = quaternion_multiply(
        quaternion_conjugate(params["first_t_second_rotation"]), q_rel
    )
    error_r = quaternion_to_angle_axis(q_error)
    return jnp.concatenate([error_t, error_r])


def relative_pose_2d_residual(
    first: jnp.ndarray,
    second: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    return _apply_weight(unscaled_error_2d(first, second, params), params, 2)


def relative_pose_3d_residual(
    first_translation: jnp.ndarray,
    first_rotation: jnp.ndarray,
    second_translation: jnp.ndarray,
    second_rotation: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    error = unscaled_error_3d(
        first_translation, first_rotation, second_translation, second_rotation, params
    )
    return _apply_weight(error, params, 3)


def relative_pose_2d_to_3d_residual(
    first: jnp.ndarray,
    second_translation: jnp.ndarray,
    second_rotation: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    """The 2D node is lifted to (x, y, 0) with a pure yaw rotation."""
    first_translation, first_rotation = embed_pose_2d(first)
    error = unscaled_error_3d(
        first_translation, first_rotation, second_translation, second_rotation, params
    )
    return _apply_weight(error, params, 3)


def interpolated_pose_2d_in_3d(
    first_start: jnp.ndarray,
    first_end: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Predicted 3D pose of the interpolated 2D node.

    The 2D poses are interpolated with t = params["interpolation_factor"],
    lifted to 3D, and the (already interpolated) gravity alignment
    params["gravity_alignment"] is applied on the right:

        q = yaw(h_t) ⊗ gravity_alignment
    """
    t = params["interpolation_factor"]
    pose = interpolate_pose_2d(first_start, first_end, t)
    translation, yaw_rotation = embed_pose_2d(pose)
    rotation = quaternion_multiply(yaw_rotation, params["gravity_alignment"])
    return translation, rotation


def interpolated_relative_pose_2d_residual(
    first_start: jnp.ndarray,
    first_end: jnp.ndarray,
    second_translation: jnp.ndarray,
    second_rotation: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    """
    Residual between an interpolated 2D pose and a 3D node.

    Worked example (unit weights, identity expectation, t = 0.5):
        first_start = [0, 0, 0], first_end = [1, 0, 0]
        second      = t: [0.5, 0, 0.2], q: identity
        interpolated first = [0.5, 0, 0]
        residual    = [0, 0, 0.2, 0, 0, 0]
    """
    first_translation, first_rotation = interpolated_pose_2d_in_3d(first_start, first_end, params)
    error = unscaled_error_3d(
        first_translation, first_rotation, second_translation, second_rotation, params
    )
    return _apply_weight(error, params, 3)


def interpolated_relative_pose_3d_residual(
    first_start_translation: jnp.ndarray,
    first_start_rotation: jnp.ndarray,
    first_end_translation: jnp.ndarray,
    first_end_rotation: jnp.ndarray,
    second_translation: jnp.ndarray,
    second_rotation: jnp.ndarray,
    params: Dict[str, jnp.ndarray],
) -> jnp.ndarray:
    first_translation, first_rotation = interpolate_pose_3d(
        first_start_translation,
        first_start_rotation,
        first_end_translation,
        first_end_rotation,
        params["interpolation_factor"],
    )
    error = unscaled_error_3d(
        first_translation, first_rotation, second_translation, second_rotation, params
    )
    return _apply_weight(error, params, 3)
