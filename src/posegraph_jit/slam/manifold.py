# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Manifold utilities for pose parameter blocks.

The solver works in a local tangent space while the parameter blocks live
on their manifold. Every block registered with a `Problem` carries a
manifold label:

    • "euclidean"   : ℝⁿ, plus(x, δ) = x + δ            (tangent dim n)
    • "quaternion"  : unit quaternions (w, x, y, z),
                      plus(q, δ) = q ⊗ Exp(δ)            (tangent dim 3)

`TYPE_TO_MANIFOLD` records which label each kind of pose block gets when a
constraint registers it. 2D poses stay Euclidean; the heading residuals
normalize angles themselves.

The solver uses:

    `tangent_size`       size of the local update for a block
    `manifold_plus`      apply a local update
    `plus_jacobian`      d plus(x, δ) / dδ at δ = 0, used to map the
                         ambient Jacobian of a cost function into the
                         tangent space (J_tangent = J_ambient @ P)
"""

from __future__ import annotations

from typing import Dict

import jax
import jax.numpy as jnp

from posegraph_jit.core.math3d import angle_axis_to_quaternion, quaternion_multiply

EUCLIDEAN = "euclidean"
QUATERNION = "quaternion"

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_2d": EUCLIDEAN,
    "translation": EUCLIDEAN,
    "rotation": QUATERNION,
}


def get_manifold_for_block_type(block_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(block_type, EUCLIDEAN)


def check_manifold(manifold: str, ambient_size: int) -> None:
    if manifold == EUCLIDEAN:
        return
    if manifold == QUATERNION:
        if ambient_size != 4:
            raise ValueError(f"Quaternion blocks must have size 4, got {ambient_size}")
        return
    raise ValueError(f"Unknown manifold '{manifold}'")


def tangent_size(manifold: str, ambient_size: int) -> int:
    if manifold == QUATERNION:
        return 3
    return ambient_size


def manifold_plus(manifold: str, x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply a tangent-space update to a block."""
    if manifold == QUATERNION:
        q = quaternion_multiply(x, angle_axis_to_quaternion(delta))
        return q / jnp.linalg.norm(q)
    return x + delta


def plus_jacobian(manifold: str, x: jnp.ndarray) -> jnp.ndarray:
    """Jacobian of plus(x, δ) w.r.t. δ at δ = 0, shape (ambient, tangent)."""
    x = jnp.asarray(x)
    n = tangent_size(manifold, x.shape[0])
    if manifold == EUCLIDEAN:
        return jnp.eye(n, dtype=x.dtype)
    return jax.jacfwd(lambda d: manifold_plus(manifold, x, d))(jnp.zeros(n, dtype=x.dtype))
