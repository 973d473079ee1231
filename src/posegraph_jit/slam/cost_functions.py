# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Cost functors: residual functions bound to fixed, serialisable parameters.

A cost functor is a callable object

    functor(*parameter_blocks) -> residual

together with its static shape information (`num_residuals`,
`parameter_block_sizes`), the pure `residual_function(*blocks, params)`
it evaluates, and a `to_proto()` that reproduces the parameter
descriptor it was built from. The parameters (expected relative transform,
weights, interpolation factor, gravity alignment) are fixed at
construction and are not part of the optimized state.

Functors are wrapped by `optimization.jit_wrappers.AutoDiffCostFunction`
to obtain jitted residuals and forward-mode Jacobians.
"""

from __future__ import annotations
from typing import Any, Dict

import jax.numpy as jnp
import numpy as np

from posegraph_jit.core.math3d import quaternion_slerp
from posegraph_jit.core.types import Rigid2d, Rigid3d
from posegraph_jit.slam.measurements import (
    interpolated_relative_pose_2d_residual,
    interpolated_relative_pose_3d_residual,
    relative_pose_2d_residual,
    relative_pose_2d_to_3d_residual,
    relative_pose_3d_residual,
)

_IDENTITY_QUATERNION = (1.0, 0.0, 0.0, 0.0)


def _check_parameters(parameters: Any) -> Dict[str, Any]:
    if parameters is None:
        return {}
    if not isinstance(parameters, dict):
        raise ValueError(f"Cost function parameters must be a mapping, got {type(parameters).__name__}")
    return parameters


def _weight(parameters: Dict[str, Any], key: str) -> float:
    try:
        w = float(parameters.get(key, 1.0))
    except (TypeError, ValueError) as e:
        raise ValueError(f"'{key}' must be a number") from e
    if not np.isfinite(w) or w < 0.0:
        raise ValueError(f"'{key}' must be finite and non-negative, got {w}")
    return w


def _interpolation_factor(parameters: Dict[str, Any]) -> float:
    if "interpolation_factor" not in parameters:
        raise ValueError("Interpolated cost requires 'interpolation_factor'")
    try:
        t = float(parameters["interpolation_factor"])
    except (TypeError, ValueError) as e:
        raise ValueError("'interpolation_factor' must be a number") from e
    if not 0.0 <= t <= 1.0:
        raise ValueError(f"'interpolation_factor' must lie in [0, 1], got {t}")
    return t


def _unit_quaternion(value, key: str) -> np.ndarray:
    q = np.asarray(value, dtype=np.float64)
    if q.shape != (4,) or np.linalg.norm(q) == 0.0:
        raise ValueError(f"'{key}' must be a non-zero quaternion (w, x, y, z)")
    return q / np.linalg.norm(q)


class RelativePoseCost2D:
    """Relative pose between two 2D nodes. Blocks: first (3), second (3)."""

    num_residuals = 3
    parameter_block_sizes = (3, 3)
    residual_function = staticmethod(relative_pose_2d_residual)

    def __init__(self, parameters: Dict[str, Any]) -> None:
        parameters = _check_parameters(parameters)
        self.first_t_second = Rigid2d.from_proto(parameters.get("first_t_second"))
        self.translation_weight = _weight(parameters, "translation_weight")
        self.rotation_weight = _weight(parameters, "rotation_weight")
        self.params = {
            "first_t_second_translation": jnp.asarray(self.first_t_second.translation),
            "first_t_second_rotation": jnp.asarray(self.first_t_second.rotation),
            "translation_weight": self.translation_weight,
            "rotation_weight": self.rotation_weight,
        }

    def __call__(self, first: jnp.ndarray, second: jnp.ndarray) -> jnp.ndarray:
        return self.residual_function(first, second, self.params)

    def to_proto(self) -> Dict[str, Any]:
        return {
            "first_t_second": self.first_t_second.to_proto(),
            "translation_weight": self.translation_weight,
            "rotation_weight": self.rotation_weight,
        }


class RelativePoseCost3D:
    """
    Relative pose between two 3D nodes.

    Blocks: first translation (3), first rotation (4),
            second translation (3), second rotation (4).
    """

    num_residuals = 6
    parameter_block_sizes = (3, 4, 3, 4)
    residual_function = staticmethod(relative_pose_3d_residual)

    def __init__(self, parameters: Dict[str, Any]) -> None:
        parameters = _check_parameters(parameters)
        self.first_t_second = Rigid3d.from_proto(parameters.get("first_t_second"))
        self.translation_weight = _weight(parameters, "translation_weight")
        self.rotation_weight = _weight(parameters, "rotation_weight")
        self.params = self._build_params()

    def _build_params(self) -> Dict[str, Any]:
        return {
            "first_t_second_translation": jnp.asarray(self.first_t_second.translation),
            "first_t_second_rotation": jnp.asarray(self.first_t_second.rotation),
            "translation_weight": self.translation_weight,
            "rotation_weight": self.rotation_weight,
        }

    def __call__(self, first_translation, first_rotation, second_translation, second_rotation):
        return self.residual_function(
            first_translation, first_rotation, second_translation, second_rotation, self.params
        )

    def to_proto(self) -> Dict[str, Any]:
        return {
            "first_t_second": self.first_t_second.to_proto(),
            "translation_weight": self.translation_weight,
            "rotation_weight": self.rotation_weight,
        }


class RelativePoseCost2Dto3D(RelativePoseCost3D):
    """2D node (lifted to 3D) to 3D node. Blocks: first (3), second t (3), second q (4)."""

    parameter_block_sizes = (3, 3, 4)
    residual_function = staticmethod(relative_pose_2d_to_3d_residual)

    def __call__(self, first, second_translation, second_rotation):
        return self.residual_function(
            first, second_translation, second_rotation, self.params
        )


class InterpolatedRelativePoseCost2D(RelativePoseCost3D):
    """
    Relative pose from a pose interpolated between two 2D nodes to a 3D node.

    Blocks: first_start (3), first_end (3), second translation (3),
    second rotation (4).

    The gravity alignments of the two 2D nodes are constants, so their
    slerp at the interpolation factor is computed once here rather than on
    every residual evaluation.
    """

    parameter_block_sizes = (3, 3, 3, 4)
    residual_function = staticmethod(interpolated_relative_pose_2d_residual)

    def __init__(self, parameters: Dict[str, Any]) -> None:
        parameters = _check_parameters(parameters)
        self.interpolation_factor = _interpolation_factor(parameters)
        self.gravity_alignment_first_start = _unit_quaternion(
            parameters.get("gravity_alignment_first_start", _IDENTITY_QUATERNION),
            "gravity_alignment_first_start",
        )
        self.gravity_alignment_first_end = _unit_quaternion(
            parameters.get("gravity_alignment_first_end", _IDENTITY_QUATERNION),
            "gravity_alignment_first_end",
        )
        super().__init__(parameters)

    def _build_params(self) -> Dict[str, Any]:
        params = super()._build_params()
        params["interpolation_factor"] = self.interpolation_factor
        params["gravity_alignment"] = quaternion_slerp(
            jnp.asarray(self.gravity_alignment_first_start),
            jnp.asarray(self.gravity_alignment_first_end),
            self.interpolation_factor,
        )
        return params

    def __call__(self, first_start, first_end, second_translation, second_rotation):
        return self.residual_function(
            first_start, first_end, second_translation, second_rotation, self.params
        )

    def to_proto(self) -> Dict[str, Any]:
        proto = super().to_proto()
        proto["interpolation_factor"] = self.interpolation_factor
        proto["gravity_alignment_first_start"] = self.gravity_alignment_first_start.tolist()
        proto["gravity_alignment_first_end"] = self.gravity_alignment_first_end.tolist()
        return proto


class InterpolatedRelativePoseCost3D(RelativePoseCost3D):
    """
    Relative pose from a pose interpolated between two 3D nodes to a 3D node.

    Blocks: first_start t (3), first_start q (4), first_end t (3),
    first_end q (4), second t (3), second q (4).
    """

    parameter_block_sizes = (3, 4, 3, 4, 3, 4)
    residual_function = staticmethod(interpolated_relative_pose_3d_residual)

    def __init__(self, parameters: Dict[str, Any]) -> None:
        parameters = _check_parameters(parameters)
        self.interpolation_factor = _interpolation_factor(parameters)
        super().__init__(parameters)

    def _build_params(self) -> Dict[str, Any]:
        params = super()._build_params()
        params["interpolation_factor"] = self.interpolation_factor
        return params

    def __call__(
        self,
        first_start_translation,
        first_start_rotation,
        first_end_translation,
        first_end_rotation,
        second_translation,
        second_rotation,
    ):
        return self.residual_function(
            first_start_translation,
            first_start_rotation,
            first_end_translation,
            first_end_rotation,
            second_translation,
            second_rotation,
            self.params,
        )

    def to_proto(self) -> Dict[str, Any]:
        proto = super().to_proto()
        proto["interpolation_factor"] = self.interpolation_factor
        return proto
