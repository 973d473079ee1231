# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
JIT-compiled autodiff wrappers around cost functors.

`AutoDiffCostFunction` is what a constraint hands to
`Problem.add_residual_block`. It wraps a cost functor (see
`slam.cost_functions`) and exposes:

    • the static shape of the residual block
      (`num_residuals`, `parameter_block_sizes`)
    • `residual(*blocks)`: jitted residual evaluation
    • `evaluate(*blocks)`: residual plus one Jacobian per parameter block,
      computed with forward-mode autodiff (`jax.jacfwd`), since residual
      blocks are small and have few outputs.

A functor provides a pure residual function
``residual_function(*blocks, params)`` and its own `params` pytree
(measurements, weights, interpolation factor). The params are an argument
of the compiled functions, which are built once per residual function and
shared by every functor using it.
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple

import jax
import jax.numpy as jnp
import numpy as np

_Compiled = Tuple[Callable[..., jnp.ndarray], Callable[..., Tuple[jnp.ndarray, ...]]]

_COMPILED: Dict[Tuple[Callable[..., jnp.ndarray], int], _Compiled] = {}


def _compile(residual_function: Callable[..., jnp.ndarray], num_blocks: int) -> _Compiled:
    """Jitted (residual, jacobians) for `residual_function`, built once."""
    key = (residual_function, num_blocks)
    compiled = _COMPILED.get(key)
    if compiled is None:
        def residual(params, *blocks: jnp.ndarray) -> jnp.ndarray:
            return residual_function(*blocks, params)

        argnums = tuple(range(1, num_blocks + 1))
        compiled = (jax.jit(residual), jax.jit(jax.jacfwd(residual, argnums=argnums)))
        _COMPILED[key] = compiled
    return compiled


class AutoDiffCostFunction:
    """
    Jitted residual and Jacobians for one cost functor.

    Usage:
        cost = AutoDiffCostFunction(InterpolatedRelativePoseCost2D(parameters))
        r, (J_start, J_end, J_t, J_q) = cost.evaluate(start, end, t, q)
    """

    def __init__(self, functor) -> None:
        self.functor = functor
        self.params = functor.params
        self.num_residuals = int(functor.num_residuals)
        self.parameter_block_sizes = tuple(int(s) for s in functor.parameter_block_sizes)
        self._residual, self._jacobians = _compile(
            functor.residual_function, len(self.parameter_block_sizes)
        )

    def _check_blocks(self, blocks) -> Tuple[jnp.ndarray, ...]:
        if len(blocks) != len(self.parameter_block_sizes):
            raise ValueError(
                f"Expected {len(self.parameter_block_sizes)} parameter blocks, got {len(blocks)}"
            )
        return tuple(jnp.asarray(b) for b in blocks)

    def residual(self, *blocks) -> np.ndarray:
        return np.asarray(self._residual(self.params, *self._check_blocks(blocks)))

    def evaluate(self, *blocks) -> Tuple[np.ndarray, Tuple[np.ndarray, ...]]:
        blocks = self._check_blocks(blocks)
        r = np.asarray(self._residual(self.params, *blocks))
        jacobians = tuple(np.asarray(j) for j in self._jacobians(self.params, *blocks))
        return r, jacobians
