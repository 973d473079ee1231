# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Nonlinear least-squares problem: parameter blocks and residual blocks.

`Problem` is the solver-facing side of the pose graph. Constraints talk to
it through three calls:

    add_parameter_block(values, size, manifold)
    set_parameter_block_constant(values)
    add_residual_block(cost_function, loss_function, *blocks)

Parameter blocks are the pose arrays owned by the pose store, registered
*by identity* (no copy). The solver later writes accepted updates straight
into them, which is how optimized poses reach the store. Registration
itself never changes a value.

Registration is idempotent: several constraints sharing a node each
register the node's blocks, and every call after the first is a no-op
(a size mismatch on re-registration is an error).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from posegraph_jit.optimization.jit_wrappers import AutoDiffCostFunction
from posegraph_jit.optimization.loss import LossFunction, evaluate_loss
from posegraph_jit.slam.manifold import EUCLIDEAN, check_manifold


@dataclass
class ParameterBlock:
    values: np.ndarray
    manifold: str = EUCLIDEAN
    constant: bool = False

    @property
    def size(self) -> int:
        return int(self.values.shape[0])


@dataclass(frozen=True)
class ResidualBlock:
    cost_function: AutoDiffCostFunction
    loss_function: Optional[LossFunction]
    parameter_blocks: Tuple[np.ndarray, ...]


def block_key(values: np.ndarray) -> int:
    """Parameter blocks are keyed by the identity of their storage array."""
    return id(values)


class Problem:
    """Registry of aliased parameter blocks and autodiff residual blocks."""

    def __init__(self) -> None:
        self._parameter_blocks: Dict[int, ParameterBlock] = {}
        self._residual_blocks: List[ResidualBlock] = []

    # --- Parameter blocks ---

    def add_parameter_block(
        self,
        values: np.ndarray,
        size: Optional[int] = None,
        manifold: str = EUCLIDEAN,
    ) -> None:
        if not isinstance(values, np.ndarray) or values.ndim != 1:
            raise ValueError("Parameter blocks must be 1-D numpy arrays")
        if values.dtype != np.float64:
            raise ValueError(f"Parameter blocks must be float64, got {values.dtype}")
        if not values.flags.writeable:
            raise ValueError("Parameter blocks must be writeable")
        if size is not None and size != values.shape[0]:
            raise ValueError(f"Parameter block has size {values.shape[0]}, registered as {size}")

        key = block_key(values)
        existing = self._parameter_blocks.get(key)
        if existing is not None:
            if existing.size != values.shape[0]:
                raise ValueError("Parameter block re-registered with a different size")
            return

        check_manifold(manifold, values.shape[0])
        self._parameter_blocks[key] = ParameterBlock(values=values, manifold=manifold)

    def _block(self, values: np.ndarray) -> ParameterBlock:
        try:
            return self._parameter_blocks[block_key(values)]
        except KeyError:
            raise KeyError("Parameter block is not registered with this problem") from None

    def set_parameter_block_constant(self, values: np.ndarray) -> None:
        self._block(values).constant = True

    def set_parameter_block_variable(self, values: np.ndarray) -> None:
        self._block(values).constant = False

    def is_parameter_block_constant(self, values: np.ndarray) -> bool:
        return self._block(values).constant

    def has_parameter_block(self, values: np.ndarray) -> bool:
        return block_key(values) in self._parameter_blocks

    def parameter_block(self, values: np.ndarray) -> ParameterBlock:
        return self._block(values)

    def parameter_blocks(self) -> List[ParameterBlock]:
        """All registered blocks in registration order."""
        return list(self._parameter_blocks.values())

    # --- Residual blocks ---

    def add_residual_block(
        self,
        cost_function: AutoDiffCostFunction,
        loss_function: Optional[LossFunction],
        *parameter_blocks: np.ndarray,
    ) -> int:
        """
        Add one residual block and return its id.

        Blocks not yet known to the problem are registered as Euclidean.
        """
        sizes = cost_function.parameter_block_sizes
        if len(parameter_blocks) != len(sizes):
            raise ValueError(
                f"Cost function expects {len(sizes)} parameter blocks, got {len(parameter_blocks)}"
            )
        for values, size in zip(parameter_blocks, sizes):
            self.add_parameter_block(values, size)

        self._residual_blocks.append(
            ResidualBlock(
                cost_function=cost_function,
                loss_function=loss_function,
                parameter_blocks=tuple(parameter_blocks),
            )
        )
        return len(self._residual_blocks) - 1

    def residual_blocks(self) -> List[ResidualBlock]:
        return list(self._residual_blocks)

    # --- Introspection ---

    @property
    def num_parameter_blocks(self) -> int:
        return len(self._parameter_blocks)

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return sum(rb.cost_function.num_residuals for rb in self._residual_blocks)

    def evaluate(
        self,
        overrides: Optional[Mapping[int, np.ndarray]] = None,
    ) -> Tuple[float, np.ndarray]:
        """
        Returns (cost, residual_vector) with cost = ½ Σ ρ(‖r_i‖²).

        overrides: block_key -> candidate values, used in place of the
        stored values without modifying them.
        """
        overrides = overrides or {}
        cost = 0.0
        residuals = []
        for rb in self._residual_blocks:
            blocks = [overrides.get(block_key(v), v) for v in rb.parameter_blocks]
            r = rb.cost_function.residual(*blocks)
            rho, _ = evaluate_loss(rb.loss_function, jnp.dot(r, r))
            cost += 0.5 * float(rho)
            residuals.append(r)

        if not residuals:
            return 0.0, np.zeros((0,), dtype=np.float64)
        return cost, np.concatenate(residuals)
