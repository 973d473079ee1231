# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Nonlinear least-squares solver for PoseGraph-JIT problems.

This module runs a dense, manifold-aware Levenberg–Marquardt loop over a
`optimization.problem.Problem`. It is meant for the small and medium
graphs used in tests and examples; the problem construction layer does
not depend on it.

Key Concepts
------------
SolverConfig
    Dataclass holding the iteration budget, damping schedule, step clamp
    and convergence tolerances.

solve(problem, cfg)
    For every iteration:

      1. Linearize each residual block: autodiff Jacobian of the cost
         function w.r.t. each *variable* block, mapped to the block's
         tangent space with its manifold plus-Jacobian.
         Robust losses rescale r and J by √ρ'(‖r‖²).
      2. Solve (JᵀJ + λ I) δ = Jᵀ r.
      3. Clamp ‖δ‖ to `max_step_norm`.
      4. Retract every variable block: x ← plus(x, -δ_block).
      5. Accept the step if the cost decreased (write back in place,
         decrease λ); otherwise reject it and increase λ.

    Constant blocks never receive a column in J and are never written.

Notes
-----
Accepted updates are written *into the registered arrays*, so after
`solve` returns the pose store already holds the optimized values.
A rejected step leaves every block untouched.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple

import jax.numpy as jnp
import numpy as np
from loguru import logger

from posegraph_jit.optimization.loss import evaluate_loss
from posegraph_jit.optimization.problem import ParameterBlock, Problem, block_key
from posegraph_jit.slam.manifold import manifold_plus, plus_jacobian, tangent_size


@dataclass
class SolverConfig:
    max_iters: int = 50
    damping: float = 1e-4         # initial LM damping λ
    lambda_factor: float = 10.0   # λ multiplier on reject, divisor on accept
    lambda_max: float = 1e10
    max_step_norm: float = 1.0    # clamp step size for stability
    function_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-12


@dataclass
class SolverSummary:
    initial_cost: float
    final_cost: float
    iterations: int
    termination: str
    num_variable_blocks: int

    @property
    def converged(self) -> bool:
        return self.termination in ("function_tolerance", "gradient_tolerance")


@dataclass(frozen=True)
class _Column:
    block: ParameterBlock
    offset: int
    dim: int


def _build_layout(problem: Problem) -> Tuple[Dict[int, _Column], int]:
    """
    Assign a tangent-space column range to every non-constant block that
    at least one residual block depends on.
    """
    used = {
        block_key(values)
        for rb in problem.residual_blocks()
        for values in rb.parameter_blocks
    }
    layout: Dict[int, _Column] = {}
    offset = 0
    for pb in problem.parameter_blocks():
        key = block_key(pb.values)
        if pb.constant or key not in used:
            continue
        dim = tangent_size(pb.manifold, pb.size)
        layout[key] = _Column(block=pb, offset=offset, dim=dim)
        offset += dim
    return layout, offset


def _linearize(
    problem: Problem,
    layout: Dict[int, _Column],
    num_cols: int,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Returns (cost, J, r) with robust-loss rescaling applied to J and r."""
    cost = 0.0
    r_rows: List[np.ndarray] = []
    j_rows: List[np.ndarray] = []

    for rb in problem.residual_blocks():
        r, jacobians = rb.cost_function.evaluate(*rb.parameter_blocks)
        rho, rho_prime = evaluate_loss(rb.loss_function, jnp.dot(r, r))
        cost += 0.5 * float(rho)
        scale = float(np.sqrt(rho_prime))

        J = np.zeros((r.shape[0], num_cols), dtype=np.float64)
        for values, J_ambient in zip(rb.parameter_blocks, jacobians):
            col = layout.get(block_key(values))
            if col is None:
                continue
            P = np.asarray(plus_jacobian(col.block.manifold, values))
            J[:, col.offset:col.offset + col.dim] += J_ambient @ P

        r_rows.append(scale * r)
        j_rows.append(scale * J)

    return cost, np.vstack(j_rows), np.concatenate(r_rows)


def _retract(layout: Dict[int, _Column], delta: np.ndarray) -> Dict[int, np.ndarray]:
    candidate: Dict[int, np.ndarray] = {}
    for key, col in layout.items():
        d_i = jnp.asarray(delta[col.offset:col.offset + col.dim])
        x_i = jnp.asarray(col.block.values)
        candidate[key] = np.asarray(manifold_plus(col.block.manifold, x_i, -d_i))
    return candidate


def solve(problem: Problem, cfg: SolverConfig | None = None) -> SolverSummary:
    """
    Minimize ½ Σ ρ(‖r_i‖²) over the non-constant blocks of `problem`.

    Optimized values are written back into the registered arrays.
    """
    cfg = cfg or SolverConfig()
    layout, num_cols = _build_layout(problem)

    if num_cols == 0 or problem.num_residual_blocks == 0:
        cost, _ = problem.evaluate()
        logger.info(
            "Nothing to optimize: {} variable blocks, {} residual blocks.",
            len(layout),
            problem.num_residual_blocks,
        )
        return SolverSummary(cost, cost, 0, "no_variables", len(layout))

    logger.info(
        "Solving problem with {} residual blocks, {} variable blocks ({} tangent dims).",
        problem.num_residual_blocks,
        len(layout),
        num_cols,
    )

    lambd = cfg.damping
    cost, J, r = _linearize(problem, layout, num_cols)
    initial_cost = cost
    termination = "max_iterations"
    iteration = 0

    for iteration in range(1, cfg.max_iters + 1):
        g = J.T @ r
        if float(np.max(np.abs(g))) <= cfg.gradient_tolerance:
            termination = "gradient_tolerance"
            break

        H = J.T @ J
        H_damped = H + lambd * jnp.eye(num_cols)
        delta = np.asarray(jnp.linalg.solve(H_damped, g))

        # Step size clamp
        step_norm = float(np.linalg.norm(delta))
        delta = min(1.0, cfg.max_step_norm / (step_norm + 1e-12)) * delta

        candidate = _retract(layout, delta)
        new_cost, _ = problem.evaluate(candidate)

        logger.debug(
            "iteration {}: cost={:.6e} candidate={:.6e} lambda={:.1e} |step|={:.2e}",
            iteration,
            cost,
            new_cost,
            lambd,
            step_norm,
        )

        if new_cost < cost:
            for key, values in candidate.items():
                layout[key].block.values[...] = values
            lambd = max(lambd / cfg.lambda_factor, 1e-12)
            decrease = cost - new_cost
            cost, J, r = _linearize(problem, layout, num_cols)
            if decrease <= cfg.function_tolerance * max(cost, 1e-300) or cost == 0.0:
                termination = "function_tolerance"
                break
        else:
            lambd *= cfg.lambda_factor
            if lambd > cfg.lambda_max:
                termination = "damping_overflow"
                break

    logger.info(
        "Terminated after {} iterations ({}): cost {:.6e} -> {:.6e}",
        iteration,
        termination,
        initial_cost,
        cost,
    )
    return SolverSummary(initial_cost, cost, iteration, termination, len(layout))
