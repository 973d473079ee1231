# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
PoseGraph-JIT: pose-graph constraints as differentiable JAX residuals.

Pose parameters live in float64 numpy arrays that the solver updates in
place, so JAX is switched to 64-bit mode on import to evaluate residuals
and Jacobians at the same precision as the storage it reads.
"""

import jax

jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"

__all__ = ["__version__"]
