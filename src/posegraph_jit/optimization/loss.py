# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Robust loss functions.

A loss ρ acts on the squared norm s = ‖r‖² of one residual block and
returns ``(ρ(s), ρ'(s))``. The block contributes ½ ρ(s) to the cost; the
solver rescales the residual and its Jacobian by √ρ'(s).

Loss descriptor
---------------
    {"type": "QUADRATIC" | "HUBER_LOSS" | "CAUCHY_LOSS", "scale": a}

`create_loss_function` returns ``None`` for the quadratic (trivial) loss,
which the problem treats as ρ(s) = s.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

import jax.numpy as jnp

QUADRATIC = "QUADRATIC"
HUBER_LOSS = "HUBER_LOSS"
CAUCHY_LOSS = "CAUCHY_LOSS"


@dataclass(frozen=True)
class HuberLoss:
    """
    ρ(s) = s                 for s <= a²
    ρ(s) = 2 a √s - a²       otherwise
    """
    scale: float

    def evaluate(self, s: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
        b = self.scale * self.scale
        inlier = s <= b
        r = jnp.sqrt(jnp.where(inlier, b, s))
        rho = jnp.where(inlier, s, 2.0 * self.scale * r - b)
        rho_prime = jnp.where(inlier, 1.0, self.scale / r)
        return rho, rho_prime


@dataclass(frozen=True)
class CauchyLoss:
    """ρ(s) = a² log(1 + s / a²)"""
    scale: float

    def evaluate(self, s: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
        b = self.scale * self.scale
        total = 1.0 + s / b
        return b * jnp.log(total), 1.0 / total


LossFunction = Union[HuberLoss, CauchyLoss]


def evaluate_loss(loss: Optional[LossFunction], s: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    if loss is None:
        return s, jnp.ones_like(s)
    return loss.evaluate(s)


def create_loss_function(proto: Optional[Dict[str, Any]]) -> Optional[LossFunction]:
    """Build a loss from its descriptor. Raises ValueError if malformed."""
    if proto is None:
        return None
    if not isinstance(proto, dict):
        raise ValueError(f"Loss function descriptor must be a mapping, got {type(proto).__name__}")

    loss_type = proto.get("type", QUADRATIC)
    if loss_type == QUADRATIC:
        return None

    try:
        scale = float(proto["scale"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"{loss_type} requires a numeric 'scale'") from e
    if not scale > 0.0:
        raise ValueError(f"Loss scale must be positive, got {scale}")

    if loss_type == HUBER_LOSS:
        return HuberLoss(scale)
    if loss_type == CAUCHY_LOSS:
        return CauchyLoss(scale)
    raise ValueError(f"Unknown loss function type '{loss_type}'")
