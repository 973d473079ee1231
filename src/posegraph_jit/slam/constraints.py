# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Pose graph constraints and their translation into problem state.

A constraint binds an id, a robust loss, the ids of the nodes it relates
and a cost functor. Every variant implements the same two operations:

    add_to_optimizer(nodes, problem)
        Resolve the referenced nodes in the pose store and register the
        parameter blocks and exactly one residual block with `problem`.
        The constraint contributes nothing when

          - a referenced node is missing (the graph evolves independently
            of its constraints, so dangling references are expected), or
          - every referenced node is constant (the residual would be dead
            weight for the solver).

        Both cases are logged at INFO level and return before `problem`
        is touched, so a constraint is never partially registered.

    to_cost_function_proto()
        Descriptor of the node references and cost parameters.
        `create_constraint(id, loss, constraint.to_cost_function_proto())`
        rebuilds a constraint with identical `add_to_optimizer` effects.

Parameter blocks are passed to the residual block in the order of the
constraint's node references (first_start, first_end, second), a 3D node
contributing its translation before its rotation.

Variants
--------
    relative_pose_2d                 first (2D), second (2D)
    relative_pose_3d                 first (3D), second (3D)
    relative_pose_2d_to_3d           first (2D), second (3D)
    interpolated_relative_pose_2d    first_start, first_end (2D), second (3D)
    interpolated_relative_pose_3d    first_start, first_end (3D), second (3D)

`create_constraint` is the single dispatch point from descriptor to
variant; it raises ValueError for malformed descriptors.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional, Type

from loguru import logger

from posegraph_jit.core.nodes import Nodes
from posegraph_jit.core.types import ConstraintId, NodeId, Pose2D, Pose3D
from posegraph_jit.optimization.jit_wrappers import AutoDiffCostFunction
from posegraph_jit.optimization.loss import QUADRATIC, create_loss_function
from posegraph_jit.optimization.problem import Problem
from posegraph_jit.slam.cost_functions import (
    InterpolatedRelativePoseCost2D,
    InterpolatedRelativePoseCost3D,
    RelativePoseCost2D,
    RelativePoseCost2Dto3D,
    RelativePoseCost3D,
)
from posegraph_jit.slam.manifold import get_manifold_for_block_type


def _add_pose_2d_parameters(pose: Pose2D, problem: Problem) -> None:
    problem.add_parameter_block(
        pose.pose_2d, pose.pose_2d.shape[0], get_manifold_for_block_type("pose_2d")
    )
    if pose.constant:
        problem.set_parameter_block_constant(pose.pose_2d)


def _add_pose_3d_parameters(pose: Pose3D, problem: Problem) -> None:
    problem.add_parameter_block(
        pose.translation, pose.translation.shape[0], get_manifold_for_block_type("translation")
    )
    problem.add_parameter_block(
        pose.rotation, pose.rotation.shape[0], get_manifold_for_block_type("rotation")
    )
    if pose.constant:
        problem.set_parameter_block_constant(pose.translation)
        problem.set_parameter_block_constant(pose.rotation)


def _node_ref(proto: Dict[str, Any], key: str) -> NodeId:
    if key not in proto:
        raise ValueError(f"Constraint descriptor is missing node reference '{key}'")
    return NodeId.from_proto(proto[key])


class Constraint(abc.ABC):
    """Common state of all constraint variants: id and robust loss."""

    TAG: str = ""

    def __init__(
        self,
        constraint_id: ConstraintId,
        loss_function_proto: Optional[Dict[str, Any]],
    ) -> None:
        self.constraint_id = constraint_id
        self.loss_function_proto = (
            dict(loss_function_proto) if loss_function_proto is not None else {"type": QUADRATIC}
        )
        self.loss_function = create_loss_function(self.loss_function_proto)

    @abc.abstractmethod
    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        ...

    @abc.abstractmethod
    def to_cost_function_proto(self) -> Dict[str, Any]:
        ...

    def to_proto(self) -> Dict[str, Any]:
        return {
            "id": str(self.constraint_id),
            "loss_function": dict(self.loss_function_proto),
            "cost_function": self.to_cost_function_proto(),
        }

    def _skip(self, reason: str, *args: Any) -> None:
        logger.info("Constraint {}: " + reason, self.constraint_id, *args)


class RelativePoseConstraint2D(Constraint):
    TAG = "relative_pose_2d"

    def __init__(self, constraint_id, loss_function_proto, proto: Dict[str, Any]) -> None:
        super().__init__(constraint_id, loss_function_proto)
        self.first = _node_ref(proto, "first")
        self.second = _node_ref(proto, "second")
        self.cost = RelativePoseCost2D(proto.get("parameters"))
        self.cost_function = AutoDiffCostFunction(self.cost)

    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        first_node = nodes.find_pose_2d(self.first)
        if first_node is None:
            self._skip("first node {} was not found in pose_2d_nodes.", self.first)
            return

        second_node = nodes.find_pose_2d(self.second)
        if second_node is None:
            self._skip("second node {} was not found in pose_2d_nodes.", self.second)
            return

        if first_node.constant and second_node.constant:
            self._skip("all nodes are constant, skipping the constraint.")
            return

        _add_pose_2d_parameters(first_node, problem)
        _add_pose_2d_parameters(second_node, problem)
        problem.add_residual_block(
            self.cost_function,
            self.loss_function,
            first_node.pose_2d,
            second_node.pose_2d,
        )

    def to_cost_function_proto(self) -> Dict[str, Any]:
        return {
            self.TAG: {
                "first": self.first.to_proto(),
                "second": self.second.to_proto(),
                "parameters": self.cost.to_proto(),
            }
        }


class RelativePoseConstraint3D(Constraint):
    TAG = "relative_pose_3d"

    def __init__(self, constraint_id, loss_function_proto, proto: Dict[str, Any]) -> None:
        super().__init__(constraint_id, loss_function_proto)
        self.first = _node_ref(proto, "first")
        self.second = _node_ref(proto, "second")
        self.cost = RelativePoseCost3D(proto.get("parameters"))
        self.cost_function = AutoDiffCostFunction(self.cost)

    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        first_node = nodes.find_pose_3d(self.first)
        if first_node is None:
            self._skip("first node {} was not found in pose_3d_nodes.", self.first)
            return

        second_node = nodes.find_pose_3d(self.second)
        if second_node is None:
            self._skip("second node {} was not found in pose_3d_nodes.", self.second)
            return

        if first_node.constant and second_node.constant:
            self._skip("all nodes are constant, skipping the constraint.")
            return

        _add_pose_3d_parameters(first_node, problem)
        _add_pose_3d_parameters(second_node, problem)
        problem.add_residual_block(
            self.cost_function,
            self.loss_function,
            first_node.translation,
            first_node.rotation,
            second_node.translation,
            second_node.rotation,
        )

    def to_cost_function_proto(self) -> Dict[str, Any]:
        return {
            self.TAG: {
                "first": self.first.to_proto(),
                "second": self.second.to_proto(),
                "parameters": self.cost.to_proto(),
            }
        }


class RelativePoseConstraint2Dto3D(Constraint):
    TAG = "relative_pose_2d_to_3d"

    def __init__(self, constraint_id, loss_function_proto, proto: Dict[str, Any]) -> None:
        super().__init__(constraint_id, loss_function_proto)
        self.first = _node_ref(proto, "first")
        self.second = _node_ref(proto, "second")
        self.cost = RelativePoseCost2Dto3D(proto.get("parameters"))
        self.cost_function = AutoDiffCostFunction(self.cost)

    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        first_node = nodes.find_pose_2d(self.first)
        if first_node is None:
            self._skip("first node {} was not found in pose_2d_nodes.", self.first)
            return

        second_node = nodes.find_pose_3d(self.second)
        if second_node is None:
            self._skip("second node {} was not found in pose_3d_nodes.", self.second)
            return

        if first_node.constant and second_node.constant:
            self._skip("all nodes are constant, skipping the constraint.")
            return

        _add_pose_2d_parameters(first_node, problem)
        _add_pose_3d_parameters(second_node, problem)
        problem.add_residual_block(
            self.cost_function,
            self.loss_function,
            first_node.pose_2d,
            second_node.translation,
            second_node.rotation,
        )

    def to_cost_function_proto(self) -> Dict[str, Any]:
        return {
            self.TAG: {
                "first": self.first.to_proto(),
                "second": self.second.to_proto(),
                "parameters": self.cost.to_proto(),
            }
        }


class InterpolatedRelativePoseConstraint2D(Constraint):
    """
    Relates a pose interpolated between two 2D nodes to a 3D node.

    Residual block parameters, in order:
        first_start.pose_2d, first_end.pose_2d,
        second.translation, second.rotation
    """

    TAG = "interpolated_relative_pose_2d"

    def __init__(self, constraint_id, loss_function_proto, proto: Dict[str, Any]) -> None:
        super().__init__(constraint_id, loss_function_proto)
        self.first_start = _node_ref(proto, "first_start")
        self.first_end = _node_ref(proto, "first_end")
        self.second = _node_ref(proto, "second")
        self.cost = InterpolatedRelativePoseCost2D(proto.get("parameters"))
        self.cost_function = AutoDiffCostFunction(self.cost)

    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        first_node_start = nodes.find_pose_2d(self.first_start)
        if first_node_start is None:
            self._skip("first node (start) {} was not found in pose_2d_nodes.", self.first_start)
            return

        first_node_end = nodes.find_pose_2d(self.first_end)
        if first_node_end is None:
            self._skip("first node (end) {} was not found in pose_2d_nodes.", self.first_end)
            return

        second_node = nodes.find_pose_3d(self.second)
        if second_node is None:
            self._skip("second node {} was not found in pose_3d_nodes.", self.second)
            return

        if first_node_start.constant and first_node_end.constant and second_node.constant:
            self._skip("all nodes are constant, skipping the constraint.")
            return

        _add_pose_2d_parameters(first_node_start, problem)
        _add_pose_2d_parameters(first_node_end, problem)
        _add_pose_3d_parameters(second_node, problem)
        problem.add_residual_block(
            self.cost_function,
            self.loss_function,
            first_node_start.pose_2d,
            first_node_end.pose_2d,
            second_node.translation,
            second_node.rotation,
        )

    def to_cost_function_proto(self) -> Dict[str, Any]:
        return {
            self.TAG: {
                "first_start": self.first_start.to_proto(),
                "first_end": self.first_end.to_proto(),
                "second": self.second.to_proto(),
                "parameters": self.cost.to_proto(),
            }
        }


class InterpolatedRelativePoseConstraint3D(Constraint):
    TAG = "interpolated_relative_pose_3d"

    def __init__(self, constraint_id, loss_function_proto, proto: Dict[str, Any]) -> None:
        super().__init__(constraint_id, loss_function_proto)
        self.first_start = _node_ref(proto, "first_start")
        self.first_end = _node_ref(proto, "first_end")
        self.second = _node_ref(proto, "second")
        self.cost = InterpolatedRelativePoseCost3D(proto.get("parameters"))
        self.cost_function = AutoDiffCostFunction(self.cost)

    def add_to_optimizer(self, nodes: Nodes, problem: Problem) -> None:
        first_node_start = nodes.find_pose_3d(self.first_start)
        if first_node_start is None:
            self._skip("first node (start) {} was not found in pose_3d_nodes.", self.first_start)
            return

        first_node_end = nodes.find_pose_3d(self.first_end)
        if first_node_end is None:
            self._skip("first node (end) {} was not found in pose_3d_nodes.", self.first_end)
            return

        second_node = nodes.find_pose_3d(self.second)
        if second_node is None:
            self._skip("second node {} was not found in pose_3d_nodes.", self.second)
            return

        if first_node_start.constant and first_node_end.constant and second_node.constant:
            self._skip("all nodes are constant, skipping the constraint.")
            return

        _add_pose_3d_parameters(first_node_start, problem)
        _add_pose_3d_parameters(first_node_end, problem)
        _add_pose_3d_parameters(second_node, problem)
        problem.add_residual_block(
            self.cost_function,
            self.loss_function,
            first_node_start.translation,
            first_node_start.rotation,
            first_node_end.translation,
            first_node_end.rotation,
            second_node.translation,
            second_node.rotation,
        )

    def to_cost_function_proto(self) -> Dict[str, Any]:
        return {
            self.TAG: {
                "first_start": self.first_start.to_proto(),
                "first_end": self.first_end.to_proto(),
                "second": self.second.to_proto(),
                "parameters": self.cost.to_proto(),
            }
        }


CONSTRAINT_TYPES: Dict[str, Type[Constraint]] = {
    cls.TAG: cls
    for cls in (
        RelativePoseConstraint2D,
        RelativePoseConstraint3D,
        RelativePoseConstraint2Dto3D,
        InterpolatedRelativePoseConstraint2D,
        InterpolatedRelativePoseConstraint3D,
    )
}


def create_constraint(
    constraint_id: ConstraintId,
    loss_function_proto: Optional[Dict[str, Any]],
    cost_function_proto: Dict[str, Any],
) -> Constraint:
    """Build the constraint variant named by the single key of `cost_function_proto`."""
    if not isinstance(cost_function_proto, dict) or len(cost_function_proto) != 1:
        raise ValueError("Cost function descriptor must hold exactly one constraint type")

    (tag, proto), = cost_function_proto.items()
    cls = CONSTRAINT_TYPES.get(tag)
    if cls is None:
        raise ValueError(f"Unknown constraint type '{tag}'")
    if not isinstance(proto, dict):
        raise ValueError(f"Descriptor of '{tag}' must be a mapping")
    return cls(constraint_id, loss_function_proto, proto)


def constraint_from_proto(proto: Dict[str, Any]) -> Constraint:
    if not isinstance(proto, dict) or "id" not in proto or "cost_function" not in proto:
        raise ValueError("Constraint descriptor requires 'id' and 'cost_function'")
    return create_constraint(
        ConstraintId(str(proto["id"])),
        proto.get("loss_function"),
        proto["cost_function"],
    )
