"""
Pose graph driver for PoseGraph-JIT.

The PoseGraph stores:
    - Nodes (2D and 3D pose parameter blocks, see `core.nodes`)
    - Constraints (see `slam.constraints`), keyed by ConstraintId

and turns them into a `Problem` for the solver:

build_problem()
    Calls `constraint.add_to_optimizer(nodes, problem)` for every
    constraint, in insertion order. Constraints decide for themselves
    whether they contribute (missing or fully constant nodes are skipped).

optimize(cfg)
    Builds the problem and runs Levenberg–Marquardt on it. Optimized values
    are written straight into the node arrays; nothing is copied back.

to_proto() / from_proto()
    Round trip of the whole graph through its descriptor.

Notes
-----
Problem construction is single-threaded and never modifies a pose. A
graph must not be edited while a problem built from it is being solved,
since that problem aliases the node arrays.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict

from posegraph_jit.optimization.problem import Problem
from posegraph_jit.optimization.solvers import SolverConfig, SolverSummary, solve
from posegraph_jit.slam.constraints import Constraint, constraint_from_proto

from .nodes import Nodes
from .types import ConstraintId, NodeId, Pose2D, Pose3D


@dataclass
class PoseGraph:
    """
    Pose graph: node store plus constraints.

    - nodes: 2D / 3D pose store
    - constraints: mapping from ConstraintId -> Constraint
    """
    nodes: Nodes = field(default_factory=Nodes)
    constraints: Dict[ConstraintId, Constraint] = field(default_factory=dict)

    def add_pose_2d(self, node_id: NodeId, pose: Pose2D) -> None:
        if node_id in self.nodes.pose_3d_nodes:
            raise ValueError(f"Node {node_id} already exists as a 3D node")
        self.nodes.add_pose_2d(node_id, pose)

    def add_pose_3d(self, node_id: NodeId, pose: Pose3D) -> None:
        if node_id in self.nodes.pose_2d_nodes:
            raise ValueError(f"Node {node_id} already exists as a 2D node")
        self.nodes.add_pose_3d(node_id, pose)

    def add_constraint(self, constraint: Constraint) -> None:
        if constraint.constraint_id in self.constraints:
            raise ValueError(f"Duplicate constraint id '{constraint.constraint_id}'")
        self.constraints[constraint.constraint_id] = constraint

    # --- Problem ---

    def build_problem(self) -> Problem:
        problem = Problem()
        for constraint in self.constraints.values():
            constraint.add_to_optimizer(self.nodes, problem)
        return problem

    def optimize(self, cfg: SolverConfig | None = None) -> SolverSummary:
        return solve(self.build_problem(), cfg)

    # --- Serialization ---

    def to_proto(self) -> Dict[str, Any]:
        return {
            "nodes": self.nodes.to_proto(),
            "constraints": [c.to_proto() for c in self.constraints.values()],
        }

    @staticmethod
    def from_proto(proto: Dict[str, Any]) -> "PoseGraph":
        if not isinstance(proto, dict):
            raise ValueError("Pose graph descriptor must be a mapping")
        graph = PoseGraph()
        nodes = Nodes.from_proto(proto.get("nodes", []))
        for node_id, pose in nodes.pose_2d_nodes.items():
            graph.add_pose_2d(node_id, pose)
        for node_id, pose in nodes.pose_3d_nodes.items():
            graph.add_pose_3d(node_id, pose)
        for constraint_proto in proto.get("constraints", []):
            graph.add_constraint(constraint_from_proto(constraint_proto))
        return graph
