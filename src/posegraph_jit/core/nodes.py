# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Pose store: the mutable pose parameter blocks of a pose graph.

2D and 3D nodes live in two separate maps keyed by `NodeId`. Lookups are
by exact key and a missing node is an ordinary outcome (`None`), because
constraints may outlive the nodes they reference.

The store owns the pose arrays between optimization rounds. While a
`Problem` built from the store is being solved, the solver is the only
writer of registered arrays.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .types import NodeId, Pose2D, Pose3D


@dataclass
class Nodes:
    pose_2d_nodes: Dict[NodeId, Pose2D] = field(default_factory=dict)
    pose_3d_nodes: Dict[NodeId, Pose3D] = field(default_factory=dict)

    def add_pose_2d(self, node_id: NodeId, pose: Pose2D) -> None:
        self.pose_2d_nodes[node_id] = pose

    def add_pose_3d(self, node_id: NodeId, pose: Pose3D) -> None:
        self.pose_3d_nodes[node_id] = pose

    def find_pose_2d(self, node_id: NodeId) -> Optional[Pose2D]:
        return self.pose_2d_nodes.get(node_id)

    def find_pose_3d(self, node_id: NodeId) -> Optional[Pose3D]:
        return self.pose_3d_nodes.get(node_id)

    def to_proto(self) -> List[Dict[str, Any]]:
        protos = []
        for node_id, pose in sorted(self.pose_2d_nodes.items()):
            protos.append({"id": node_id.to_proto(), "constant": pose.constant, **pose.to_proto()})
        for node_id, pose in sorted(self.pose_3d_nodes.items()):
            protos.append({"id": node_id.to_proto(), "constant": pose.constant, **pose.to_proto()})
        return protos

    @staticmethod
    def from_proto(protos: List[Dict[str, Any]]) -> "Nodes":
        """Rebuild a store from node descriptors. Raises ValueError if malformed."""
        nodes = Nodes()
        for proto in protos:
            if not isinstance(proto, dict) or "id" not in proto:
                raise ValueError(f"Malformed node descriptor: {proto!r}")
            node_id = NodeId.from_proto(proto["id"])
            constant = bool(proto.get("constant", False))
            if node_id in nodes.pose_2d_nodes or node_id in nodes.pose_3d_nodes:
                raise ValueError(f"Duplicate node descriptor for {node_id}")
            if "pose_2d" in proto and "pose_3d" not in proto:
                nodes.add_pose_2d(node_id, Pose2D(pose_2d=proto["pose_2d"], constant=constant))
            elif "pose_3d" in proto and "pose_2d" not in proto:
                try:
                    translation = proto["pose_3d"]["translation"]
                    rotation = proto["pose_3d"]["rotation"]
                except (KeyError, TypeError) as e:
                    raise ValueError(f"Node {node_id} has a malformed 'pose_3d'") from e
                nodes.add_pose_3d(
                    node_id, Pose3D(translation=translation, rotation=rotation, constant=constant)
                )
            else:
                raise ValueError(f"Node {node_id} must have exactly one of 'pose_2d' or 'pose_3d'")
        return nodes
