# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Core typed data structures for PoseGraph-JIT.

This module defines the lightweight container classes shared by the pose
store, the constraints and the optimization problem. They store structure
and numeric state only; all residual math lives in JAX functions under
`slam.measurements`.

Classes
-------
NodeId
    Key of a trajectory node: the id of the trajectory (or other object)
    the node belongs to plus an integer timestamp. The same value space is
    used for 2D and 3D nodes, which are kept in separate maps.

Pose2D / Pose3D
    Mutable pose parameter blocks with a `constant` flag. The numpy arrays
    they hold are registered with a `Problem` by identity and are updated
    in place by the solver, so they must never be rebound while a problem
    referencing them is alive.

Rigid2d / Rigid3d
    Immutable relative transforms used as expected measurements.

Notes
-----
Every type here round-trips through a plain, JSON-compatible dictionary
(`to_proto` / `from_proto`) that mirrors the descriptor layout used for
persisted pose graphs.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, NewType, Optional

import numpy as np

ConstraintId = NewType("ConstraintId", str)


@dataclass(frozen=True, order=True)
class NodeId:
    """Identifies a node by owning object and timestamp."""
    object_id: str
    time: int

    def to_proto(self) -> Dict[str, Any]:
        return {"object_id": self.object_id, "time": int(self.time)}

    @staticmethod
    def from_proto(proto: Dict[str, Any]) -> "NodeId":
        try:
            object_id = str(proto["object_id"])
            raw_time = proto["time"]
            time = int(raw_time)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"Malformed node id descriptor: {proto!r}") from e
        if isinstance(raw_time, bool) or time != raw_time:
            raise ValueError(f"Node id time must be an integer, got {raw_time!r}")
        return NodeId(object_id=object_id, time=time)


def _as_vector(value, size: int, name: str) -> np.ndarray:
    arr = np.array(value, dtype=np.float64)
    if arr.shape != (size,):
        raise ValueError(f"{name} must be a {size}-vector, got shape {arr.shape}")
    return arr


def _as_unit_quaternion(value, name: str) -> np.ndarray:
    q = _as_vector(value, 4, name)
    norm = np.linalg.norm(q)
    if norm == 0.0:
        raise ValueError(f"{name} must be a non-zero quaternion (w, x, y, z)")
    return q / norm


@dataclass
class Pose2D:
    """2D pose block: ``pose_2d = [x, y, heading]``."""
    pose_2d: np.ndarray
    constant: bool = False

    def __post_init__(self) -> None:
        self.pose_2d = _as_vector(self.pose_2d, 3, "pose_2d")

    def to_proto(self) -> Dict[str, Any]:
        return {"pose_2d": self.pose_2d.tolist()}


@dataclass
class Pose3D:
    """3D pose block: translation and unit quaternion ``(w, x, y, z)``."""
    translation: np.ndarray
    rotation: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))
    constant: bool = False

    def __post_init__(self) -> None:
        self.translation = _as_vector(self.translation, 3, "translation")
        self.rotation = _as_unit_quaternion(self.rotation, "rotation")

    def to_proto(self) -> Dict[str, Any]:
        return {
            "pose_3d": {
                "translation": self.translation.tolist(),
                "rotation": self.rotation.tolist(),
            }
        }


@dataclass(frozen=True)
class Rigid2d:
    translation: tuple = (0.0, 0.0)
    rotation: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "translation", tuple(_as_vector(self.translation, 2, "translation").tolist())
        )
        object.__setattr__(self, "rotation", float(self.rotation))

    def to_proto(self) -> Dict[str, Any]:
        return {"translation": list(self.translation), "rotation": self.rotation}

    @staticmethod
    def from_proto(proto: Optional[Dict[str, Any]]) -> "Rigid2d":
        if proto is None:
            return Rigid2d()
        return Rigid2d(
            translation=proto.get("translation", (0.0, 0.0)),
            rotation=proto.get("rotation", 0.0),
        )


@dataclass(frozen=True)
class Rigid3d:
    """Rigid transform with quaternion rotation stored as ``(w, x, y, z)``."""
    translation: tuple = (0.0, 0.0, 0.0)
    rotation: tuple = (1.0, 0.0, 0.0, 0.0)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "translation", tuple(_as_vector(self.translation, 3, "translation").tolist())
        )
        object.__setattr__(
            self, "rotation", tuple(_as_unit_quaternion(self.rotation, "rotation").tolist())
        )

    def to_proto(self) -> Dict[str, Any]:
        return {"translation": list(self.translation), "rotation": list(self.rotation)}

    @staticmethod
    def from_proto(proto: Optional[Dict[str, Any]]) -> "Rigid3d":
        if proto is None:
            return Rigid3d()
        return Rigid3d(
            translation=proto.get("translation", (0.0, 0.0, 0.0)),
            rotation=proto.get("rotation", (1.0, 0.0, 0.0, 0.0)),
        )
