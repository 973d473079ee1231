# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.

import time

import numpy as np

from posegraph_jit.core.math3d import interpolation_factor
from posegraph_jit.core.pose_graph import PoseGraph
from posegraph_jit.core.types import ConstraintId, NodeId, Pose2D, Pose3D
from posegraph_jit.optimization.solvers import SolverConfig
from posegraph_jit.slam.constraints import create_constraint


def build_interpolated_chain(num_nodes: int = 20, dt: int = 100):
    """
    2D trajectory chain with a 3D node between every pair of neighbours:

        n0 --odom--> n1 --odom--> ... --odom--> n_{N-1}
              |            |
           s_0 (3D)     s_1 (3D)   (interpolated relative pose)

    Odometry edges are +1m in x. Every 3D node sits at 1/4 of its
    interval, 0.1m above the trajectory.
    """
    graph = PoseGraph()
    traj = [NodeId("trajectory_0", i * dt) for i in range(num_nodes)]

    # Initial guesses: slightly perturbed around ground truth [i, 0, 0]
    for i, node_id in enumerate(traj):
        graph.add_pose_2d(
            node_id,
            Pose2D([i + 0.1 * np.sin(0.3 * i), 0.05 * np.cos(0.2 * i), 0.0], constant=(i == 0)),
        )

    for i in range(num_nodes - 1):
        graph.add_constraint(
            create_constraint(
                ConstraintId(f"odom_{i}"),
                None,
                {
                    "relative_pose_2d": {
                        "first": traj[i].to_proto(),
                        "second": traj[i + 1].to_proto(),
                        "parameters": {"first_t_second": {"translation": [1.0, 0.0], "rotation": 0.0}},
                    }
                },
            )
        )

        time_stamp = traj[i].time + dt // 4
        second = NodeId("submap_0", time_stamp)
        graph.add_pose_3d(second, Pose3D([i + 0.3, 0.02, 0.0]))
        graph.add_constraint(
            create_constraint(
                ConstraintId(f"interp_{i}"),
                {"type": "HUBER_LOSS", "scale": 0.5},
                {
                    "interpolated_relative_pose_2d": {
                        "first_start": traj[i].to_proto(),
                        "first_end": traj[i + 1].to_proto(),
                        "second": second.to_proto(),
                        "parameters": {
                            "first_t_second": {"translation": [0.0, 0.0, 0.1], "rotation": [1.0, 0.0, 0.0, 0.0]},
                            "interpolation_factor": interpolation_factor(
                                traj[i].time, traj[i + 1].time, time_stamp
                            ),
                        },
                    }
                },
            )
        )

    return graph


def run_benchmark(num_nodes: int = 20, max_iters: int = 20):
    print("=== Interpolated pose chain benchmark (PoseGraph) ===")
    print(f"num_nodes = {num_nodes}, max_iters = {max_iters}")

    graph = build_interpolated_chain(num_nodes)
    cfg = SolverConfig(max_iters=max_iters)

    t0 = time.time()
    problem = graph.build_problem()
    t1 = time.time()
    print(f"build_problem: {(t1 - t0) * 1000:.3f} ms "
          f"({problem.num_parameter_blocks} blocks, {problem.num_residual_blocks} residual blocks)")

    t0 = time.time()
    summary = graph.optimize(cfg)
    t1 = time.time()
    print(f"optimize (incl. JIT compilation): {(t1 - t0) * 1000:.3f} ms, {summary.iterations} iterations ({summary.termination})")
    print(f"cost: {summary.initial_cost:.6e} -> {summary.final_cost:.6e}")

    last = graph.nodes.find_pose_2d(NodeId("trajectory_0", (num_nodes - 1) * 100))
    print(f"pose_N-1 (opt): {last.pose_2d}")


if __name__ == "__main__":
    run_benchmark(num_nodes=20, max_iters=20)
