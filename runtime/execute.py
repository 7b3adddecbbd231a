# runtime/execute.py
from typing import Dict

import mlx.core as mx

from graph.ir import GraphIR
from graph.graph_utils import toposort_ops
from kernel.execute_ref import execute_op


def run_graph(g: GraphIR, inputs: Dict[int, mx.array]) -> Dict[int, mx.array]:
    """
    Execute a host graph, fused or not, in topological order.

    Fused ops run through their bound kernel; everything else through the
    reference op table. Returns the full value environment (vid -> array).
    """
    env = dict(inputs)

    for oid in toposort_ops(g):
        op = g.ops[oid]
        args = [env[vid] for vid in op.inputs]

        if op.is_fused:
            out = op.kernel.execute(op, args)
        else:
            out = execute_op(op, args)

        if len(out) != len(op.outputs):
            raise RuntimeError(
                f"Op {op.name or op.oid} produced {len(out)} outputs, expected {len(op.outputs)}"
            )
        for vid, val in zip(op.outputs, out):
            env[vid] = val

    return env
