# validate/utils.py
import mlx.core as mx

from compile.pipeline import compile_graph
from runtime.execute import run_graph


def run_and_compare(build, inputs, target="host-cpu", atol=1e-5):
    """
    Build the graph twice, fuse one copy, and compare both executions.

    `build` returns a fresh GraphIR whose inputs line up with `inputs`.
    Returns (fused graph, fusion report).
    """
    # ---- reference (unfused) ----
    ref_graph = build()
    ref_env = run_graph(ref_graph, dict(zip(ref_graph.inputs, inputs)))

    # ---- fused ----
    g = build()
    report = compile_graph(g, target)
    env = run_graph(g, dict(zip(g.inputs, inputs)))

    for ref_vid, vid in zip(ref_graph.outputs, g.outputs):
        expected = ref_env[ref_vid]
        got = env[vid]
        assert got.shape == expected.shape, "Shape mismatch unfused vs fused"
        assert mx.allclose(
            got.astype(mx.float32), expected.astype(mx.float32), atol=atol
        ), "Mismatch unfused vs fused"

    return g, report
