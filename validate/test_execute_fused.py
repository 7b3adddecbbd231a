# validate/test_execute_fused.py
#
# Numerical checks: a fused graph must compute exactly what the unfused
# graph computes.

import mlx.core as mx
import pytest

from graph.graph_builder import GraphBuilder
from graph.ir import OpIR
from graph.op_registry import OpKind
from fusion.registry import PartitionKind
from kernel.kernels import KernelError, QuantizedPoolingKernel
from runtime.execute import run_graph
from validate.utils import run_and_compare

QPARAMS = {"qtype": "per_tensor", "scales": [0.05], "zps": [10], "out_dtype": "uint8"}


def _build_int8_pool():
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "uint8")
    dq = b.op(OpKind.DEQUANTIZE, [x], attrs=QPARAMS, dtype="float32")
    pool = b.op(OpKind.MAX_POOL, [dq.outputs[0]], attrs={"kernel": (2, 2)}, shape=(1, 2, 2, 3))
    q = b.op(OpKind.QUANTIZE, [pool.outputs[0]], attrs=QPARAMS, dtype="uint8")
    b.output(q.outputs[0])
    return b.build()


def test_int8_pool_matches_unfused():
    x = mx.random.randint(0, 255, (1, 4, 4, 3)).astype(mx.uint8)

    g, report = run_and_compare(_build_int8_pool, [x])

    assert len(report.committed) == 1
    assert report.fused[0].partition_kind is PartitionKind.QUANTIZED_POOLING_POST_OPS


def test_pool_binary_chain_matches_unfused():
    def build():
        b = GraphBuilder()
        x = b.input((1, 4, 4, 3), "float32")
        c0 = b.input((1, 2, 2, 3), "float32")
        c1 = b.input((3,), "float32")
        pool = b.op(OpKind.AVG_POOL, [x], attrs={"kernel": (2, 2)}, shape=(1, 2, 2, 3))
        add = b.op(OpKind.ADD, [pool.outputs[0], c0])
        mul = b.op(OpKind.MULTIPLY, [add.outputs[0], c1])
        b.output(mul.outputs[0])
        return b.build()

    x = mx.random.normal((1, 4, 4, 3))
    c0 = mx.random.normal((1, 2, 2, 3))
    c1 = mx.random.normal((3,))

    g, report = run_and_compare(build, [x, c0, c1])

    assert g.num_ops() == 1
    assert len(report.fused[0].subgraph) == 3


def test_conv_post_ops_match_unfused():
    def build():
        b = GraphBuilder()
        x = b.input((1, 5, 5, 3), "float32")
        w = b.input((4, 3, 3, 3), "float32")
        bias = b.input((4,), "float32")
        conv = b.op(OpKind.CONVOLUTION, [x, w], shape=(1, 3, 3, 4))
        biased = b.op(OpKind.BIAS_ADD, [conv.outputs[0], bias])
        relu = b.op(OpKind.RELU, [biased.outputs[0]])
        b.output(relu.outputs[0])
        return b.build()

    x = mx.random.normal((1, 5, 5, 3))
    w = mx.random.normal((4, 3, 3, 3))
    bias = mx.random.normal((4,))

    g, report = run_and_compare(build, [x, w, bias])

    assert report.fused[0].partition_kind is PartitionKind.CONVOLUTION_POST_OPS


def test_unfused_graph_runs():
    b = GraphBuilder()
    x = b.input((2, 3), "float32")
    e = b.op(OpKind.EXP, [x])
    s = b.op(OpKind.SQRT, [e.outputs[0]])
    b.output(s.outputs[0])
    g = b.build()

    x_val = mx.random.normal((2, 3))
    env = run_graph(g, {x: x_val})

    assert mx.allclose(env[g.outputs[0]], mx.sqrt(mx.exp(x_val)))


def test_quantized_kernel_rejects_wrong_subgraph():
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "float32")
    pool = b.op(OpKind.MAX_POOL, [x], shape=(1, 2, 2, 3))
    b.output(pool.outputs[0])
    g = b.build()

    fused = OpIR(
        oid=g.new_op_id(),
        kind=OpKind.FUSED,
        inputs=[x],
        outputs=list(pool.outputs),
        subgraph=[pool],
    )
    with pytest.raises(KernelError):
        QuantizedPoolingKernel().execute(fused, [mx.zeros((1, 4, 4, 3))])


def test_swapped_operand_post_op_matches_unfused():
    def build():
        b = GraphBuilder()
        x = b.input((1, 4, 4, 3), "float32")
        c = b.input((1, 2, 2, 3), "float32")
        pool = b.op(OpKind.MAX_POOL, [x], attrs={"kernel": (2, 2)}, shape=(1, 2, 2, 3))
        peak = b.op(OpKind.MAXIMUM, [c, pool.outputs[0]])
        b.output(peak.outputs[0])
        return b.build()

    x = mx.random.normal((1, 4, 4, 3))
    c = mx.random.normal((1, 2, 2, 3))

    g, report = run_and_compare(build, [x, c])

    assert g.num_ops() == 1
    assert [op.kind for op in report.fused[0].subgraph] == [OpKind.MAX_POOL, OpKind.MAXIMUM]
