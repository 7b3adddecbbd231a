# validate/test_graph.py

import pytest

from graph.graph_builder import GraphBuilder
from graph.graph_utils import GraphError, region_creates_cycle, toposort_ops, validate_graph
from graph.op_registry import OpCategory, OpKind, get_op_category, get_op_kind


def test_op_kind_lookup():
    assert get_op_kind("max_pool") is OpKind.MAX_POOL
    assert get_op_kind("conv2d") is OpKind.CONVOLUTION
    assert get_op_kind("softmax") is OpKind.OTHER
    assert get_op_category(OpKind.ADD) is OpCategory.ELEMENTWISE_BINARY


def test_builder_wires_edges():
    b = GraphBuilder()
    x = b.input((2, 2), "float32")
    relu = b.op("relu", [x])
    exp = b.op(OpKind.EXP, [relu.outputs[0]])
    b.output(exp.outputs[0])
    g = b.build()

    assert relu.kind is OpKind.RELU
    assert g.values[x].consumers == [(relu.oid, 0)]
    assert g.values[relu.outputs[0]].producer == (relu.oid, 0)
    assert g.values[exp.outputs[0]].shape == (2, 2)
    validate_graph(g)


def test_constants_are_not_graph_inputs():
    b = GraphBuilder()
    x = b.input((2, 2), "float32")
    w = b.constant((2, 2), "float32")
    mul = b.op(OpKind.MULTIPLY, [x, w])
    b.output(mul.outputs[0])
    g = b.build()

    assert g.inputs == [x]
    assert g.values[w].producer is None
    assert g.values[w].consumers == [(mul.oid, 1)]
    validate_graph(g)


def test_toposort_is_deterministic():
    b = GraphBuilder()
    x = b.input((2,), "float32")
    a = b.op(OpKind.RELU, [x])
    c = b.op(OpKind.EXP, [x])
    d = b.op(OpKind.ADD, [a.outputs[0], c.outputs[0]])
    g = b.build()

    assert toposort_ops(g) == [a.oid, c.oid, d.oid]


def test_cycle_detected():
    b = GraphBuilder()
    x = b.input((2,), "float32")
    a = b.op(OpKind.RELU, [x])
    c = b.op(OpKind.EXP, [a.outputs[0]])
    g = b.build()

    # feed c back into a
    g.values[x].consumers.remove((a.oid, 0))
    a.inputs = [c.outputs[0]]
    g.values[c.outputs[0]].consumers.append((a.oid, 0))

    with pytest.raises(GraphError):
        toposort_ops(g)


def test_dangling_consumer_detected():
    b = GraphBuilder()
    x = b.input((2,), "float32")
    b.op(OpKind.RELU, [x])
    g = b.build()
    g.values[x].consumers.append((42, 0))

    with pytest.raises(GraphError):
        validate_graph(g)


def test_region_creates_cycle():
    # a -> b -> d and a -> d: {a, d} is not convex
    b = GraphBuilder()
    x = b.input((2,), "float32")
    a = b.op(OpKind.RELU, [x])
    mid = b.op(OpKind.EXP, [a.outputs[0]])
    d = b.op(OpKind.ADD, [a.outputs[0], mid.outputs[0]])
    g = b.build()

    assert region_creates_cycle(g, [a.oid, d.oid])
    assert not region_creates_cycle(g, [a.oid, mid.oid, d.oid])
