# validate/test_matcher.py
#
# Matcher behaviour on small hand-built graphs:
# predicates, alternation order, greedy repetition, boundary safety
# and backtracking.

from graph.graph_builder import GraphBuilder
from graph.op_registry import BINARY_KINDS, POOLING_KINDS, OpKind
from fusion.decisions import check_qtype_equal_to_per_tensor
from fusion.matcher import Matcher, match
from fusion.pattern import PatternGraph, in_edge


def _binary_body():
    body = PatternGraph("pbinary_subgraph")
    op = body.append_op(BINARY_KINDS, name="pbinary")
    body.create_input_port(0, op, 0)
    body.create_output_port(0, op, 0)
    return body


def _pool_chain(min_rep=0, max_rep=None):
    pg = PatternGraph("pool_chain")
    pool = pg.append_op(POOLING_KINDS, name="ppool")
    rep = pg.append_repetition(_binary_body(), min_rep, max_rep, [in_edge(0, pool, 0)])
    return pg.validate(), pool, rep


def _pool_then_binaries(kinds, terminal=None):
    """x -> max_pool -> kinds[0](., c0) -> kinds[1](., c1) ... [-> terminal]"""
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "float32")
    pool = b.op(OpKind.MAX_POOL, [x], shape=(1, 2, 2, 3))
    ops = [pool]
    for kind in kinds:
        c = b.input((1, 2, 2, 3), "float32")
        ops.append(b.op(kind, [ops[-1].outputs[0], c]))
    if terminal is None:
        b.output(ops[-1].outputs[0])
    else:
        b.output(b.op(terminal, [ops[-1].outputs[0]]).outputs[0])
    return b.build(), ops


# -------------------------------------------------
# Single nodes and predicates
# -------------------------------------------------

def test_single_node_match():
    b = GraphBuilder()
    x = b.input((4,), "float32")
    relu = b.op(OpKind.RELU, [x])
    b.output(relu.outputs[0])
    g = b.build()

    pg = PatternGraph("relu")
    pg.append_op(OpKind.RELU)
    pg.validate()

    m = match(pg, g, relu.oid)
    assert m is not None
    assert m.ops == [relu.oid]
    assert m.inputs == [x]
    assert m.outputs == relu.outputs


def test_anchor_kind_mismatch():
    g, ops = _pool_then_binaries([OpKind.ADD])
    pg, _, _ = _pool_chain()

    assert match(pg, g, ops[1].oid) is None


def _dequant_pool_quant(quant_attrs):
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "uint8")
    dq = b.op(OpKind.DEQUANTIZE, [x], dtype="float32")
    pool = b.op(OpKind.MAX_POOL, [dq.outputs[0]], shape=(1, 2, 2, 3))
    q = b.op(OpKind.QUANTIZE, [pool.outputs[0]], attrs=quant_attrs, dtype="uint8")
    b.output(q.outputs[0])
    return b.build(), dq, q


def _dequant_pool_quant_pattern():
    pg = PatternGraph("int8_pool")
    dq = pg.append_op(OpKind.DEQUANTIZE)
    pool = pg.append_op(POOLING_KINDS, [in_edge(0, dq, 0)])
    q = pg.append_op(OpKind.QUANTIZE, [in_edge(0, pool, 0)])
    q.append_decision_function(check_qtype_equal_to_per_tensor)
    return pg.validate()


def test_predicate_accepts_per_tensor():
    g, dq, q = _dequant_pool_quant({"qtype": "per_tensor", "scales": [0.5], "zps": [0]})

    m = match(_dequant_pool_quant_pattern(), g, dq.oid)
    assert m is not None
    assert len(m) == 3
    assert m.outputs == q.outputs


def test_predicate_rejects_per_channel():
    g, dq, _ = _dequant_pool_quant({"qtype": "per_channel", "scales": [0.5] * 3, "zps": [0] * 3})

    assert match(_dequant_pool_quant_pattern(), g, dq.oid) is None


# -------------------------------------------------
# Alternation
# -------------------------------------------------

def test_alternation_prefers_first_alternative():
    pg = PatternGraph("relu_then_alt")
    src = pg.append_op(OpKind.RELU, name="psrc")
    alt = pg.append_alternation(
        [{OpKind.EXP, OpKind.SIGMOID}, OpKind.EXP], [in_edge(0, src, 0)], name="palt"
    )
    pg.validate()

    b = GraphBuilder()
    x = b.input((4,), "float32")
    r = b.op(OpKind.RELU, [x])
    e = b.op(OpKind.EXP, [r.outputs[0]])
    b.output(e.outputs[0])
    g = b.build()

    # both alternatives fit, the first declared wins
    m = match(pg, g, r.oid)
    assert m is not None
    assert m.units[alt].choice == 0
    assert m.ops == [r.oid, e.oid]


def test_alternation_falls_through_in_order():
    def not_named_skip(op, g):
        return op.name != "skip"

    first = PatternGraph.single(OpKind.EXP, "first")
    first.nodes[0].append_decision_function(not_named_skip)
    second = PatternGraph.single(OpKind.EXP, "second")

    pg = PatternGraph("p")
    src = pg.append_op(OpKind.RELU)
    alt = pg.append_alternation([first, second], [in_edge(0, src, 0)])
    pg.validate()

    b = GraphBuilder()
    x = b.input((4,), "float32")
    r = b.op(OpKind.RELU, [x])
    e = b.op(OpKind.EXP, [r.outputs[0]], name="skip")
    b.output(e.outputs[0])
    g = b.build()

    m = match(pg, g, r.oid)
    assert m is not None
    assert m.units[alt].choice == 1
    assert m.op_for(second.nodes[0]) == e.oid


# -------------------------------------------------
# Repetition
# -------------------------------------------------

def test_repetition_matches_longest_chain():
    g, ops = _pool_then_binaries(
        [OpKind.ADD, OpKind.MULTIPLY, OpKind.SUBTRACT], terminal=OpKind.QUANTIZE
    )
    pg, _, rep = _pool_chain(min_rep=1)

    m = match(pg, g, ops[0].oid)
    assert m is not None
    # the chain stops at the quantize, which stays outside
    assert m.units[rep].count == 3
    [(quant_oid, _)] = g.values[ops[-1].outputs[0]].consumers
    assert g.ops[quant_oid].kind is OpKind.QUANTIZE
    assert quant_oid not in m.ops
    assert m.ops == [op.oid for op in ops]
    assert m.outputs == ops[-1].outputs
    assert m.inputs == [ops[0].inputs[0]] + [op.inputs[1] for op in ops[1:]]


def test_unbounded_repetition_on_a_long_chain():
    g, ops = _pool_then_binaries([OpKind.ADD] * 2000, terminal=OpKind.RELU)
    pg, _, rep = _pool_chain(min_rep=1, max_rep=None)

    m = match(pg, g, ops[0].oid)
    assert m is not None
    assert m.units[rep].count == 2000
    assert len(m) == 2001
    assert m.outputs == ops[-1].outputs


def test_repetition_min_one_needs_an_iteration():
    g, ops = _pool_then_binaries([])
    pg, _, _ = _pool_chain(min_rep=1)

    assert match(pg, g, ops[0].oid) is None


def test_repetition_zero_iterations_alias():
    g, ops = _pool_then_binaries([])
    pg, _, rep = _pool_chain(min_rep=0)

    m = match(pg, g, ops[0].oid)
    assert m is not None
    assert m.units[rep].count == 0
    assert m.ops == [ops[0].oid]
    assert m.outputs == ops[0].outputs


def test_repetition_respects_max():
    g, ops = _pool_then_binaries([OpKind.ADD, OpKind.MULTIPLY, OpKind.SUBTRACT])
    pg, _, rep = _pool_chain(min_rep=0, max_rep=2)

    m = match(pg, g, ops[0].oid)
    assert m is not None
    assert m.units[rep].count == 2
    assert m.outputs == ops[2].outputs


# -------------------------------------------------
# Boundary safety and backtracking
# -------------------------------------------------

def test_escaping_intermediate_rejected():
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "float32")
    pool = b.op(OpKind.MAX_POOL, [x], shape=(1, 2, 2, 3))
    relu = b.op(OpKind.RELU, [pool.outputs[0]])
    side = b.op(OpKind.SIGMOID, [pool.outputs[0]])
    b.output(relu.outputs[0])
    b.output(side.outputs[0])
    g = b.build()

    pg = PatternGraph("pool_relu")
    ppool = pg.append_op(POOLING_KINDS)
    pg.append_op(OpKind.RELU, [in_edge(0, ppool, 0)])
    pg.validate()

    assert match(pg, g, pool.oid) is None


def test_intermediate_graph_output_rejected():
    g, ops = _pool_then_binaries([OpKind.ADD])
    g.outputs.append(ops[0].outputs[0])

    pg = PatternGraph("pool_add")
    ppool = pg.append_op(POOLING_KINDS)
    pg.append_op(BINARY_KINDS, [in_edge(0, ppool, 0)])
    pg.validate()

    assert match(pg, g, ops[0].oid) is None


def test_backtracks_to_shorter_chain():
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "float32")
    c0 = b.input((1, 2, 2, 3), "float32")
    c1 = b.input((1, 2, 2, 3), "float32")
    pool = b.op(OpKind.MAX_POOL, [x], shape=(1, 2, 2, 3))
    add = b.op(OpKind.ADD, [pool.outputs[0], c0])
    mul = b.op(OpKind.MULTIPLY, [add.outputs[0], c1])
    # the add result is also read outside the chain
    side = b.op(OpKind.RELU, [add.outputs[0]])
    b.output(mul.outputs[0])
    b.output(side.outputs[0])
    g = b.build()
    ops = [pool, add, mul]

    pg, _, rep = _pool_chain(min_rep=0)

    m = match(pg, g, ops[0].oid)
    assert m is not None
    assert m.units[rep].count == 1
    assert m.ops == [ops[0].oid, ops[1].oid]
    assert m.outputs == ops[1].outputs


def test_boundary_check_can_be_disabled():
    b = GraphBuilder()
    x = b.input((1, 4, 4, 3), "float32")
    pool = b.op(OpKind.MAX_POOL, [x], shape=(1, 2, 2, 3))
    relu = b.op(OpKind.RELU, [pool.outputs[0]])
    side = b.op(OpKind.SIGMOID, [pool.outputs[0]])
    b.output(relu.outputs[0])
    b.output(side.outputs[0])
    g = b.build()

    pg = PatternGraph("pool_relu")
    ppool = pg.append_op(POOLING_KINDS)
    pg.append_op(OpKind.RELU, [in_edge(0, ppool, 0)])
    pg.validate()

    m = Matcher(g).match(pg, pool.oid, check_boundary=False)
    assert m is not None
    assert m.ops == [pool.oid, relu.oid]


def test_reserved_ops_are_skipped():
    g, ops = _pool_then_binaries([OpKind.ADD])
    pg, _, rep = _pool_chain(min_rep=0)

    assert Matcher(g, reserved=[ops[0].oid]).match(pg, ops[0].oid) is None

    m = Matcher(g, reserved=[ops[1].oid]).match(pg, ops[0].oid)
    assert m is not None
    assert m.units[rep].count == 0


def test_match_leaves_graph_untouched():
    g, ops = _pool_then_binaries([OpKind.ADD, OpKind.MULTIPLY])
    before = {vid: (v.producer, list(v.consumers)) for vid, v in g.values.items()}
    pg, _, _ = _pool_chain()

    match(pg, g, ops[0].oid)
    after = {vid: (v.producer, list(v.consumers)) for vid, v in g.values.items()}
    assert before == after
    assert sorted(g.ops) == sorted(op.oid for op in ops)
