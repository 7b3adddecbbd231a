# fusion/templates.py
"""
Built-in fusion templates.

Each template is a builder that populates an empty PatternGraph, plus the
kernel factory and ranking data it is registered with.

    pool_post_ops_fusion            (AvgPool|MaxPool) -> binary*
    int8_pool_binary_fusion_cpu     Dequantize -> (AvgPool|MaxPool) -> {
    int8_pool_binary_fusion_gpu         Quantize
                                      | (StaticReshape|StaticTranspose) -> Quantize
                                      | Add(Dequantize) -> Quantize }
    conv_post_ops_fusion            Convolution -> BiasAdd? -> (binary|eltwise)* -> Quantize?

Commutative binaries (Add, Multiply, Maximum, Minimum) match with the
chained value on either operand.
"""

from graph.op_registry import (
    BINARY_KINDS,
    COMMUTATIVE_KINDS,
    POOLING_KINDS,
    RESHAPE_KINDS,
    UNARY_KINDS,
    OpKind,
)
from fusion.config import get_config
from fusion.decisions import (
    check_input_num,
    check_no_fuse_break,
    check_qtype_equal_to_per_tensor,
    check_zps_values,
)
from fusion.pattern import PatternGraph, in_edge
from fusion.registry import EngineKind, FusionRegistry, PartitionKind
from kernel.kernels import ConvolutionKernel, FloatPoolingKernel, QuantizedPoolingKernel


def _binary_reading(slot: int, kinds) -> PatternGraph:
    """Binary op whose input `slot` carries the chained value."""
    body = PatternGraph(f"pbinary_in{slot}")
    pbinary = body.append_op(kinds, name="pbinary")
    pbinary.append_decision_function(check_input_num(2))
    body.create_input_port(0, pbinary, slot)
    body.create_output_port(0, pbinary, 0)
    return body


def _binary_post_op(name: str = "pbinary_subgraph") -> PatternGraph:
    body = PatternGraph(name)
    # commutative kinds also take the chained value as their second operand
    palt = body.append_alternation(
        [_binary_reading(0, BINARY_KINDS), _binary_reading(1, COMMUTATIVE_KINDS)],
        name="pbinary",
    )
    body.create_input_port(0, palt, 0)
    body.create_output_port(0, palt, 0)
    return body


def pool_post_ops(pg: PatternGraph) -> None:
    ppool = pg.append_op(POOLING_KINDS, name="ppool")
    pg.append_repetition(
        _binary_post_op(), 0, get_config().max_repetition,
        [in_edge(0, ppool, 0)], name="prepetition",
    )


def _quantize(pg: PatternGraph, in_edges, per_tensor: bool):
    quant = pg.append_op(OpKind.QUANTIZE, in_edges, name="pquantize")
    if per_tensor:
        quant.append_decision_function(check_qtype_equal_to_per_tensor)
    return quant


def _add_quant(pool_slot: int, per_tensor: bool) -> PatternGraph:
    """Add(pooled, Dequantize) -> Quantize with the pooled value on `pool_slot`."""
    add_quant = PatternGraph(f"padd_subgraph_in{pool_slot}")
    pdequant_other = add_quant.append_op(OpKind.DEQUANTIZE, name="pdequant_other")
    if not per_tensor:
        pdequant_other.append_decision_function(check_zps_values(0))
    padd = add_quant.append_op(
        OpKind.ADD, [in_edge(1 - pool_slot, pdequant_other, 0)], name="padd"
    )
    quant = _quantize(add_quant, [in_edge(0, padd, 0)], per_tensor)
    add_quant.create_input_port(0, padd, pool_slot)
    add_quant.create_input_port(1, pdequant_other, 0)
    add_quant.create_output_port(0, quant, 0)
    return add_quant


def _int8_pool_binary(pg: PatternGraph, per_tensor: bool) -> None:
    pdequant_data = pg.append_op(OpKind.DEQUANTIZE, name="pdequant_data")
    if per_tensor:
        pdequant_data.append_decision_function(check_qtype_equal_to_per_tensor)

    ppool = pg.append_op(POOLING_KINDS, [in_edge(0, pdequant_data, 0)], name="ppool")

    # case 1: quantize
    only_quant = PatternGraph("subgraph_only_quant")
    quant = _quantize(only_quant, (), per_tensor)
    only_quant.create_input_port(0, quant, 0)
    only_quant.create_output_port(0, quant, 0)

    # case 2: reshape / transpose -> quantize
    reshape_quant = PatternGraph("subgraph_reshape_quant")
    reshape = reshape_quant.append_op(RESHAPE_KINDS, name="preshape")
    quant2 = _quantize(reshape_quant, [in_edge(0, reshape, 0)], per_tensor)
    reshape_quant.create_input_port(0, reshape, 0)
    reshape_quant.create_output_port(0, quant2, 0)

    # case 3: add(dequantize) -> quantize, operands in either order
    pg.append_alternation(
        [only_quant, reshape_quant, _add_quant(0, per_tensor), _add_quant(1, per_tensor)],
        [in_edge(0, ppool, 0)], name="ppost_ops",
    )


def int8_pool_binary_cpu(pg: PatternGraph) -> None:
    _int8_pool_binary(pg, per_tensor=True)


def int8_pool_binary_gpu(pg: PatternGraph) -> None:
    _int8_pool_binary(pg, per_tensor=False)


def conv_post_ops(pg: PatternGraph) -> None:
    pconv = pg.append_op(OpKind.CONVOLUTION, name="pconv")

    bias = PatternGraph("pbias_subgraph")
    pbias = bias.append_op(OpKind.BIAS_ADD, name="pbias")
    bias.create_input_port(0, pbias, 0)
    bias.create_output_port(0, pbias, 0)
    poptional_bias = pg.append_optional(bias, [in_edge(0, pconv, 0)], name="poptional_bias")

    post_op = PatternGraph("ppost_op_subgraph")
    palt = post_op.append_alternation(
        [_binary_post_op("pbinary_post_op"), PatternGraph.single(UNARY_KINDS, "peltwise")],
        name="ppost_op",
    )
    post_op.create_input_port(0, palt, 0)
    post_op.create_output_port(0, palt, 0)

    prepetition = pg.append_repetition(
        post_op, 0, get_config().max_repetition,
        [in_edge(0, poptional_bias, 0)], name="prepetition",
    )

    # a quantize flagged break_post_fuse stays outside the partition
    quant = PatternGraph("pquant_subgraph")
    pquant = quant.append_op(OpKind.QUANTIZE, name="pquantize")
    pquant.append_decision_function(check_no_fuse_break)
    quant.create_input_port(0, pquant, 0)
    quant.create_output_port(0, pquant, 0)
    pg.append_optional(quant, [in_edge(0, prepetition, 0)], name="poptional_quant")


def register_default_templates(registry: FusionRegistry) -> FusionRegistry:
    registry.register_pattern(
        "int8_pool_binary_fusion_cpu",
        int8_pool_binary_cpu,
        QuantizedPoolingKernel,
        priority=10.0,
        kind=PartitionKind.QUANTIZED_POOLING_POST_OPS,
        engine_kind=EngineKind.CPU,
    )
    registry.register_pattern(
        "int8_pool_binary_fusion_gpu",
        int8_pool_binary_gpu,
        QuantizedPoolingKernel,
        priority=10.0,
        kind=PartitionKind.QUANTIZED_POOLING_POST_OPS,
        engine_kind=EngineKind.GPU,
    )
    registry.register_pattern(
        "pool_post_ops_fusion",
        pool_post_ops,
        FloatPoolingKernel,
        priority=9.9,
        kind=PartitionKind.POOLING_POST_OPS,
    )
    registry.register_pattern(
        "conv_post_ops_fusion",
        conv_post_ops,
        ConvolutionKernel,
        priority=9.7,
        kind=PartitionKind.CONVOLUTION_POST_OPS,
    )
    return registry
