# compile/passes/annotate_fuse_break.py
"""
Mark Quantize ops that must stay outside post-op fusion.

Only runs on quantized graphs (graph attr "quantize"). Sets
attrs["break_post_fuse"] = True on the Quantize in:

    (Convolution | BiasAdd | Add)         Dequantize
               |                               |
           Quantize   <- marked               Add
               |                               |
          Dequantize                         ReLU
               |                               |
              Add                          Quantize   <- marked (mixed fusion only)

The Add may read the Dequantize on either input. Nothing is rewritten;
the templates read the flag through check_no_fuse_break.
"""

import logging
from typing import List

from graph.ir import GraphIR
from graph.graph_utils import toposort_ops
from graph.op_registry import OpKind
from fusion.config import get_config
from fusion.matcher import Matcher
from fusion.pattern import PatternGraph, in_edge

logger = logging.getLogger(__name__)


def _add_reading(slot: int) -> PatternGraph:
    """Add whose input `slot` is the chained value."""
    body = PatternGraph(f"padd_in{slot}")
    padd = body.append_op(OpKind.ADD, name="padd")
    body.create_input_port(0, padd, slot)
    body.create_output_port(0, padd, 0)
    return body


def _requantized_residual() -> PatternGraph:
    pg = PatternGraph("requantized_residual")
    pprev = pg.append_op(
        {OpKind.CONVOLUTION, OpKind.BIAS_ADD, OpKind.ADD}, name="pprev"
    )
    pquant = pg.append_op(OpKind.QUANTIZE, [in_edge(0, pprev, 0)], name="pquantize")
    pdequant = pg.append_op(OpKind.DEQUANTIZE, [in_edge(0, pquant, 0)], name="pdequantize")
    pg.append_alternation(
        [_add_reading(0), _add_reading(1)], [in_edge(0, pdequant, 0)], name="padd"
    )
    pg.set_anchor(pquant)
    return pg.validate()


def _mixed_add_relu() -> PatternGraph:
    pg = PatternGraph("mixed_add_relu")
    pdequant = pg.append_op(OpKind.DEQUANTIZE, name="pdequantize")
    padd = pg.append_alternation(
        [_add_reading(0), _add_reading(1)], [in_edge(0, pdequant, 0)], name="padd"
    )
    prelu = pg.append_op(OpKind.RELU, [in_edge(0, padd, 0)], name="prelu")
    pquant = pg.append_op(OpKind.QUANTIZE, [in_edge(0, prelu, 0)], name="pquantize")
    pg.set_anchor(pquant)
    return pg.validate()


def annotate_fusion_break(g: GraphIR) -> GraphIR:
    """
    Annotate `g` in place and return it.

    Returns the graph unchanged when it is not quantized.
    """
    if not g.attrs.get("quantize", False):
        return g

    patterns: List[PatternGraph] = [_requantized_residual()]
    if get_config().mixed_fusion:
        patterns.append(_mixed_add_relu())

    # annotation only: intermediates may be shared with the rest of the graph
    matcher = Matcher(g)
    for oid in toposort_ops(g):
        op = g.ops[oid]
        if op.kind is not OpKind.QUANTIZE:
            continue
        for pg in patterns:
            if matcher.match(pg, oid, check_boundary=False) is not None:
                op.attrs["break_post_fuse"] = True
                logger.debug("op %d: break_post_fuse (%s)", oid, pg.name)
                break

    return g
