# fusion/rewriter.py
"""
Commit an accepted match: replace the matched ops with one fused op.

Rewrite:
    x -> [op_a -> op_b -> op_c] -> y      (matched region)
into:
    x -> fused(partition_kind) -> y

- fused inputs  = match.inputs  (external producers, declared ports first)
- fused outputs = match.outputs (same value ids, so every external consumer
  keeps its identity and argument position)
- values that were internal to the region are deleted

The kernel factory runs before the graph is touched. Commit is all or
nothing: a factory failure leaves the graph exactly as it was.
"""

import logging
from typing import TYPE_CHECKING

from graph.ir import GraphIR, OpIR
from graph.graph_utils import GraphError, toposort_ops, validate_graph
from graph.op_registry import OpKind
from fusion.config import get_config
from fusion.errors import FusionInvariantError, KernelCreationError
from fusion.matcher import Match

if TYPE_CHECKING:
    from fusion.registry import FusionPattern

logger = logging.getLogger(__name__)


def _check_preconditions(match: Match, g: GraphIR) -> None:
    ops = match.ops
    if not ops:
        raise FusionInvariantError("Cannot commit an empty match")
    if len(set(ops)) != len(ops):
        raise FusionInvariantError(f"Match binds the same op twice: {ops}")

    missing = [oid for oid in ops if oid not in g.ops]
    if missing:
        raise FusionInvariantError(
            f"Match overlaps an earlier commit: ops {missing} are no longer in the graph"
        )

    region = set(ops)
    for vid in match.inputs:
        prod = g.values[vid].producer if vid in g.values else None
        if vid not in g.values or (prod is not None and prod[0] in region):
            raise FusionInvariantError(f"Fused input {vid} is not external to the match")
    for vid in match.outputs:
        prod = g.values[vid].producer if vid in g.values else None
        if prod is None or prod[0] not in region:
            raise FusionInvariantError(f"Fused output {vid} is not produced by the match")

    exposed = set(match.outputs)
    for oid in ops:
        for vid in g.ops[oid].outputs:
            if vid in exposed:
                continue
            escaping = [c for c, _ in g.values[vid].consumers if c not in region]
            if escaping or vid in g.outputs:
                raise FusionInvariantError(
                    f"Internal value {vid} escapes the match (consumers {escaping})"
                )


def commit(match: Match, pattern: "FusionPattern", g: GraphIR) -> OpIR:
    """
    Replace `match` with a single op tagged `pattern.kind`.

    Returns:
        The inserted fused OpIR.

    Raises:
        FusionInvariantError: the match is stale or overlaps a previous commit
        KernelCreationError: the kernel factory failed (graph untouched)
    """
    _check_preconditions(match, g)

    try:
        kernel = pattern.kernel_factory()
    except Exception as e:
        raise KernelCreationError(
            f"Kernel factory of pattern {pattern.name!r} failed: {e}"
        ) from e
    if kernel is None:
        raise KernelCreationError(f"Kernel factory of pattern {pattern.name!r} returned None")

    region = set(match.ops)
    order = {oid: i for i, oid in enumerate(toposort_ops(g))}
    subgraph = [g.ops[oid] for oid in sorted(region, key=order.__getitem__)]
    exposed = set(match.outputs)

    fused = OpIR(
        oid=g.new_op_id(),
        kind=OpKind.FUSED,
        inputs=list(match.inputs),
        outputs=list(match.outputs),
        attrs={"pattern": pattern.name},
        name=f"{pattern.name}_{subgraph[0].oid}",
        partition_kind=pattern.kind,
        kernel=kernel,
        subgraph=subgraph,
    )

    # ---- remove matched ops and their internal values ----
    for op in subgraph:
        del g.ops[op.oid]
        for slot, vid in enumerate(op.inputs):
            value = g.values.get(vid)
            if value is not None:
                value.consumers.remove((op.oid, slot))

    for op in subgraph:
        for vid in op.outputs:
            if vid not in exposed:
                del g.values[vid]

    # ---- splice in the fused op ----
    for slot, vid in enumerate(fused.outputs):
        g.values[vid].producer = (fused.oid, slot)
    for slot, vid in enumerate(fused.inputs):
        g.values[vid].consumers.append((fused.oid, slot))
    g.ops[fused.oid] = fused

    logger.info(
        "fused %d ops %s into op %d (%s, pattern %s)",
        len(subgraph), [op.oid for op in subgraph], fused.oid,
        pattern.kind.value, pattern.name,
    )

    if get_config().verify_graph:
        try:
            validate_graph(g)
        except GraphError as e:
            raise FusionInvariantError(f"Graph malformed after fusing {pattern.name!r}: {e}") from e

    return fused
