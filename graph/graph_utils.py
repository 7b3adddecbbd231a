# graph/graph_utils.py

import heapq
from collections import defaultdict
from typing import Dict, Iterable, List, Set

from graph.ir import GraphIR


class GraphError(Exception):
    """Raised when a host graph is not well-formed."""
    pass


def build_op_consumers(g: GraphIR) -> Dict[int, Set[int]]:
    """
    op id -> set of op ids that consume its outputs
    """
    op_cons = defaultdict(set)
    for oid, op in g.ops.items():
        for vid in op.outputs:
            for c, _ in g.values[vid].consumers:
                op_cons[oid].add(c)
    return op_cons


def toposort_ops(g: GraphIR) -> List[int]:
    """
    Topologically sort ops using Kahn's algorithm.

    Ready ops are released smallest id first, so the order is a pure
    function of the graph contents.
    """
    op_cons = build_op_consumers(g)
    indeg = {oid: 0 for oid in g.ops}

    for u, vs in op_cons.items():
        for v in vs:
            indeg[v] += 1

    heap = [oid for oid, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order = []

    while heap:
        u = heapq.heappop(heap)
        order.append(u)
        for v in op_cons.get(u, ()):
            indeg[v] -= 1
            if indeg[v] == 0:
                heapq.heappush(heap, v)

    if len(order) != len(g.ops):
        raise GraphError("Graph has cycles")
    return order


def region_creates_cycle(g: GraphIR, region: Iterable[int]) -> bool:
    """
    True iff some path leaves `region` and re-enters it.

    Collapsing such a region into one node would make the graph cyclic.
    """
    region = set(region)
    stack = []
    for oid in region:
        for vid in g.ops[oid].outputs:
            for c, _ in g.values[vid].consumers:
                if c not in region:
                    stack.append(c)

    seen: Set[int] = set()
    while stack:
        oid = stack.pop()
        if oid in seen:
            continue
        seen.add(oid)
        for vid in g.ops[oid].outputs:
            for c, _ in g.values[vid].consumers:
                if c in region:
                    return True
                stack.append(c)
    return False


def validate_graph(g: GraphIR) -> None:
    """
    Structural validation: every edge resolves, producer/consumer
    back-references agree, graph boundary values exist, no cycles.
    """
    for oid, op in g.ops.items():
        if op.oid != oid:
            raise GraphError(f"Op {oid} stored under mismatching id {op.oid}")
        for slot, vid in enumerate(op.inputs):
            if vid not in g.values:
                raise GraphError(f"Op {oid} input {slot} reads unknown value {vid}")
            if (oid, slot) not in g.values[vid].consumers:
                raise GraphError(f"Value {vid} does not list consumer ({oid}, {slot})")
        for slot, vid in enumerate(op.outputs):
            if vid not in g.values:
                raise GraphError(f"Op {oid} output {slot} writes unknown value {vid}")
            if g.values[vid].producer != (oid, slot):
                raise GraphError(f"Value {vid} does not list producer ({oid}, {slot})")

    for vid, value in g.values.items():
        if value.producer is not None:
            oid, slot = value.producer
            if oid not in g.ops or g.ops[oid].outputs[slot:slot + 1] != [vid]:
                raise GraphError(f"Value {vid} has dangling producer {value.producer}")
        for oid, slot in value.consumers:
            if oid not in g.ops or g.ops[oid].inputs[slot:slot + 1] != [vid]:
                raise GraphError(f"Value {vid} has dangling consumer ({oid}, {slot})")

    for vid in list(g.inputs) + list(g.outputs):
        if vid not in g.values:
            raise GraphError(f"Graph boundary references unknown value {vid}")

    toposort_ops(g)
