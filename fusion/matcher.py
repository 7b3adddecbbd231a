# fusion/matcher.py
"""
Backtracking subgraph matcher.

Binds the nodes of a PatternGraph to ops of a host GraphIR, starting from
an anchor op bound to the pattern's anchor node.

Search:
- A bound node constrains its pattern producers first (backward walk
  along producer edges), then its pattern consumers.
- Single nodes bind one op: kind in the permitted set, not claimed by this
  match, not reserved, every decision predicate true.
- Alternations try alternatives in declaration order.
- Repetitions chain greedily: the longest chain is offered first, shorter
  ones (down to min_rep) only when the rest of the pattern fails.
- Every choice point is a generator. Claims are released in `finally`
  blocks and pending constraints are copied per branch, so a failed branch
  leaves nothing behind for its siblings.

A full structural match is then checked for boundary safety:
- values produced inside the region and not exposed as outputs have no
  consumer outside the region and are not graph outputs
- every region op input fed from inside the region is a pattern edge
- no path leaves the region and re-enters it

A rejected match resumes the search. No match is a None result.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from graph.ir import GraphIR, Site
from graph.graph_utils import region_creates_cycle
from fusion.errors import PatternConstructionError
from fusion.pattern import (
    AlternationNode, PatternGraph, PatternNode, RepetitionNode, SingleNode,
)

logger = logging.getLogger(__name__)


class _Direction(Enum):
    ANCHOR = auto()     # value is an op id
    PRODUCER = auto()   # value is output `slot` of the node
    CONSUMER = auto()   # value feeds input `slot` of the node


class _Constraint(NamedTuple):
    node: PatternNode
    direction: _Direction
    slot: int
    value: int


@dataclass
class UnitBinding:
    """
    Binding of one pattern node (or a whole nested graph) to host ops.

    inputs / outputs map the node's slots to host value ids. `sites` maps an
    input slot to the host (op, slot) pairs that read it. `edges` lists the
    host input sites covered by pattern edges inside this unit.
    """
    inputs: Dict[int, int]
    outputs: Dict[int, int]
    sites: Dict[int, List[Site]]
    bindings: List[Tuple[SingleNode, int]]
    edges: List[Site] = field(default_factory=list)
    choice: Optional[int] = None   # alternation: index of the matched alternative
    count: Optional[int] = None    # repetition: number of iterations

    @property
    def ops(self) -> List[int]:
        return [oid for _, oid in self.bindings]


@dataclass
class Match:
    pattern: PatternGraph
    anchor: int
    bindings: List[Tuple[SingleNode, int]]
    units: Dict[PatternNode, UnitBinding]
    inputs: List[int]
    outputs: List[int]

    @property
    def ops(self) -> List[int]:
        return [oid for _, oid in self.bindings]

    def ops_for(self, node: PatternNode) -> List[int]:
        return [oid for n, oid in self.bindings if n is node]

    def op_for(self, node: PatternNode) -> Optional[int]:
        ops = self.ops_for(node)
        return ops[0] if ops else None

    def __len__(self) -> int:
        return len(self.bindings)


def _dedupe(values: Iterable[int]) -> List[int]:
    out: List[int] = []
    for v in values:
        if v not in out:
            out.append(v)
    return out


class Matcher:
    """
    Matches pattern graphs against one host graph.

    `reserved` op ids are never bound (ops promised to a pending match).
    Not thread-safe; use one Matcher per graph and thread.
    """

    def __init__(self, graph: GraphIR, reserved: Iterable[int] = ()):
        self.graph = graph
        self.reserved: Set[int] = set(reserved)
        self._claimed: Set[int] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def match(
        self,
        pattern: PatternGraph,
        anchor: int,
        check_boundary: bool = True,
    ) -> Optional[Match]:
        root = pattern.anchor
        if root is None:
            raise PatternConstructionError(f"Pattern {pattern.name!r} has no anchor node")
        if anchor not in self.graph.ops:
            return None

        self._claimed = set()
        search = self._solve(pattern, (_Constraint(root, _Direction.ANCHOR, 0, anchor),), {}, [])
        try:
            for units, edges in search:
                unit = self._compose(pattern, units, edges)
                if unit is None:
                    continue
                m = self._finalize(pattern, anchor, units, unit, check_boundary)
                if m is not None:
                    logger.debug(
                        "pattern %s matched at op %d: ops=%s inputs=%s outputs=%s",
                        pattern.name, anchor, m.ops, m.inputs, m.outputs,
                    )
                    return m
        finally:
            search.close()

        logger.debug("pattern %s: no match at op %d", pattern.name, anchor)
        return None

    # ------------------------------------------------------------------
    # Graph-level search
    # ------------------------------------------------------------------

    def _solve(
        self,
        pg: PatternGraph,
        pending: Tuple[_Constraint, ...],
        units: Dict[PatternNode, UnitBinding],
        edges: List[Site],
    ) -> Iterator[Tuple[Dict[PatternNode, UnitBinding], List[Site]]]:
        # drop constraints on nodes that are already bound, checking them
        while pending:
            c = pending[0]
            bound = units.get(c.node)
            if bound is None:
                break
            if not self._consistent(bound, c):
                return
            pending = pending[1:]
        else:
            if len(units) == len(pg.nodes):
                yield units, edges
            return

        for unit in self._match_node(c.node, c):
            derived = self._derive(pg, c.node, unit)
            if derived is None:
                continue
            new_pending, new_edges = derived
            units[c.node] = unit
            try:
                yield from self._solve(pg, pending[1:] + new_pending, units, edges + new_edges)
            finally:
                del units[c.node]

    @staticmethod
    def _consistent(bound: UnitBinding, c: _Constraint) -> bool:
        if c.direction is _Direction.PRODUCER:
            return bound.outputs.get(c.slot) == c.value
        if c.direction is _Direction.CONSUMER:
            return bound.inputs.get(c.slot) == c.value
        return False

    @staticmethod
    def _derive(pg: PatternGraph, node: PatternNode, unit: UnitBinding):
        """
        Constraints a freshly bound node puts on its pattern neighbours,
        producers first. None when the binding lacks a connected slot.
        """
        pending: List[_Constraint] = []
        edges: List[Site] = []

        for slot, e in sorted(node.in_edges.items()):
            vid = unit.inputs.get(slot)
            if vid is None:
                return None
            pending.append(_Constraint(e.producer, _Direction.PRODUCER, e.producer_slot, vid))
            edges.extend(unit.sites.get(slot, ()))

        for producer_slot, consumer, slot in pg.consumers_of(node):
            vid = unit.outputs.get(producer_slot)
            if vid is None:
                return None
            pending.append(_Constraint(consumer, _Direction.CONSUMER, slot, vid))

        return tuple(pending), edges

    def _compose(
        self,
        pg: PatternGraph,
        units: Dict[PatternNode, UnitBinding],
        edges: List[Site],
    ) -> Optional[UnitBinding]:
        """Collapse the bindings of a fully matched graph into one unit."""
        bindings = [b for n in pg.nodes for b in units[n].bindings]
        all_edges = list(edges)
        for n in pg.nodes:
            all_edges.extend(units[n].edges)

        if pg.identity_ports:
            u = units[pg.nodes[0]]
            return UnitBinding(
                inputs=dict(u.inputs),
                outputs=dict(u.outputs),
                sites={k: list(v) for k, v in u.sites.items()},
                bindings=bindings,
                edges=all_edges,
            )

        inputs: Dict[int, int] = {}
        sites: Dict[int, List[Site]] = {}
        for i, (n, s) in sorted(pg.input_ports.items()):
            vid = units[n].inputs.get(s)
            if vid is None:
                return None
            inputs[i] = vid
            sites[i] = list(units[n].sites.get(s, ()))

        outputs: Dict[int, int] = {}
        for j, (n, s) in sorted(pg.output_ports.items()):
            vid = units[n].outputs.get(s)
            if vid is None:
                return None
            outputs[j] = vid

        return UnitBinding(inputs, outputs, sites, bindings, all_edges)

    # ------------------------------------------------------------------
    # Node-level matching
    # ------------------------------------------------------------------

    def _match_node(self, node: PatternNode, c: _Constraint) -> Iterator[UnitBinding]:
        if isinstance(node, SingleNode):
            yield from self._match_single(node, c)
            return

        if isinstance(node, AlternationNode):
            candidates = self._match_alternation(node, c)
        elif isinstance(node, RepetitionNode):
            candidates = self._match_repetition(node, c)
        else:
            raise TypeError(f"Unknown pattern node type {type(node).__name__}")

        for unit in candidates:
            if node.predicates and not self._predicates_hold(node, unit.ops):
                continue
            yield unit

    def _match_single(self, node: SingleNode, c: _Constraint) -> Iterator[UnitBinding]:
        g = self.graph
        claimed = self._claimed

        if c.direction is _Direction.ANCHOR:
            candidates = [c.value]
        elif c.direction is _Direction.PRODUCER:
            prod = g.values[c.value].producer
            if prod is None or prod[1] != c.slot:
                return
            candidates = [prod[0]]
        else:
            candidates = [oid for oid, slot in g.values[c.value].consumers if slot == c.slot]

        for oid in candidates:
            if oid in claimed or oid in self.reserved:
                continue
            op = g.ops[oid]
            if op.kind not in node.kinds:
                continue
            if not self._predicates_hold(node, (oid,)):
                continue

            claimed.add(oid)
            try:
                yield UnitBinding(
                    inputs=dict(enumerate(op.inputs)),
                    outputs=dict(enumerate(op.outputs)),
                    sites={slot: [(oid, slot)] for slot in range(len(op.inputs))},
                    bindings=[(node, oid)],
                )
            finally:
                claimed.discard(oid)

    def _match_alternation(self, node: AlternationNode, c: _Constraint) -> Iterator[UnitBinding]:
        for idx, alt in enumerate(node.alternatives):
            seed = self._port_seed(alt, c)
            if seed is None:
                continue
            for units, edges in self._solve(alt, (seed,), {}, []):
                unit = self._compose(alt, units, edges)
                if unit is None:
                    continue
                unit.choice = idx
                yield unit

    def _match_repetition(self, node: RepetitionNode, c: _Constraint) -> Iterator[UnitBinding]:
        if c.direction is _Direction.CONSUMER and c.slot == node.in_port:
            forward = True
        elif c.direction is _Direction.PRODUCER and c.slot == node.out_port:
            forward = False
        else:
            return
        yield from self._chain(node, forward, c.value)

    def _chain(self, node: RepetitionNode, forward: bool, vid: int) -> Iterator[UnitBinding]:
        """
        Depth-first over chain lengths without recursion.

        stack[k] holds the value entering iteration k and the pending body
        matches there; iterations[k] is the body match currently chosen at
        depth k. A frame is only yielded from once its extensions are
        exhausted, so longer chains come first.
        """
        iterations: List[UnitBinding] = []
        stack = [(vid, self._extend(node, forward, vid, 0))]
        try:
            while stack:
                cur, pending = stack[-1]
                step = next(pending, None)
                if step is not None:
                    unit, nxt = step
                    iterations.append(unit)
                    stack.append((nxt, self._extend(node, forward, nxt, len(iterations))))
                    continue

                stack.pop()
                if len(iterations) >= node.min_rep:
                    yield self._compose_repetition(node, forward, cur, iterations)
                if stack:
                    iterations.pop()
        finally:
            # release the claims held by suspended body matches, innermost first
            for _, pending in reversed(stack):
                pending.close()

    def _extend(
        self,
        node: RepetitionNode,
        forward: bool,
        vid: int,
        depth: int,
    ) -> Iterator[Tuple[UnitBinding, int]]:
        """One more body instance at `vid`: (body match, value it hands on)."""
        if node.max_rep is not None and depth >= node.max_rep:
            return

        body = node.body
        if forward:
            ref = body.input_port(node.in_port)
            seed = _Constraint(ref[0], _Direction.CONSUMER, ref[1], vid)
        else:
            ref = body.output_port(node.out_port)
            seed = _Constraint(ref[0], _Direction.PRODUCER, ref[1], vid)

        for units, edges in self._solve(body, (seed,), {}, []):
            unit = self._compose(body, units, edges)
            if unit is None or not unit.bindings:
                continue
            nxt = unit.outputs.get(node.out_port) if forward else unit.inputs.get(node.in_port)
            if nxt is None:
                continue
            yield unit, nxt

    @staticmethod
    def _compose_repetition(
        node: RepetitionNode,
        forward: bool,
        vid: int,
        iterations: List[UnitBinding],
    ) -> UnitBinding:
        chain = list(iterations) if forward else list(reversed(iterations))
        if not chain:
            # zero instances: input and output alias the same value
            return UnitBinding(
                inputs={node.in_port: vid},
                outputs={node.out_port: vid},
                sites={node.in_port: []},
                bindings=[],
                count=0,
            )

        bindings: List[Tuple[SingleNode, int]] = []
        edges: List[Site] = []
        for k, u in enumerate(chain):
            bindings.extend(u.bindings)
            edges.extend(u.edges)
            if k > 0:
                edges.extend(u.sites.get(node.in_port, ()))

        return UnitBinding(
            inputs={node.in_port: chain[0].inputs[node.in_port]},
            outputs={node.out_port: chain[-1].outputs[node.out_port]},
            sites={node.in_port: list(chain[0].sites.get(node.in_port, ()))},
            bindings=bindings,
            edges=edges,
            count=len(chain),
        )

    @staticmethod
    def _port_seed(pg: PatternGraph, c: _Constraint) -> Optional[_Constraint]:
        if c.direction is _Direction.PRODUCER:
            ref = pg.output_port(c.slot)
        elif c.direction is _Direction.CONSUMER:
            ref = pg.input_port(c.slot)
        else:
            return None
        if ref is None:
            return None
        return _Constraint(ref[0], c.direction, ref[1], c.value)

    def _predicates_hold(self, node: PatternNode, ops: Iterable[int]) -> bool:
        g = self.graph
        for oid in ops:
            op = g.ops[oid]
            for fn in node.predicates:
                if not fn(op, g):
                    return False
        return True

    # ------------------------------------------------------------------
    # Boundary safety
    # ------------------------------------------------------------------

    def _finalize(
        self,
        pattern: PatternGraph,
        anchor: int,
        units: Dict[PatternNode, UnitBinding],
        unit: UnitBinding,
        check_boundary: bool,
    ) -> Optional[Match]:
        g = self.graph
        region_order = unit.ops
        region = set(region_order)
        produced = {vid for oid in region_order for vid in g.ops[oid].outputs}

        if pattern.output_ports:
            outputs = [unit.outputs[j] for j in sorted(unit.outputs)]
        else:
            outputs = [
                units[n].outputs[slot]
                for n in pattern.sinks()
                for slot in sorted(units[n].outputs)
            ]
        outputs = _dedupe(outputs)

        if not outputs or any(vid not in produced for vid in outputs):
            logger.debug("pattern %s: exposed outputs not produced by the match", pattern.name)
            return None

        if check_boundary and not self._boundary_safe(region, region_order, produced, outputs, unit.edges):
            logger.debug("pattern %s: boundary check rejected ops %s", pattern.name, region_order)
            return None

        inputs: List[int] = []
        seen: Set[int] = set(produced)
        declared = [unit.inputs.get(i) for i in sorted(pattern.input_ports)]
        region_inputs = [vid for oid in region_order for vid in g.ops[oid].inputs]
        for vid in declared + region_inputs:
            if vid is not None and vid not in seen:
                seen.add(vid)
                inputs.append(vid)

        return Match(
            pattern=pattern,
            anchor=anchor,
            bindings=list(unit.bindings),
            units=dict(units),
            inputs=inputs,
            outputs=outputs,
        )

    def _boundary_safe(
        self,
        region: Set[int],
        region_order: List[int],
        produced: Set[int],
        outputs: List[int],
        edges: List[Site],
    ) -> bool:
        g = self.graph
        graph_outputs = set(g.outputs)
        exposed = set(outputs)

        for vid in produced:
            if vid in exposed:
                continue
            if vid in graph_outputs:
                return False
            for oid, _ in g.values[vid].consumers:
                if oid not in region:
                    return False

        pattern_edges = set(edges)
        for oid in region_order:
            for slot, vid in enumerate(g.ops[oid].inputs):
                if vid in produced and (oid, slot) not in pattern_edges:
                    return False

        return not region_creates_cycle(g, region)


def match(
    pattern: PatternGraph,
    graph: GraphIR,
    anchor: int,
    reserved: Iterable[int] = (),
    check_boundary: bool = True,
) -> Optional[Match]:
    return Matcher(graph, reserved).match(pattern, anchor, check_boundary=check_boundary)
