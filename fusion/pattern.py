# fusion/pattern.py
"""
Pattern graphs: declarative templates searched for in a host graph.

A pattern graph is a small dataflow graph whose nodes are:
- SingleNode       one host op whose kind is in a fixed set
- AlternationNode  exactly one of several nested pattern graphs
- RepetitionNode   a nested pattern graph chained min..max times

Nested graphs expose numbered input / output ports; outer edges attach to
those ports. Construction is pure data assembly and happens once, before
any matching. Malformed graphs raise PatternConstructionError.

Example (dequantize -> pool -> quantize):

    pg = PatternGraph("int8_pool")
    dq = pg.append_op(OpKind.DEQUANTIZE)
    pool = pg.append_op({OpKind.AVG_POOL, OpKind.MAX_POOL}, [in_edge(0, dq)])
    q = pg.append_op(OpKind.QUANTIZE, [in_edge(0, pool)])
    q.append_decision_function(check_qtype_equal_to_per_tensor)
"""

from __future__ import annotations

from collections import deque
from typing import (
    Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union,
)

from graph.ir import GraphIR, OpIR
from graph.op_registry import OpKind
from fusion.errors import PatternConstructionError

DecisionFn = Callable[[OpIR, GraphIR], bool]
KindSpec = Union[OpKind, Iterable[OpKind]]

# (pattern node, slot)
PortRef = Tuple["PatternNode", int]


class InEdge(NamedTuple):
    slot: int
    producer: "PatternNode"
    producer_slot: int = 0


def in_edge(slot: int, producer: "PatternNode", producer_slot: int = 0) -> InEdge:
    return InEdge(slot, producer, producer_slot)


def _as_kinds(kinds: KindSpec) -> FrozenSet[OpKind]:
    if isinstance(kinds, OpKind):
        return frozenset((kinds,))
    try:
        out = frozenset(kinds)
    except TypeError:
        raise PatternConstructionError(f"Expected an OpKind or a set of OpKinds, got {kinds!r}")
    if not out:
        raise PatternConstructionError("A single pattern node needs at least one permitted kind")
    bad = [k for k in out if not isinstance(k, OpKind)]
    if bad:
        raise PatternConstructionError(f"Not op kinds: {bad!r}")
    return out


# -----------------------------------------------------------------------------
# Pattern nodes
# -----------------------------------------------------------------------------

class PatternNode:
    """
    Common part of all pattern node variants.

    Decision predicates are pure functions (op, graph) -> bool. On a single
    node they see the bound op; on a composite node they see every op bound
    inside it.
    """

    def __init__(self, name: str):
        self.name = name
        self.in_edges: Dict[int, InEdge] = {}
        self.predicates: List[DecisionFn] = []
        self.owner: Optional[PatternGraph] = None

    def append_decision_function(self, fn: DecisionFn) -> "PatternNode":
        if not callable(fn):
            raise PatternConstructionError(f"Decision function must be callable, got {fn!r}")
        self.predicates.append(fn)
        return self

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class SingleNode(PatternNode):
    def __init__(self, kinds: KindSpec, name: str):
        super().__init__(name)
        self.kinds: FrozenSet[OpKind] = _as_kinds(kinds)


class AlternationNode(PatternNode):
    def __init__(self, alternatives: List["PatternGraph"], name: str):
        super().__init__(name)
        self.alternatives = alternatives


class RepetitionNode(PatternNode):
    def __init__(
        self,
        body: "PatternGraph",
        min_rep: int,
        max_rep: Optional[int],
        port_map: Tuple[int, int],
        name: str,
    ):
        super().__init__(name)
        self.body = body
        self.min_rep = min_rep
        self.max_rep = max_rep
        # body output port feeding the next iteration, body input port it feeds
        self.out_port, self.in_port = port_map


# -----------------------------------------------------------------------------
# Pattern graph
# -----------------------------------------------------------------------------

class PatternGraph:
    def __init__(self, name: str = ""):
        self.name = name
        self.nodes: List[PatternNode] = []
        self.input_ports: Dict[int, PortRef] = {}
        self.output_ports: Dict[int, PortRef] = {}
        self._anchor: Optional[SingleNode] = None
        # Wrapped single-kind alternatives expose port i as slot i of their node
        self.identity_ports: bool = False

    @classmethod
    def single(cls, kinds: KindSpec, name: str = "") -> "PatternGraph":
        pg = cls(name)
        pg.append_op(kinds, name=name or None)
        pg.identity_ports = True
        return pg

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def append_op(
        self,
        kinds: KindSpec,
        in_edges: Sequence[InEdge] = (),
        name: Optional[str] = None,
    ) -> SingleNode:
        node = SingleNode(kinds, name or self._auto_name("op"))
        self._append(node, in_edges)
        return node

    def append_alternation(
        self,
        alternatives: Sequence[Union[KindSpec, "PatternGraph"]],
        in_edges: Sequence[InEdge] = (),
        name: Optional[str] = None,
    ) -> AlternationNode:
        name = name or self._auto_name("alternation")
        if not alternatives:
            raise PatternConstructionError(f"Alternation {name!r} has no alternatives")

        graphs: List[PatternGraph] = []
        for i, alt in enumerate(alternatives):
            if isinstance(alt, PatternGraph):
                graphs.append(alt)
            else:
                graphs.append(PatternGraph.single(alt, f"{name}_alt{i}"))

        node = AlternationNode(graphs, name)
        self._append(node, in_edges)
        return node

    def append_repetition(
        self,
        body: "PatternGraph",
        min_rep: int = 0,
        max_rep: Optional[int] = None,
        in_edges: Sequence[InEdge] = (),
        port_map: Tuple[int, int] = (0, 0),
        name: Optional[str] = None,
    ) -> RepetitionNode:
        name = name or self._auto_name("repetition")
        if not isinstance(body, PatternGraph):
            raise PatternConstructionError(f"Repetition {name!r} body must be a PatternGraph")
        if not isinstance(min_rep, int) or min_rep < 0:
            raise PatternConstructionError(f"Repetition {name!r}: min_rep must be >= 0, got {min_rep!r}")
        if max_rep is not None and (not isinstance(max_rep, int) or max_rep < max(1, min_rep)):
            raise PatternConstructionError(
                f"Repetition {name!r}: max_rep must be >= max(1, min_rep), got {max_rep!r}"
            )
        out_port, in_port = port_map
        if body.output_port(out_port) is None:
            raise PatternConstructionError(f"Repetition {name!r}: body has no output port {out_port}")
        if body.input_port(in_port) is None:
            raise PatternConstructionError(f"Repetition {name!r}: body has no input port {in_port}")

        node = RepetitionNode(body, min_rep, max_rep, (out_port, in_port), name)
        self._append(node, in_edges)
        return node

    def append_optional(
        self,
        body: "PatternGraph",
        in_edges: Sequence[InEdge] = (),
        name: Optional[str] = None,
    ) -> RepetitionNode:
        return self.append_repetition(body, 0, 1, in_edges, name=name or self._auto_name("optional"))

    def create_input_port(self, index: int, node: PatternNode, slot: int = 0) -> None:
        self._check_port(self.input_ports, index, node, "input")
        self.input_ports[index] = (node, slot)

    def create_output_port(self, index: int, node: PatternNode, slot: int = 0) -> None:
        self._check_port(self.output_ports, index, node, "output")
        self.output_ports[index] = (node, slot)

    def set_anchor(self, node: PatternNode) -> None:
        if node.owner is not self or not isinstance(node, SingleNode):
            raise PatternConstructionError(
                f"Anchor of {self.name!r} must be a single node of this graph, got {node!r}"
            )
        self._anchor = node

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def anchor(self) -> Optional[SingleNode]:
        if self._anchor is not None:
            return self._anchor
        for node in self.nodes:
            if isinstance(node, SingleNode):
                return node
        return None

    def input_port(self, index: int) -> Optional[PortRef]:
        if self.identity_ports:
            return (self.nodes[0], index)
        return self.input_ports.get(index)

    def output_port(self, index: int) -> Optional[PortRef]:
        if self.identity_ports:
            return (self.nodes[0], index)
        return self.output_ports.get(index)

    def consumers_of(self, node: PatternNode) -> List[Tuple[int, PatternNode, int]]:
        """
        (producer_slot, consumer node, consumer slot) for every pattern edge
        leaving `node`, in append order.
        """
        out = []
        for consumer in self.nodes:
            for slot, e in sorted(consumer.in_edges.items()):
                if e.producer is node:
                    out.append((e.producer_slot, consumer, slot))
        return out

    def sinks(self) -> List[PatternNode]:
        """Nodes whose outputs feed no other node of this graph."""
        producers = {id(e.producer) for n in self.nodes for e in n.in_edges.values()}
        return [n for n in self.nodes if id(n) not in producers]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, top_level: bool = True) -> "PatternGraph":
        """
        Check the whole graph, nested graphs included.

        Raises PatternConstructionError on the first problem found.
        """
        if not self.nodes:
            raise PatternConstructionError(f"Pattern graph {self.name!r} is empty")

        self._check_connected()

        for node in self.nodes:
            for slot, e in node.in_edges.items():
                self._check_consumer_slot(node, slot)
                self._check_producer_slot(e.producer, e.producer_slot)

            if isinstance(node, AlternationNode):
                for alt in node.alternatives:
                    alt.validate(top_level=False)
            elif isinstance(node, RepetitionNode):
                node.body.validate(top_level=False)

        for node, slot in self.input_ports.values():
            self._check_consumer_slot(node, slot)
        for node, slot in self.output_ports.values():
            self._check_producer_slot(node, slot)

        if top_level and self.anchor is None:
            raise PatternConstructionError(
                f"Pattern graph {self.name!r} has no single node to anchor on"
            )
        return self

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _auto_name(self, prefix: str) -> str:
        return f"{prefix}_{len(self.nodes)}"

    def _append(self, node: PatternNode, in_edges: Sequence[InEdge]) -> None:
        edges: Dict[int, InEdge] = {}
        for e in in_edges:
            if not isinstance(e, InEdge):
                raise PatternConstructionError(f"{node.name!r}: expected InEdge, got {e!r}")
            if e.producer.owner is not self:
                raise PatternConstructionError(
                    f"{node.name!r}: producer {e.producer.name!r} is not a node of {self.name!r}"
                )
            if e.slot < 0 or e.producer_slot < 0:
                raise PatternConstructionError(f"{node.name!r}: negative slot in {e!r}")
            if e.slot in edges:
                raise PatternConstructionError(f"{node.name!r}: input slot {e.slot} connected twice")
            edges[e.slot] = e

        node.in_edges = edges
        node.owner = self
        self.nodes.append(node)

    def _check_port(self, ports: Dict[int, PortRef], index: int, node: PatternNode, what: str) -> None:
        if node.owner is not self:
            raise PatternConstructionError(
                f"{what} port {index} of {self.name!r} refers to foreign node {node!r}"
            )
        if index in ports:
            raise PatternConstructionError(f"{what} port {index} of {self.name!r} declared twice")
        if index < 0:
            raise PatternConstructionError(f"{what} port index must be >= 0, got {index}")

    def _check_consumer_slot(self, node: PatternNode, slot: int) -> None:
        if isinstance(node, AlternationNode):
            for alt in node.alternatives:
                if alt.input_port(slot) is None:
                    raise PatternConstructionError(
                        f"Alternative {alt.name!r} of {node.name!r} has no input port {slot}"
                    )
        elif isinstance(node, RepetitionNode) and slot != node.in_port:
            raise PatternConstructionError(
                f"Repetition {node.name!r} is only reachable through input port {node.in_port}"
            )

    def _check_producer_slot(self, node: PatternNode, slot: int) -> None:
        if isinstance(node, AlternationNode):
            for alt in node.alternatives:
                if alt.output_port(slot) is None:
                    raise PatternConstructionError(
                        f"Alternative {alt.name!r} of {node.name!r} has no output port {slot}"
                    )
        elif isinstance(node, RepetitionNode) and slot != node.out_port:
            raise PatternConstructionError(
                f"Repetition {node.name!r} only exposes output port {node.out_port}"
            )

    def _check_connected(self) -> None:
        adj: Dict[int, List[PatternNode]] = {id(n): [] for n in self.nodes}
        for n in self.nodes:
            for e in n.in_edges.values():
                adj[id(n)].append(e.producer)
                adj[id(e.producer)].append(n)

        seen = {id(self.nodes[0])}
        q = deque([self.nodes[0]])
        while q:
            n = q.popleft()
            for m in adj[id(n)]:
                if id(m) not in seen:
                    seen.add(id(m))
                    q.append(m)

        if len(seen) != len(self.nodes):
            missing = [n.name for n in self.nodes if id(n) not in seen]
            raise PatternConstructionError(
                f"Pattern graph {self.name!r} is not connected: {missing}"
            )
