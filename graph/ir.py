# graph/ir.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from graph.op_registry import OpKind

# (op id, slot index)
Site = Tuple[int, int]


@dataclass
class ValueIR:
    vid: int
    shape: Optional[Tuple[int, ...]]
    dtype: Any
    producer: Optional[Site]
    consumers: List[Site] = field(default_factory=list)


@dataclass(eq=False)
class OpIR:
    oid: int
    kind: OpKind
    inputs: List[int]
    outputs: List[int]
    attrs: Dict[str, Any] = field(default_factory=dict)
    name: str = ""

    # Set on fused ops only
    partition_kind: Any = None
    kernel: Any = None
    subgraph: List["OpIR"] = field(default_factory=list)

    @property
    def is_fused(self) -> bool:
        return self.kind is OpKind.FUSED


@dataclass
class GraphIR:
    """
    Arena-style host graph.

    Ops and values are keyed by stable integer ids. Edges are expressed as
    (op id, slot) pairs on the values, never as object references.
    """
    ops: Dict[int, OpIR] = field(default_factory=dict)
    values: Dict[int, ValueIR] = field(default_factory=dict)
    inputs: List[int] = field(default_factory=list)
    outputs: List[int] = field(default_factory=list)
    attrs: Dict[str, Any] = field(default_factory=dict)

    _next_oid: int = 0
    _next_vid: int = 0

    def new_op_id(self) -> int:
        oid = max(self._next_oid, max(self.ops, default=-1) + 1)
        self._next_oid = oid + 1
        return oid

    def new_value_id(self) -> int:
        vid = max(self._next_vid, max(self.values, default=-1) + 1)
        self._next_vid = vid + 1
        return vid

    def num_ops(self) -> int:
        return len(self.ops)

    def ops_of_kind(self, kind: OpKind) -> List[OpIR]:
        return [op for op in self.ops.values() if op.kind is kind]
