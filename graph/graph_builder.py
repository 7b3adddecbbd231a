# graph/graph_builder.py
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from graph.ir import GraphIR, OpIR, ValueIR
from graph.op_registry import OpKind, get_op_kind


class GraphBuilder:
    """
    Imperative host graph construction.

    Shapes and dtypes are supplied by the caller; when omitted, an output
    inherits them from the op's first input.
    """

    def __init__(self):
        self.g = GraphIR()

    def input(self, shape: Optional[Tuple[int, ...]] = None, dtype: Any = None) -> int:
        vid = self._new_value(shape, dtype, producer=None)
        self.g.inputs.append(vid)
        return vid

    def constant(self, shape: Optional[Tuple[int, ...]] = None, dtype: Any = None) -> int:
        return self._new_value(shape, dtype, producer=None)

    def op(
        self,
        kind: Union[OpKind, str],
        inputs: Sequence[int],
        attrs: Optional[Dict[str, Any]] = None,
        shape: Optional[Tuple[int, ...]] = None,
        dtype: Any = None,
        num_outputs: int = 1,
        name: str = "",
    ) -> OpIR:
        if isinstance(kind, str):
            kind = get_op_kind(kind)

        for vid in inputs:
            if vid not in self.g.values:
                raise KeyError(f"Unknown input value {vid}")

        if inputs:
            ref = self.g.values[inputs[0]]
            shape = ref.shape if shape is None else shape
            dtype = ref.dtype if dtype is None else dtype

        oid = self.g.new_op_id()
        outputs: List[int] = [
            self._new_value(shape, dtype, producer=(oid, slot))
            for slot in range(num_outputs)
        ]
        op = OpIR(
            oid=oid,
            kind=kind,
            inputs=list(inputs),
            outputs=outputs,
            attrs=dict(attrs or {}),
            name=name,
        )
        for slot, vid in enumerate(op.inputs):
            self.g.values[vid].consumers.append((oid, slot))

        self.g.ops[oid] = op
        return op

    def output(self, vid: int) -> int:
        self.g.outputs.append(vid)
        return vid

    def build(self) -> GraphIR:
        return self.g

    def _new_value(self, shape, dtype, producer) -> int:
        vid = self.g.new_value_id()
        self.g.values[vid] = ValueIR(
            vid=vid,
            shape=tuple(shape) if shape is not None else None,
            dtype=dtype,
            producer=producer,
            consumers=[],
        )
        return vid
