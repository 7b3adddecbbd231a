# fusion/decisions.py
"""
Decision functions attached to pattern nodes.

Each is a pure predicate (op, graph) -> bool over the attributes / shapes
of the bound op. They never mutate anything: the matcher may evaluate them
on bindings it later abandons.

Quantization attributes read here:
    qtype   "per_tensor" | "per_channel"   (default "per_tensor")
    zps     list of zero points
    scales  list of scales
"""

from typing import Callable

from graph.ir import GraphIR, OpIR

Decision = Callable[[OpIR, GraphIR], bool]


def check_qtype_equal_to_per_tensor(op: OpIR, g: GraphIR) -> bool:
    return op.attrs.get("qtype", "per_tensor") == "per_tensor"


def check_zps_values(expected: int) -> Decision:
    """All zero points of the bound op equal `expected`."""
    def check(op: OpIR, g: GraphIR) -> bool:
        zps = op.attrs.get("zps", [0])
        return all(zp == expected for zp in zps)

    check.__name__ = f"check_zps_values_{expected}"
    return check


def check_no_fuse_break(op: OpIR, g: GraphIR) -> bool:
    return not op.attrs.get("break_post_fuse", False)


def check_input_num(num: int) -> Decision:
    def check(op: OpIR, g: GraphIR) -> bool:
        return len(op.inputs) == num

    check.__name__ = f"check_input_num_{num}"
    return check

