# kernel/execute_ref.py
"""
Reference executor for host graph ops.

This is:
- Slow
- Simple
- Correct
- Deterministic

It exists for the fallback runtime and for validating fused kernels.
Layouts: activations NHWC, convolution weights OHWI.
"""

from typing import Callable, Dict, List, Sequence

import mlx.core as mx
import mlx.nn as nn

from graph.ir import OpIR
from graph.op_registry import OpKind


def to_mx_dtype(dtype) -> mx.Dtype:
    if isinstance(dtype, mx.Dtype):
        return dtype
    return getattr(mx, str(dtype))


def _qparams(op: OpIR, x: mx.array):
    """Scales / zero points shaped to broadcast against x."""
    scales = mx.array(op.attrs.get("scales", [1.0]), dtype=mx.float32)
    zps = mx.array(op.attrs.get("zps", [0]), dtype=mx.float32)
    if op.attrs.get("qtype", "per_tensor") == "per_channel":
        axis = op.attrs.get("axis", -1) % x.ndim
        shape = [1] * x.ndim
        shape[axis] = -1
        scales = scales.reshape(shape)
        zps = zps.reshape(shape)
    return scales, zps


def _quantize(op: OpIR, x: mx.array) -> mx.array:
    dtype = to_mx_dtype(op.attrs.get("out_dtype", "uint8"))
    qmin, qmax = (0, 255) if dtype == mx.uint8 else (-128, 127)
    scales, zps = _qparams(op, x)
    q = mx.round(x / scales) + zps
    return mx.clip(q, qmin, qmax).astype(dtype)


def _dequantize(op: OpIR, x: mx.array) -> mx.array:
    scales, zps = _qparams(op, x)
    return (x.astype(mx.float32) - zps) * scales


def _pool(op: OpIR, x: mx.array) -> mx.array:
    kernel = tuple(op.attrs.get("kernel", (2, 2)))
    strides = tuple(op.attrs.get("strides", kernel))
    padding = tuple(op.attrs.get("pads", (0, 0)))
    cls = nn.MaxPool2d if op.kind is OpKind.MAX_POOL else nn.AvgPool2d
    return cls(kernel, stride=strides, padding=padding)(x)


def _convolution(op: OpIR, x: mx.array, w: mx.array, *bias: mx.array) -> mx.array:
    y = mx.conv2d(
        x, w,
        stride=tuple(op.attrs.get("strides", (1, 1))),
        padding=tuple(op.attrs.get("pads", (0, 0))),
    )
    if bias:
        y = y + bias[0]
    return y


_BINARY: Dict[OpKind, Callable] = {
    OpKind.ADD: mx.add,
    OpKind.SUBTRACT: mx.subtract,
    OpKind.MULTIPLY: mx.multiply,
    OpKind.DIVIDE: mx.divide,
    OpKind.MAXIMUM: mx.maximum,
    OpKind.MINIMUM: mx.minimum,
    OpKind.BIAS_ADD: mx.add,
}

_UNARY: Dict[OpKind, Callable] = {
    OpKind.RELU: lambda x: mx.maximum(x, 0),
    OpKind.SIGMOID: mx.sigmoid,
    OpKind.TANH: mx.tanh,
    OpKind.EXP: mx.exp,
    OpKind.ABS: mx.abs,
    OpKind.SQRT: mx.sqrt,
}


def execute_op(op: OpIR, args: Sequence[mx.array]) -> List[mx.array]:
    """
    Execute a single (unfused) op. Returns one array per op output.
    """
    kind = op.kind
    if kind in _BINARY:
        out = _BINARY[kind](*args)
    elif kind in _UNARY:
        out = _UNARY[kind](*args)
    elif kind in (OpKind.AVG_POOL, OpKind.MAX_POOL):
        out = _pool(op, *args)
    elif kind is OpKind.QUANTIZE:
        out = _quantize(op, *args)
    elif kind is OpKind.DEQUANTIZE:
        out = _dequantize(op, *args)
    elif kind is OpKind.CONVOLUTION:
        out = _convolution(op, *args)
    elif kind is OpKind.STATIC_RESHAPE:
        out = mx.reshape(args[0], tuple(op.attrs["shape"]))
    elif kind is OpKind.STATIC_TRANSPOSE:
        out = mx.transpose(args[0], tuple(op.attrs["order"]))
    else:
        raise NotImplementedError(f"No reference implementation for {kind.name}")

    if isinstance(out, (tuple, list)):
        return list(out)
    return [out]


def run_subgraph(
    ops: Sequence[OpIR],
    inputs: Dict[int, mx.array],
    outputs: Sequence[int],
) -> List[mx.array]:
    """
    Execute `ops` (topologically ordered) in one private environment.

    Args:
        ops: ops to run
        inputs: map vid -> mx.array for every value read from outside
        outputs: vids to return, in order
    """
    env = dict(inputs)
    for op in ops:
        args = [env[vid] for vid in op.inputs]
        results = execute_op(op, args)
        assert len(results) == len(op.outputs), (
            f"Op {op.kind.name} produced {len(results)} outputs, expected {len(op.outputs)}"
        )
        for vid, val in zip(op.outputs, results):
            env[vid] = val
    return [env[vid] for vid in outputs]
