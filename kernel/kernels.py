# kernel/kernels.py
"""
Kernel handles bound to fused ops.

A pattern's kernel factory returns one of these at commit time. Kernels
execute the fused op's original subgraph in a single private environment,
so intermediates never leave the kernel. Structural requirements are
checked on first execution and raise KernelError.
"""

from typing import List, Sequence

import mlx.core as mx

from graph.ir import OpIR
from graph.op_registry import OpKind, POOLING_KINDS
from kernel.execute_ref import run_subgraph


class KernelError(Exception):
    """Raised when a kernel cannot run the fused op it is bound to."""
    pass


class Kernel:
    name = "kernel"

    def __init__(self):
        self._checked = False

    def check(self, fused_op: OpIR) -> None:
        if not fused_op.subgraph:
            raise KernelError(f"{self.name}: fused op {fused_op.oid} has an empty subgraph")

    def execute(self, fused_op: OpIR, inputs: Sequence[mx.array]) -> List[mx.array]:
        if not self._checked:
            self.check(fused_op)
            self._checked = True
        if len(inputs) != len(fused_op.inputs):
            raise KernelError(
                f"{self.name}: expected {len(fused_op.inputs)} inputs, got {len(inputs)}"
            )
        env = dict(zip(fused_op.inputs, inputs))
        return run_subgraph(fused_op.subgraph, env, fused_op.outputs)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FloatPoolingKernel(Kernel):
    name = "float_pooling_fwd"

    def check(self, fused_op: OpIR) -> None:
        super().check(fused_op)
        if fused_op.subgraph[0].kind not in POOLING_KINDS:
            raise KernelError(f"{self.name}: subgraph must start with a pooling op")


class QuantizedPoolingKernel(Kernel):
    name = "quantized_pooling"

    def check(self, fused_op: OpIR) -> None:
        super().check(fused_op)
        kinds = [op.kind for op in fused_op.subgraph]
        if kinds[0] is not OpKind.DEQUANTIZE or kinds[-1] is not OpKind.QUANTIZE:
            raise KernelError(f"{self.name}: subgraph must run Dequantize ... Quantize, got {kinds}")
        if not any(k in POOLING_KINDS for k in kinds):
            raise KernelError(f"{self.name}: subgraph has no pooling op")


class ConvolutionKernel(Kernel):
    name = "convolution_fwd"

    def check(self, fused_op: OpIR) -> None:
        super().check(fused_op)
        if fused_op.subgraph[0].kind is not OpKind.CONVOLUTION:
            raise KernelError(f"{self.name}: subgraph must start with a convolution")
