# graph/op_registry.py
from enum import Enum, auto
from typing import Dict, FrozenSet


class OpKind(Enum):
    # ---- elementwise binary ----
    ADD = auto()
    SUBTRACT = auto()
    MULTIPLY = auto()
    DIVIDE = auto()
    MAXIMUM = auto()
    MINIMUM = auto()
    BIAS_ADD = auto()

    # ---- elementwise unary ----
    RELU = auto()
    SIGMOID = auto()
    TANH = auto()
    EXP = auto()
    ABS = auto()
    SQRT = auto()

    # ---- pooling ----
    AVG_POOL = auto()
    MAX_POOL = auto()

    # ---- quantization ----
    QUANTIZE = auto()
    DEQUANTIZE = auto()

    # ---- convolution ----
    CONVOLUTION = auto()

    # ---- shape / view ----
    STATIC_RESHAPE = auto()
    STATIC_TRANSPOSE = auto()

    # Produced by the rewriter, tagged with a partition kind
    FUSED = auto()

    # Misc / unknown semantics
    OTHER = auto()


class OpCategory(Enum):
    ELEMENTWISE_BINARY = auto()
    ELEMENTWISE_UNARY = auto()
    POOLING = auto()
    QUANTIZATION = auto()
    CONVOLUTION = auto()
    RESHAPE_VIEW = auto()
    MISC = auto()


# -----------------------------------------------------------------------------
# Op classification
# -----------------------------------------------------------------------------

OP_CATEGORY: Dict[OpKind, OpCategory] = {
    OpKind.ADD: OpCategory.ELEMENTWISE_BINARY,
    OpKind.SUBTRACT: OpCategory.ELEMENTWISE_BINARY,
    OpKind.MULTIPLY: OpCategory.ELEMENTWISE_BINARY,
    OpKind.DIVIDE: OpCategory.ELEMENTWISE_BINARY,
    OpKind.MAXIMUM: OpCategory.ELEMENTWISE_BINARY,
    OpKind.MINIMUM: OpCategory.ELEMENTWISE_BINARY,
    OpKind.BIAS_ADD: OpCategory.ELEMENTWISE_BINARY,

    OpKind.RELU: OpCategory.ELEMENTWISE_UNARY,
    OpKind.SIGMOID: OpCategory.ELEMENTWISE_UNARY,
    OpKind.TANH: OpCategory.ELEMENTWISE_UNARY,
    OpKind.EXP: OpCategory.ELEMENTWISE_UNARY,
    OpKind.ABS: OpCategory.ELEMENTWISE_UNARY,
    OpKind.SQRT: OpCategory.ELEMENTWISE_UNARY,

    OpKind.AVG_POOL: OpCategory.POOLING,
    OpKind.MAX_POOL: OpCategory.POOLING,

    OpKind.QUANTIZE: OpCategory.QUANTIZATION,
    OpKind.DEQUANTIZE: OpCategory.QUANTIZATION,

    OpKind.CONVOLUTION: OpCategory.CONVOLUTION,

    OpKind.STATIC_RESHAPE: OpCategory.RESHAPE_VIEW,
    OpKind.STATIC_TRANSPOSE: OpCategory.RESHAPE_VIEW,
}


# Framework op name -> kind. Names not listed here map to OpKind.OTHER.
OP_NAMES: Dict[str, OpKind] = {
    "add": OpKind.ADD,
    "subtract": OpKind.SUBTRACT,
    "multiply": OpKind.MULTIPLY,
    "divide": OpKind.DIVIDE,
    "maximum": OpKind.MAXIMUM,
    "minimum": OpKind.MINIMUM,
    "bias_add": OpKind.BIAS_ADD,
    "relu": OpKind.RELU,
    "sigmoid": OpKind.SIGMOID,
    "tanh": OpKind.TANH,
    "exp": OpKind.EXP,
    "abs": OpKind.ABS,
    "sqrt": OpKind.SQRT,
    "avg_pool": OpKind.AVG_POOL,
    "max_pool": OpKind.MAX_POOL,
    "quantize": OpKind.QUANTIZE,
    "dequantize": OpKind.DEQUANTIZE,
    "convolution": OpKind.CONVOLUTION,
    "conv2d": OpKind.CONVOLUTION,
    "reshape": OpKind.STATIC_RESHAPE,
    "static_reshape": OpKind.STATIC_RESHAPE,
    "transpose": OpKind.STATIC_TRANSPOSE,
    "static_transpose": OpKind.STATIC_TRANSPOSE,
}


def _kinds_of(category: OpCategory) -> FrozenSet[OpKind]:
    return frozenset(k for k, c in OP_CATEGORY.items() if c is category)


BINARY_KINDS: FrozenSet[OpKind] = _kinds_of(OpCategory.ELEMENTWISE_BINARY) - {OpKind.BIAS_ADD}
UNARY_KINDS: FrozenSet[OpKind] = _kinds_of(OpCategory.ELEMENTWISE_UNARY)
POOLING_KINDS: FrozenSet[OpKind] = _kinds_of(OpCategory.POOLING)
RESHAPE_KINDS: FrozenSet[OpKind] = _kinds_of(OpCategory.RESHAPE_VIEW)

# Binary kinds whose operands may be swapped
COMMUTATIVE_KINDS: FrozenSet[OpKind] = frozenset(
    (OpKind.ADD, OpKind.MULTIPLY, OpKind.MAXIMUM, OpKind.MINIMUM)
)


# -----------------------------------------------------------------------------
# Helper APIs
# -----------------------------------------------------------------------------

def get_op_kind(op: str) -> OpKind:
    return OP_NAMES.get(op, OpKind.OTHER)


def get_op_category(kind: OpKind) -> OpCategory:
    return OP_CATEGORY.get(kind, OpCategory.MISC)
