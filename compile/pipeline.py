# compile/pipeline.py
from typing import Optional, Union

from graph.ir import GraphIR
from fusion.fuse_pass import FusionReport, fuse
from fusion.registry import EngineKind, FusionRegistry
from compile.passes.annotate_fuse_break import annotate_fusion_break


def compile_graph(
    g: GraphIR,
    target: Union[EngineKind, str] = EngineKind.CPU,
    registry: Optional[FusionRegistry] = None,
) -> FusionReport:
    """
    Fusion compiler entry point.

    Phases:
      1. Annotate fuse breaks (quantized graphs only)
      2. Pattern fusion for `target`, highest priority first

    The graph is rewritten in place; the returned report lists every
    pattern attempt.
    """

    # ------------------------------------------------------------------
    # 1. Annotation passes
    # ------------------------------------------------------------------
    annotate_fusion_break(g)

    # ------------------------------------------------------------------
    # 2. Fusion
    # ------------------------------------------------------------------
    return fuse(g, target, registry)
