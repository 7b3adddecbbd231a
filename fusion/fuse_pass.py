# fusion/fuse_pass.py
"""
Pattern fusion pass.

Deterministic, priority-ordered, commit-as-you-go fusion.

Algorithm:
- Patterns are taken from `registry.patterns_for(target)` (descending
  priority, ties in registration order)
- For each pattern, anchors are visited in topological order over a
  snapshot of the graph; ops removed by an earlier commit are skipped
- A match is committed immediately, so later attempts see the rewritten
  graph
- A kernel-factory failure leaves the graph untouched; the anchor stays
  available to the lower-priority patterns that follow

Independent graphs share no mutable state and may be fused in parallel.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Union

from graph.ir import GraphIR, OpIR
from graph.graph_utils import toposort_ops
from fusion.config import fusion_enabled
from fusion.errors import KernelCreationError
from fusion.matcher import Matcher
from fusion.registry import EngineKind, FusionRegistry, as_engine_kind, default_registry
from fusion.rewriter import commit

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Output structure
# -----------------------------------------------------------------------------

class AttemptStatus(Enum):
    COMMITTED = "committed"
    NO_MATCH = "no_match"
    COMMIT_FAILED = "commit_failed"


@dataclass
class FusionAttempt:
    pattern: str
    anchor: int
    status: AttemptStatus
    fused_op: Optional[int] = None


@dataclass
class FusionReport:
    """
    Diagnostics of one fusion pass.

    `attempts` lists every (pattern, anchor) tried, in the order tried.
    """
    target: EngineKind
    attempts: List[FusionAttempt] = field(default_factory=list)
    fused: List[OpIR] = field(default_factory=list)

    @property
    def committed(self) -> List[FusionAttempt]:
        return [a for a in self.attempts if a.status is AttemptStatus.COMMITTED]

    def summary(self) -> str:
        failed = sum(a.status is AttemptStatus.COMMIT_FAILED for a in self.attempts)
        return (
            f"FusionReport("
            f"target={self.target.value}, "
            f"attempts={len(self.attempts)}, "
            f"committed={len(self.committed)}, "
            f"commit_failed={failed})"
        )


# -----------------------------------------------------------------------------
# Fusion pass
# -----------------------------------------------------------------------------

def fuse(
    g: GraphIR,
    target: Union[EngineKind, str] = EngineKind.CPU,
    registry: Optional[FusionRegistry] = None,
) -> FusionReport:
    """
    Rewrite `g` in place with every applicable pattern.

    Returns a FusionReport; fusing nothing is a valid outcome.
    """
    target = as_engine_kind(target)
    report = FusionReport(target=target)

    if not fusion_enabled():
        logger.debug("fusion disabled, graph left unchanged")
        return report

    registry = registry if registry is not None else default_registry()
    for pattern in registry.patterns_for(target):
        _run_pattern(g, pattern, report)

    logger.info(report.summary())
    return report


def _run_pattern(g: GraphIR, pattern, report: FusionReport) -> None:
    anchor_kinds = pattern.graph.anchor.kinds
    matcher = Matcher(g)

    for oid in toposort_ops(g):
        op = g.ops.get(oid)
        if op is None or op.kind not in anchor_kinds:
            continue

        m = matcher.match(pattern.graph, oid)
        if m is None:
            report.attempts.append(FusionAttempt(pattern.name, oid, AttemptStatus.NO_MATCH))
            continue

        try:
            fused = commit(m, pattern, g)
        except KernelCreationError as e:
            logger.warning("pattern %s at op %d not committed: %s", pattern.name, oid, e)
            report.attempts.append(FusionAttempt(pattern.name, oid, AttemptStatus.COMMIT_FAILED))
            continue

        report.attempts.append(
            FusionAttempt(pattern.name, oid, AttemptStatus.COMMITTED, fused_op=fused.oid)
        )
        report.fused.append(fused)


def fuse_graphs(
    graphs: Sequence[GraphIR],
    target: Union[EngineKind, str] = EngineKind.CPU,
    registry: Optional[FusionRegistry] = None,
    max_workers: Optional[int] = None,
) -> List[FusionReport]:
    """
    Fuse independent graphs (e.g. partitions of one model) in parallel.

    Each worker owns its graph exclusively; the registry is read-only.
    Reports come back in input order.
    """
    if len({id(g) for g in graphs}) != len(graphs):
        raise ValueError("fuse_graphs needs distinct graph instances")

    registry = registry if registry is not None else default_registry()
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(lambda g: fuse(g, target, registry), graphs))
