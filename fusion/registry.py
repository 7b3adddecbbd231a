# fusion/registry.py
"""
Fusion pattern registry.

Patterns are registered once (process start-up) and never removed.
`patterns_for(target)` ranks them by descending priority; ties keep
registration order so fusion decisions are reproducible run to run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from fusion.errors import PatternConstructionError
from fusion.pattern import PatternGraph

logger = logging.getLogger(__name__)


class EngineKind(Enum):
    CPU = "host-cpu"
    GPU = "accelerator"


class PartitionKind(Enum):
    POOLING_POST_OPS = "pooling_post_ops"
    QUANTIZED_POOLING_POST_OPS = "quantized_pooling_post_ops"
    CONVOLUTION_POST_OPS = "convolution_post_ops"
    MISC_POST_OPS = "misc_post_ops"


PatternBuilder = Callable[[PatternGraph], None]
KernelFactory = Callable[[], Any]


@dataclass
class FusionPattern:
    """
    Single registry entry.

    `builder` populates an empty PatternGraph; `kernel_factory` is called
    once per committed match and returns the kernel bound to the fused op.
    `engine_kind=None` means the pattern applies to every target.
    """
    name: str
    builder: PatternBuilder
    kernel_factory: KernelFactory
    priority: float = 0.0
    kind: PartitionKind = PartitionKind.MISC_POST_OPS
    engine_kind: Optional[EngineKind] = None
    graph: Optional[PatternGraph] = field(default=None, repr=False)

    def applies_to(self, target: EngineKind) -> bool:
        return self.engine_kind is None or self.engine_kind is target

    def build(self) -> PatternGraph:
        pg = PatternGraph(self.name)
        self.builder(pg)
        return pg.validate()


def as_engine_kind(target: Union[EngineKind, str]) -> EngineKind:
    if isinstance(target, EngineKind):
        return target
    return EngineKind(target)


class FusionRegistry:
    """Ordered fusion registry."""

    def __init__(self, patterns: Optional[List[FusionPattern]] = None) -> None:
        self._patterns: List[FusionPattern] = []
        self._by_name: Dict[str, FusionPattern] = {}
        for p in patterns or ():
            self.register(p)

    def register(self, pattern: FusionPattern) -> FusionPattern:
        """
        Build and validate the pattern graph, then add the entry.

        Raises:
            PatternConstructionError: malformed pattern or duplicate name
        """
        if pattern.name in self._by_name:
            raise PatternConstructionError(f"Pattern {pattern.name!r} registered twice")
        if not callable(pattern.kernel_factory):
            raise PatternConstructionError(f"Pattern {pattern.name!r} has no kernel factory")

        pattern.graph = pattern.build()
        self._patterns.append(pattern)
        self._by_name[pattern.name] = pattern
        logger.debug(
            "registered pattern %s (priority=%s, engine=%s, kind=%s)",
            pattern.name, pattern.priority,
            pattern.engine_kind.value if pattern.engine_kind else "any",
            pattern.kind.value,
        )
        return pattern

    def register_pattern(
        self,
        name: str,
        builder: PatternBuilder,
        kernel_factory: KernelFactory,
        priority: float = 0.0,
        kind: PartitionKind = PartitionKind.MISC_POST_OPS,
        engine_kind: Optional[EngineKind] = None,
    ) -> FusionPattern:
        return self.register(
            FusionPattern(
                name=name,
                builder=builder,
                kernel_factory=kernel_factory,
                priority=priority,
                kind=kind,
                engine_kind=engine_kind,
            )
        )

    def patterns(self) -> List[FusionPattern]:
        return list(self._patterns)

    def patterns_for(self, target: Union[EngineKind, str]) -> List[FusionPattern]:
        target = as_engine_kind(target)
        ranked = [
            (i, p) for i, p in enumerate(self._patterns) if p.applies_to(target)
        ]
        ranked.sort(key=lambda ip: (-ip[1].priority, ip[0]))
        return [p for _, p in ranked]

    def get(self, name: str) -> FusionPattern:
        return self._by_name[name]

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name


# -----------------------------------------------------------------------------
# Process-wide default registry
# -----------------------------------------------------------------------------

_DEFAULT_REGISTRY: Optional[FusionRegistry] = None


def default_registry() -> FusionRegistry:
    """Registry holding the built-in templates (built on first use)."""
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        from fusion.templates import register_default_templates

        registry = FusionRegistry()
        register_default_templates(registry)
        _DEFAULT_REGISTRY = registry
    return _DEFAULT_REGISTRY
