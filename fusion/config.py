# fusion/config.py
"""
Fusion control flags.

Used for:
- global enable / disable of the fusion pass
- debug sessions (verify the graph after every commit)
- tuning the default templates
"""

from dataclasses import dataclass, replace
from typing import Optional

# Upper bound on post-op chains in the default templates
MAX_REPETITION: int = 4


@dataclass(frozen=True)
class FusionConfig:
    max_repetition: Optional[int] = MAX_REPETITION
    verify_graph: bool = False
    mixed_fusion: bool = True


# Global switch
_FUSION_ENABLED: bool = True

_CONFIG: FusionConfig = FusionConfig()


def enable_fusion():
    global _FUSION_ENABLED
    _FUSION_ENABLED = True


def disable_fusion():
    global _FUSION_ENABLED
    _FUSION_ENABLED = False


def fusion_enabled() -> bool:
    return _FUSION_ENABLED


def get_config() -> FusionConfig:
    return _CONFIG


def set_config(config: Optional[FusionConfig] = None, **overrides) -> FusionConfig:
    """
    Replace the process-wide config. Keyword overrides apply on top of
    `config` (or the current config when omitted).
    """
    global _CONFIG
    base = config if config is not None else _CONFIG
    _CONFIG = replace(base, **overrides)
    return _CONFIG
