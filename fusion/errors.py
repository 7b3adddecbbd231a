# fusion/errors.py
"""
Exceptions raised by the fusion engine.

A pattern that does not apply is never an error: the matcher returns None.
These types cover programmer errors and commit failures only.
"""


class FusionError(Exception):
    """Base class for fusion engine errors."""
    pass


class PatternConstructionError(FusionError, ValueError):
    """Raised when a pattern graph is malformed (fatal at registration)."""
    pass


class KernelCreationError(FusionError):
    """Raised when a kernel factory cannot produce a kernel; the graph is untouched."""
    pass


class FusionInvariantError(FusionError):
    """Raised on a commit that would break graph consistency (e.g. overlapping matches)."""
    pass
