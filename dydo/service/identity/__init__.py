"""
Process identity: session lookup, ancestry walking, claim and release.
"""

from .resolver import (
    IdentityResolver,
    AncestrySource,
    ProcessAncestrySource,
    FixedAncestrySource,
    MAX_ANCESTRY_DEPTH,
)

__all__ = [
    "IdentityResolver",
    "AncestrySource",
    "ProcessAncestrySource",
    "FixedAncestrySource",
    "MAX_ANCESTRY_DEPTH",
]
