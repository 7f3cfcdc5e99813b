"""
Agent lifecycle: claim, release, roles, pool management, consistency check.
"""

from .registry import AgentRegistry, AgentSummary, CheckReport

__all__ = [
    "AgentRegistry",
    "AgentSummary",
    "CheckReport",
]
