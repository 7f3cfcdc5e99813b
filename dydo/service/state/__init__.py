"""
Agent state and session persistence.
"""

from .agent_store import AgentStateStore, AgentState, AgentSession, parse_frontmatter

__all__ = [
    "AgentStateStore",
    "AgentState",
    "AgentSession",
    "parse_frontmatter",
]
