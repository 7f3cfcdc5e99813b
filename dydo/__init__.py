"""
dydo - Multi-agent identity and file guard

Lets several AI coding agents share one repository. Each agent process
claims a named identity from a pool, takes a role, and calls the guard
before every file operation.

Architecture:
- Identity: session records plus OS process ancestry
- Policy: off-limits globs, role path tables, mandatory reading
- Guard: one ordered pipeline answering allow or block

Key Properties:
- Fail-closed: any error or missing identity blocks
- Atomic claims: one live session per agent
- Tamper-evident: guard decisions land in a hash-chained audit log
"""

__version__ = "0.1.0"
