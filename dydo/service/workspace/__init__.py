"""
Project and agent workspace scaffolding.
"""

from .scaffold import init_project, write_agent_files

__all__ = [
    "init_project",
    "write_agent_files",
]
