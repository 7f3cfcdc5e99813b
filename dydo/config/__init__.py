"""
Project configuration (dydo.json) and path resolution.
"""

from .project_config import (
    DydoConfig,
    AgentsConfig,
    GuardSettings,
    ProjectContext,
    find_config_file,
    load_project,
    save_config,
    get_human,
    preset_names,
    name_from_letter,
)

__all__ = [
    "DydoConfig",
    "AgentsConfig",
    "GuardSettings",
    "ProjectContext",
    "find_config_file",
    "load_project",
    "save_config",
    "get_human",
    "preset_names",
    "name_from_letter",
]
