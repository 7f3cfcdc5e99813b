"""
dydo - Project Configuration

Loads dydo.json (found by walking up from the working directory) and
resolves the paths every other component works with.

Environment Variables:
  DYDO_HUMAN      - Human operating this terminal (used for agent assignment)
  DYDO_LOG_LEVEL  - Log level for diagnostics on stderr (default WARNING)
"""

import json
import logging
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.fail_closed import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "dydo.json"
HUMAN_ENV_VAR = "DYDO_HUMAN"
LOG_LEVEL_ENV_VAR = "DYDO_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

PRESET_NAMES = [
    "Adele", "Brian", "Charlie", "Dexter", "Emma", "Frank",
    "Grace", "Henry", "Iris", "Jack", "Kate", "Leo",
    "Mia", "Noah", "Olivia", "Paul", "Quinn", "Rose",
    "Sam", "Tara", "Uma", "Victor", "Wendy", "Xavier",
    "Yara", "Zack",
]

EXTRA_NAMES = [
    "Alfred", "Bella", "Carla", "Dylan", "Ethan", "Fiona",
    "George", "Holly", "Ivan", "Julia", "Kevin", "Luna",
    "Marcus", "Nadia", "Oscar", "Penny", "Quentin", "Rita",
    "Steve", "Tina", "Ulrich", "Vera", "Walter", "Xena",
    "Yuri", "Zara",
]


def preset_names(count: int) -> List[str]:
    """First `count` names from the preset sets."""
    return (PRESET_NAMES + EXTRA_NAMES)[: max(count, 0)]


def name_from_letter(letter: str) -> Optional[str]:
    """Map a single letter to its preset name (A -> Adele)."""
    if len(letter) != 1 or not letter.isalpha():
        return None
    index = ord(letter.upper()) - ord("A")
    if 0 <= index < len(PRESET_NAMES):
        return PRESET_NAMES[index]
    return None


class StructureConfig(BaseModel):
    """Folder layout inside the project."""

    model_config = ConfigDict(populate_by_name=True)

    root: str = "dydo"
    tasks: str = "project/tasks"


class AgentsConfig(BaseModel):
    """Agent pool and human assignments."""

    model_config = ConfigDict(populate_by_name=True)

    pool: List[str] = Field(default_factory=list)
    assignments: Dict[str, List[str]] = Field(default_factory=dict)

    def find_agent(self, name: str) -> Optional[str]:
        """Pool entry matching `name` case-insensitively, in its canonical spelling."""
        for agent in self.pool:
            if agent.lower() == name.lower():
                return agent
        return None

    def human_for_agent(self, agent: str) -> Optional[str]:
        for human, agents in self.assignments.items():
            if any(a.lower() == agent.lower() for a in agents):
                return human
        return None

    def agents_for_human(self, human: str) -> List[str]:
        for key, agents in self.assignments.items():
            if key.lower() == human.lower():
                return agents
        return []

    def is_assigned_to(self, agent: str, human: str) -> bool:
        assigned = self.human_for_agent(agent)
        return assigned is not None and assigned.lower() == human.lower()


class GuardSettings(BaseModel):
    """Guard behaviour toggles."""

    model_config = ConfigDict(populate_by_name=True)

    off_limits_applies_to_reads: bool = Field(
        default=True, alias="offLimitsAppliesToReads"
    )
    audit: bool = True


class DydoConfig(BaseModel):
    """Root of dydo.json."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = 1
    structure: StructureConfig = Field(default_factory=StructureConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    integrations: Dict[str, bool] = Field(default_factory=dict)
    guard: GuardSettings = Field(default_factory=GuardSettings)


@dataclass
class ProjectContext:
    """A loaded project: where it lives and how it is configured."""

    project_root: Path
    config: DydoConfig
    config_path: Optional[Path] = None

    @property
    def dydo_root(self) -> Path:
        return self.project_root / self.config.structure.root

    @property
    def agents_dir(self) -> Path:
        return self.dydo_root / "agents"

    @property
    def off_limits_file(self) -> Path:
        return self.dydo_root / "files-off-limits.md"

    @property
    def audit_file(self) -> Path:
        return self.dydo_root / "_system" / "audit" / "audit.jsonl"

    def agent_workspace(self, agent: str) -> Path:
        return self.agents_dir / agent

    def relative(self, path: str) -> str:
        """
        Project-relative, forward-slash form of `path`.

        Absolute paths inside the project are made relative (prefix compared
        case-insensitively). Paths outside the project keep their absolute form.
        """
        normalized = path.replace("\\", "/")
        root = str(self.project_root).replace("\\", "/").rstrip("/")

        if os.path.isabs(normalized) or (len(normalized) > 1 and normalized[1] == ":"):
            normalized = posixpath.normpath(normalized)
            if normalized.lower() == root.lower():
                return ""
            if normalized.lower().startswith(root.lower() + "/"):
                return normalized[len(root) + 1 :]
            return normalized

        normalized = posixpath.normpath(normalized)
        return "" if normalized == "." else normalized


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """Find dydo.json by walking up the directory tree."""
    current = (start or Path.cwd()).resolve()
    for directory in [current, *current.parents]:
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def load_config(config_path: Path) -> DydoConfig:
    """
    Load and validate one dydo.json file.

    Raises:
        ConfigError: unreadable file, invalid JSON or schema mismatch
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return DydoConfig.model_validate(data)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Invalid {config_path}: {e}") from e


def load_project(start: Optional[Path] = None, require: bool = False) -> ProjectContext:
    """
    Locate and load the project around `start` (default: cwd).

    Without a dydo.json the project root is `start` and the pool is empty,
    unless `require` is set.

    Raises:
        ConfigError: config required but missing, or present but invalid
    """
    config_path = find_config_file(start)
    if config_path is None:
        if require:
            raise ConfigError(
                f"No {CONFIG_FILE_NAME} found. Run 'dydo init <human>' first."
            )
        logger.debug(f"No {CONFIG_FILE_NAME} found, using defaults")
        return ProjectContext(project_root=(start or Path.cwd()).resolve(), config=DydoConfig())

    return ProjectContext(
        project_root=config_path.parent,
        config=load_config(config_path),
        config_path=config_path,
    )


def save_config(context: ProjectContext) -> Path:
    """Write the context's config back to dydo.json."""
    path = context.config_path or context.project_root / CONFIG_FILE_NAME
    with open(path, "w", encoding="utf-8") as f:
        json.dump(context.config.model_dump(by_alias=True), f, indent=2)
        f.write("\n")
    context.config_path = path
    logger.info(f"Saved configuration to {path}")
    return path


def get_human() -> Optional[str]:
    """Human named by DYDO_HUMAN, if set."""
    value = os.environ.get(HUMAN_ENV_VAR, "").strip()
    return value or None
