"""
Project scaffold - `dydo init` and the per-agent documentation files

Layout created under the project root:

    dydo.json
    dydo/index.md
    dydo/files-off-limits.md
    dydo/understand/about.md            (must-read)
    dydo/understand/architecture.md     (must-read)
    dydo/guides/coding-standards.md     (must-read)
    dydo/project/tasks/
    dydo/agents/<Name>/workflow.md
    dydo/agents/<Name>/modes/<role>.md  (one per role)
    dydo/agents/<Name>/state.md

Existing documentation files are never overwritten.
"""

import logging
from pathlib import Path
from typing import Dict, List

from ...config.project_config import (
    CONFIG_FILE_NAME,
    AgentsConfig,
    DydoConfig,
    ProjectContext,
    preset_names,
    save_config,
)
from ...core.fail_closed import ConfigError
from ..policy.roles import ROLE_RESTRICTIONS, ROLES
from ..state.agent_store import AgentState, AgentStateStore

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COUNT = 3

DEFAULT_OFF_LIMITS = [
    ".env",
    ".env.*",
    "**/secrets.json",
    "**/*.pem",
    "**/*.key",
    "dydo/agents/*/state.md",
    "dydo/agents/*/.session",
]

# Must-read documents, relative to the dydo root
ABOUT_DOC = "understand/about.md"
ARCHITECTURE_DOC = "understand/architecture.md"
CODING_STANDARDS_DOC = "guides/coding-standards.md"

ROLE_READING: Dict[str, List[str]] = {
    "code-writer": [ABOUT_DOC, ARCHITECTURE_DOC, CODING_STANDARDS_DOC],
    "reviewer": [ABOUT_DOC, ARCHITECTURE_DOC, CODING_STANDARDS_DOC],
    "tester": [ABOUT_DOC, ARCHITECTURE_DOC, CODING_STANDARDS_DOC],
    "co-thinker": [ABOUT_DOC, ARCHITECTURE_DOC],
    "docs-writer": [ABOUT_DOC, ARCHITECTURE_DOC],
    "interviewer": [ABOUT_DOC],
    "planner": [ABOUT_DOC, ARCHITECTURE_DOC],
}

ROLE_PURPOSE = {
    "code-writer": "Implement the task in src/ and tests/.",
    "reviewer": "Review another agent's work. Write findings in your workspace only.",
    "co-thinker": "Think a problem through with the human and record decisions.",
    "docs-writer": "Keep the documentation in sync with the code.",
    "interviewer": "Gather requirements from the human. Take notes in your workspace.",
    "planner": "Break work into tasks under project/tasks.",
    "tester": "Write and run tests; record pitfalls you find.",
}

OFF_LIMITS_TEMPLATE = """# Files Off-Limits

Paths listed here are blocked for every agent, whatever its role.
Patterns are globs relative to the project root (`*`, `**`, `?`).

## Off-Limits

```
{patterns}
```

## Whitelist

Exceptions to the patterns above.

```
```
"""

INDEX_TEMPLATE = """# {project}

Documentation root for agents working on this project.

- [About](understand/about.md)
- [Architecture](understand/architecture.md)
- [Coding Standards](guides/coding-standards.md)
"""

MUST_READ_TEMPLATE = """---
must-read: true
---

# {title}

{body}
"""

WORKFLOW_TEMPLATE = """# {agent} - Workflow

You are **{agent}**. Before anything else:

1. Claim your identity: `dydo agent claim {agent}`
2. Take a role: `dydo agent role <role> --task <task>`
3. Read your mode file and everything it lists as required reading.
   Writes stay blocked until you have.
4. When done: `dydo agent release`

## Modes

{modes}
"""

MODE_TEMPLATE = """# {agent} - {role}

{purpose}

{restriction}

## Required reading

{links}

Back to [workflow](../workflow.md).
"""


def _write_if_missing(path: Path, content: str) -> bool:
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return True


def write_agent_files(context: ProjectContext, agent: str) -> List[Path]:
    """Create an agent's workflow and mode files. Returns the files written."""
    workspace = context.agent_workspace(agent)
    written = []

    modes = "\n".join(f"- [{role}](modes/{role}.md)" for role in ROLES)
    workflow = workspace / "workflow.md"
    if _write_if_missing(workflow, WORKFLOW_TEMPLATE.format(agent=agent, modes=modes)):
        written.append(workflow)

    for role in ROLES:
        # modes/<role>.md sits three levels below the dydo root
        links = "\n".join(
            f"- [{doc.rsplit('/', 1)[-1][:-3]}](../../../{doc})" for doc in ROLE_READING[role]
        )
        mode_file = workspace / "modes" / f"{role}.md"
        content = MODE_TEMPLATE.format(
            agent=agent,
            role=role,
            purpose=ROLE_PURPOSE[role],
            restriction=ROLE_RESTRICTIONS[role],
            links=links,
        )
        if _write_if_missing(mode_file, content):
            written.append(mode_file)

    logger.debug(f"Wrote {len(written)} file(s) for agent {agent}")
    return written


def init_project(root: Path, human: str, agent_count: int = DEFAULT_AGENT_COUNT) -> ProjectContext:
    """
    Initialize a dydo project at `root`.

    Args:
        root: Project root directory
        human: Human the initial agents are assigned to
        agent_count: Number of preset agents to create

    Raises:
        ConfigError: project already initialized or bad arguments
    """
    root = Path(root).resolve()
    if (root / CONFIG_FILE_NAME).exists():
        raise ConfigError(f"{root / CONFIG_FILE_NAME} already exists.")
    if not human or not human.strip():
        raise ConfigError("A human name is required.")
    if agent_count < 1:
        raise ConfigError("At least one agent is required.")

    human = human.strip()
    agents = preset_names(agent_count)
    config = DydoConfig(agents=AgentsConfig(pool=agents, assignments={human: list(agents)}))
    context = ProjectContext(project_root=root, config=config)

    dydo_root = context.dydo_root
    (dydo_root / config.structure.tasks).mkdir(parents=True, exist_ok=True)

    patterns = [p.replace("dydo/", f"{config.structure.root}/", 1) for p in DEFAULT_OFF_LIMITS]
    _write_if_missing(
        context.off_limits_file, OFF_LIMITS_TEMPLATE.format(patterns="\n".join(patterns))
    )
    _write_if_missing(dydo_root / "index.md", INDEX_TEMPLATE.format(project=root.name))
    _write_if_missing(
        dydo_root / ABOUT_DOC,
        MUST_READ_TEMPLATE.format(title="About", body="What this project is and who it is for."),
    )
    _write_if_missing(
        dydo_root / ARCHITECTURE_DOC,
        MUST_READ_TEMPLATE.format(
            title="Architecture", body="Main components and how they fit together."
        ),
    )
    _write_if_missing(
        dydo_root / CODING_STANDARDS_DOC,
        MUST_READ_TEMPLATE.format(
            title="Coding Standards", body="Conventions every change must follow."
        ),
    )

    store = AgentStateStore(context.agents_dir)
    for agent in agents:
        write_agent_files(context, agent)
        store.save(AgentState(name=agent, assigned_human=human))

    save_config(context)
    logger.info(f"Initialized dydo project at {root} with {len(agents)} agent(s) for {human}")
    return context
