"""
Agent State Store - per-agent records on disk

Each agent owns a workspace under dydo/agents/<Name>/ holding:
- state.md: YAML frontmatter with role, task, paths, history, unread reads
- .session: JSON claim record, created atomically (O_CREAT | O_EXCL)
- .pending-session: session id handed over by the guard hook for a claim

The store is the only component that touches these files. Every read goes
to disk; nothing is cached between calls.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

STATE_FILE = "state.md"
SESSION_FILE = ".session"
PENDING_SESSION_FILE = ".pending-session"
SESSION_CONTEXT_FILE = ".session-context"


@dataclass
class AgentState:
    """Persistent record for one pool agent."""

    name: str
    role: Optional[str] = None
    task: Optional[str] = None
    assigned_human: Optional[str] = None
    since: Optional[str] = None  # ISO timestamp the current role was set
    allowed_paths: List[str] = field(default_factory=list)
    denied_paths: List[str] = field(default_factory=list)
    task_role_history: Dict[str, List[str]] = field(default_factory=dict)
    unread_must_reads: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """Derived from role, never stored independently."""
        return "working" if self.role else "free"

    def clear_role(self):
        """Drop everything tied to the current role. History is kept."""
        self.role = None
        self.task = None
        self.since = None
        self.allowed_paths = []
        self.denied_paths = []
        self.unread_must_reads = []

    def to_frontmatter(self) -> Dict[str, Any]:
        return {
            "agent": self.name,
            "role": self.role,
            "task": self.task,
            "status": self.status,
            "assigned": self.assigned_human,
            "started": self.since,
            "allowed-paths": list(self.allowed_paths),
            "denied-paths": list(self.denied_paths),
            "task-role-history": {k: list(v) for k, v in self.task_role_history.items()},
            "unread-must-reads": list(self.unread_must_reads),
        }

    @classmethod
    def from_frontmatter(cls, name: str, data: Dict[str, Any]) -> "AgentState":
        history = data.get("task-role-history") or {}
        return cls(
            name=name,
            role=data.get("role") or None,
            task=_optional_str(data.get("task")),
            assigned_human=_optional_str(data.get("assigned")),
            since=_optional_str(data.get("started")),
            allowed_paths=[str(p) for p in data.get("allowed-paths") or []],
            denied_paths=[str(p) for p in data.get("denied-paths") or []],
            task_role_history={
                str(task): [str(r) for r in roles or []] for task, roles in history.items()
            },
            unread_must_reads=[str(p) for p in data.get("unread-must-reads") or []],
        )


@dataclass
class AgentSession:
    """Claim record tying an agent to one session."""

    agent: str
    session_id: str
    owner_pid: Optional[int] = None
    claimed: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "sessionId": self.session_id,
            "ownerPid": self.owner_pid,
            "claimed": self.claimed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentSession":
        return cls(
            agent=data["agent"],
            session_id=data["sessionId"],
            owner_pid=data.get("ownerPid"),
            claimed=data.get("claimed", ""),
        )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class AgentStateStore:
    """
    Loads and replaces agent records under one agents directory.

    Writes are atomic per file (temp file + os.replace). Claims use
    create-if-absent so two processes can never both own an agent.
    """

    def __init__(self, agents_dir: Path):
        self.agents_dir = Path(agents_dir)

    def workspace(self, name: str) -> Path:
        return self.agents_dir / name

    # State -----------------------------------------------------------------

    def load(self, name: str) -> AgentState:
        """Load an agent's state, or a fresh default record if none exists."""
        path = self.workspace(name) / STATE_FILE
        if not path.exists():
            return AgentState(name=name)

        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        data = parse_frontmatter(content) or {}
        return AgentState.from_frontmatter(name, data)

    def save(self, state: AgentState):
        """Replace the agent's state.md atomically."""
        workspace = self.workspace(state.name)
        workspace.mkdir(parents=True, exist_ok=True)

        frontmatter = yaml.safe_dump(
            state.to_frontmatter(), default_flow_style=False, sort_keys=False
        )
        body = f"# {state.name} - Session State\n\n"
        if state.role:
            body += f"Working as **{state.role}**"
            body += f" on task `{state.task}`.\n" if state.task else ".\n"
        else:
            body += "Free.\n"

        _atomic_write(workspace / STATE_FILE, f"---\n{frontmatter}---\n\n{body}")
        logger.debug(f"Saved state for {state.name} (role={state.role})")

    def exists(self, name: str) -> bool:
        return (self.workspace(name) / STATE_FILE).exists()

    def remove_workspace(self, name: str):
        """Delete the agent's whole workspace directory."""
        workspace = self.workspace(name)
        if workspace.exists():
            shutil.rmtree(workspace)
            logger.info(f"Removed workspace for {name}")

    # Sessions --------------------------------------------------------------

    def get_session(self, name: str) -> Optional[AgentSession]:
        path = self.workspace(name) / SESSION_FILE
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return AgentSession.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable session record for {name}: {e}")
            return None

    def create_session(self, session: AgentSession) -> bool:
        """
        Create the session record only if none exists.

        Returns:
            True if created, False if a record already existed
        """
        workspace = self.workspace(session.agent)
        workspace.mkdir(parents=True, exist_ok=True)
        path = workspace / SESSION_FILE
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f, indent=2)
        return True

    def delete_session(self, name: str) -> bool:
        path = self.workspace(name) / SESSION_FILE
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def list_sessions(self) -> List[AgentSession]:
        """Every readable session record under the agents directory."""
        if not self.agents_dir.exists():
            return []
        sessions = []
        for workspace in sorted(self.agents_dir.iterdir()):
            if workspace.is_dir() and (workspace / SESSION_FILE).exists():
                session = self.get_session(workspace.name)
                if session is not None:
                    sessions.append(session)
        return sessions

    # Hook hand-off ---------------------------------------------------------

    def store_pending_session(self, name: str, session_id: str):
        """Remember the hook's session id for an upcoming claim of `name`."""
        workspace = self.workspace(name)
        workspace.mkdir(parents=True, exist_ok=True)
        _atomic_write(workspace / PENDING_SESSION_FILE, session_id)

    def take_pending_session(self, name: str) -> Optional[str]:
        """Read and clear the pending session id for `name`."""
        path = self.workspace(name) / PENDING_SESSION_FILE
        if not path.exists():
            return None
        session_id = path.read_text(encoding="utf-8").strip()
        path.unlink()
        return session_id or None

    def store_session_context(self, session_id: str):
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.agents_dir / SESSION_CONTEXT_FILE, session_id)

    def get_session_context(self) -> Optional[str]:
        path = self.agents_dir / SESSION_CONTEXT_FILE
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8").strip() or None


def parse_frontmatter(content: str) -> Optional[Dict[str, Any]]:
    """
    Parse a leading YAML frontmatter block.

    Returns:
        The frontmatter mapping, or None when the document has none
    """
    if not content.startswith("---"):
        return None
    lines = content.splitlines()
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            try:
                data = yaml.safe_load("\n".join(lines[1:index]))
            except yaml.YAMLError as e:
                logger.warning(f"Invalid frontmatter: {e}")
                return None
            return data if isinstance(data, dict) else None
    return None


def _atomic_write(path: Path, content: str):
    """Write via a temp file in the same directory, then os.replace."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
