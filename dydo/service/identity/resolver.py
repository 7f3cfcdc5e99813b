"""
Identity Resolver - which agent is this process?

Hook mode: the hook passes a session id, matched against session records.
CLI mode: no session id; walk the process ancestry and match each ancestor
PID against the owner PIDs recorded at claim time.

Any failure to inspect the process table resolves to "no identity".
Stale sessions (owner process gone) are reported, never cleared here.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

import psutil

from ...core.fail_closed import AlreadyClaimed, DydoError
from ..state.agent_store import AgentSession, AgentStateStore

logger = logging.getLogger(__name__)

MAX_ANCESTRY_DEPTH = 16

# Intermediate processes between an agent and the commands it runs
SHELL_NAMES = {
    "sh",
    "bash",
    "zsh",
    "fish",
    "dash",
    "ksh",
    "tcsh",
    "cmd.exe",
    "cmd",
    "pwsh",
    "pwsh.exe",
    "powershell",
    "powershell.exe",
    "env",
    "timeout",
}


class AncestrySource(ABC):
    """Supplies the calling process's ancestor PIDs, nearest first."""

    @abstractmethod
    def ancestors(self) -> List[int]:
        pass

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        pass

    def owner_pid(self) -> Optional[int]:
        """PID to record as a claim's owner. Defaults to the parent."""
        chain = self.ancestors()
        return chain[0] if chain else None


class ProcessAncestrySource(AncestrySource):
    """Real process table via psutil."""

    def __init__(self, pid: Optional[int] = None, max_depth: int = MAX_ANCESTRY_DEPTH):
        self.pid = pid or os.getpid()
        self.max_depth = max_depth

    def _chain(self) -> List[psutil.Process]:
        chain = []
        process = psutil.Process(self.pid)
        for _ in range(self.max_depth):
            parent = process.parent()
            if parent is None:
                break
            chain.append(parent)
            process = parent
        return chain

    def ancestors(self) -> List[int]:
        return [p.pid for p in self._chain()]

    def is_alive(self, pid: int) -> bool:
        return pid > 0 and psutil.pid_exists(pid)

    def owner_pid(self) -> Optional[int]:
        """Nearest ancestor that is not a shell (the agent process itself)."""
        chain = self._chain()
        for process in chain:
            try:
                if process.name().lower() not in SHELL_NAMES:
                    return process.pid
            except psutil.Error:
                continue
        return chain[0].pid if chain else None


class FixedAncestrySource(AncestrySource):
    """Fixed ancestry, for tests and for callers that already know the chain."""

    def __init__(self, pids: Optional[List[int]] = None, alive: Optional[Set[int]] = None):
        self.pids = list(pids or [])
        self.alive = set(self.pids) if alive is None else set(alive)

    def ancestors(self) -> List[int]:
        return list(self.pids)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


class IdentityResolver:
    """
    Maps sessions and processes to agent names, and performs claims.

    Claims rely on AgentStateStore.create_session (create-if-absent), so
    two processes can never both own one agent.
    """

    def __init__(self, store: AgentStateStore, source: Optional[AncestrySource] = None):
        self.store = store
        self.source = source or ProcessAncestrySource()

    def resolve(self, session_id: Optional[str] = None) -> Optional[str]:
        """
        Resolve the caller to an agent name.

        Args:
            session_id: Hook session id, or None for CLI mode

        Returns:
            Agent name, or None if nothing claims this caller
        """
        sessions = self.store.list_sessions()

        if session_id:
            for session in sessions:
                if session.session_id == session_id:
                    return session.agent
            return None

        owners: Dict[int, str] = {
            s.owner_pid: s.agent for s in sessions if s.owner_pid is not None
        }
        if not owners:
            return None

        try:
            ancestors = self.source.ancestors()
        except (psutil.Error, OSError) as e:
            logger.warning(f"Cannot inspect process ancestry: {e}")
            return None

        for pid in ancestors[:MAX_ANCESTRY_DEPTH]:
            if pid in owners:
                return owners[pid]
        return None

    def _owner_pid(self) -> Optional[int]:
        try:
            return self.source.owner_pid()
        except (psutil.Error, OSError) as e:
            logger.warning(f"Cannot determine claim owner process: {e}")
            return None

    def claim(self, agent: str, session_id: Optional[str] = None) -> AgentSession:
        """
        Claim `agent` for a session.

        Re-claiming with the same session id is a no-op. In CLI mode the
        session id is derived from the owner process.

        Raises:
            AlreadyClaimed: another session owns the agent, or this session
                already holds a different agent
        """
        owner_pid = self._owner_pid()
        if not session_id:
            if owner_pid is None:
                raise DydoError(
                    "No session id available and the owning process cannot be determined."
                )
            session_id = f"pid-{owner_pid}"

        held = self.resolve(session_id)
        if held is not None and held.lower() != agent.lower():
            raise AlreadyClaimed(
                f"This session already has agent {held} claimed. Release first."
            )

        existing = self.store.get_session(agent)
        if existing is not None:
            if existing.session_id == session_id:
                return existing
            raise AlreadyClaimed(f"Agent {agent} is already claimed by another session.")

        session = AgentSession(agent=agent, session_id=session_id, owner_pid=owner_pid)
        if not self.store.create_session(session):
            # Lost a race with another claimer
            existing = self.store.get_session(agent)
            if existing is not None and existing.session_id == session_id:
                return existing
            raise AlreadyClaimed(f"Agent {agent} is already claimed by another session.")

        logger.info(f"Claimed {agent} for session {session_id} (owner pid {owner_pid})")
        return session

    def release(self, agent: str) -> bool:
        """Delete the agent's session record. Missing records are not an error."""
        removed = self.store.delete_session(agent)
        if removed:
            logger.info(f"Released {agent}")
        return removed

    def stale_sessions(self) -> List[AgentSession]:
        """Sessions whose owner process no longer exists (advisory)."""
        stale = []
        for session in self.store.list_sessions():
            if session.owner_pid is None:
                continue
            try:
                alive = self.source.is_alive(session.owner_pid)
            except (psutil.Error, OSError):
                continue
            if not alive:
                stale.append(session)
        return stale
