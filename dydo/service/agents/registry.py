"""
Agent Registry - agent lifecycle on top of the store, resolver and policies

Operations:
- claim: take an agent from the pool (by name, initial, or "auto")
- release: give it back, clearing role, task and required reading
- set_role: take a role for a task (self-review prevention, must-reads)
- create_agent / remove_agent: grow or shrink the pool
- check: consistency report (stale sessions, off-limits issues, audit chain)

Session ids for claim come from, in order: an explicit --session, the
pending session the guard hook stored for this agent, and finally process
ancestry. Other lifecycle commands use an explicit --session, then the
session context the hook stored for dydo commands, then process ancestry.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from ...config.project_config import ProjectContext, get_human, name_from_letter, save_config
from ...core.fail_closed import AgentNotFound, DydoError, InvalidRole, RoleNotPermitted
from ..audit.merkle_chain import ChainVerification, MerkleAuditLog
from ..identity.resolver import AncestrySource, IdentityResolver
from ..policy.must_read import MustReadGate
from ..policy.off_limits import OffLimitsIssue, OffLimitsPolicy
from ..policy.roles import ROLES, RoleAccessPolicy, can_take_role
from ..state.agent_store import AgentSession, AgentState, AgentStateStore
from ..workspace.scaffold import write_agent_files

logger = logging.getLogger(__name__)

AGENT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")


@dataclass
class AgentSummary:
    """One row of `dydo agent list`."""

    name: str
    status: str
    role: Optional[str]
    task: Optional[str]
    human: Optional[str]
    session_id: Optional[str]
    unread: int = 0


@dataclass
class CheckReport:
    """Result of the consistency check. Advisory only."""

    stale_sessions: List[AgentSession] = field(default_factory=list)
    unknown_sessions: List[AgentSession] = field(default_factory=list)
    off_limits_issues: List[OffLimitsIssue] = field(default_factory=list)
    audit: Optional[ChainVerification] = None

    @property
    def has_errors(self) -> bool:
        if self.audit is not None and not self.audit.valid:
            return True
        return any(issue.severity == "error" for issue in self.off_limits_issues)


class AgentRegistry:
    """Agent lifecycle for one project."""

    def __init__(
        self,
        context: ProjectContext,
        store: Optional[AgentStateStore] = None,
        resolver: Optional[IdentityResolver] = None,
        audit: Optional[MerkleAuditLog] = None,
    ):
        self.context = context
        self.store = store or AgentStateStore(context.agents_dir)
        self.resolver = resolver or IdentityResolver(self.store)
        self.audit = audit
        self.roles = RoleAccessPolicy(context.config.structure.root)
        self.must_read = MustReadGate(context, self.store)

    @classmethod
    def from_context(
        cls, context: ProjectContext, source: Optional[AncestrySource] = None
    ) -> "AgentRegistry":
        store = AgentStateStore(context.agents_dir)
        audit = MerkleAuditLog(context.audit_file) if context.config.guard.audit else None
        return cls(context, store, IdentityResolver(store, source), audit)

    @property
    def pool(self) -> List[str]:
        return self.context.config.agents.pool

    # Lookup ----------------------------------------------------------------

    def resolve_agent_name(self, name: str, human: Optional[str] = None) -> str:
        """
        Turn a user-supplied name into a pool agent.

        Accepts any capitalisation, a single preset initial (A -> Adele),
        or "auto" for the first free agent assigned to `human`.

        Raises:
            AgentNotFound: no matching or free agent
        """
        agents = self.context.config.agents

        if name.lower() == "auto":
            if not human:
                raise DydoError("Claiming 'auto' requires DYDO_HUMAN to be set.")
            for agent in agents.agents_for_human(human):
                if self.store.get_session(agent) is None:
                    return agents.find_agent(agent) or agent
            raise AgentNotFound(f"No free agents assigned to human '{human}'.")

        if len(name) == 1:
            letter_name = name_from_letter(name)
            if letter_name and agents.find_agent(letter_name):
                return agents.find_agent(letter_name)

        found = agents.find_agent(name)
        if found is None:
            raise AgentNotFound(f"Invalid agent name: {name}")
        return found

    def current_session(self, explicit: Optional[str] = None) -> Optional[str]:
        """Session id for a non-claim lifecycle command (None means use ancestry)."""
        return explicit or self.store.get_session_context()

    def current_agent(self, session_id: Optional[str] = None) -> Optional[AgentState]:
        """State of the agent this session (or process) has claimed."""
        agent = self.resolver.resolve(session_id)
        if agent is None:
            return None
        return self.store.load(agent)

    def _require_agent(self, session_id: Optional[str]) -> AgentState:
        state = self.current_agent(session_id)
        if state is None:
            raise DydoError(
                "No agent identity assigned to this session. Run 'dydo agent claim auto' first."
            )
        return state

    # Lifecycle -------------------------------------------------------------

    def claim(
        self, name: str, session_id: Optional[str] = None, human: Optional[str] = None
    ) -> AgentState:
        """
        Claim a pool agent.

        Raises:
            AgentNotFound: unknown name or no free agent
            AlreadyClaimed: agent owned elsewhere, or this session holds another
            DydoError: DYDO_HUMAN unset or agent assigned to another human
        """
        human = human or get_human()
        agent = self.resolve_agent_name(name, human)

        if not human:
            raise DydoError(
                "DYDO_HUMAN environment variable is not set. "
                "Set it to your name before claiming an agent."
            )
        agents = self.context.config.agents
        if not agents.is_assigned_to(agent, human):
            assigned = agents.human_for_agent(agent) or "nobody"
            raise DydoError(
                f"Agent {agent} is assigned to {assigned}, not {human}. "
                f"Your agents: {', '.join(agents.agents_for_human(human)) or 'none'}."
            )

        # The shared session context may belong to another agent's hook call,
        # so a claim only adopts the session stored for this agent
        session_id = session_id or self.store.take_pending_session(agent)
        session = self.resolver.claim(agent, session_id)

        state = self.store.load(agent)
        state.assigned_human = human
        self.store.save(state)

        self._audit("claim", agent=agent, session_id=session.session_id)
        return state

    def release(self, session_id: Optional[str] = None) -> str:
        """
        Release the caller's agent.

        Returns:
            The released agent's name
        """
        session_id = self.current_session(session_id)
        state = self._require_agent(session_id)

        state.clear_role()
        self.store.save(state)
        self.resolver.release(state.name)

        self._audit("release", agent=state.name, session_id=session_id)
        return state.name

    def set_role(
        self, role: str, task: Optional[str] = None, session_id: Optional[str] = None
    ) -> AgentState:
        """
        Give the caller's agent a role, optionally for a task.

        Raises:
            InvalidRole: unknown role
            RoleNotPermitted: would let a task's code-writer review it
        """
        role = role.lower()
        if role not in ROLES:
            raise InvalidRole(f"Invalid role: {role}. Valid roles: {', '.join(ROLES)}")

        session_id = self.current_session(session_id)
        state = self._require_agent(session_id)

        allowed, reason = can_take_role(state.task_role_history, role, task, state.name)
        if not allowed:
            raise RoleNotPermitted(reason)

        state.allowed_paths, state.denied_paths = self.roles.permissions_for(role, state.name)
        state.role = role
        state.task = task
        state.since = datetime.now(timezone.utc).isoformat()
        if task:
            history = state.task_role_history.setdefault(task, [])
            if role not in history:
                history.append(role)
        state.unread_must_reads = self.must_read.required_reads(state.name, role)

        self.store.save(state)
        self._audit("role", agent=state.name, session_id=session_id, reason=f"{role}:{task or '-'}")
        logger.info(
            f"{state.name} is now {role}"
            + (f" on {task}" if task else "")
            + f" with {len(state.unread_must_reads)} required file(s)"
        )
        return state

    def whoami(self, session_id: Optional[str] = None) -> Optional[AgentState]:
        return self.current_agent(self.current_session(session_id))

    # Pool management -------------------------------------------------------

    def create_agent(self, name: str, human: str) -> str:
        """Add a new agent to the pool, assigned to `human`."""
        if not AGENT_NAME_PATTERN.match(name):
            raise DydoError(f"Invalid agent name: {name}")
        agent = name[0].upper() + name[1:].lower()

        agents = self.context.config.agents
        if agents.find_agent(agent):
            raise DydoError(f"Agent {agent} already exists.")

        agents.pool.append(agent)
        for key in agents.assignments:
            if key.lower() == human.lower():
                agents.assignments[key].append(agent)
                break
        else:
            agents.assignments[human] = [agent]
        save_config(self.context)

        write_agent_files(self.context, agent)
        self.store.save(AgentState(name=agent, assigned_human=human))
        logger.info(f"Created agent {agent} for {human}")
        return agent

    def remove_agent(self, name: str) -> str:
        """Remove an unclaimed agent from the pool and delete its workspace."""
        agents = self.context.config.agents
        agent = agents.find_agent(name)
        if agent is None:
            raise AgentNotFound(f"Invalid agent name: {name}")
        if self.store.get_session(agent) is not None:
            raise DydoError(f"Agent {agent} is currently claimed. Release it first.")

        agents.pool.remove(agent)
        for human, assigned in agents.assignments.items():
            agents.assignments[human] = [a for a in assigned if a.lower() != agent.lower()]
        save_config(self.context)

        self.store.remove_workspace(agent)
        logger.info(f"Removed agent {agent}")
        return agent

    def list_agents(self) -> List[AgentSummary]:
        summaries = []
        for agent in self.pool:
            state = self.store.load(agent)
            session = self.store.get_session(agent)
            summaries.append(
                AgentSummary(
                    name=agent,
                    status=state.status,
                    role=state.role,
                    task=state.task,
                    human=self.context.config.agents.human_for_agent(agent),
                    session_id=session.session_id if session else None,
                    unread=len(state.unread_must_reads),
                )
            )
        return summaries

    # Consistency -----------------------------------------------------------

    def check(self) -> CheckReport:
        """Advisory consistency report; never modifies anything."""
        report = CheckReport()
        report.stale_sessions = self.resolver.stale_sessions()

        pool = {a.lower() for a in self.pool}
        report.unknown_sessions = [
            s for s in self.store.list_sessions() if s.agent.lower() not in pool
        ]

        policy = OffLimitsPolicy.load(self.context.off_limits_file, self.context.project_root)
        report.off_limits_issues = policy.validate()

        if self.audit is not None:
            report.audit = self.audit.verify_chain()
        return report

    def _audit(self, event_type: str, **fields):
        if self.audit is None:
            return
        try:
            self.audit.append(event_type, "ALLOW", **fields)
        except OSError as e:
            logger.warning(f"Audit write failed for {event_type}: {e}")
