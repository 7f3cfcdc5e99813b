"""
dydo - Unified Guard System

Integrates the guard components into one decision engine:
- Identity Resolver (which agent is calling)
- Bash Command Analyzer (what a shell command touches)
- Off-Limits Policy (paths no agent may touch)
- Role Access Policy (staged identity/role evaluation)
- Must-Read Gate (mandatory reading before writes)
- Merkle Audit Log (tamper-evident decision trail)
- Fail-Closed Handler (every internal failure blocks)
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config.project_config import ProjectContext, get_human, load_project
from .core.extractors.base import FileOperation, OperationKind
from .core.extractors.bash import BashCommandAnalyzer, get_bash_analyzer
from .core.extractors.filesystem import GuardRequest
from .core.fail_closed import (
    EXIT_ALLOWED,
    EXIT_BLOCKED,
    DydoError,
    FailClosedHandler,
    create_failure_context,
    get_fail_closed_handler,
)
from .service.agents.registry import AgentRegistry
from .service.audit.merkle_chain import MerkleAuditLog
from .service.identity.resolver import AncestrySource, IdentityResolver
from .service.policy.must_read import MustReadGate
from .service.policy.off_limits import OffLimitsPolicy
from .service.policy.roles import IdentityStage, RoleAccessPolicy
from .service.state.agent_store import AgentState, AgentStateStore

logger = logging.getLogger(__name__)

# Audit event type per guard action
AUDIT_EVENTS = {
    "read": "read",
    "write": "write",
    "edit": "edit",
    "delete": "delete",
    "execute": "bash",
}

DYDO_EXECUTABLES = {"dydo", "dydo.exe"}


@dataclass
class GuardDecision:
    """Outcome of one guard evaluation."""

    allowed: bool
    reason: str = ""
    rule: str = "allow"  # allow, dydo-command, dangerous-command, off-limits, role, must-read, tool-error
    path: Optional[str] = None
    agent: Optional[str] = None
    stage: Optional[IdentityStage] = None
    warnings: List[str] = field(default_factory=list)
    operations: List[FileOperation] = field(default_factory=list)
    exit_code: int = EXIT_ALLOWED

    @property
    def message(self) -> str:
        """Line written to stderr for a block."""
        return "" if self.allowed else f"BLOCKED: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "rule": self.rule,
            "path": self.path,
            "agent": self.agent,
            "stage": self.stage.value if self.stage else None,
            "warnings": self.warnings,
            "operations": [op.to_dict() for op in self.operations],
            "exit_code": self.exit_code,
        }


def blocked(reason: str, rule: str, **kwargs) -> GuardDecision:
    return GuardDecision(allowed=False, reason=reason, rule=rule, exit_code=EXIT_BLOCKED, **kwargs)


def fail_closed(
    error: Exception,
    request: Optional[GuardRequest] = None,
    agent: Optional[str] = None,
    handler: Optional[FailClosedHandler] = None,
) -> GuardDecision:
    """Turn any guard failure into a blocking decision with the tool-error exit code."""
    handler = handler or get_fail_closed_handler()
    failure = create_failure_context(
        error,
        tool_name=request.tool_name if request else "unknown",
        parameters=request.to_dict() if request else {},
        agent=agent,
    )
    decision = handler.handle_failure(failure)
    return GuardDecision(
        allowed=False,
        reason=decision.reason,
        rule="tool-error",
        agent=agent,
        exit_code=decision.exit_code,
    )


def parse_dydo_command(command: str, analyzer: BashCommandAnalyzer) -> Optional[List[str]]:
    """
    Tokens of `command` if it is exactly one dydo invocation.

    Chained commands (`dydo ... && rm x`) are not dydo commands; they go
    through normal analysis.
    """
    parts = analyzer.split_commands(command)
    if len(parts) != 1:
        return None
    try:
        tokens = shlex.split(parts[0])
    except ValueError:
        return None
    if not tokens:
        return None
    executable = tokens[0].replace("\\", "/").rsplit("/", 1)[-1].lower()
    if executable not in DYDO_EXECUTABLES:
        return None
    return tokens


def is_plain_invocation(command: str, analyzer: BashCommandAnalyzer) -> bool:
    """True if `command` has no redirection, substitution or dangerous pattern."""
    if "$(" in command or "`" in command or analyzer.analyze(command).dangerous:
        return False
    return not any(is_op for _, is_op in analyzer.tokenize(command))


class GuardDecisionEngine:
    """
    Guard decision engine for one project.

    Every tool call an agent attempts passes through evaluate(), which
    returns allow (exit 0), block (exit 2) or tool error (exit 1).
    """

    def __init__(
        self,
        context: ProjectContext,
        store: Optional[AgentStateStore] = None,
        resolver: Optional[IdentityResolver] = None,
        analyzer: Optional[BashCommandAnalyzer] = None,
        off_limits: Optional[OffLimitsPolicy] = None,
        audit: Optional[MerkleAuditLog] = None,
        fail_closed_handler: Optional[FailClosedHandler] = None,
    ):
        self.context = context
        self.store = store or AgentStateStore(context.agents_dir)
        self.resolver = resolver or IdentityResolver(self.store)
        self.analyzer = analyzer or get_bash_analyzer()
        self.off_limits = off_limits or OffLimitsPolicy.load(
            context.off_limits_file, context.project_root
        )
        self.audit = audit
        self.fail_closed_handler = fail_closed_handler or get_fail_closed_handler()

        self.roles = RoleAccessPolicy(context.config.structure.root)
        self.must_read = MustReadGate(context, self.store)
        self.registry = AgentRegistry(context, self.store, self.resolver)

        logger.debug(f"Guard initialized for {context.project_root}")

    @classmethod
    def from_project(
        cls, start: Optional[Path] = None, source: Optional[AncestrySource] = None
    ) -> "GuardDecisionEngine":
        """Build a guard for the project around `start` (default: cwd)."""
        context = load_project(start)
        store = AgentStateStore(context.agents_dir)
        audit = MerkleAuditLog(context.audit_file) if context.config.guard.audit else None
        return cls(context, store, IdentityResolver(store, source), audit=audit)

    def evaluate(self, request: GuardRequest) -> GuardDecision:
        """
        Decide one attempted action.

        Flow:
        1. Resolve the caller's identity stage
        2. A lone dydo command stores session bookkeeping; a plain one is
           allowed, one with redirects or substitutions is checked as usual
        3. Analyze shell commands; dangerous patterns block outright
        4. Per operation: off-limits, then role, then must-read for writes
        5. Record reads of required files
        6. Audit the decision (audit failures never change it)

        Any exception becomes a fail-closed block with exit code 1.
        """
        agent: Optional[str] = None
        try:
            # Step 1: Who is calling
            agent = self.resolver.resolve(request.session_id)
            state = self.store.load(agent) if agent else None
            stage = self.roles.stage_for(state)

            # Step 2: dydo's own commands
            if request.action == "execute":
                command = request.command or ""
                tokens = parse_dydo_command(command, self.analyzer)
                if tokens is not None:
                    self._handle_dydo_command(tokens, request)
                    # Redirects and substitutions go through the full pipeline
                    if is_plain_invocation(command, self.analyzer):
                        decision = GuardDecision(
                            allowed=True, rule="dydo-command", agent=agent, stage=stage
                        )
                        self._audit(request, decision)
                        return decision

            # Step 3: What the action touches
            decision = self._decide(request, state, stage)

            # Step 5: Reads consume required reading
            if decision.allowed and state is not None and state.unread_must_reads:
                for op in decision.operations:
                    if op.kind == OperationKind.READ:
                        self.must_read.record_read(state.name, self.context.relative(op.path))

            # Step 6: Audit
            self._audit(request, decision)
            return decision

        except Exception as e:
            logger.error(f"Guard evaluation failed: {e}")
            decision = fail_closed(e, request, agent, self.fail_closed_handler)
            self._audit(request, decision)
            return decision

    def _decide(
        self, request: GuardRequest, state: Optional[AgentState], stage: IdentityStage
    ) -> GuardDecision:
        agent = state.name if state else None
        warnings: List[str] = []

        if request.action == "execute":
            analysis = self.analyzer.analyze(request.command or "")
            warnings = list(analysis.warnings)
            for warning in warnings:
                logger.debug(f"Command warning: {warning}")
            if analysis.dangerous:
                return blocked(
                    f"Dangerous command pattern detected: {analysis.danger_reason}",
                    "dangerous-command",
                    agent=agent,
                    stage=stage,
                    warnings=warnings,
                    operations=analysis.operations,
                )
            operations = analysis.operations
        else:
            operations = [FileOperation(path=request.path or "", kind=request.kind)]

        # Step 4: Each operation through each policy
        for op in operations:
            relative = self.context.relative(op.path) if op.path else ""
            details = dict(agent=agent, stage=stage, warnings=warnings, operations=operations)

            if relative and (
                op.kind.is_mutating or self.context.config.guard.off_limits_applies_to_reads
            ):
                pattern = self.off_limits.is_off_limits(relative)
                if pattern is not None:
                    return blocked(
                        f"Path is off-limits to all agents. Path: {relative} "
                        f"Pattern: {pattern.pattern}. Configure exceptions in "
                        f"{self.context.config.structure.root}/files-off-limits.md",
                        "off-limits",
                        path=relative,
                        **details,
                    )

            access = self.roles.evaluate(stage, state, op.kind, relative)
            if not access.allowed:
                return blocked(access.reason, "role", path=relative, **details)

            if op.kind.is_mutating and state is not None:
                allowed, reason = self.must_read.check_write_allowed(state)
                if not allowed:
                    return blocked(reason, "must-read", path=relative, **details)

        return GuardDecision(
            allowed=True,
            agent=agent,
            stage=stage,
            path=self.context.relative(request.path) if request.path else None,
            warnings=warnings,
            operations=operations,
        )

    def _handle_dydo_command(self, tokens: List[str], request: GuardRequest):
        """Leave the session id where the dydo command will look for it."""
        if not request.session_id:
            return
        self.store.store_session_context(request.session_id)

        args = tokens[1:]
        if len(args) >= 3 and args[0] == "agent" and args[1] == "claim":
            try:
                target = self.registry.resolve_agent_name(args[2], get_human())
            except DydoError as e:
                # The claim itself will report this
                logger.debug(f"Not storing pending session: {e}")
                return
            self.store.store_pending_session(target, request.session_id)
            logger.info(f"Stored pending session for {target}")

    def _audit(self, request: GuardRequest, decision: GuardDecision):
        if self.audit is None:
            return
        event_type = AUDIT_EVENTS.get(request.action, "bash") if decision.allowed else "blocked"
        try:
            self.audit.append(
                event_type,
                "ALLOW" if decision.allowed else "BLOCK",
                agent=decision.agent,
                session_id=request.session_id,
                path=decision.path or request.path,
                command=request.command,
                reason=decision.reason or None,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Audit write failed: {e}")
