"""
Role Access Policy - staged identity/role decisions

Every guard call lands in one of three identity stages:
- NO_IDENTITY: no session claims this process. Only bootstrap files are readable.
- IDENTITY_NO_ROLE: claimed, no role. Bootstrap files and the agent's own
  workspace are readable. Nothing is writable.
- IDENTITY_WITH_ROLE: everything is readable; writes must match one of the
  role's allow patterns.

Each stage has its own evaluator. Self-review prevention lives here too,
as a pure function over the agent's task/role history.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ...core.extractors.base import OperationKind
from ..state.agent_store import AgentState
from .off_limits import glob_to_regex

logger = logging.getLogger(__name__)


class IdentityStage(Enum):
    """How much the guard knows about the caller."""

    NO_IDENTITY = "no_identity"
    IDENTITY_NO_ROLE = "identity_no_role"
    IDENTITY_WITH_ROLE = "identity_with_role"


ROLES = [
    "code-writer",
    "reviewer",
    "co-thinker",
    "docs-writer",
    "interviewer",
    "planner",
    "tester",
]

# role -> (allowed write globs, denied write globs); {self} is the agent name
ROLE_PERMISSIONS: Dict[str, Tuple[List[str], List[str]]] = {
    "code-writer": (
        ["src/**", "tests/**", "dydo/agents/{self}/**"],
        ["dydo/**", "project/**"],
    ),
    "reviewer": (
        ["dydo/agents/{self}/**"],
        ["**"],
    ),
    "co-thinker": (
        ["dydo/agents/{self}/**", "dydo/project/decisions/**"],
        ["src/**", "tests/**"],
    ),
    "docs-writer": (
        [
            "dydo/understand/**",
            "dydo/guides/**",
            "dydo/reference/**",
            "dydo/project/**",
            "dydo/_system/**",
            "dydo/_assets/**",
            "dydo/*.md",
            "dydo/agents/{self}/**",
        ],
        ["src/**", "tests/**"],
    ),
    "interviewer": (
        ["dydo/agents/{self}/**"],
        ["**"],
    ),
    "planner": (
        ["dydo/agents/{self}/**", "dydo/project/tasks/**"],
        ["src/**"],
    ),
    "tester": (
        ["dydo/agents/{self}/**", "tests/**", "dydo/project/pitfalls/**"],
        ["src/**"],
    ),
}

ROLE_RESTRICTIONS = {
    "code-writer": "Code-writer role can only edit src/**, tests/**, and own workspace.",
    "reviewer": "Reviewer role can only edit own workspace.",
    "co-thinker": "Co-thinker role can edit own workspace and decisions.",
    "docs-writer": "Docs-writer role can only edit documentation and own workspace.",
    "interviewer": "Interviewer role can only edit own workspace.",
    "planner": "Planner role can only edit own workspace and tasks.",
    "tester": "Tester role can edit own workspace, tests, and pitfalls.",
}


@dataclass
class AccessDecision:
    """Outcome of one staged check."""

    allowed: bool
    reason: str = ""


ALLOW = AccessDecision(True)


def can_take_role(
    history: Dict[str, List[str]], role: str, task: Optional[str], agent: str = "Agent"
) -> Tuple[bool, str]:
    """
    Self-review prevention.

    An agent that was code-writer on a task may not become reviewer on
    that same task. Every other combination is allowed.

    Returns:
        (allowed, reason); reason is empty when allowed
    """
    if role != "reviewer" or not task:
        return True, ""
    if "code-writer" in history.get(task, []):
        return False, (
            f"Agent {agent} was code-writer on task '{task}' and cannot be reviewer "
            "on the same task. Dispatch to a different agent for review."
        )
    return True, ""


def matches_glob(path: str, pattern: str) -> bool:
    """Case-insensitive, anchored glob match on a project-relative path."""
    return bool(glob_to_regex(pattern).match(path))


def is_dynamic_path(path: str) -> bool:
    """Paths built from $VAR or $(...) cannot be judged statically."""
    return "$" in path or "`" in path


class RoleAccessPolicy:
    """Role permission table plus one evaluator per identity stage."""

    def __init__(self, dydo_root: str = "dydo"):
        self.dydo_root = dydo_root.strip("/") or "dydo"
        root = re.escape(self.dydo_root)
        self._index = re.compile(rf"^{root}/index\.md$", re.IGNORECASE)
        self._workflow = re.compile(rf"^{root}/agents/[^/]+/workflow\.md$", re.IGNORECASE)

    def _rebase(self, pattern: str) -> str:
        if self.dydo_root != "dydo" and pattern.startswith("dydo/"):
            return f"{self.dydo_root}/{pattern[5:]}"
        return pattern

    def permissions_for(self, role: str, agent: str) -> Tuple[List[str], List[str]]:
        """Allow/deny globs for a role with {self} substituted."""
        allowed, denied = ROLE_PERMISSIONS[role]
        return (
            [self._rebase(p.replace("{self}", agent)) for p in allowed],
            [self._rebase(p.replace("{self}", agent)) for p in denied],
        )

    @staticmethod
    def stage_for(state: Optional[AgentState]) -> IdentityStage:
        if state is None:
            return IdentityStage.NO_IDENTITY
        if not state.role:
            return IdentityStage.IDENTITY_NO_ROLE
        return IdentityStage.IDENTITY_WITH_ROLE

    # Path classes ------------------------------------------------------------

    def is_bootstrap_file(self, path: str) -> bool:
        """Root-level files, dydo/index.md and any agent's workflow.md."""
        if not path or is_dynamic_path(path) or path.startswith("../"):
            return False
        parts = [p for p in path.split("/") if p]
        if len(parts) == 1 and not path.startswith("/"):
            return True
        return bool(self._index.match(path) or self._workflow.match(path))

    def is_own_workspace(self, path: str, agent: str) -> bool:
        return matches_glob(path, f"{self.dydo_root}/agents/{agent}/**")

    # Evaluation --------------------------------------------------------------

    def evaluate(
        self,
        stage: IdentityStage,
        state: Optional[AgentState],
        kind: OperationKind,
        path: str,
    ) -> AccessDecision:
        """
        Run the evaluator for `stage` on one project-relative path.

        EXECUTE and UNKNOWN operations are judged like reads of their target.
        """
        if stage == IdentityStage.NO_IDENTITY:
            return self._evaluate_no_identity(kind, path)
        if stage == IdentityStage.IDENTITY_NO_ROLE:
            return self._evaluate_no_role(state, kind, path)
        return self._evaluate_with_role(state, kind, path)

    def _evaluate_no_identity(self, kind: OperationKind, path: str) -> AccessDecision:
        if kind.is_mutating:
            return AccessDecision(
                False,
                "No agent identity assigned to this process. "
                "Run 'dydo agent claim auto' first.",
            )
        if not path or self.is_bootstrap_file(path):
            return ALLOW
        return AccessDecision(
            False,
            f"No agent identity assigned to this process. Cannot access {path} "
            "before claiming an agent. Run 'dydo agent claim auto' first.",
        )

    def _evaluate_no_role(
        self, state: AgentState, kind: OperationKind, path: str
    ) -> AccessDecision:
        if kind.is_mutating:
            return AccessDecision(
                False,
                f"Agent {state.name} has no role set. Run 'dydo agent role <role>' first.",
            )
        if not path or self.is_bootstrap_file(path) or self.is_own_workspace(path, state.name):
            return ALLOW
        return AccessDecision(
            False,
            f"Agent {state.name} has no role set and can only read bootstrap files "
            f"and its own workspace, not {path}. Run 'dydo agent role <role>' first.",
        )

    def _evaluate_with_role(
        self, state: AgentState, kind: OperationKind, path: str
    ) -> AccessDecision:
        if not kind.is_mutating:
            return ALLOW

        action = "delete" if kind == OperationKind.DELETE else "write"
        restriction = ROLE_RESTRICTIONS.get(state.role, "")
        allowed = state.allowed_paths
        if not allowed and state.role in ROLE_PERMISSIONS:
            allowed, _ = self.permissions_for(state.role, state.name)

        denial = AccessDecision(
            False,
            f"Agent {state.name} ({state.role}) cannot {action} {path}. {restriction}".strip(),
        )
        explicitly_allowed = (
            bool(path)
            and not is_dynamic_path(path)
            and any(matches_glob(path, p) for p in allowed)
        )

        # Denied patterns win unless an allow pattern names the path
        for pattern in state.denied_paths:
            if (pattern == "**" or matches_glob(path, pattern)) and not explicitly_allowed:
                logger.debug(f"{state.name} ({state.role}) {action} on {path} hit denied {pattern}")
                return denial

        if not allowed:
            return AccessDecision(
                False, f"Agent {state.name} ({state.role}) has no write permissions."
            )
        if explicitly_allowed:
            return ALLOW

        logger.debug(f"{state.name} ({state.role}) denied {action} on {path}")
        return denial
