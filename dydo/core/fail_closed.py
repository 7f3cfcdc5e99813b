"""
Fail-Closed Handler - Safety First Error Handling

The guard never answers "allow" because something went wrong:
1. Tool errors (bad input, unsupported action) are blocked
2. Unexpected exceptions inside the pipeline are blocked
3. Tool errors exit 1, security blocks exit 2, so callers can tell them apart
4. Every failure is logged with enough context to debug it
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

EXIT_ALLOWED = 0
EXIT_TOOL_ERROR = 1
EXIT_BLOCKED = 2


class DydoError(Exception):
    """Base class for usage and tool errors"""

    pass


class GuardInputError(DydoError):
    """Raised when guard input is malformed or names an unsupported action"""

    pass


class ConfigError(DydoError):
    """Raised when dydo.json is missing or unreadable"""

    pass


class AlreadyClaimed(DydoError):
    """Raised when an agent is owned by another session, or the caller already holds one"""

    pass


class AgentNotFound(DydoError):
    """Raised when an agent name is not in the pool"""

    pass


class InvalidRole(DydoError):
    """Raised when a role name is not recognised"""

    pass


class RoleNotPermitted(DydoError):
    """Raised when a role change would break self-review prevention"""

    pass


class FailureMode(Enum):
    """Categories of guard failures"""

    MALFORMED_INPUT = "malformed_input"
    UNSUPPORTED_ACTION = "unsupported_action"
    CONFIG_ERROR = "config_error"
    STATE_ERROR = "state_error"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class FailureContext:
    """What failed, where, and with which input"""

    mode: FailureMode
    error_message: str
    tool_name: str
    parameters: Dict[str, Any]
    timestamp: datetime
    agent: Optional[str] = None


@dataclass
class FailClosedDecision:
    """Decision made by fail-closed handler"""

    allowed: bool
    reason: str
    reason_code: str
    exit_code: int = EXIT_TOOL_ERROR


class FailClosedHandler:
    """
    Handles guard failures with fail-closed semantics.

    There is no fallback mode: every failure blocks.
    """

    def __init__(self):
        self._failure_count = 0
        self._last_failure: Optional[datetime] = None

    def handle_failure(self, failure_context: FailureContext) -> FailClosedDecision:
        """
        Handle a failure with fail-closed logic.

        Args:
            failure_context: Information about the failure

        Returns:
            A blocking decision carrying the tool-error exit code
        """
        self._failure_count += 1
        self._last_failure = failure_context.timestamp

        logger.error(
            f"Guard failure ({failure_context.mode.value}): "
            f"{failure_context.error_message} | "
            f"Tool: {failure_context.tool_name} | "
            f"Agent: {failure_context.agent or '-'}"
        )

        return FailClosedDecision(
            allowed=False,
            reason=f"Guard error ({failure_context.mode.value}): {failure_context.error_message}",
            reason_code=f"FAIL_CLOSED_{failure_context.mode.name}",
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get failure statistics"""
        return {
            "failure_count": self._failure_count,
            "last_failure": (
                self._last_failure.isoformat() if self._last_failure else None
            ),
        }


def classify_failure(error: Exception) -> FailureMode:
    """Map an exception onto a failure category."""
    if isinstance(error, GuardInputError):
        if "unsupported" in str(error).lower():
            return FailureMode.UNSUPPORTED_ACTION
        return FailureMode.MALFORMED_INPUT
    if isinstance(error, ConfigError):
        return FailureMode.CONFIG_ERROR
    if isinstance(error, OSError):
        return FailureMode.STATE_ERROR
    return FailureMode.UNKNOWN_ERROR


def create_failure_context(
    error: Exception,
    tool_name: str,
    parameters: Dict[str, Any],
    agent: Optional[str] = None,
) -> FailureContext:
    """Build a FailureContext for an exception raised while guarding"""
    return FailureContext(
        mode=classify_failure(error),
        error_message=str(error),
        tool_name=tool_name,
        parameters=parameters,
        timestamp=datetime.now(timezone.utc),
        agent=agent,
    )


# Global fail-closed handler (singleton)
_global_handler: Optional[FailClosedHandler] = None


def get_fail_closed_handler() -> FailClosedHandler:
    """Get or create the global fail-closed handler"""
    global _global_handler
    if _global_handler is None:
        _global_handler = FailClosedHandler()
    return _global_handler
