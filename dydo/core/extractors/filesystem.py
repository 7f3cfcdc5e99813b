"""
Filesystem extractor - turns hook tool calls and CLI arguments into guard requests.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..fail_closed import GuardInputError
from .base import OperationKind

# Guard action -> operation kind
ACTION_KINDS = {
    "read": OperationKind.READ,
    "write": OperationKind.WRITE,
    "edit": OperationKind.WRITE,
    "delete": OperationKind.DELETE,
    "execute": OperationKind.EXECUTE,
}

# Hook tool name -> (guard action, tool_input key holding the target)
TOOL_ACTIONS = {
    "write": ("write", "file_path"),
    "edit": ("edit", "file_path"),
    "read": ("read", "file_path"),
    "glob": ("read", "path"),
    "grep": ("read", "path"),
    "bash": ("execute", "command"),
}

# Tools whose target is optional (search in cwd)
OPTIONAL_TARGET_TOOLS = {"glob", "grep"}


@dataclass
class GuardRequest:
    """One attempted action, from either the hook or the CLI."""

    action: str  # read, write, edit, delete, execute
    path: Optional[str] = None
    command: Optional[str] = None
    session_id: Optional[str] = None
    tool_name: str = "cli"

    @property
    def kind(self) -> OperationKind:
        return ACTION_KINDS[self.action]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "path": self.path,
            "command": self.command,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
        }


def parse_hook_input(raw: str) -> GuardRequest:
    """
    Parse the JSON object a hook writes to stdin.

    Expected shape:
        {"session_id": "...", "tool_name": "Edit",
         "tool_input": {"file_path": "..."}}

    Raises:
        GuardInputError: malformed JSON, missing fields or unsupported tool
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise GuardInputError(f"Malformed hook input: {e}") from e

    if not isinstance(data, dict):
        raise GuardInputError("Malformed hook input: expected a JSON object")

    session_id = data.get("session_id")
    if not session_id or not isinstance(session_id, str):
        raise GuardInputError("Malformed hook input: missing session_id")

    tool_name = data.get("tool_name")
    if not tool_name or not isinstance(tool_name, str):
        raise GuardInputError("Malformed hook input: missing tool_name")

    mapping = TOOL_ACTIONS.get(tool_name.lower())
    if mapping is None:
        raise GuardInputError(f"Unsupported tool: {tool_name}")

    tool_input = data.get("tool_input") or {}
    if not isinstance(tool_input, dict):
        raise GuardInputError("Malformed hook input: tool_input must be an object")

    action, key = mapping
    value = tool_input.get(key)
    if value is not None and not isinstance(value, str):
        raise GuardInputError(f"Malformed hook input: tool_input.{key} must be a string")
    if not value and tool_name.lower() not in OPTIONAL_TARGET_TOOLS:
        raise GuardInputError(f"Malformed hook input: missing tool_input.{key}")

    if action == "execute":
        return GuardRequest(
            action=action, command=value, session_id=session_id, tool_name=tool_name
        )
    return GuardRequest(
        action=action, path=value or None, session_id=session_id, tool_name=tool_name
    )


def request_from_cli(
    action: str, path: Optional[str] = None, command: Optional[str] = None
) -> GuardRequest:
    """
    Build a request from `dydo guard --action ... --path/--command ...`.

    Raises:
        GuardInputError: unsupported action or missing target
    """
    action = (action or "").lower()
    if action not in ACTION_KINDS:
        raise GuardInputError(f"Unsupported action: {action or '(none)'}")

    if action == "execute":
        if not command:
            raise GuardInputError("Action 'execute' requires --command")
        return GuardRequest(action=action, command=command)

    if not path:
        raise GuardInputError(f"Action '{action}' requires --path")
    return GuardRequest(action=action, path=path)
