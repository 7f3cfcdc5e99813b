#!/usr/bin/env python3
"""
dydo CLI

Command-line interface for the guard hook and the agent lifecycle.

Exit codes:
  0 - allowed / success
  1 - tool error (bad input, bad configuration, failed lifecycle command)
  2 - blocked by the guard
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config.project_config import (
    DEFAULT_LOG_LEVEL,
    LOG_LEVEL_ENV_VAR,
    get_human,
    load_project,
)
from .core.extractors.filesystem import GuardRequest, parse_hook_input, request_from_cli
from .core.fail_closed import EXIT_ALLOWED, EXIT_TOOL_ERROR, DydoError
from .guard_system import GuardDecisionEngine, fail_closed
from .service.agents.registry import AgentRegistry
from .service.audit.merkle_chain import MerkleAuditLog
from .service.state.agent_store import AgentState
from .service.workspace.scaffold import DEFAULT_AGENT_COUNT, init_project

logger = logging.getLogger(__name__)


def get_registry() -> AgentRegistry:
    """Registry for the project around the working directory."""
    return AgentRegistry.from_context(load_project(require=True))


def print_state(state: AgentState):
    print(f"Agent: {state.name}")
    print(f"Status: {state.status}")
    print(f"Human: {state.assigned_human or '-'}")
    print(f"Role: {state.role or '-'}")
    print(f"Task: {state.task or '-'}")
    if state.since:
        print(f"Since: {state.since}")
    if state.unread_must_reads:
        print("Required reading:")
        for path in state.unread_must_reads:
            print(f"  - {path}")


def cmd_guard(args) -> int:
    """Decide one tool call. Hook mode reads JSON from stdin."""
    request: Optional[GuardRequest] = None
    try:
        if args.action is None and args.path is None and args.command is None:
            request = parse_hook_input(sys.stdin.read())
        else:
            request = request_from_cli(args.action, args.path, args.command)
            request.session_id = args.session
        engine = GuardDecisionEngine.from_project()
    except Exception as e:
        decision = fail_closed(e, request)
    else:
        decision = engine.evaluate(request)

    for warning in decision.warnings:
        logger.info(f"Guard warning: {warning}")
    if not decision.allowed:
        print(decision.message, file=sys.stderr)
    return decision.exit_code


def cmd_claim(args) -> int:
    """Claim an agent by name, initial or 'auto'."""
    state = get_registry().claim(args.name, session_id=args.session)
    print(f"Claimed agent {state.name} for {state.assigned_human}.")
    print("Next: dydo agent role <role> --task <task>")
    return EXIT_ALLOWED


def cmd_release(args) -> int:
    """Release the current agent."""
    name = get_registry().release(session_id=args.session)
    print(f"Released agent {name}.")
    return EXIT_ALLOWED


def cmd_role(args) -> int:
    """Set the current agent's role."""
    state = get_registry().set_role(args.role, task=args.task, session_id=args.session)
    task = f" on task '{state.task}'" if state.task else ""
    print(f"Agent {state.name} is now {state.role}{task}.")
    if state.unread_must_reads:
        print("Read these files before writing anything:")
        for path in state.unread_must_reads:
            print(f"  - {path}")
    return EXIT_ALLOWED


def cmd_new(args) -> int:
    """Add an agent to the pool."""
    human = args.human or get_human()
    if not human:
        raise DydoError("No human given. Use --human or set DYDO_HUMAN.")
    name = get_registry().create_agent(args.name, human)
    print(f"Created agent {name} for {human}.")
    return EXIT_ALLOWED


def cmd_remove(args) -> int:
    """Remove an agent from the pool."""
    name = get_registry().remove_agent(args.name)
    print(f"Removed agent {name}.")
    return EXIT_ALLOWED


def cmd_list(args) -> int:
    """List the agent pool."""
    agents = get_registry().list_agents()
    if not agents:
        print("No agents configured.")
        return EXIT_ALLOWED

    print(f"{'AGENT':<10} {'STATUS':<8} {'HUMAN':<12} {'ROLE':<12} {'TASK':<20} SESSION")
    for agent in agents:
        print(
            f"{agent.name:<10} {agent.status:<8} {agent.human or '-':<12} "
            f"{agent.role or '-':<12} {agent.task or '-':<20} {agent.session_id or '-'}"
        )
    return EXIT_ALLOWED


def cmd_status(args) -> int:
    """Show one agent's state (default: the current agent)."""
    registry = get_registry()
    if args.name:
        name = registry.resolve_agent_name(args.name)
        state = registry.store.load(name)
    else:
        state = registry.whoami(args.session)
        if state is None:
            print("No agent claimed by this session.")
            return EXIT_TOOL_ERROR
    print_state(state)
    return EXIT_ALLOWED


def cmd_whoami(args) -> int:
    """Show which agent this session is."""
    state = get_registry().whoami(args.session)
    if state is None:
        print("No agent identity assigned. Run 'dydo agent claim auto' first.")
        return EXIT_TOOL_ERROR
    print_state(state)
    return EXIT_ALLOWED


def cmd_init(args) -> int:
    """Initialize a project in the working directory."""
    context = init_project(Path.cwd(), args.human, args.agents)
    pool = context.config.agents.pool
    print(f"Initialized dydo in {context.project_root}")
    print(f"Agents for {args.human}: {', '.join(pool)}")
    return EXIT_ALLOWED


def cmd_check(args) -> int:
    """Report configuration and state problems. Never modifies anything."""
    report = get_registry().check()
    problems = 0

    for session in report.stale_sessions:
        problems += 1
        print(
            f"warning: agent {session.agent} is claimed by process {session.owner_pid}, "
            "which no longer exists"
        )
    for session in report.unknown_sessions:
        problems += 1
        print(f"warning: session for {session.agent}, which is not in the pool")
    for issue in report.off_limits_issues:
        problems += 1
        where = f" (line {issue.line})" if issue.line else ""
        print(f"{issue.severity}: {issue.message}{where}")
    if report.audit is not None and not report.audit.valid:
        problems += 1
        print(f"error: audit chain broken at entries {report.audit.broken_links}")

    if problems == 0:
        print("No problems found.")
    return EXIT_TOOL_ERROR if report.has_errors else EXIT_ALLOWED


def cmd_audit(args) -> int:
    """Show or verify the audit log."""
    context = load_project(require=True)
    log = MerkleAuditLog(context.audit_file)

    if args.verify:
        result = log.verify_chain()
        print(result.message)
        return EXIT_ALLOWED if result.valid else EXIT_TOOL_ERROR

    entries = log.get_recent(args.limit)
    if not entries:
        print("No audit entries.")
        return EXIT_ALLOWED
    for entry in entries:
        target = entry.path or entry.command or ""
        print(
            f"{entry.timestamp} {entry.decision:<5} {entry.event_type:<8} "
            f"{entry.agent or '-':<10} {target}"
        )
        if args.verbose and entry.reason:
            print(f"    {entry.reason}")
    return EXIT_ALLOWED


def configure_logging():
    level_name = os.environ.get(LOG_LEVEL_ENV_VAR, DEFAULT_LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dydo", description="Guard and lifecycle for coordinated AI agents"
    )
    parser.add_argument("--version", action="version", version=f"dydo {__version__}")
    subparsers = parser.add_subparsers(dest="cmd", help="Commands")

    # guard
    guard_parser = subparsers.add_parser(
        "guard", help="Decide a tool call (reads hook JSON from stdin without arguments)"
    )
    guard_parser.add_argument(
        "--action", help="read, write, edit, delete or execute"
    )
    guard_parser.add_argument("--path", help="Target path")
    guard_parser.add_argument("--command", help="Shell command, for execute")
    guard_parser.add_argument("--session", help="Session id")
    guard_parser.set_defaults(func=cmd_guard)

    # agent
    agent_parser = subparsers.add_parser("agent", help="Agent lifecycle")
    agent_sub = agent_parser.add_subparsers(dest="agent_cmd", help="Agent commands")

    claim_parser = agent_sub.add_parser("claim", help="Claim an agent")
    claim_parser.add_argument("name", help="Agent name, initial, or 'auto'")
    claim_parser.add_argument("--session", help="Session id")
    claim_parser.set_defaults(func=cmd_claim)

    release_parser = agent_sub.add_parser("release", help="Release the current agent")
    release_parser.add_argument("--session", help="Session id")
    release_parser.set_defaults(func=cmd_release)

    role_parser = agent_sub.add_parser("role", help="Set the current agent's role")
    role_parser.add_argument("role", help="Role name")
    role_parser.add_argument("--task", help="Task name")
    role_parser.add_argument("--session", help="Session id")
    role_parser.set_defaults(func=cmd_role)

    new_parser = agent_sub.add_parser("new", help="Add an agent to the pool")
    new_parser.add_argument("name", help="Agent name")
    new_parser.add_argument("--human", help="Assigned human (default: DYDO_HUMAN)")
    new_parser.set_defaults(func=cmd_new)

    remove_parser = agent_sub.add_parser("remove", help="Remove an agent from the pool")
    remove_parser.add_argument("name", help="Agent name")
    remove_parser.set_defaults(func=cmd_remove)

    list_parser = agent_sub.add_parser("list", help="List agents")
    list_parser.set_defaults(func=cmd_list)

    status_parser = agent_sub.add_parser("status", help="Show agent state")
    status_parser.add_argument("name", nargs="?", help="Agent name (default: current)")
    status_parser.add_argument("--session", help="Session id")
    status_parser.set_defaults(func=cmd_status)

    # whoami
    whoami_parser = subparsers.add_parser("whoami", help="Show the current agent")
    whoami_parser.add_argument("--session", help="Session id")
    whoami_parser.set_defaults(func=cmd_whoami)

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a project")
    init_parser.add_argument("human", help="Human the agents are assigned to")
    init_parser.add_argument(
        "--agents", type=int, default=DEFAULT_AGENT_COUNT, help="Number of agents"
    )
    init_parser.set_defaults(func=cmd_init)

    # check
    check_parser = subparsers.add_parser("check", help="Consistency check")
    check_parser.set_defaults(func=cmd_check)

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show audit log")
    audit_parser.add_argument("--limit", type=int, default=20, help="Number of entries")
    audit_parser.add_argument("--verify", action="store_true", help="Verify the hash chain")
    audit_parser.add_argument("-v", "--verbose", action="store_true")
    audit_parser.set_defaults(func=cmd_audit)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_TOOL_ERROR

    try:
        return args.func(args)
    except DydoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TOOL_ERROR
    except OSError as e:
        logger.error(f"{args.cmd} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TOOL_ERROR


if __name__ == "__main__":
    sys.exit(main())
