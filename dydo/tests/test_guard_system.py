"""
Tests for the guard decision engine.
"""

import pytest

from dydo.core.extractors import GuardRequest, OperationKind
from dydo.core.fail_closed import FailClosedHandler
from dydo.guard_system import GuardDecisionEngine
from dydo.service.policy import IdentityStage

from conftest import HUMAN

CODE_WRITER_READING = [
    "dydo/agents/Adele/modes/code-writer.md",
    "dydo/understand/about.md",
    "dydo/understand/architecture.md",
    "dydo/guides/coding-standards.md",
]

REVIEWER_READING = [
    "dydo/agents/Adele/modes/reviewer.md",
    "dydo/understand/about.md",
    "dydo/understand/architecture.md",
    "dydo/guides/coding-standards.md",
]


def read(path, session="s1"):
    return GuardRequest("read", path=path, session_id=session, tool_name="Read")


def write(path, session="s1"):
    return GuardRequest("write", path=path, session_id=session, tool_name="Write")


def bash(command, session="s1"):
    return GuardRequest("execute", command=command, session_id=session, tool_name="Bash")


@pytest.fixture
def code_writer(registry, engine):
    """Adele as code-writer on task 'auth', required reading done."""
    registry.claim("Adele", session_id="s1", human=HUMAN)
    registry.set_role("code-writer", task="auth", session_id="s1")
    for path in CODE_WRITER_READING:
        assert engine.evaluate(read(path)).allowed
    return engine


class ExplodingResolver:
    def resolve(self, session_id=None):
        raise RuntimeError("process table on fire")


class FailingAudit:
    def append(self, *args, **kwargs):
        raise OSError("disk full")


class TestNoIdentity:
    """Unclaimed sessions."""

    def test_bootstrap_read_allowed(self, engine):
        decision = engine.evaluate(read("README.md"))
        assert decision.allowed
        assert decision.exit_code == 0
        assert decision.stage == IdentityStage.NO_IDENTITY

    def test_other_read_blocked(self, engine):
        decision = engine.evaluate(read("src/main.py"))
        assert not decision.allowed
        assert decision.rule == "role"
        assert decision.exit_code == 2
        assert decision.message.startswith("BLOCKED: No agent identity")

    def test_write_blocked(self, engine):
        decision = engine.evaluate(write("README.md"))
        assert not decision.allowed
        assert "dydo agent claim auto" in decision.reason

    def test_search_without_path_allowed(self, engine):
        decision = engine.evaluate(GuardRequest("read", session_id="s1", tool_name="Grep"))
        assert decision.allowed

    def test_cli_mode_uses_process_ancestry(self, registry, engine):
        registry.claim("Brian", human=HUMAN)
        decision = engine.evaluate(GuardRequest("read", path="src/x.py"))
        assert not decision.allowed
        assert decision.agent == "Brian"
        assert "Agent Brian has no role set" in decision.reason


class TestDydoCommands:
    """dydo's own commands pass and leave the session id behind."""

    def test_claim_stores_pending_session(self, engine, store, monkeypatch):
        monkeypatch.setenv("DYDO_HUMAN", HUMAN)
        decision = engine.evaluate(bash("dydo agent claim auto"))

        assert decision.allowed
        assert decision.rule == "dydo-command"
        assert store.get_session_context() == "s1"
        assert store.take_pending_session("Adele") == "s1"

    def test_claim_by_letter(self, engine, store):
        engine.evaluate(bash("dydo agent claim b"))
        assert store.take_pending_session("Brian") == "s1"

    def test_unresolvable_claim_still_allowed(self, engine, store):
        # auto without DYDO_HUMAN; the claim command reports the error itself
        assert engine.evaluate(bash("dydo agent claim auto")).allowed
        assert store.take_pending_session("Adele") is None

    def test_other_dydo_commands(self, engine, store):
        assert engine.evaluate(bash("dydo whoami", session="s7")).allowed
        assert store.get_session_context() == "s7"

    def test_chained_command_is_analyzed(self, engine):
        decision = engine.evaluate(bash("dydo whoami && rm notes.txt"))
        assert not decision.allowed
        assert decision.rule == "role"

    def test_redirect_is_checked(self, engine, store):
        decision = engine.evaluate(bash("dydo whoami > .env"))
        assert not decision.allowed
        assert decision.rule == "off-limits"
        # Session bookkeeping still happens
        assert store.get_session_context() == "s1"

    def test_redirect_to_disk_is_dangerous(self, engine):
        decision = engine.evaluate(bash("dydo whoami > /dev/sda"))
        assert decision.rule == "dangerous-command"

    def test_command_substitution_is_checked(self, engine):
        decision = engine.evaluate(bash("dydo whoami $(rm -rf src)"))
        assert not decision.allowed
        assert decision.rule == "role"
        assert decision.path == "src"

    def test_backticks_are_checked(self, engine):
        decision = engine.evaluate(bash("dydo whoami `rm -rf /`"))
        assert not decision.allowed
        assert decision.rule == "dangerous-command"

    def test_pending_session_stored_for_checked_claim(self, engine, store):
        decision = engine.evaluate(bash("dydo agent claim b 2>&1"))
        assert decision.rule != "dydo-command"
        assert store.take_pending_session("Brian") == "s1"

    def test_hook_to_claim_round_trip(self, engine, registry, store, monkeypatch):
        monkeypatch.setenv("DYDO_HUMAN", HUMAN)
        engine.evaluate(bash("dydo agent claim auto", session="hook-session"))
        registry.claim("auto")
        assert store.get_session("Adele").session_id == "hook-session"
        assert engine.evaluate(read("dydo/agents/Adele/workflow.md", "hook-session")).agent == "Adele"


class TestOffLimits:
    """Off-limits applies before identity and role."""

    def test_blocks_even_bootstrap_reads(self, engine):
        decision = engine.evaluate(read(".env"))
        assert not decision.allowed
        assert decision.rule == "off-limits"
        assert decision.reason == (
            "Path is off-limits to all agents. Path: .env Pattern: .env. "
            "Configure exceptions in dydo/files-off-limits.md"
        )

    def test_blocks_role_holder(self, code_writer):
        decision = code_writer.evaluate(write("deploy/server.pem"))
        assert decision.rule == "off-limits"
        assert decision.path == "deploy/server.pem"

    def test_agent_state_is_off_limits(self, code_writer):
        assert code_writer.evaluate(read("dydo/agents/Adele/state.md")).rule == "off-limits"

    def test_bash_target(self, code_writer):
        decision = code_writer.evaluate(bash("cat config/.env.local"))
        assert decision.rule == "off-limits"

    def test_reads_exempt_when_configured(self, code_writer, project):
        project.config.guard.off_limits_applies_to_reads = False
        assert code_writer.evaluate(read(".env")).allowed
        assert code_writer.evaluate(write(".env")).rule == "off-limits"

    def test_whitelist(self, code_writer, project):
        project.off_limits_file.write_text(
            "## Off-Limits\n\n- .env.*\n\n## Whitelist\n\n- .env.example\n", encoding="utf-8"
        )
        engine = GuardDecisionEngine(project, code_writer.store, code_writer.resolver)
        assert engine.evaluate(read(".env.example")).allowed
        assert engine.evaluate(read(".env.local")).rule == "off-limits"


class TestOffLimitsEverywhere:
    """Off-limits paths are blocked for every action kind in every identity stage."""

    @pytest.fixture(params=["no-identity", "no-role", "with-role"])
    def staged(self, request, registry, engine):
        if request.param != "no-identity":
            registry.claim("Adele", session_id="s1", human=HUMAN)
        if request.param == "with-role":
            registry.set_role("code-writer", task="auth", session_id="s1")
            for path in CODE_WRITER_READING:
                assert engine.evaluate(read(path)).allowed
        return engine

    @pytest.mark.parametrize("target", [".env", "deploy/server.pem"])
    @pytest.mark.parametrize(
        "build",
        [
            read,
            write,
            lambda p: GuardRequest("edit", path=p, session_id="s1", tool_name="Edit"),
            lambda p: GuardRequest("delete", path=p, session_id="s1"),
            lambda p: bash(f"cat {p}"),
            lambda p: bash(f"echo x > {p}"),
            lambda p: bash(f"rm {p}"),
            lambda p: bash(f"cp notes.txt {p}"),
            lambda p: bash(f"sudo -u root rm {p}"),
            lambda p: bash(f"dydo whoami > {p}"),
        ],
        ids=["read", "write", "edit", "delete", "cat", "redirect", "rm", "cp", "sudo-rm", "dydo-redirect"],
    )
    def test_blocked(self, staged, build, target):
        decision = staged.evaluate(build(target))
        assert not decision.allowed
        assert decision.rule == "off-limits"
        assert decision.path == target
        assert decision.exit_code == 2


class TestCommands:
    """Shell commands are checked operation by operation."""

    def test_dangerous_command(self, code_writer):
        decision = code_writer.evaluate(bash("rm -rf /"))
        assert not decision.allowed
        assert decision.rule == "dangerous-command"
        assert decision.exit_code == 2

    def test_each_operation_checked(self, code_writer):
        decision = code_writer.evaluate(bash("cat src/a.py > out/b.txt"))
        assert not decision.allowed
        assert decision.rule == "role"
        assert decision.path == "out/b.txt"

    def test_allowed_pipeline(self, code_writer):
        decision = code_writer.evaluate(bash("cat src/a.py | grep def > src/defs.txt"))
        assert decision.allowed
        assert len(decision.operations) == 2

    def test_warnings_do_not_block(self, code_writer):
        decision = code_writer.evaluate(bash("cat $HOME/notes.txt"))
        assert decision.allowed
        assert any("variable expansion" in w for w in decision.warnings)

    def test_dynamic_write_blocked(self, code_writer):
        assert not code_writer.evaluate(bash("echo x > src/$NAME.py")).allowed

    @pytest.mark.parametrize(
        "command", ["sudo -u root rm README.md", "timeout -s KILL 5 rm README.md"]
    )
    def test_wrapped_delete_checked(self, code_writer, command):
        decision = code_writer.evaluate(bash(command))
        assert not decision.allowed
        assert decision.rule == "role"
        assert decision.path == "README.md"
        assert [op.kind for op in decision.operations] == [OperationKind.DELETE]


class TestMustRead:
    """Writes wait for required reading; reads through the guard count."""

    def test_write_blocked_until_read(self, registry, engine, project):
        registry.claim("Adele", session_id="s1", human=HUMAN)
        registry.set_role("code-writer", task="auth", session_id="s1")

        blocked = engine.evaluate(write("src/a.py"))
        assert blocked.rule == "must-read"
        assert "not read the required files" in blocked.reason
        for path in CODE_WRITER_READING:
            assert path in blocked.reason

        engine.evaluate(read(CODE_WRITER_READING[0]))
        engine.evaluate(read(str(project.project_root / CODE_WRITER_READING[1])))
        engine.evaluate(bash(f"cat {CODE_WRITER_READING[2]}"))
        assert engine.evaluate(write("src/a.py")).rule == "must-read"

        engine.evaluate(read(CODE_WRITER_READING[3]))
        assert engine.evaluate(write("src/a.py")).allowed

    def test_reviewer_end_to_end(self, registry, engine):
        registry.claim("Adele", session_id="s1", human=HUMAN)
        registry.set_role("reviewer", task="auth", session_id="s1")

        notes = "dydo/agents/Adele/review-notes.md"
        assert engine.evaluate(write(notes)).rule == "must-read"
        for path in REVIEWER_READING:
            assert engine.evaluate(read(path)).allowed
        assert engine.evaluate(write(notes)).allowed

        # Reviewers never write source
        decision = engine.evaluate(write("src/code.cs"))
        assert decision.rule == "role"
        assert "Reviewer role can only edit own workspace." in decision.reason

    def test_code_writer_edits_source(self, code_writer):
        assert code_writer.evaluate(write("src/code.cs")).allowed

    def test_write_outside_project_blocked(self, code_writer):
        decision = code_writer.evaluate(write("/etc/hosts"))
        assert not decision.allowed
        assert decision.rule == "role"


class TestAuditAndFailures:
    """Every decision is audited; failures block."""

    def test_decisions_are_audited(self, code_writer, audit_log):
        code_writer.evaluate(write("src/a.py"))
        code_writer.evaluate(read(".env"))

        recent = audit_log.get_recent(2)
        assert recent[0].event_type == "blocked"
        assert recent[0].decision == "BLOCK"
        assert recent[0].path == ".env"
        assert recent[1].event_type == "write"
        assert recent[1].agent == "Adele"
        assert audit_log.verify_chain().valid

    def test_audit_failure_does_not_change_decision(self, project, store, resolver):
        engine = GuardDecisionEngine(project, store, resolver, audit=FailingAudit())
        assert engine.evaluate(read("README.md")).allowed
        assert not engine.evaluate(read("src/a.py")).allowed

    def test_internal_error_fails_closed(self, project, store):
        handler = FailClosedHandler()
        engine = GuardDecisionEngine(
            project, store, ExplodingResolver(), fail_closed_handler=handler
        )
        decision = engine.evaluate(read("README.md"))

        assert not decision.allowed
        assert decision.rule == "tool-error"
        assert decision.exit_code == 1
        assert decision.reason.startswith("Guard error (unknown_error)")
        assert handler.get_stats()["failure_count"] == 1

    def test_to_dict(self, engine):
        data = engine.evaluate(read("src/main.py")).to_dict()
        assert data["allowed"] is False
        assert data["stage"] == "no_identity"
        assert data["operations"] == [
            {"path": "src/main.py", "kind": "read", "command": ""}
        ]
