"""
Tests for the must-read gate.
"""

import pytest

from dydo.service.policy import MustReadGate
from dydo.service.state import AgentState

ABOUT = "dydo/understand/about.md"
ARCHITECTURE = "dydo/understand/architecture.md"
STANDARDS = "dydo/guides/coding-standards.md"


class TestRequiredReads:
    """Tests for computing an agent's mandatory reading."""

    @pytest.fixture
    def gate(self, project, store):
        return MustReadGate(project, store)

    def test_reviewer_reading(self, gate):
        assert gate.required_reads("Adele", "reviewer") == [
            "dydo/agents/Adele/modes/reviewer.md",
            ABOUT,
            ARCHITECTURE,
            STANDARDS,
        ]

    def test_interviewer_reading(self, gate):
        assert gate.required_reads("Brian", "interviewer") == [
            "dydo/agents/Brian/modes/interviewer.md",
            ABOUT,
        ]

    def test_missing_mode_file(self, gate):
        assert gate.required_reads("Nobody", "reviewer") == []

    def test_only_flagged_documents_are_required(self, gate, project):
        docs = project.dydo_root / "guides"
        (docs / "optional.md").write_text("# Optional\n", encoding="utf-8")
        (docs / "flagged.md").write_text(
            "---\nmust-read: true\n---\n# Flagged\n", encoding="utf-8"
        )
        mode = project.agent_workspace("Adele") / "modes" / "planner.md"
        mode.write_text(
            "# Planner\n\n"
            "- [optional](../../../guides/optional.md)\n"
            "- [flagged](../../../guides/flagged.md#section)\n"
            "- [again](../../../guides/flagged.md)\n"
            "- [site](https://example.com/page.md)\n"
            "- [missing](../../../guides/missing.md)\n",
            encoding="utf-8",
        )

        assert gate.required_reads("Adele", "planner") == [
            "dydo/agents/Adele/modes/planner.md",
            "dydo/guides/flagged.md",
        ]


class TestWriteGate:
    """Tests for blocking writes and consuming reads."""

    @pytest.fixture
    def gate(self, project, store):
        return MustReadGate(project, store)

    @pytest.fixture
    def state(self, store):
        state = AgentState(name="Adele", role="reviewer", unread_must_reads=[ABOUT, STANDARDS])
        store.save(state)
        return state

    def test_write_blocked_while_unread(self, gate, state):
        allowed, reason = gate.check_write_allowed(state)
        assert not allowed
        assert "not read the required files" in reason
        assert f"  - {ABOUT}" in reason
        assert f"  - {STANDARDS}" in reason

    def test_write_allowed_when_all_read(self, gate):
        assert gate.check_write_allowed(AgentState(name="Adele", role="reviewer"))[0]

    def test_record_relative_read(self, gate, store, state):
        assert gate.record_read("Adele", ABOUT)
        assert store.load("Adele").unread_must_reads == [STANDARDS]

    def test_record_absolute_read(self, gate, store, state, project):
        assert gate.record_read("Adele", str(project.project_root / STANDARDS))
        assert store.load("Adele").unread_must_reads == [ABOUT]

    def test_record_is_case_insensitive(self, gate, store, state):
        assert gate.record_read("Adele", "DYDO/Understand/About.md")
        assert ABOUT not in store.load("Adele").unread_must_reads

    def test_unrelated_read_changes_nothing(self, gate, store, state):
        assert not gate.record_read("Adele", "src/main.py")
        assert store.load("Adele").unread_must_reads == [ABOUT, STANDARDS]
