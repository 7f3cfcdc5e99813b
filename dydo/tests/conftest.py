"""
Shared fixtures: a scaffolded project, its store, and a fixed process ancestry.
"""

import pytest

from dydo.core.fail_closed import FailClosedHandler
from dydo.guard_system import GuardDecisionEngine
from dydo.service.agents.registry import AgentRegistry
from dydo.service.audit.merkle_chain import MerkleAuditLog
from dydo.service.identity.resolver import FixedAncestrySource, IdentityResolver
from dydo.service.state.agent_store import AgentStateStore
from dydo.service.workspace.scaffold import init_project

HUMAN = "balazs"

# Owner process of CLI-mode claims
AGENT_PID = 4242


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("DYDO_HUMAN", raising=False)
    monkeypatch.delenv("DYDO_LOG_LEVEL", raising=False)


@pytest.fixture
def project(tmp_path):
    """Initialized project with three agents (Adele, Brian, Charlie)."""
    return init_project(tmp_path, HUMAN, 3)


@pytest.fixture
def store(project):
    return AgentStateStore(project.agents_dir)


@pytest.fixture
def ancestry():
    return FixedAncestrySource([AGENT_PID, 1])


@pytest.fixture
def resolver(store, ancestry):
    return IdentityResolver(store, ancestry)


@pytest.fixture
def audit_log(project):
    return MerkleAuditLog(project.audit_file)


@pytest.fixture
def registry(project, store, resolver, audit_log):
    return AgentRegistry(project, store, resolver, audit_log)


@pytest.fixture
def engine(project, store, resolver, audit_log):
    return GuardDecisionEngine(
        project, store, resolver, audit=audit_log, fail_closed_handler=FailClosedHandler()
    )
