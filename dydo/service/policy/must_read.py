"""
Must-Read Gate - mandatory reading before the first write

When an agent takes a role, its required reading is computed from the
role's mode file (dydo/agents/<Name>/modes/<role>.md): the mode file itself
plus every markdown document it links whose frontmatter carries
`must-read: true`. The list is stored on the agent as unread_must_reads.

Writes are blocked while the list is non-empty. Reads are never blocked
here; a read of a listed file only removes it from the list.
"""

import logging
import posixpath
import re
from typing import List, Tuple

from ...config.project_config import ProjectContext
from ..state.agent_store import AgentState, AgentStateStore, parse_frontmatter

logger = logging.getLogger(__name__)

# [text](target) - inline markdown links
LINK_PATTERN = re.compile(r"\[[^\]]*\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")


class MustReadGate:
    """Computes, checks and consumes an agent's mandatory reading."""

    def __init__(self, context: ProjectContext, store: AgentStateStore):
        self.context = context
        self.store = store

    def mode_file(self, agent: str, role: str) -> str:
        """Project-relative path of an agent's mode file for a role."""
        return self.context.relative(
            str(self.context.agent_workspace(agent) / "modes" / f"{role}.md")
        )

    def required_reads(self, agent: str, role: str) -> List[str]:
        """
        Mandatory reading for `agent` taking `role`.

        Returns:
            Project-relative paths, mode file first, de-duplicated in link order
        """
        mode_rel = self.mode_file(agent, role)
        mode_path = self.context.project_root / mode_rel
        if not mode_path.exists():
            logger.warning(f"Mode file {mode_rel} does not exist, no required reading")
            return []

        required = [mode_rel]
        seen = {mode_rel.lower()}
        content = mode_path.read_text(encoding="utf-8")

        for target in self._linked_documents(content, posixpath.dirname(mode_rel)):
            if target.lower() in seen:
                continue
            seen.add(target.lower())
            if self._is_must_read(target):
                required.append(target)

        return required

    def _linked_documents(self, content: str, base_dir: str) -> List[str]:
        targets = []
        for match in LINK_PATTERN.finditer(content):
            target = match.group(1).split("#", 1)[0]
            if not target or "://" in target or target.startswith("mailto:"):
                continue
            if not target.lower().endswith(".md"):
                continue
            if target.startswith("/"):
                resolved = posixpath.normpath(target.lstrip("/"))
            else:
                resolved = posixpath.normpath(posixpath.join(base_dir, target))
            if resolved.startswith("../"):
                continue
            targets.append(resolved)
        return targets

    def _is_must_read(self, relative_path: str) -> bool:
        path = self.context.project_root / relative_path
        if not path.is_file():
            logger.debug(f"Linked document {relative_path} does not exist")
            return False
        frontmatter = parse_frontmatter(path.read_text(encoding="utf-8")) or {}
        value = frontmatter.get("must-read")
        return value is True or str(value).lower() == "true"

    @staticmethod
    def check_write_allowed(state: AgentState) -> Tuple[bool, str]:
        """
        Writes wait until every required file has been read.

        Returns:
            (allowed, reason listing the unread files)
        """
        if not state.unread_must_reads:
            return True, ""
        listing = "\n".join(f"  - {path}" for path in state.unread_must_reads)
        return False, (
            f"Agent {state.name} has not read the required files for role "
            f"{state.role}. Read these first:\n{listing}"
        )

    def record_read(self, agent: str, path: str) -> bool:
        """
        Mark `path` as read for `agent`.

        Accepts project-relative or absolute paths.

        Returns:
            True if an entry was removed (and the state persisted)
        """
        state = self.store.load(agent)
        if not state.unread_must_reads:
            return False

        relative = self.context.relative(path).lower()
        remaining = [p for p in state.unread_must_reads if p.lower() != relative]
        if len(remaining) == len(state.unread_must_reads):
            return False

        state.unread_must_reads = remaining
        self.store.save(state)
        logger.info(f"{agent} read {path}; {len(remaining)} required file(s) left")
        return True
