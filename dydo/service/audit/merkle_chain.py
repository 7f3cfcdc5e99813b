"""
Merkle Chain Audit Log - Tamper-Evident Guard Trail

Every guard decision and lifecycle event (claim, release, role) is
appended as one JSON line. Each entry carries the hash of its predecessor,
so editing or deleting any line breaks the chain.

Key Features:
- Tamper-evident: any modification breaks the chain
- Append-only: entries are never rewritten
- Multi-process: appends hold an exclusive lock on the log file
- Verifiable: full chain verification via verify_chain()
"""

import fcntl
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
COMMAND_PREVIEW_LENGTH = 100

EVENT_TYPES = {"read", "write", "edit", "delete", "bash", "blocked", "claim", "release", "role"}

HASHED_FIELDS = (
    "timestamp",
    "event_type",
    "decision",
    "agent",
    "session_id",
    "path",
    "command",
    "reason",
    "prev_hash",
)


@dataclass
class AuditEntry:
    """One guard decision or lifecycle event."""

    timestamp: str  # ISO format
    event_type: str  # read, write, edit, delete, bash, blocked, claim, release, role
    decision: str  # ALLOW, BLOCK
    agent: Optional[str]
    session_id: Optional[str]
    path: Optional[str]
    command: Optional[str]
    reason: Optional[str]
    prev_hash: str
    entry_hash: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(**{name: data.get(name) for name in cls.__dataclass_fields__})


@dataclass
class ChainVerification:
    """Outcome of verify_chain()."""

    valid: bool
    total_entries: int
    first_hash: str
    last_hash: str
    broken_links: List[int]  # Indices where chain is broken
    message: str


class MerkleAuditLog:
    """
    Tamper-evident audit log using a hash chain.

    entry_hash = SHA256(canonical entry fields || prev_hash)
    """

    def __init__(self, log_file: Path):
        self.log_file = Path(log_file)
        self.genesis_hash = GENESIS_HASH

    def append(
        self,
        event_type: str,
        decision: str,
        agent: Optional[str] = None,
        session_id: Optional[str] = None,
        path: Optional[str] = None,
        command: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> str:
        """
        Append an entry to the audit log.

        Args:
            event_type: One of EVENT_TYPES
            decision: ALLOW or BLOCK
            agent: Agent the caller resolved to, if any
            session_id: Hook session id, if any
            path: Target path, for file operations
            command: Raw command for bash events (truncated)
            reason: Block reason, if blocked

        Returns:
            Entry hash
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown audit event type: {event_type}")

        if command and len(command) > COMMAND_PREVIEW_LENGTH:
            command = command[:COMMAND_PREVIEW_LENGTH] + "..."

        entry_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "decision": decision,
            "agent": agent,
            "session_id": session_id,
            "path": path,
            "command": command,
            "reason": reason,
            "prev_hash": self.genesis_hash,
        }

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                # Other guard processes append concurrently; link to the
                # last entry on disk while holding the lock
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    entry_data["prev_hash"] = self._get_last_hash()
                    entry_hash = self._compute_hash(entry_data)
                    entry_data["entry_hash"] = entry_hash
                    f.write(json.dumps(entry_data) + "\n")
                    f.flush()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
            raise

        logger.debug(f"Audit entry appended: {event_type} {decision} (hash={entry_hash[:12]})")
        return entry_hash

    def verify_chain(self) -> ChainVerification:
        """
        Recompute every hash and check each prev_hash link.

        Returns:
            ChainVerification with results
        """
        entries = self._read_all_entries()
        if not entries:
            return ChainVerification(
                valid=True,
                total_entries=0,
                first_hash="",
                last_hash="",
                broken_links=[],
                message="Audit log is empty",
            )

        broken_links = []
        expected_prev_hash = self.genesis_hash

        for i, entry in enumerate(entries):
            if entry.get("prev_hash") != expected_prev_hash:
                broken_links.append(i)
                logger.warning(f"Chain broken at entry {i}: unexpected prev_hash")
            elif entry.get("entry_hash") != self._compute_hash(entry):
                broken_links.append(i)
                logger.warning(f"Entry {i} has invalid hash")

            expected_prev_hash = entry.get("entry_hash")

        valid = len(broken_links) == 0
        return ChainVerification(
            valid=valid,
            total_entries=len(entries),
            first_hash=entries[0].get("entry_hash", ""),
            last_hash=entries[-1].get("entry_hash", ""),
            broken_links=broken_links,
            message=f"Chain valid: {valid}, {len(entries)} entries, "
            f"{len(broken_links)} broken links",
        )

    def get_recent(self, limit: int = 100) -> List[AuditEntry]:
        """Most recent entries, newest first."""
        entries = self._read_all_entries()
        return [AuditEntry.from_dict(e) for e in reversed(entries[-limit:])]

    def count(self) -> int:
        return len(self._read_all_entries())

    def _get_last_hash(self) -> str:
        entries = self._read_all_entries()
        if not entries:
            return self.genesis_hash
        return entries[-1].get("entry_hash", self.genesis_hash)

    def _read_all_entries(self) -> List[Dict[str, Any]]:
        if not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Failed to parse audit line: {e}")
        return entries

    @staticmethod
    def _compute_hash(entry_data: Dict[str, Any]) -> str:
        canonical = {name: entry_data.get(name) for name in HASHED_FIELDS}
        data_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(data_str.encode()).hexdigest()
