"""
Audit service - tamper-evident guard trail with a hash chain.
"""

from .merkle_chain import MerkleAuditLog, AuditEntry, ChainVerification

__all__ = [
    "MerkleAuditLog",
    "AuditEntry",
    "ChainVerification",
]
