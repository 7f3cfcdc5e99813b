"""
Guard policies: off-limits paths, role permissions, mandatory reading.
"""

from .off_limits import OffLimitsPolicy, OffLimitsPattern, OffLimitsIssue, glob_to_regex
from .roles import (
    RoleAccessPolicy,
    IdentityStage,
    AccessDecision,
    ROLES,
    ROLE_PERMISSIONS,
    can_take_role,
    matches_glob,
)
from .must_read import MustReadGate

__all__ = [
    "OffLimitsPolicy",
    "OffLimitsPattern",
    "OffLimitsIssue",
    "glob_to_regex",
    "RoleAccessPolicy",
    "IdentityStage",
    "AccessDecision",
    "ROLES",
    "ROLE_PERMISSIONS",
    "can_take_role",
    "matches_glob",
    "MustReadGate",
]
