"""
Access

Permission decisions plus the two heightened-risk controls they apply:
break-glass grants and two-person approval.
"""
from .break_glass import (
    AUTO_GRANT_REASON_CODES,
    BREAK_GLASS_PERMISSIONS,
    SCOPE_PERMISSIONS,
    BreakGlassManager,
    requires_break_glass,
    scopes_for,
)
from .two_person import TWO_PERSON_RULES, TwoPersonApprovalManager
from .decision_engine import PermissionDecisionEngine, coerce_permission
from .access_service import AccessService

__all__ = [
    "AUTO_GRANT_REASON_CODES",
    "BREAK_GLASS_PERMISSIONS",
    "SCOPE_PERMISSIONS",
    "BreakGlassManager",
    "requires_break_glass",
    "scopes_for",
    "TWO_PERSON_RULES",
    "TwoPersonApprovalManager",
    "PermissionDecisionEngine",
    "coerce_permission",
    "AccessService",
]
