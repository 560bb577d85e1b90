"""
Rescue Ops - Access Decision Models

Action context, permission decisions, break-glass grants and two-person
approval requests.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from ..errors import ConfigurationError
from .roles import AssignmentStatus, Permission, RoleId


# =============================================================================
# ENUMS
# =============================================================================

class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRES_BREAK_GLASS = "requires_break_glass"
    REQUIRES_TWO_PERSON = "requires_two_person"


class CheckSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class BreakGlassScope(str, Enum):
    PII = "pii"
    ADDRESS = "address"
    CONTACT = "contact"


class BreakGlassReasonCode(str, Enum):
    IMMEDIATE_SAFETY = "immediate_safety"
    OWNER_CONTACT_FAILED = "owner_contact_failed"
    LAW_ENFORCEMENT = "law_enforcement"
    VET_EMERGENCY = "vet_emergency"
    FRAUD_INVESTIGATION = "fraud_investigation"
    OTHER = "other"


class BreakGlassStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AccessType(str, Enum):
    READ = "read"
    WRITE = "write"


class ReviewOutcome(str, Enum):
    APPROPRIATE = "appropriate"
    INAPPROPRIATE = "inappropriate"
    NEEDS_FOLLOWUP = "needs_followup"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


AUTO_GRANTER = "auto"


# =============================================================================
# BREAK-GLASS REQUEST
# =============================================================================

@dataclass(frozen=True)
class ResourceAccess:
    """One entry of the append-only access log of a break-glass grant."""
    resource_type: str
    resource_id: str
    accessed_at: datetime
    access_type: AccessType


@dataclass(frozen=True)
class BreakGlassRequest:
    id: str
    requester_id: str
    requested_at: datetime
    scopes: Tuple[BreakGlassScope, ...]
    reason_code: BreakGlassReasonCode
    justification: str
    ttl_minutes: int
    expires_at: datetime
    status: BreakGlassStatus = BreakGlassStatus.PENDING
    case_id: Optional[str] = None
    version: int = 1

    # Grant / denial / revocation
    granted_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    denied_at: Optional[datetime] = None
    denied_by: Optional[str] = None
    denial_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None

    # Usage tracking (append-only)
    accessed_resources: Tuple[ResourceAccess, ...] = ()

    # Mandatory post-hoc review
    review_deadline: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    review_outcome: Optional[ReviewOutcome] = None


# =============================================================================
# ACTION CONTEXT
# =============================================================================

CONTEXT_VERSION = 1


@dataclass(frozen=True)
class ActionContext:
    """
    Every field a permission rule may inspect.

    Rules must not read anything that is not declared here. Bump
    CONTEXT_VERSION when a field is added.
    """
    version: int = CONTEXT_VERSION
    case_id: Optional[str] = None
    region_id: Optional[str] = None
    target_user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    claim_score: Optional[int] = None
    has_dispute: bool = False
    alert_tier: Optional[int] = None
    is_emergency: bool = False

    # Evidence supplied by the caller
    break_glass: Optional[BreakGlassRequest] = None
    approval: Optional["TwoPersonApprovalRequest"] = None

    def __post_init__(self):
        if self.version != CONTEXT_VERSION:
            raise ConfigurationError(
                f"Unsupported action context version {self.version} (expected {CONTEXT_VERSION})"
            )

    @property
    def break_glass_id(self) -> Optional[str]:
        return self.break_glass.id if self.break_glass else None

    def without_evidence(self) -> "ActionContext":
        """Snapshot suitable for storing on an approval request."""
        return replace(self, break_glass=None, approval=None)


# =============================================================================
# TWO-PERSON APPROVAL
# =============================================================================

@dataclass(frozen=True)
class TwoPersonRule:
    action: Permission
    required_approvers: int
    approver_roles: Tuple[RoleId, ...]
    time_window_minutes: int
    reason: str
    condition: Optional[Callable[[ActionContext], bool]] = None
    condition_description: Optional[str] = None

    def applies_to(self, context: ActionContext) -> bool:
        if self.condition is None:
            return True
        return bool(self.condition(context))


@dataclass(frozen=True)
class ApprovalEntry:
    user_id: str
    role_id: RoleId
    approved_at: datetime
    notes: Optional[str] = None


@dataclass(frozen=True)
class TwoPersonApprovalRequest:
    id: str
    action: Permission
    requested_by: str
    requested_at: datetime
    target_resource_type: str
    target_resource_id: str
    context: ActionContext
    required_approvers: int
    approver_roles: Tuple[RoleId, ...]
    timeout_at: datetime
    approvals: Tuple[ApprovalEntry, ...] = ()
    status: ApprovalStatus = ApprovalStatus.PENDING
    version: int = 1

    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    def distinct_eligible_approvers(self) -> FrozenSet[str]:
        """Distinct approver ids with an eligible role, excluding the requester."""
        return frozenset(
            a.user_id for a in self.approvals
            if a.role_id in self.approver_roles and a.user_id != self.requested_by
        )

    def has_approved(self, user_id: str) -> bool:
        return any(a.user_id == user_id for a in self.approvals)


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of submitting an approval (or other action) on a request."""
    accepted: bool
    request: TwoPersonApprovalRequest
    satisfied: bool
    message: str


@dataclass(frozen=True)
class AccessOutcome:
    """Result of a break-glass lifecycle operation."""
    success: bool
    request: BreakGlassRequest
    message: str


# =============================================================================
# PERMISSION DECISIONS
# =============================================================================

@dataclass(frozen=True)
class PermissionCheck:
    name: str
    passed: bool
    detail: str = ""
    severity: CheckSeverity = CheckSeverity.INFO


@dataclass(frozen=True)
class PermissionCheckResult:
    """
    Decision plus the full list of checks performed.

    ``audit_note`` is a single sentence for the append-only audit sink.
    """
    allowed: bool
    decision: Decision
    permission: Permission
    user_id: str
    checks: Tuple[PermissionCheck, ...]
    applied_policies: Tuple[str, ...]
    audit_note: str
    missing_permissions: Tuple[Permission, ...] = ()
    granting_roles: Tuple[RoleId, ...] = ()
    break_glass_scopes: Tuple[BreakGlassScope, ...] = ()
    required_approvals: int = 0
    approver_roles: Tuple[RoleId, ...] = ()
    current_approvals: int = 0
    two_person_reason: Optional[str] = None

    @property
    def break_glass_required(self) -> bool:
        return self.decision == Decision.REQUIRES_BREAK_GLASS

    @property
    def two_person_required(self) -> bool:
        return self.decision == Decision.REQUIRES_TWO_PERSON

    def to_dict(self) -> Dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "allowed": self.allowed,
            "decision": self.decision.value,
            "permission": self.permission.value,
            "user_id": self.user_id,
            "checks": [
                {"name": c.name, "passed": c.passed, "detail": c.detail, "severity": c.severity.value}
                for c in self.checks
            ],
            "applied_policies": list(self.applied_policies),
            "audit_note": self.audit_note,
            "missing_permissions": [p.value for p in self.missing_permissions],
            "granting_roles": [r.value for r in self.granting_roles],
            "break_glass_scopes": [s.value for s in self.break_glass_scopes],
            "required_approvals": self.required_approvals,
            "approver_roles": [r.value for r in self.approver_roles],
            "current_approvals": self.current_approvals,
            "two_person_reason": self.two_person_reason,
        }


@dataclass(frozen=True)
class RoleContribution:
    role_id: RoleId
    status: AssignmentStatus
    effective: bool
    has_permission: bool
    region_limited: bool
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PolicyRelevance:
    policy: str
    description: str
    applies: bool


@dataclass(frozen=True)
class PermissionExplanation:
    permission: Permission
    user_id: str
    result: PermissionCheckResult
    role_breakdown: List[RoleContribution] = field(default_factory=list)
    relevant_policies: List[PolicyRelevance] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "permission": self.permission.value,
            "user_id": self.user_id,
            "result": self.result.to_dict(),
            "role_breakdown": [
                {
                    "role_id": r.role_id.value,
                    "status": r.status.value,
                    "effective": r.effective,
                    "has_permission": r.has_permission,
                    "region_limited": r.region_limited,
                    "expires_at": r.expires_at.isoformat() if r.expires_at else None,
                }
                for r in self.role_breakdown
            ],
            "relevant_policies": [
                {"policy": p.policy, "description": p.description, "applies": p.applies}
                for p in self.relevant_policies
            ],
            "recommendations": list(self.recommendations),
        }
