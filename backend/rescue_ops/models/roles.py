"""
Rescue Ops - Role & Assignment Models

Permission vocabulary, role identifiers, role definitions, user role
assignments and the derived role set.

CRITICAL: No destructive delete permission exists anywhere in the
vocabulary. Archive / redact / legal hold replace deletion.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


# =============================================================================
# PERMISSIONS
# =============================================================================

class Permission(str, Enum):
    """Capability tokens. Values are the wire form (e.g. ``case.view``)."""
    # Case management
    CASE_VIEW = "case.view"
    CASE_VIEW_SENSITIVE = "case.view_sensitive"
    CASE_CREATE = "case.create"
    CASE_EDIT = "case.edit"
    CASE_EDIT_OWN = "case.edit_own"
    CASE_CLOSE = "case.close"
    CASE_REOPEN = "case.reopen"
    CASE_ESCALATE = "case.escalate"
    CASE_DEESCALATE = "case.deescalate"
    CASE_ASSIGN = "case.assign"
    CASE_REASSIGN = "case.reassign"
    CASE_ARCHIVE = "case.archive"
    CASE_UNARCHIVE = "case.unarchive"
    CASE_COLD_STORAGE = "case.cold_storage"
    CASE_REDACT_PII = "case.redact_pii"
    CASE_LEGAL_HOLD = "case.legal_hold"
    CASE_LEGAL_HOLD_RELEASE = "case.legal_hold_release"
    # Match management
    MATCH_VIEW = "match.view"
    MATCH_SUGGEST = "match.suggest"
    MATCH_VERIFY = "match.verify"
    MATCH_REJECT = "match.reject"
    MATCH_NOTIFY_OWNER = "match.notify_owner"
    MATCH_HANDLE_DECEASED = "match.handle_deceased"
    # Owner verification
    VERIFICATION_VIEW = "verification.view"
    VERIFICATION_INITIATE = "verification.initiate"
    VERIFICATION_ADD_EVIDENCE = "verification.add_evidence"
    VERIFICATION_VERIFY_EVIDENCE = "verification.verify_evidence"
    VERIFICATION_ADMINISTER_TEST = "verification.administer_test"
    VERIFICATION_APPROVE = "verification.approve"
    VERIFICATION_REJECT = "verification.reject"
    VERIFICATION_SET_HOLD = "verification.set_hold"
    VERIFICATION_CLEAR_HOLD = "verification.clear_hold"
    VERIFICATION_ESCALATE_DISPUTE = "verification.escalate_dispute"
    VERIFICATION_RESOLVE_DISPUTE = "verification.resolve_dispute"
    # Volunteer management
    VOLUNTEER_VIEW = "volunteer.view"
    VOLUNTEER_VIEW_SENSITIVE = "volunteer.view_sensitive"
    VOLUNTEER_APPROVE = "volunteer.approve"
    VOLUNTEER_SUSPEND = "volunteer.suspend"
    VOLUNTEER_REVOKE = "volunteer.revoke"
    VOLUNTEER_REINSTATE = "volunteer.reinstate"
    VOLUNTEER_DISPATCH = "volunteer.dispatch"
    VOLUNTEER_MENTOR = "volunteer.mentor"
    VOLUNTEER_ASSIGN_BUDDY = "volunteer.assign_buddy"
    # Moderator management
    MODERATOR_VIEW = "moderator.view"
    MODERATOR_APPROVE = "moderator.approve"
    MODERATOR_SUSPEND = "moderator.suspend"
    MODERATOR_ASSIGN_CASES = "moderator.assign_cases"
    MODERATOR_MANAGE_SHIFTS = "moderator.manage_shifts"
    # Alerts
    ALERT_VIEW = "alert.view"
    ALERT_TRIGGER_T1 = "alert.trigger_t1"
    ALERT_TRIGGER_T2 = "alert.trigger_t2"
    ALERT_TRIGGER_T3 = "alert.trigger_t3"
    ALERT_TRIGGER_T4 = "alert.trigger_t4"
    ALERT_TRIGGER_T5 = "alert.trigger_t5"
    ALERT_CANCEL = "alert.cancel"
    # Assets
    ASSET_VIEW = "asset.view"
    ASSET_CHECKOUT = "asset.checkout"
    ASSET_CHECKIN = "asset.checkin"
    ASSET_TRANSFER = "asset.transfer"
    ASSET_AUDIT = "asset.audit"
    ASSET_MANAGE = "asset.manage"
    # Field operations
    FIELD_VIEW_OPERATIONS = "field.view_operations"
    FIELD_START_OPERATION = "field.start_operation"
    FIELD_CHECKIN = "field.checkin"
    FIELD_VIEW_LOCATION = "field.view_location"
    FIELD_ESCALATE_SAFETY = "field.escalate_safety"
    # System management
    SYSTEM_AUDIT_VIEW = "system.audit_view"
    SYSTEM_AUDIT_EXPORT = "system.audit_export"
    SYSTEM_CONFIG_VIEW = "system.config_view"
    SYSTEM_CONFIG_EDIT = "system.config_edit"
    SYSTEM_USER_BAN = "system.user_ban"
    SYSTEM_EMERGENCY_MODE_ACTIVATE = "system.emergency_mode_activate"
    SYSTEM_EMERGENCY_MODE_DEACTIVATE = "system.emergency_mode_deactivate"
    SYSTEM_MANAGE_REGIONS = "system.manage_regions"
    # Data access (break-glass protected)
    DATA_PII_VIEW = "data.pii_view"
    DATA_ADDRESS_VIEW = "data.address_view"
    DATA_CONTACT_VIEW = "data.contact_view"
    DATA_EXPORT = "data.export"
    DATA_RETENTION_MANAGE = "data.retention_manage"
    # Training
    TRAINING_VIEW = "training.view"
    TRAINING_COMPLETE_OWN = "training.complete_own"
    TRAINING_MANAGE_MODULES = "training.manage_modules"
    TRAINING_VIEW_PROGRESS = "training.view_progress"
    TRAINING_CERTIFY = "training.certify"
    # Governance
    GOVERNANCE_VIEW_SOPS = "governance.view_sops"
    GOVERNANCE_MANAGE_SOPS = "governance.manage_sops"
    GOVERNANCE_VIEW_INCIDENTS = "governance.view_incidents"
    GOVERNANCE_INVESTIGATE_INCIDENTS = "governance.investigate_incidents"
    GOVERNANCE_RESOLVE_INCIDENTS = "governance.resolve_incidents"
    # Grievance / whistleblower
    GRIEVANCE_SUBMIT = "grievance.submit"
    GRIEVANCE_VIEW_OWN = "grievance.view_own"
    GRIEVANCE_VIEW_ANONYMOUS = "grievance.view_anonymous"
    GRIEVANCE_INVESTIGATE = "grievance.investigate"
    GRIEVANCE_RESOLVE = "grievance.resolve"


# =============================================================================
# ROLES
# =============================================================================

class RoleId(str, Enum):
    # Staff
    FOUNDATION_ADMIN = "foundation_admin"
    REGIONAL_COORDINATOR = "regional_coordinator"
    # Moderators
    LEAD_MODERATOR = "lead_moderator"
    MODERATOR = "moderator"
    JUNIOR_MODERATOR = "junior_moderator"
    # Volunteers
    SENIOR_TRANSPORTER = "senior_transporter"
    TRANSPORTER = "transporter"
    EMERGENCY_FOSTER = "emergency_foster"
    FOSTER = "foster"
    TRAPPER = "trapper"
    COMMUNITY_VOLUNTEER = "community_volunteer"
    # Base
    VERIFIED_USER = "verified_user"
    USER = "user"


class RoleCategory(str, Enum):
    STAFF = "staff"
    MODERATOR = "moderator"
    VOLUNTEER = "volunteer"
    USER = "user"


class IdentityAssuranceLevel(str, Enum):
    """Ordinal identity-assurance tiers. Compare with ``rank``."""
    IAL0 = "IAL0"
    IAL1 = "IAL1"
    IAL2 = "IAL2"
    IAL3 = "IAL3"

    @property
    def rank(self) -> int:
        return int(self.value[3:])


class WaiverType(str, Enum):
    LIABILITY_WAIVER = "liability_waiver"
    NDA_AGREEMENT = "nda_agreement"
    MEDIA_RELEASE = "media_release"
    VEHICLE_INDEMNIFICATION = "vehicle_indemnification"
    BACKGROUND_CHECK_CONSENT = "background_check_consent"
    LOCATION_SHARING_CONSENT = "location_sharing_consent"
    PHOTO_CONSENT = "photo_consent"
    MINOR_GUARDIAN_CONSENT = "minor_guardian_consent"


class BackgroundCheckStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    EXPIRED = "expired"


class AssignmentStatus(str, Enum):
    """Only ACTIVE contributes permissions. SUSPENDED -> ACTIVE is the only way back."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ConflictType(str, Enum):
    REDUNDANT = "redundant"
    REQUIRES_APPROVAL = "requires_approval"
    INCOMPATIBLE = "incompatible"


# =============================================================================
# ROLE DEFINITION (static, loaded at startup)
# =============================================================================

@dataclass(frozen=True)
class RoleDefinition:
    """Immutable definition of a role in the catalog."""
    id: RoleId
    name: str
    description: str
    level: int  # Higher = more authority (0-100)
    category: RoleCategory
    permissions: FrozenSet[Permission]

    # Approval chain
    can_approve: FrozenSet[RoleId] = frozenset()
    reports_to: Optional[RoleId] = None

    # Eligibility
    min_age_years: int = 0
    required_ial: IdentityAssuranceLevel = IdentityAssuranceLevel.IAL0
    requires_2fa: bool = False
    requires_background_check: bool = False
    requires_interview: bool = False
    required_waivers: Tuple[WaiverType, ...] = ()
    training_modules: Tuple[str, ...] = ()

    # Lifecycle policy
    auto_expire_days: Optional[int] = None
    recertification_days: Optional[int] = None
    reapplication_cooldown_days: Optional[int] = None

    # Prerequisites
    prerequisite_roles: Tuple[RoleId, ...] = ()
    minimum_days_in_prerequisite: Optional[int] = None

    # Operational limits
    max_active_cases: Optional[int] = None
    max_concurrent_dispatches: Optional[int] = None
    max_shift_hours: Optional[int] = None

    @property
    def requires_training(self) -> bool:
        return len(self.training_modules) > 0


@dataclass(frozen=True)
class RoleConflict:
    """A pair of roles whose combination needs a resolution strategy."""
    role_a: RoleId
    role_b: RoleId
    conflict_type: ConflictType
    reason: str

    def involves(self, first: RoleId, second: RoleId) -> bool:
        return {self.role_a, self.role_b} == {first, second}


# =============================================================================
# ELIGIBILITY PROFILE (inbound from identity/training collaborator)
# =============================================================================

@dataclass(frozen=True)
class EligibilityProfile:
    """Already-resolved eligibility facts about a candidate."""
    user_id: str
    age: int
    ial: IdentityAssuranceLevel
    has_2fa: bool
    signed_waivers: FrozenSet[WaiverType] = frozenset()
    completed_training: FrozenSet[str] = frozenset()
    background_check_status: Optional[BackgroundCheckStatus] = None
    interview_completed: bool = False


# =============================================================================
# USER ROLE ASSIGNMENT
# =============================================================================

@dataclass(frozen=True)
class ApproverRecord:
    user_id: str
    approved_at: datetime


@dataclass(frozen=True)
class UserRoleAssignment:
    """
    Binding of a user to a role.

    Lifecycle operations never mutate an assignment. They return a new
    record with ``version`` incremented by one.
    """
    id: str
    user_id: str
    role_id: RoleId
    status: AssignmentStatus
    granted_at: datetime
    granted_by: str
    version: int = 1
    is_primary: bool = False
    grant_reason: Optional[str] = None
    application_id: Optional[str] = None

    # Scope limiters (empty = unrestricted)
    region_ids: Tuple[str, ...] = ()
    partner_org_ids: Tuple[str, ...] = ()

    # Suspension
    suspended_at: Optional[datetime] = None
    suspended_by: Optional[str] = None
    suspension_reason: Optional[str] = None
    suspension_ends_at: Optional[datetime] = None
    suspension_approvers: Tuple[ApproverRecord, ...] = ()

    # Revocation
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    revocation_approvers: Tuple[ApproverRecord, ...] = ()
    permanent_ban: bool = False

    # Expiration
    expires_at: Optional[datetime] = None
    last_renewed_at: Optional[datetime] = None

    # Audit
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        """Active and not past its expiry at ``now``."""
        if self.status != AssignmentStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now

    def covers_region(self, region_id: str) -> bool:
        return not self.region_ids or region_id in self.region_ids


@dataclass(frozen=True)
class PendingRenewal:
    role_id: RoleId
    expires_at: datetime


@dataclass(frozen=True)
class UserRoleSet:
    """
    Aggregated view over a user's assignments at ``computed_at``.

    Derived data only. The decision engine recomputes permissions from
    ``assignments`` on every check and never trusts the summary fields.
    """
    user_id: str
    assignments: Tuple[UserRoleAssignment, ...]
    effective_permissions: FrozenSet[Permission]
    highest_role: RoleId
    highest_role_level: int
    primary_role: Optional[RoleId]
    computed_at: datetime
    has_active_roles: bool
    has_suspended_roles: bool
    has_expired_roles: bool
    pending_renewals: Tuple[PendingRenewal, ...] = ()

    def active_assignments(self, now: datetime) -> List[UserRoleAssignment]:
        return [a for a in self.assignments if a.is_effective(now)]


@dataclass(frozen=True)
class AssignmentValidation:
    """Every failed check is listed. ``valid`` iff there are no blockers."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AssignmentChange:
    """Outcome of an assignment lifecycle operation."""
    success: bool
    assignment: UserRoleAssignment
    message: str
