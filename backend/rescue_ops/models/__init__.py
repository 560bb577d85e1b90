"""Rescue Ops - Data Models"""
from .roles import (
    # Vocabulary
    Permission, RoleId, RoleCategory, IdentityAssuranceLevel, WaiverType,
    BackgroundCheckStatus, AssignmentStatus, ConflictType,
    # Catalog
    RoleDefinition, RoleConflict,
    # Assignments
    EligibilityProfile, ApproverRecord, UserRoleAssignment, PendingRenewal, UserRoleSet,
    AssignmentValidation, AssignmentChange,
)
from .actors import HumanActor, SystemActor, SYSTEM, SYSTEM_ACTOR_ID, Actor, ApproverPair
from .access import (
    Decision, CheckSeverity, BreakGlassScope, BreakGlassReasonCode, BreakGlassStatus,
    AccessType, ReviewOutcome, ApprovalStatus, AUTO_GRANTER,
    ResourceAccess, BreakGlassRequest, ActionContext, CONTEXT_VERSION,
    TwoPersonRule, ApprovalEntry, TwoPersonApprovalRequest, ApprovalOutcome, AccessOutcome,
    PermissionCheck, PermissionCheckResult, RoleContribution, PolicyRelevance,
    PermissionExplanation,
)
from .cases import (
    CaseStatus, CaseType, CasePriority, CaseSeverity, CaseFlagType, NoteType,
    NoteVisibility, TeamRole, ResolutionType, SLAMilestone,
    TeamMember, CaseAssignment, CustomDeadline, SLAExtension, CaseSLA, UpcomingDeadline,
    SLAStatus, StatusChange, CaseFlag, CaseNote, CaseResolution, Case, TransitionResult,
)
from .audit import AuditEventType, AuditEntry

__all__ = [
    "Permission", "RoleId", "RoleCategory", "IdentityAssuranceLevel", "WaiverType",
    "BackgroundCheckStatus", "AssignmentStatus", "ConflictType",
    "RoleDefinition", "RoleConflict",
    "EligibilityProfile", "ApproverRecord", "UserRoleAssignment", "PendingRenewal", "UserRoleSet",
    "AssignmentValidation", "AssignmentChange",
    "HumanActor", "SystemActor", "SYSTEM", "SYSTEM_ACTOR_ID", "Actor", "ApproverPair",
    "Decision", "CheckSeverity", "BreakGlassScope", "BreakGlassReasonCode", "BreakGlassStatus",
    "AccessType", "ReviewOutcome", "ApprovalStatus", "AUTO_GRANTER",
    "ResourceAccess", "BreakGlassRequest", "ActionContext", "CONTEXT_VERSION",
    "TwoPersonRule", "ApprovalEntry", "TwoPersonApprovalRequest", "ApprovalOutcome", "AccessOutcome",
    "PermissionCheck", "PermissionCheckResult", "RoleContribution", "PolicyRelevance",
    "PermissionExplanation",
    "CaseStatus", "CaseType", "CasePriority", "CaseSeverity", "CaseFlagType", "NoteType",
    "NoteVisibility", "TeamRole", "ResolutionType", "SLAMilestone",
    "TeamMember", "CaseAssignment", "CustomDeadline", "SLAExtension", "CaseSLA", "UpcomingDeadline",
    "SLAStatus", "StatusChange", "CaseFlag", "CaseNote", "CaseResolution", "Case", "TransitionResult",
    "AuditEventType", "AuditEntry",
]
