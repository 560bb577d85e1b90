"""
Rescue Ops - Case Models

The case entity and its sub-records: assignment/team, SLA block,
status history, flags, notes and resolution.

Milestone timestamps (triaged_at, first_response_at, resolved_at,
closed_at, archived_at) are write-once. Status history is append-only.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .roles import RoleId


# =============================================================================
# ENUMS
# =============================================================================

class CaseStatus(str, Enum):
    NEW = "new"
    TRIAGED = "triaged"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PENDING_VERIFICATION = "pending_verification"
    PENDING_PICKUP = "pending_pickup"
    PENDING_TRANSPORT = "pending_transport"
    IN_CUSTODY = "in_custody"
    MATCHED = "matched"
    PENDING_RELEASE = "pending_release"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ARCHIVED = "archived"
    ON_HOLD = "on_hold"


class CaseType(str, Enum):
    LOST_PET = "lost_pet"
    FOUND_PET = "found_pet"
    STRAY = "stray"
    INJURED = "injured"
    ABANDONED = "abandoned"
    SURRENDER = "surrender"
    EMERGENCY = "emergency"
    WELLNESS_CHECK = "wellness_check"
    TRAP_REQUEST = "trap_request"
    TRANSPORT_REQUEST = "transport_request"


class CasePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class CaseSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


class CaseFlagType(str, Enum):
    URGENT = "urgent"
    VIP = "vip"
    MEDIA_ATTENTION = "media_attention"
    LEGAL_HOLD = "legal_hold"
    FRAUD_SUSPECTED = "fraud_suspected"
    OWNER_VERIFICATION_REQUIRED = "owner_verification_required"
    SPECIAL_NEEDS = "special_needs"
    AGGRESSIVE_ANIMAL = "aggressive_animal"
    DECEASED = "deceased"
    DUPLICATE_SUSPECTED = "duplicate_suspected"


class NoteType(str, Enum):
    GENERAL = "general"
    UPDATE = "update"
    COMMUNICATION = "communication"
    VERIFICATION = "verification"
    INTERNAL = "internal"


class NoteVisibility(str, Enum):
    PUBLIC = "public"
    TEAM = "team"
    MODERATORS = "moderators"
    ADMIN = "admin"


class TeamRole(str, Enum):
    LEAD = "lead"
    MEMBER = "member"
    OBSERVER = "observer"


class ResolutionType(str, Enum):
    REUNITED = "reunited"
    ADOPTED = "adopted"
    TRANSFERRED = "transferred"
    FOSTERED = "fostered"
    TNR_COMPLETE = "tnr_complete"
    OWNER_FOUND = "owner_found"
    DUPLICATE = "duplicate"
    NO_RESPONSE = "no_response"
    UNABLE_TO_LOCATE = "unable_to_locate"
    DECEASED = "deceased"
    WITHDRAWN = "withdrawn"
    OTHER = "other"


class SLAMilestone(str, Enum):
    TRIAGE = "triage"
    FIRST_RESPONSE = "first_response"
    RESOLUTION = "resolution"


# =============================================================================
# ASSIGNMENT / TEAM
# =============================================================================

@dataclass(frozen=True)
class TeamMember:
    user_id: str
    role: TeamRole
    added_at: datetime
    added_by: str
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.removed_at is None


@dataclass(frozen=True)
class CaseAssignment:
    owner_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    team: Tuple[TeamMember, ...] = ()


# =============================================================================
# SLA
# =============================================================================

@dataclass(frozen=True)
class CustomDeadline:
    id: str
    name: str
    due_at: datetime
    created_at: datetime
    created_by: str
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


@dataclass(frozen=True)
class SLAExtension:
    milestone: SLAMilestone
    previous_due_at: datetime
    new_due_at: datetime
    extended_at: datetime
    extended_by: str
    reason: str


@dataclass(frozen=True)
class CaseSLA:
    triage_due_at: datetime
    first_response_due_at: datetime
    resolution_due_at: datetime
    triage_overdue: bool = False
    first_response_overdue: bool = False
    resolution_overdue: bool = False
    custom_deadlines: Tuple[CustomDeadline, ...] = ()
    extensions: Tuple[SLAExtension, ...] = ()
    last_checked_at: Optional[datetime] = None


@dataclass(frozen=True)
class UpcomingDeadline:
    name: str
    due_at: datetime


@dataclass(frozen=True)
class SLAStatus:
    """Derived overdue flags at ``checked_at`` plus the nearest open deadline."""
    triage_overdue: bool
    first_response_overdue: bool
    resolution_overdue: bool
    checked_at: datetime
    next_deadline: Optional[UpcomingDeadline] = None
    overdue_custom_deadlines: Tuple[str, ...] = ()

    @property
    def any_overdue(self) -> bool:
        return (
            self.triage_overdue
            or self.first_response_overdue
            or self.resolution_overdue
            or bool(self.overdue_custom_deadlines)
        )


# =============================================================================
# HISTORY / FLAGS / NOTES / RESOLUTION
# =============================================================================

@dataclass(frozen=True)
class StatusChange:
    from_status: CaseStatus
    to_status: CaseStatus
    changed_at: datetime
    changed_by: str
    automated: bool = False
    actor_role: Optional[RoleId] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class CaseFlag:
    id: str
    flag_type: CaseFlagType
    set_at: datetime
    set_by: str
    reason: Optional[str] = None
    cleared_at: Optional[datetime] = None
    cleared_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.cleared_at is None


@dataclass(frozen=True)
class CaseNote:
    id: str
    author_id: str
    content: str
    created_at: datetime
    note_type: NoteType = NoteType.GENERAL
    visibility: NoteVisibility = NoteVisibility.TEAM

    @property
    def is_internal(self) -> bool:
        return self.visibility == NoteVisibility.ADMIN or self.note_type == NoteType.INTERNAL


@dataclass(frozen=True)
class CaseResolution:
    resolution_type: ResolutionType
    summary: str
    resolved_at: datetime
    resolved_by: str
    outcome_notes: Optional[str] = None


# =============================================================================
# CASE
# =============================================================================

@dataclass(frozen=True)
class Case:
    id: str
    case_number: str
    case_type: CaseType
    status: CaseStatus
    priority: CasePriority
    severity: CaseSeverity
    created_at: datetime
    created_by: str
    sla: CaseSLA
    version: int = 1

    title: Optional[str] = None
    description: Optional[str] = None
    region_id: Optional[str] = None
    tags: Tuple[str, ...] = ()

    assignment: CaseAssignment = CaseAssignment()
    status_history: Tuple[StatusChange, ...] = ()
    flags: Tuple[CaseFlag, ...] = ()
    notes: Tuple[CaseNote, ...] = ()
    internal_notes: Tuple[CaseNote, ...] = ()
    resolution: Optional[CaseResolution] = None

    # Write-once milestones
    triaged_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    """``case`` is the new snapshot on success, the unchanged input otherwise."""
    success: bool
    message: str
    case: Case
