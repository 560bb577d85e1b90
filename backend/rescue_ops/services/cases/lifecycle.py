"""
Case Lifecycle Manager

Creates cases and applies every change to them as a new snapshot:
status transitions, resolution, assignment and team, flags, notes,
and SLA deadlines.

RULES:
- Every change returns a new Case with version + 1. Inputs are never mutated.
- Status changes go through the state machine and append to status_history.
- Milestone timestamps are stamped once and never overwritten.
- Team members and flags are soft-removed (stamped), never deleted.
"""
import logging
import random
from uuid import uuid4
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ...clock import days_between, resolve_now
from ...models.access import PermissionCheckResult
from ...models.actors import Actor
from ...models.cases import (
    Case,
    CaseFlag,
    CaseFlagType,
    CaseNote,
    CasePriority,
    CaseResolution,
    CaseSeverity,
    CaseStatus,
    CaseType,
    CustomDeadline,
    NoteType,
    NoteVisibility,
    ResolutionType,
    SLAMilestone,
    SLAStatus,
    StatusChange,
    TeamMember,
    TeamRole,
    TransitionResult,
)
from .sla import SLAEngine, default_sla_engine
from .state_machine import CaseStateMachine, StateTransition, default_state_machine

logger = logging.getLogger(__name__)


OPEN_EXCLUDED_STATUSES = frozenset({CaseStatus.RESOLVED, CaseStatus.CLOSED, CaseStatus.ARCHIVED})
RESOLVED_STATUSES = frozenset({CaseStatus.RESOLVED, CaseStatus.CLOSED, CaseStatus.ARCHIVED})

# Milestone stamped the first time a case enters each status
_MILESTONE_FIELDS = {
    CaseStatus.TRIAGED: "triaged_at",
    CaseStatus.RESOLVED: "resolved_at",
    CaseStatus.CLOSED: "closed_at",
    CaseStatus.ARCHIVED: "archived_at",
}


def generate_case_number(now: datetime) -> str:
    """Case numbers look like P911-2026-004217."""
    return f"P911-{now.year}-{random.randint(0, 999999):06d}"


def _new_id() -> str:
    return str(uuid4())


class CaseLifecycleManager:
    def __init__(
        self,
        state_machine: Optional[CaseStateMachine] = None,
        sla_engine: Optional[SLAEngine] = None,
        case_number_factory: Callable[[datetime], str] = generate_case_number,
    ):
        self.state_machine = state_machine or default_state_machine
        self.sla_engine = sla_engine or default_sla_engine
        self.case_number_factory = case_number_factory

    @staticmethod
    def _touch(case: Case, actor_id: str, now: datetime, **changes) -> Case:
        return replace(case, version=case.version + 1, updated_at=now, updated_by=actor_id, **changes)

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_case(
        self,
        case_type: CaseType,
        created_by: str,
        priority: CasePriority = CasePriority.NORMAL,
        severity: CaseSeverity = CaseSeverity.MODERATE,
        title: Optional[str] = None,
        description: Optional[str] = None,
        region_id: Optional[str] = None,
        tags: Sequence[str] = (),
        case_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Case:
        now = resolve_now(now)
        case = Case(
            id=case_id or _new_id(),
            case_number=self.case_number_factory(now),
            case_type=case_type,
            status=CaseStatus.NEW,
            priority=priority,
            severity=severity,
            created_at=now,
            created_by=created_by,
            sla=self.sla_engine.create_sla(case_type, priority, now),
            title=title,
            description=description,
            region_id=region_id,
            tags=tuple(tags),
            status_history=(
                StatusChange(
                    from_status=CaseStatus.NEW,
                    to_status=CaseStatus.NEW,
                    changed_at=now,
                    changed_by=created_by,
                    automated=True,
                ),
            ),
            updated_at=now,
            updated_by=created_by,
        )
        logger.info(f"Created case {case.case_number} ({case_type.value}/{priority.value})")
        return case

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    def validate_transition(self, from_status: CaseStatus, to_status: CaseStatus, actor: Actor,
                            reason: Optional[str] = None):
        return self.state_machine.can_transition(from_status, to_status, actor, reason)

    def get_possible_transitions(self, case: Case, actor: Actor) -> List[StateTransition]:
        return self.state_machine.get_possible_transitions(case.status, actor)

    def _check_permission_result(self, actor: Actor, permission_result: Optional[PermissionCheckResult]):
        if permission_result is None:
            return None
        if permission_result.user_id != actor.actor_id:
            return "Permission decision belongs to a different user"
        if not permission_result.allowed:
            return f"Permission check failed: {permission_result.audit_note}"
        return None

    def _apply_status(self, case: Case, to_status: CaseStatus, actor: Actor, reason: Optional[str],
                      now: datetime, **extra) -> Case:
        change = StatusChange(
            from_status=case.status,
            to_status=to_status,
            changed_at=now,
            changed_by=actor.actor_id,
            automated=actor.is_system,
            actor_role=None if actor.is_system else actor.role_id,
            reason=reason,
        )
        milestones = {}
        field_name = _MILESTONE_FIELDS.get(to_status)
        if field_name and getattr(case, field_name) is None:
            milestones[field_name] = now

        return self._touch(
            case,
            actor.actor_id,
            now,
            status=to_status,
            status_history=case.status_history + (change,),
            **milestones,
            **extra,
        )

    def transition_status(
        self,
        case: Case,
        to_status: CaseStatus,
        actor: Actor,
        reason: Optional[str] = None,
        permission_result: Optional[PermissionCheckResult] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move a case along one edge of the transition table.

        When ``permission_result`` is supplied it must be an allow decision
        for the same actor, otherwise the transition is refused.
        """
        now = resolve_now(now)

        allowed, message = self.validate_transition(case.status, to_status, actor, reason)
        if not allowed:
            logger.info(f"Rejected {case.case_number} {case.status.value} -> {to_status.value}: {message}")
            return TransitionResult(success=False, message=message, case=case)

        denial = self._check_permission_result(actor, permission_result)
        if denial:
            return TransitionResult(success=False, message=denial, case=case)

        updated = self._apply_status(case, to_status, actor, reason, now)
        logger.info(f"Case {case.case_number}: {case.status.value} -> {to_status.value} by {actor.actor_id}")
        return TransitionResult(success=True, message=f"Status changed to {to_status.value}", case=updated)

    def resolve_case(
        self,
        case: Case,
        resolution_type: ResolutionType,
        summary: str,
        actor: Actor,
        outcome_notes: Optional[str] = None,
        permission_result: Optional[PermissionCheckResult] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Transition to resolved and record the resolution. A resolution is set once."""
        now = resolve_now(now)

        if case.resolution is not None:
            return TransitionResult(success=False, message="Case already has a resolution", case=case)
        if not summary or not summary.strip():
            return TransitionResult(success=False, message="Resolution summary is required", case=case)

        allowed, message = self.validate_transition(case.status, CaseStatus.RESOLVED, actor, summary)
        if not allowed:
            return TransitionResult(success=False, message=message, case=case)

        denial = self._check_permission_result(actor, permission_result)
        if denial:
            return TransitionResult(success=False, message=denial, case=case)

        resolution = CaseResolution(
            resolution_type=resolution_type,
            summary=summary,
            resolved_at=now,
            resolved_by=actor.actor_id,
            outcome_notes=outcome_notes,
        )
        updated = self._apply_status(
            case, CaseStatus.RESOLVED, actor, f"Resolved: {resolution_type.value}", now,
            resolution=resolution,
        )
        logger.info(f"Case {case.case_number} resolved as {resolution_type.value}")
        return TransitionResult(success=True, message="Case resolved", case=updated)

    # =========================================================================
    # ASSIGNMENT / TEAM
    # =========================================================================

    def assign_case(self, case: Case, assignee_id: str, assigned_by: str,
                    now: Optional[datetime] = None) -> Case:
        """Set the owner. The first assignment counts as first response."""
        now = resolve_now(now)
        assignment = replace(case.assignment, owner_id=assignee_id, assigned_at=now, assigned_by=assigned_by)
        extra = {}
        if case.first_response_at is None:
            extra["first_response_at"] = now
        return self._touch(case, assigned_by, now, assignment=assignment, **extra)

    def add_team_member(self, case: Case, user_id: str, role: TeamRole, added_by: str,
                        now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        member = TeamMember(user_id=user_id, role=role, added_at=now, added_by=added_by)
        assignment = replace(case.assignment, team=case.assignment.team + (member,))
        return self._touch(case, added_by, now, assignment=assignment)

    def remove_team_member(self, case: Case, user_id: str, removed_by: str,
                           now: Optional[datetime] = None) -> Case:
        """Stamp removal on the user's active entries. Unchanged case if none."""
        now = resolve_now(now)
        if not any(m.user_id == user_id and m.is_active for m in case.assignment.team):
            return case

        team = tuple(
            replace(m, removed_at=now, removed_by=removed_by) if m.user_id == user_id and m.is_active else m
            for m in case.assignment.team
        )
        return self._touch(case, removed_by, now, assignment=replace(case.assignment, team=team))

    # =========================================================================
    # FLAGS
    # =========================================================================

    def set_flag(self, case: Case, flag_type: CaseFlagType, set_by: str,
                 reason: Optional[str] = None, now: Optional[datetime] = None) -> Case:
        """Append a flag. Earlier flags of the same type stay in the record."""
        now = resolve_now(now)
        flag = CaseFlag(id=_new_id(), flag_type=flag_type, set_at=now, set_by=set_by, reason=reason)
        return self._touch(case, set_by, now, flags=case.flags + (flag,))

    def clear_flag(self, case: Case, flag_type: CaseFlagType, cleared_by: str,
                   now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        if not has_flag(case, flag_type):
            return case
        flags = tuple(
            replace(f, cleared_at=now, cleared_by=cleared_by) if f.flag_type == flag_type and f.is_active else f
            for f in case.flags
        )
        return self._touch(case, cleared_by, now, flags=flags)

    # =========================================================================
    # NOTES
    # =========================================================================

    def add_note(
        self,
        case: Case,
        author_id: str,
        content: str,
        note_type: NoteType = NoteType.GENERAL,
        visibility: NoteVisibility = NoteVisibility.TEAM,
        now: Optional[datetime] = None,
    ) -> Case:
        """Admin-visibility and internal-type notes go to the internal list."""
        now = resolve_now(now)
        if not content or not content.strip():
            raise ValueError("Note content is required")

        note = CaseNote(
            id=_new_id(),
            author_id=author_id,
            content=content,
            created_at=now,
            note_type=note_type,
            visibility=visibility,
        )
        if note.is_internal:
            return self._touch(case, author_id, now, internal_notes=case.internal_notes + (note,))
        return self._touch(case, author_id, now, notes=case.notes + (note,))

    # =========================================================================
    # SLA
    # =========================================================================

    def check_sla_status(self, case: Case, now: Optional[datetime] = None) -> SLAStatus:
        return self.sla_engine.check_sla_status(case, now)

    def refresh_sla(self, case: Case, now: Optional[datetime] = None) -> Case:
        """Persist derived overdue flags. Unchanged case when nothing flipped."""
        now = resolve_now(now)
        status = self.sla_engine.check_sla_status(case, now)
        sla = case.sla
        if (
            sla.triage_overdue == status.triage_overdue
            and sla.first_response_overdue == status.first_response_overdue
            and sla.resolution_overdue == status.resolution_overdue
        ):
            return case
        return replace(case, version=case.version + 1, sla=self.sla_engine.apply_status(sla, status))

    def extend_sla(self, case: Case, milestone: SLAMilestone, new_due_at: datetime, extended_by: str,
                   reason: str, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        sla = self.sla_engine.extend(case.sla, milestone, new_due_at, extended_by, reason, now)
        return self._touch(case, extended_by, now, sla=sla)

    def add_custom_deadline(self, case: Case, name: str, due_at: datetime, created_by: str,
                            deadline_id: Optional[str] = None, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        if not name or not name.strip():
            raise ValueError("Deadline name is required")
        deadline = CustomDeadline(
            id=deadline_id or _new_id(),
            name=name,
            due_at=due_at,
            created_at=now,
            created_by=created_by,
        )
        sla = replace(case.sla, custom_deadlines=case.sla.custom_deadlines + (deadline,))
        return self._touch(case, created_by, now, sla=sla)

    def complete_custom_deadline(self, case: Case, deadline_id: str, completed_by: str,
                                 now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        target = next((d for d in case.sla.custom_deadlines if d.id == deadline_id), None)
        if target is None:
            raise ValueError(f"Unknown deadline: {deadline_id}")
        if target.completed_at is not None:
            return case

        deadlines = tuple(
            replace(d, completed_at=now, completed_by=completed_by) if d.id == deadline_id else d
            for d in case.sla.custom_deadlines
        )
        return self._touch(case, completed_by, now, sla=replace(case.sla, custom_deadlines=deadlines))


# =============================================================================
# QUERY HELPERS
# =============================================================================

def is_case_open(case: Case) -> bool:
    return case.status not in OPEN_EXCLUDED_STATUSES


def is_case_resolved(case: Case) -> bool:
    return case.status in RESOLVED_STATUSES


def case_duration_days(case: Case, now: Optional[datetime] = None) -> int:
    """Days from creation to resolution, or to ``now`` while unresolved."""
    end = case.resolved_at or resolve_now(now)
    return days_between(case.created_at, end)


def case_age_days(case: Case, now: Optional[datetime] = None) -> int:
    return days_between(case.created_at, resolve_now(now))


def active_flags(case: Case) -> List[CaseFlag]:
    """Newest uncleared flag per type."""
    latest = {}
    for flag in case.flags:
        if flag.is_active:
            latest[flag.flag_type] = flag
    return list(latest.values())


def has_flag(case: Case, flag_type: CaseFlagType) -> bool:
    return any(f.flag_type == flag_type and f.is_active for f in case.flags)


def is_assigned(case: Case) -> bool:
    return case.assignment.owner_id is not None


def active_team_members(case: Case) -> List[TeamMember]:
    return [m for m in case.assignment.team if m.is_active]


def team_lead(case: Case) -> Optional[TeamMember]:
    return next((m for m in active_team_members(case) if m.role == TeamRole.LEAD), None)


def visible_notes(case: Case, include_internal: bool = False) -> List[CaseNote]:
    notes = list(case.notes)
    if include_internal:
        notes.extend(case.internal_notes)
    return sorted(notes, key=lambda n: n.created_at)
