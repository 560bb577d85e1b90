"""
Case Service

Store-backed wrapper around CaseLifecycleManager. Each operation loads
the current snapshot, applies one pure lifecycle change, and writes the
result with compare-and-swap on version plus its audit entry.

RULES:
- Status changes by a person are checked against the roles that person
  actually holds in storage, not the role the caller claims.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ...clock import resolve_now
from ...errors import ConflictError
from ...models.access import PermissionCheckResult
from ...models.actors import Actor, HumanActor
from ...models.audit import AuditEntry, AuditEventType
from ...models.cases import (
    Case,
    CaseFlagType,
    CasePriority,
    CaseSeverity,
    CaseStatus,
    CaseType,
    NoteType,
    NoteVisibility,
    ResolutionType,
    SLAMilestone,
    SLAStatus,
    TeamRole,
    TransitionResult,
)
from ..audit.audit_log import AuditLogService, default_audit_service
from ..roles.role_service import RoleService
from ..storage.repositories import CaseRepository
from .lifecycle import OPEN_EXCLUDED_STATUSES, CaseLifecycleManager

logger = logging.getLogger(__name__)

CASE_NUMBER_ATTEMPTS = 5


class CaseService:
    def __init__(
        self,
        db: Session,
        lifecycle: Optional[CaseLifecycleManager] = None,
        audit: Optional[AuditLogService] = None,
        role_service: Optional[RoleService] = None,
    ):
        self.db = db
        self.repo = CaseRepository(db)
        self.lifecycle = lifecycle or CaseLifecycleManager()
        self.audit = audit or default_audit_service
        self.roles = role_service or RoleService(db)

    def get(self, case_id: str) -> Case:
        return self.repo.get(case_id)

    def open_cases(self) -> List[Case]:
        return self.repo.list_by_status([s for s in CaseStatus if s not in OPEN_EXCLUDED_STATUSES])

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _unheld_role(self, actor: Actor, now: datetime) -> Optional[str]:
        """Denial message when a person acts under a role they do not currently hold."""
        if actor.is_system:
            return None
        if actor.role_id is None:
            return f"User {actor.user_id} is acting without a role"
        held = {a.role_id for a in self.roles.role_set(actor.user_id, now).active_assignments(now)}
        if actor.role_id not in held:
            return f"User {actor.user_id} does not hold role {actor.role_id.value}"
        return None

    def _save(self, original: Case, updated: Case, entries: Sequence[AuditEntry]) -> Case:
        if updated is original:
            return original
        self.repo.update(updated, expected_version=original.version, audit=entries)
        return updated

    def _apply(
        self,
        case_id: str,
        change: Callable[[Case], Case],
        event_type: AuditEventType,
        actor: Actor,
        action: str,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Case:
        case = self.repo.get(case_id)
        updated = change(case)
        entry = self.audit.for_case(event_type, updated, actor, action, reason, metadata, now)
        return self._save(case, updated, [entry])

    # =========================================================================
    # CREATION / STATUS
    # =========================================================================

    def create_case(
        self,
        case_type: CaseType,
        actor: HumanActor,
        priority: CasePriority = CasePriority.NORMAL,
        severity: CaseSeverity = CaseSeverity.MODERATE,
        title: Optional[str] = None,
        description: Optional[str] = None,
        region_id: Optional[str] = None,
        tags: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> Case:
        """
        Create and store a new case.

        A case number already in use is redrawn up to CASE_NUMBER_ATTEMPTS
        times; any other conflict propagates.
        """
        now = resolve_now(now)
        for attempt in range(1, CASE_NUMBER_ATTEMPTS + 1):
            case = self.lifecycle.create_case(
                case_type, actor.user_id, priority, severity, title, description, region_id, tags, now=now,
            )
            if self.repo.find_by_number(case.case_number) is None:
                entry = self.audit.for_case(
                    AuditEventType.CASE_CREATED, case, actor, f"Created case {case.case_number}",
                    metadata={"case_type": case_type.value, "priority": priority.value}, now=now,
                )
                try:
                    return self.repo.add(case, audit=[entry])
                except ConflictError:
                    # Lost a race for the number
                    if self.repo.find_by_number(case.case_number) is None:
                        raise
            logger.warning(f"Case number {case.case_number} already in use (attempt {attempt})")

        raise ConflictError(f"No free case number after {CASE_NUMBER_ATTEMPTS} attempts")

    def transition_status(
        self,
        case_id: str,
        to_status: CaseStatus,
        actor: Actor,
        reason: Optional[str] = None,
        permission_result: Optional[PermissionCheckResult] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = resolve_now(now)
        case = self.repo.get(case_id)
        denial = self._unheld_role(actor, now)
        if denial:
            logger.warning(f"Transition of case {case.case_number} refused: {denial}")
            return TransitionResult(success=False, message=denial, case=case)
        result = self.lifecycle.transition_status(case, to_status, actor, reason, permission_result, now)
        if not result.success:
            return result

        entry = self.audit.for_case(
            AuditEventType.CASE_STATUS_CHANGED, result.case, actor,
            f"{case.status.value} -> {to_status.value}", reason,
            {"from_status": case.status.value, "to_status": to_status.value}, now,
        )
        self._save(case, result.case, [entry])
        return result

    def resolve_case(
        self,
        case_id: str,
        resolution_type: ResolutionType,
        summary: str,
        actor: Actor,
        outcome_notes: Optional[str] = None,
        permission_result: Optional[PermissionCheckResult] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = resolve_now(now)
        case = self.repo.get(case_id)
        denial = self._unheld_role(actor, now)
        if denial:
            logger.warning(f"Resolution of case {case.case_number} refused: {denial}")
            return TransitionResult(success=False, message=denial, case=case)
        result = self.lifecycle.resolve_case(
            case, resolution_type, summary, actor, outcome_notes, permission_result, now,
        )
        if not result.success:
            return result

        entry = self.audit.for_case(
            AuditEventType.CASE_RESOLVED, result.case, actor, f"Resolved as {resolution_type.value}",
            summary, {"resolution_type": resolution_type.value}, now,
        )
        self._save(case, result.case, [entry])
        return result

    # =========================================================================
    # ASSIGNMENT / TEAM
    # =========================================================================

    def assign_case(self, case_id: str, assignee_id: str, actor: HumanActor,
                    now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.assign_case(c, assignee_id, actor.user_id, now),
            AuditEventType.CASE_ASSIGNED, actor, f"Assigned to {assignee_id}",
            metadata={"assignee_id": assignee_id}, now=now,
        )

    def add_team_member(self, case_id: str, user_id: str, role: TeamRole, actor: HumanActor,
                        now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.add_team_member(c, user_id, role, actor.user_id, now),
            AuditEventType.CASE_TEAM_CHANGED, actor, f"Added {user_id} as {role.value}",
            metadata={"user_id": user_id, "team_role": role.value}, now=now,
        )

    def remove_team_member(self, case_id: str, user_id: str, actor: HumanActor,
                           now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.remove_team_member(c, user_id, actor.user_id, now),
            AuditEventType.CASE_TEAM_CHANGED, actor, f"Removed {user_id}",
            metadata={"user_id": user_id}, now=now,
        )

    # =========================================================================
    # FLAGS / NOTES
    # =========================================================================

    def set_flag(self, case_id: str, flag_type: CaseFlagType, actor: HumanActor,
                 reason: Optional[str] = None, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        case = self.repo.get(case_id)
        updated = self.lifecycle.set_flag(case, flag_type, actor.user_id, reason, now)
        metadata = {"flag_type": flag_type.value}
        entries = [self.audit.for_case(
            AuditEventType.CASE_FLAG_SET, updated, actor, f"Flag set: {flag_type.value}", reason, metadata, now,
        )]
        if flag_type == CaseFlagType.LEGAL_HOLD:
            entries.append(self.audit.for_case(
                AuditEventType.CASE_LEGAL_HOLD, updated, actor, "Legal hold placed", reason, metadata, now,
            ))
        return self._save(case, updated, entries)

    def clear_flag(self, case_id: str, flag_type: CaseFlagType, actor: HumanActor,
                   reason: Optional[str] = None, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.clear_flag(c, flag_type, actor.user_id, now),
            AuditEventType.CASE_FLAG_CLEARED, actor, f"Flag cleared: {flag_type.value}", reason,
            {"flag_type": flag_type.value}, now,
        )

    def add_note(
        self,
        case_id: str,
        content: str,
        actor: HumanActor,
        note_type: NoteType = NoteType.GENERAL,
        visibility: NoteVisibility = NoteVisibility.TEAM,
        now: Optional[datetime] = None,
    ) -> Case:
        now = resolve_now(now)
        # Note content stays out of the audit log
        return self._apply(
            case_id,
            lambda c: self.lifecycle.add_note(c, actor.user_id, content, note_type, visibility, now),
            AuditEventType.CASE_NOTE_ADDED, actor, f"Note added ({visibility.value})",
            metadata={"note_type": note_type.value, "visibility": visibility.value}, now=now,
        )

    # =========================================================================
    # SLA
    # =========================================================================

    def check_sla_status(self, case_id: str, now: Optional[datetime] = None) -> SLAStatus:
        return self.lifecycle.check_sla_status(self.repo.get(case_id), now)

    def extend_sla(self, case_id: str, milestone: SLAMilestone, new_due_at: datetime, actor: HumanActor,
                   reason: str, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.extend_sla(c, milestone, new_due_at, actor.user_id, reason, now),
            AuditEventType.CASE_SLA_UPDATED, actor, f"Extended {milestone.value} deadline", reason,
            {"milestone": milestone.value, "new_due_at": new_due_at.isoformat()}, now,
        )

    def add_custom_deadline(self, case_id: str, name: str, due_at: datetime, actor: HumanActor,
                            now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.add_custom_deadline(c, name, due_at, actor.user_id, now=now),
            AuditEventType.CASE_SLA_UPDATED, actor, f"Deadline added: {name}",
            metadata={"due_at": due_at.isoformat()}, now=now,
        )

    def complete_custom_deadline(self, case_id: str, deadline_id: str, actor: HumanActor,
                                 now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        return self._apply(
            case_id,
            lambda c: self.lifecycle.complete_custom_deadline(c, deadline_id, actor.user_id, now),
            AuditEventType.CASE_SLA_UPDATED, actor, f"Deadline completed: {deadline_id}", now=now,
        )

    def refresh_sla(self, case: Case, actor: Actor, now: Optional[datetime] = None) -> Case:
        now = resolve_now(now)
        updated = self.lifecycle.refresh_sla(case, now)
        if updated is case:
            return case
        sla = updated.sla
        entry = self.audit.for_case(
            AuditEventType.CASE_SLA_UPDATED, updated, actor, "SLA overdue flags refreshed",
            metadata={
                "triage_overdue": sla.triage_overdue,
                "first_response_overdue": sla.first_response_overdue,
                "resolution_overdue": sla.resolution_overdue,
            },
            now=now,
        )
        return self._save(case, updated, [entry])
