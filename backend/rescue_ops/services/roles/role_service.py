"""
Role Service

Loads a user's assignments, runs the pure RoleAssignmentManager
operations on them, and persists each change with its audit entry.

The granter's authority is always computed from the granter's own
stored, currently effective assignments.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ...clock import resolve_now
from ...errors import ConflictError
from ...models.actors import Actor, ApproverPair, HumanActor
from ...models.audit import AuditEventType
from ...models.roles import (
    AssignmentChange,
    AssignmentStatus,
    AssignmentValidation,
    EligibilityProfile,
    RoleId,
    UserRoleAssignment,
    UserRoleSet,
)
from ..audit.audit_log import AuditLogService, default_audit_service
from ..storage.repositories import RoleAssignmentRepository
from .assignments import RoleAssignmentManager

logger = logging.getLogger(__name__)


class RoleService:
    def __init__(
        self,
        db: Session,
        manager: Optional[RoleAssignmentManager] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.repo = RoleAssignmentRepository(db)
        self.manager = manager or RoleAssignmentManager()
        self.audit = audit or default_audit_service

    # =========================================================================
    # READ
    # =========================================================================

    def assignments_for(self, user_id: str) -> List[UserRoleAssignment]:
        return self.repo.list_for_user(user_id)

    def role_set(self, user_id: str, now: Optional[datetime] = None) -> UserRoleSet:
        return self.manager.build_role_set(user_id, self.repo.list_for_user(user_id), now)

    # =========================================================================
    # GRANT
    # =========================================================================

    def grant_role(
        self,
        profile: EligibilityProfile,
        role_id: RoleId,
        granter: HumanActor,
        is_primary: bool = False,
        region_ids: Sequence[str] = (),
        grant_reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[AssignmentValidation, Optional[UserRoleAssignment]]:
        """
        Validate then grant.

        Returns (validation, assignment). ``assignment`` is None whenever
        validation reports blockers.
        """
        now = resolve_now(now)
        granter_roles = [a.role_id for a in self.role_set(granter.user_id, now).active_assignments(now)]
        existing = self.repo.list_for_user(profile.user_id)

        validation = self.manager.validate_assignment(profile, role_id, existing, granter_roles, now)
        if not validation.valid:
            logger.info(f"Grant of {role_id} to {profile.user_id} blocked: {validation.blockers}")
            return validation, None

        assignment = self.manager.create(
            user_id=profile.user_id,
            role_id=role_id,
            granted_by=granter.user_id,
            is_primary=is_primary,
            region_ids=region_ids,
            grant_reason=grant_reason,
            expires_at=expires_at,
            now=now,
        )
        entry = self.audit.for_assignment(AuditEventType.ROLE_GRANTED, assignment, granter, grant_reason, now)
        self.repo.add(assignment, audit=[entry])
        return validation, assignment

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _persist(
        self,
        original: UserRoleAssignment,
        change: AssignmentChange,
        event_type: AuditEventType,
        actor: Actor,
        reason: Optional[str],
        now: datetime,
    ) -> AssignmentChange:
        if not change.success:
            return change
        entry = self.audit.for_assignment(event_type, change.assignment, actor, reason, now)
        self.repo.update(change.assignment, expected_version=original.version, audit=[entry])
        return change

    def suspend_role(
        self,
        assignment_id: str,
        actor: HumanActor,
        reason: str,
        approvers: ApproverPair,
        ends_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        now = resolve_now(now)
        assignment = self.repo.get(assignment_id)
        change = self.manager.suspend(assignment, actor.user_id, reason, approvers, ends_at, now)
        return self._persist(assignment, change, AuditEventType.ROLE_SUSPENDED, actor, reason, now)

    def revoke_role(
        self,
        assignment_id: str,
        actor: HumanActor,
        reason: str,
        approvers: ApproverPair,
        permanent_ban: bool = False,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        now = resolve_now(now)
        assignment = self.repo.get(assignment_id)
        change = self.manager.revoke(assignment, actor.user_id, reason, approvers, permanent_ban, now)
        return self._persist(assignment, change, AuditEventType.ROLE_REVOKED, actor, reason, now)

    def reinstate_role(self, assignment_id: str, actor: HumanActor,
                       now: Optional[datetime] = None) -> AssignmentChange:
        now = resolve_now(now)
        assignment = self.repo.get(assignment_id)
        change = self.manager.reinstate(assignment, actor.user_id, now)
        return self._persist(assignment, change, AuditEventType.ROLE_REINSTATED, actor, None, now)

    def renew_role(self, assignment_id: str, actor: HumanActor, new_expires_at: datetime,
                   now: Optional[datetime] = None) -> AssignmentChange:
        now = resolve_now(now)
        assignment = self.repo.get(assignment_id)
        change = self.manager.renew(assignment, actor.user_id, new_expires_at, now)
        return self._persist(assignment, change, AuditEventType.ROLE_RENEWED, actor, None, now)

    def expire_lapsed(
        self,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Tuple[List[UserRoleAssignment], List[Dict[str, str]]]:
        """
        Persist EXPIRED for every active assignment past its expiry.

        Returns (expired, conflicts). An assignment changed concurrently is
        skipped and reported in ``conflicts``; the rest still expire.
        """
        now = resolve_now(now)
        expired = []
        conflicts = []
        for assignment in self.repo.list_by_status(AssignmentStatus.ACTIVE):
            updated = self.manager.check_expiration(assignment, now)
            if updated is assignment:
                continue
            entry = self.audit.for_assignment(AuditEventType.ROLE_EXPIRED, updated, actor, "Assignment lapsed", now)
            try:
                self.repo.update(updated, expected_version=assignment.version, audit=[entry])
            except ConflictError as e:
                logger.warning(f"Expiry of assignment {assignment.id} skipped: {e.message}")
                conflicts.append({"assignment_id": assignment.id, "error": e.message})
                continue
            expired.append(updated)
        return expired, conflicts
