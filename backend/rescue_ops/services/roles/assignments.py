"""
Role Assignment Manager

Binds users to roles. Validates eligibility and conflicts before a
grant, and manages the suspend / revoke / reinstate / renew / expire
lifecycle.

Every lifecycle operation is a pure transformation: the input record is
never mutated, a new record is returned with ``version`` + 1.

STATUS FLOW:
    active -> suspended -> active     (reinstate, the only way back)
    active|suspended -> revoked       (terminal)
    active -> expired                 (terminal)
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from ... import config
from ...clock import days_between, resolve_now
from ...models.actors import ApproverPair
from ...models.roles import (
    AssignmentChange,
    AssignmentStatus,
    AssignmentValidation,
    BackgroundCheckStatus,
    ConflictType,
    EligibilityProfile,
    PendingRenewal,
    RoleConflict,
    RoleId,
    UserRoleAssignment,
    UserRoleSet,
)
from .catalog import RoleCatalog, default_catalog

logger = logging.getLogger(__name__)


# =============================================================================
# ROLE CONFLICTS
# =============================================================================
#
# Lookup is symmetric: (a, b) and (b, a) resolve to the same entry.
#   REDUNDANT          higher level supersedes, warn only
#   REQUIRES_APPROVAL  warn, a human must decide
#   INCOMPATIBLE       block
#
# =============================================================================

ROLE_CONFLICTS: Tuple[RoleConflict, ...] = (
    # Redundant hierarchies
    RoleConflict(
        RoleId.LEAD_MODERATOR, RoleId.MODERATOR, ConflictType.REDUNDANT,
        "Lead moderator supersedes standard moderator",
    ),
    RoleConflict(
        RoleId.LEAD_MODERATOR, RoleId.JUNIOR_MODERATOR, ConflictType.REDUNDANT,
        "Lead moderator supersedes junior moderator",
    ),
    RoleConflict(
        RoleId.MODERATOR, RoleId.JUNIOR_MODERATOR, ConflictType.REDUNDANT,
        "Moderator supersedes junior moderator",
    ),
    RoleConflict(
        RoleId.SENIOR_TRANSPORTER, RoleId.TRANSPORTER, ConflictType.REDUNDANT,
        "Senior transporter supersedes standard transporter",
    ),
    # Separation of duties
    RoleConflict(
        RoleId.FOUNDATION_ADMIN, RoleId.TRAPPER, ConflictType.REQUIRES_APPROVAL,
        "Field roles may conflict with admin oversight duties",
    ),
)


class RoleAssignmentManager:
    """
    Validation and lifecycle transformations for role assignments.

    Stateless apart from its static tables. Safe to share.
    """

    def __init__(
        self,
        catalog: Optional[RoleCatalog] = None,
        conflicts: Optional[Sequence[RoleConflict]] = None,
        renewal_window_days: int = config.ROLE_RENEWAL_WINDOW_DAYS,
    ):
        self.catalog = catalog or default_catalog
        self.conflicts: Tuple[RoleConflict, ...] = tuple(
            conflicts if conflicts is not None else ROLE_CONFLICTS
        )
        self.renewal_window_days = renewal_window_days
        for conflict in self.conflicts:
            self.catalog.get(conflict.role_a)
            self.catalog.get(conflict.role_b)

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def find_conflict(self, role_a: RoleId, role_b: RoleId) -> Optional[RoleConflict]:
        for conflict in self.conflicts:
            if conflict.involves(role_a, role_b):
                return conflict
        return None

    def conflicts_with(self, existing_roles: Iterable[RoleId], new_role: RoleId) -> List[RoleConflict]:
        found = []
        for existing in existing_roles:
            conflict = self.find_conflict(existing, new_role)
            if conflict is not None and conflict not in found:
                found.append(conflict)
        return found

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_assignment(
        self,
        profile: EligibilityProfile,
        role_id: RoleId,
        existing_assignments: Sequence[UserRoleAssignment],
        granter_roles: Iterable[RoleId],
        now: Optional[datetime] = None,
    ) -> AssignmentValidation:
        """
        Run every eligibility check and collect all failures.

        Checks do not short-circuit so the caller gets a complete
        remediation list. ``valid`` is True only when there are no
        blockers.
        """
        now = resolve_now(now)
        role = self.catalog.get(role_id)
        role_id = role.id

        errors: List[str] = []
        warnings: List[str] = []
        blockers: List[str] = []

        existing: List[UserRoleAssignment] = []
        for assignment in existing_assignments:
            if assignment.user_id != profile.user_id:
                errors.append(
                    f"Assignment {assignment.id} belongs to user {assignment.user_id}, not {profile.user_id}; ignored"
                )
                continue
            existing.append(assignment)

        # Granter authority
        if not any(self.catalog.can_approve(g, role_id) for g in granter_roles):
            blockers.append(f"Granter does not have permission to approve {role_id.value}")

        # Minimum age
        if profile.age < role.min_age_years:
            blockers.append(f"Minimum age {role.min_age_years} not met (user is {profile.age})")

        # Identity assurance (ordinal)
        if profile.ial.rank < role.required_ial.rank:
            blockers.append(
                f"Identity assurance level {role.required_ial.value} required (user has {profile.ial.value})"
            )

        # 2FA
        if role.requires_2fa and not profile.has_2fa:
            blockers.append("Two-factor authentication required for this role")

        # Background check
        if role.requires_background_check:
            status = profile.background_check_status
            if status is None:
                blockers.append("Background check required but not initiated")
            elif status == BackgroundCheckStatus.PENDING:
                blockers.append("Background check still pending")
            elif status == BackgroundCheckStatus.FAILED:
                blockers.append("Background check failed")
            elif status == BackgroundCheckStatus.EXPIRED:
                warnings.append("Background check expired - renewal may be required")

        # Interview
        if role.requires_interview and not profile.interview_completed:
            blockers.append("Interview required but not completed")

        # Waivers
        missing_waivers = [w.value for w in role.required_waivers if w not in profile.signed_waivers]
        if missing_waivers:
            blockers.append(f"Missing required waivers: {', '.join(missing_waivers)}")

        # Training
        if role.requires_training:
            missing_training = [t for t in role.training_modules if t not in profile.completed_training]
            if missing_training:
                blockers.append(f"Missing required training: {', '.join(missing_training)}")

        # Prerequisite role + tenure
        if role.prerequisite_roles:
            prereqs = [
                a for a in existing
                if a.role_id in role.prerequisite_roles and a.is_effective(now)
            ]
            if not prereqs:
                names = " or ".join(r.value for r in role.prerequisite_roles)
                blockers.append(f"Prerequisite role required: {names}")
            elif role.minimum_days_in_prerequisite:
                earliest = min(prereqs, key=lambda a: a.granted_at)
                days_in_prereq = days_between(earliest.granted_at, now)
                if days_in_prereq < role.minimum_days_in_prerequisite:
                    blockers.append(
                        f"Must hold prerequisite role for {role.minimum_days_in_prerequisite} days "
                        f"(currently {days_in_prereq} days)"
                    )

        # Conflicts against currently held roles
        held_roles = {a.role_id for a in existing if a.is_effective(now) and a.role_id != role_id}
        for conflict in self.conflicts_with(sorted(held_roles, key=self.catalog.seniority_key), role_id):
            if conflict.conflict_type == ConflictType.INCOMPATIBLE:
                blockers.append(f"Role conflict: {conflict.reason}")
            elif conflict.conflict_type == ConflictType.REQUIRES_APPROVAL:
                warnings.append(f"Role conflict requires review: {conflict.reason}")
            else:
                warnings.append(f"Role conflict (redundant): {conflict.reason}")

        same_role = [a for a in existing if a.role_id == role_id]

        # Already held
        if any(a.is_effective(now) for a in same_role):
            blockers.append(f"User already holds active role {role_id.value}")
        if any(a.status == AssignmentStatus.SUSPENDED for a in same_role):
            blockers.append(f"Role {role_id.value} is suspended; reinstate instead of granting again")

        # Permanent ban
        if any(a.status == AssignmentStatus.REVOKED and a.permanent_ban for a in same_role):
            blockers.append(f"User is permanently banned from role {role_id.value}")

        # Reapplication cooldown from the most recent revoked/expired record
        if role.reapplication_cooldown_days:
            ended = [
                (a.revoked_at or a.expires_at)
                for a in same_role
                if a.status in (AssignmentStatus.REVOKED, AssignmentStatus.EXPIRED)
                and (a.revoked_at or a.expires_at) is not None
            ]
            if ended:
                days_since = days_between(max(ended), now)
                if days_since < role.reapplication_cooldown_days:
                    remaining = role.reapplication_cooldown_days - days_since
                    blockers.append(f"Reapplication cooldown: {remaining} days remaining")

        valid = not blockers
        if not valid:
            logger.info(
                f"Assignment of {role_id.value} to {profile.user_id} blocked: {len(blockers)} blocker(s)"
            )
        return AssignmentValidation(valid=valid, errors=errors, warnings=warnings, blockers=blockers)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create(
        self,
        user_id: str,
        role_id: RoleId,
        granted_by: str,
        is_primary: bool = False,
        region_ids: Sequence[str] = (),
        partner_org_ids: Sequence[str] = (),
        grant_reason: Optional[str] = None,
        application_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        assignment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        """Create an active assignment. Auto-expiry comes from the role policy if not given."""
        now = resolve_now(now)
        role = self.catalog.get(role_id)

        if expires_at is None and role.auto_expire_days:
            expires_at = now + timedelta(days=role.auto_expire_days)

        assignment = UserRoleAssignment(
            id=assignment_id or str(uuid4()),
            user_id=user_id,
            role_id=role.id,
            status=AssignmentStatus.ACTIVE,
            granted_at=now,
            granted_by=granted_by,
            version=1,
            is_primary=is_primary,
            grant_reason=grant_reason,
            application_id=application_id,
            region_ids=tuple(region_ids),
            partner_org_ids=tuple(partner_org_ids),
            expires_at=expires_at,
            updated_at=now,
            updated_by=granted_by,
        )
        logger.info(f"Role {role.id.value} granted to {user_id} by {granted_by}")
        return assignment

    def suspend(
        self,
        assignment: UserRoleAssignment,
        suspended_by: str,
        reason: str,
        approvers: ApproverPair,
        ends_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        now = resolve_now(now)
        if approvers.includes(suspended_by):
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="Acting user cannot also be an approver",
            )
        if assignment.status != AssignmentStatus.ACTIVE:
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message=f"Cannot suspend assignment in status {assignment.status.value}",
            )

        updated = replace(
            assignment,
            status=AssignmentStatus.SUSPENDED,
            suspended_at=now,
            suspended_by=suspended_by,
            suspension_reason=reason,
            suspension_ends_at=ends_at,
            suspension_approvers=approvers.records(now),
            version=assignment.version + 1,
            updated_at=now,
            updated_by=suspended_by,
        )
        logger.info(f"Assignment {assignment.id} ({assignment.role_id.value}) suspended by {suspended_by}")
        return AssignmentChange(success=True, assignment=updated, message="Assignment suspended")

    def revoke(
        self,
        assignment: UserRoleAssignment,
        revoked_by: str,
        reason: str,
        approvers: ApproverPair,
        permanent_ban: bool = False,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        now = resolve_now(now)
        if approvers.includes(revoked_by):
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="Acting user cannot also be an approver",
            )
        if assignment.status not in (AssignmentStatus.ACTIVE, AssignmentStatus.SUSPENDED):
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message=f"Cannot revoke assignment in status {assignment.status.value}",
            )

        updated = replace(
            assignment,
            status=AssignmentStatus.REVOKED,
            revoked_at=now,
            revoked_by=revoked_by,
            revocation_reason=reason,
            revocation_approvers=approvers.records(now),
            permanent_ban=permanent_ban,
            version=assignment.version + 1,
            updated_at=now,
            updated_by=revoked_by,
        )
        logger.warning(
            f"Assignment {assignment.id} ({assignment.role_id.value}) revoked by {revoked_by}"
            f"{' with permanent ban' if permanent_ban else ''}"
        )
        return AssignmentChange(success=True, assignment=updated, message="Assignment revoked")

    def reinstate(
        self,
        assignment: UserRoleAssignment,
        reinstated_by: str,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        """suspended -> active. Clears suspension metadata."""
        now = resolve_now(now)
        if assignment.status != AssignmentStatus.SUSPENDED:
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="Can only reinstate suspended assignments",
            )

        updated = replace(
            assignment,
            status=AssignmentStatus.ACTIVE,
            suspended_at=None,
            suspended_by=None,
            suspension_reason=None,
            suspension_ends_at=None,
            suspension_approvers=(),
            version=assignment.version + 1,
            updated_at=now,
            updated_by=reinstated_by,
        )
        logger.info(f"Assignment {assignment.id} reinstated by {reinstated_by}")
        return AssignmentChange(success=True, assignment=updated, message="Assignment reinstated")

    def renew(
        self,
        assignment: UserRoleAssignment,
        renewed_by: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> AssignmentChange:
        now = resolve_now(now)
        if not assignment.is_effective(now):
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="Can only renew active, unexpired assignments",
            )
        if new_expires_at <= now:
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="New expiry must be in the future",
            )
        if assignment.expires_at is not None and new_expires_at <= assignment.expires_at:
            return AssignmentChange(
                success=False,
                assignment=assignment,
                message="Renewal must advance the expiry date",
            )

        updated = replace(
            assignment,
            expires_at=new_expires_at,
            last_renewed_at=now,
            version=assignment.version + 1,
            updated_at=now,
            updated_by=renewed_by,
        )
        return AssignmentChange(success=True, assignment=updated, message="Assignment renewed")

    def check_expiration(
        self,
        assignment: UserRoleAssignment,
        now: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        """
        Mark an active assignment expired once ``expires_at <= now``.

        Idempotent: any record that is not an active, lapsed assignment is
        returned unchanged.
        """
        now = resolve_now(now)
        if assignment.status != AssignmentStatus.ACTIVE or assignment.expires_at is None:
            return assignment
        if assignment.expires_at > now:
            return assignment

        return replace(
            assignment,
            status=AssignmentStatus.EXPIRED,
            version=assignment.version + 1,
            updated_at=now,
        )

    # =========================================================================
    # ROLE SET
    # =========================================================================

    def build_role_set(
        self,
        user_id: str,
        assignments: Sequence[UserRoleAssignment],
        now: Optional[datetime] = None,
    ) -> UserRoleSet:
        """Aggregate a user's assignments. Lapsed active assignments count as expired."""
        now = resolve_now(now)
        own = tuple(a for a in assignments if a.user_id == user_id)
        active = [a for a in own if a.is_effective(now)]

        permissions = self.catalog.permissions_for(a.role_id for a in active)

        if active:
            highest = min((a.role_id for a in active), key=self.catalog.seniority_key)
            highest_level = self.catalog.level_of(highest)
        else:
            highest, highest_level = RoleId.USER, 0

        primary = next((a.role_id for a in active if a.is_primary), None)

        horizon = now + timedelta(days=self.renewal_window_days)
        pending = tuple(
            PendingRenewal(role_id=a.role_id, expires_at=a.expires_at)
            for a in sorted(active, key=lambda a: a.expires_at or now)
            if a.expires_at is not None and a.expires_at <= horizon
        )

        return UserRoleSet(
            user_id=user_id,
            assignments=own,
            effective_permissions=permissions,
            highest_role=highest,
            highest_role_level=highest_level,
            primary_role=primary,
            computed_at=now,
            has_active_roles=bool(active),
            has_suspended_roles=any(a.status == AssignmentStatus.SUSPENDED for a in own),
            has_expired_roles=any(
                a.status == AssignmentStatus.EXPIRED
                or (a.status == AssignmentStatus.ACTIVE and not a.is_effective(now))
                for a in own
            ),
            pending_renewals=pending,
        )
