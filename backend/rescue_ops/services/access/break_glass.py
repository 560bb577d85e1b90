"""
Break-Glass Access Manager

Issues, validates and expires scoped, time-boxed grants for the
sensitive-data permissions (PII, address, contact).

CRITICAL:
- A grant past its TTL is treated exactly like no grant.
- ``accessed_resources`` is append-only. It is the compliance artifact.
- Every grant carries a mandatory post-hoc review deadline.
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from ... import config
from ...clock import resolve_now
from ...models.access import (
    AUTO_GRANTER,
    AccessOutcome,
    AccessType,
    BreakGlassReasonCode,
    BreakGlassRequest,
    BreakGlassScope,
    BreakGlassStatus,
    ResourceAccess,
    ReviewOutcome,
)
from ...models.roles import Permission, UserRoleSet
from ..roles.catalog import RoleCatalog, default_catalog

logger = logging.getLogger(__name__)


# =============================================================================
# BREAK-GLASS CONFIGURATION
# =============================================================================

BREAK_GLASS_PERMISSIONS: Dict[Permission, BreakGlassScope] = {
    Permission.DATA_PII_VIEW: BreakGlassScope.PII,
    Permission.DATA_ADDRESS_VIEW: BreakGlassScope.ADDRESS,
    Permission.DATA_CONTACT_VIEW: BreakGlassScope.CONTACT,
}

SCOPE_PERMISSIONS: Dict[BreakGlassScope, Permission] = {
    scope: permission for permission, scope in BREAK_GLASS_PERMISSIONS.items()
}

AUTO_GRANT_REASON_CODES: FrozenSet[BreakGlassReasonCode] = frozenset({
    BreakGlassReasonCode.IMMEDIATE_SAFETY,
    BreakGlassReasonCode.VET_EMERGENCY,
})


def requires_break_glass(permission: Permission) -> bool:
    return permission in BREAK_GLASS_PERMISSIONS


def scopes_for(permission: Permission) -> Tuple[BreakGlassScope, ...]:
    scope = BREAK_GLASS_PERMISSIONS.get(permission)
    return (scope,) if scope is not None else ()


class BreakGlassManager:
    """
    Pure lifecycle transformations over BreakGlassRequest snapshots.

    pending -> granted -> expired | revoked
    pending -> denied | expired
    """

    def __init__(
        self,
        catalog: Optional[RoleCatalog] = None,
        default_ttl_minutes: int = config.BREAK_GLASS_DEFAULT_TTL_MINUTES,
        max_ttl_minutes: int = config.BREAK_GLASS_MAX_TTL_MINUTES,
        review_deadline_hours: int = config.BREAK_GLASS_REVIEW_DEADLINE_HOURS,
        auto_grant_reason_codes: Iterable[BreakGlassReasonCode] = AUTO_GRANT_REASON_CODES,
    ):
        self.catalog = catalog or default_catalog
        self.default_ttl_minutes = default_ttl_minutes
        self.max_ttl_minutes = max_ttl_minutes
        self.review_deadline_hours = review_deadline_hours
        self.auto_grant_reason_codes = frozenset(auto_grant_reason_codes)

    # -------------------------------------------------------------------------
    # Creation / grant
    # -------------------------------------------------------------------------

    def clamp_ttl(self, ttl_minutes: Optional[int]) -> int:
        ttl = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if ttl <= 0:
            raise ValueError("Break-glass TTL must be positive")
        return min(ttl, self.max_ttl_minutes)

    def create_request(
        self,
        requester_id: str,
        scopes: Sequence[BreakGlassScope],
        reason_code: BreakGlassReasonCode,
        justification: str,
        case_id: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BreakGlassRequest:
        """
        Create a request. Auto-grant reason codes are granted immediately
        with ``granted_by = "auto"``; all others start pending.
        """
        now = resolve_now(now)
        scope_tuple = tuple(dict.fromkeys(BreakGlassScope(s) for s in scopes))
        if not scope_tuple:
            raise ValueError("At least one break-glass scope is required")
        if not justification or not justification.strip():
            raise ValueError("Break-glass justification is required")

        reason_code = BreakGlassReasonCode(reason_code)
        ttl = self.clamp_ttl(ttl_minutes)
        auto_grant = reason_code in self.auto_grant_reason_codes

        request = BreakGlassRequest(
            id=request_id or str(uuid4()),
            requester_id=requester_id,
            requested_at=now,
            scopes=scope_tuple,
            reason_code=reason_code,
            justification=justification,
            ttl_minutes=ttl,
            expires_at=now + timedelta(minutes=ttl),
            status=BreakGlassStatus.GRANTED if auto_grant else BreakGlassStatus.PENDING,
            case_id=case_id,
            granted_at=now if auto_grant else None,
            granted_by=AUTO_GRANTER if auto_grant else None,
            review_deadline=now + timedelta(hours=self.review_deadline_hours) if auto_grant else None,
        )

        scope_names = ", ".join(s.value for s in scope_tuple)
        if auto_grant:
            logger.warning(
                f"Break-glass {request.id} auto-granted to {requester_id} "
                f"for [{scope_names}] ({reason_code.value}, {ttl} min)"
            )
        else:
            logger.info(f"Break-glass {request.id} requested by {requester_id} for [{scope_names}]")
        return request

    def grant(
        self,
        request: BreakGlassRequest,
        granted_by: str,
        granter_role_set: UserRoleSet,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        """
        Manually grant a pending request.

        The granter must be a different person whose own active roles
        hold the data permission for every requested scope. The TTL
        window starts at grant time.
        """
        now = resolve_now(now)
        if request.status != BreakGlassStatus.PENDING:
            return AccessOutcome(False, request, f"Cannot grant request in status {request.status.value}")
        if request.expires_at <= now:
            return AccessOutcome(False, request, "Request has expired")
        if granted_by == request.requester_id:
            return AccessOutcome(False, request, "Requester cannot grant their own break-glass request")
        if granter_role_set.user_id != granted_by:
            return AccessOutcome(False, request, "Granter role set does not belong to the granter")

        held = self.catalog.permissions_for(
            a.role_id for a in granter_role_set.active_assignments(now) if a.user_id == granted_by
        )
        lacking = [s.value for s in request.scopes if SCOPE_PERMISSIONS[s] not in held]
        if lacking:
            return AccessOutcome(
                False, request, f"Granter lacks data access for scope(s): {', '.join(lacking)}"
            )

        updated = replace(
            request,
            status=BreakGlassStatus.GRANTED,
            granted_at=now,
            granted_by=granted_by,
            expires_at=now + timedelta(minutes=request.ttl_minutes),
            review_deadline=now + timedelta(hours=self.review_deadline_hours),
            version=request.version + 1,
        )
        logger.warning(f"Break-glass {request.id} granted to {request.requester_id} by {granted_by}")
        return AccessOutcome(True, updated, "Break-glass access granted")

    def deny(
        self,
        request: BreakGlassRequest,
        denied_by: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        now = resolve_now(now)
        if request.status != BreakGlassStatus.PENDING:
            return AccessOutcome(False, request, f"Cannot deny request in status {request.status.value}")
        if denied_by == request.requester_id:
            return AccessOutcome(False, request, "Requester cannot deny their own break-glass request")

        updated = replace(
            request,
            status=BreakGlassStatus.DENIED,
            denied_at=now,
            denied_by=denied_by,
            denial_reason=reason,
            version=request.version + 1,
        )
        logger.info(f"Break-glass {request.id} denied by {denied_by}")
        return AccessOutcome(True, updated, "Break-glass request denied")

    def revoke(
        self,
        request: BreakGlassRequest,
        revoked_by: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        now = resolve_now(now)
        if request.status != BreakGlassStatus.GRANTED:
            return AccessOutcome(False, request, f"Cannot revoke request in status {request.status.value}")

        updated = replace(
            request,
            status=BreakGlassStatus.REVOKED,
            revoked_at=now,
            revoked_by=revoked_by,
            revocation_reason=reason,
            version=request.version + 1,
        )
        logger.warning(f"Break-glass {request.id} revoked by {revoked_by}")
        return AccessOutcome(True, updated, "Break-glass access revoked")

    def expire(self, request: BreakGlassRequest, now: Optional[datetime] = None) -> AccessOutcome:
        """Move a lapsed pending/granted request to EXPIRED. No-op otherwise."""
        now = resolve_now(now)
        if request.status not in (BreakGlassStatus.PENDING, BreakGlassStatus.GRANTED):
            return AccessOutcome(False, request, f"Request already {request.status.value}")
        if request.expires_at > now:
            return AccessOutcome(False, request, "Request has not expired")

        updated = replace(request, status=BreakGlassStatus.EXPIRED, version=request.version + 1)
        logger.info(f"Break-glass {request.id} expired")
        return AccessOutcome(True, updated, "Break-glass request expired")

    # -------------------------------------------------------------------------
    # Validity
    # -------------------------------------------------------------------------

    @staticmethod
    def is_valid(request: BreakGlassRequest, scope: BreakGlassScope, now: Optional[datetime] = None) -> bool:
        """Granted, unexpired at ``now`` and covering ``scope``."""
        now = resolve_now(now)
        if request.status != BreakGlassStatus.GRANTED:
            return False
        if request.expires_at <= now:
            return False
        return scope in request.scopes

    def missing_scopes(
        self,
        request: Optional[BreakGlassRequest],
        scopes: Sequence[BreakGlassScope],
        now: Optional[datetime] = None,
    ) -> List[BreakGlassScope]:
        if request is None:
            return list(scopes)
        return [s for s in scopes if not self.is_valid(request, s, now)]

    # -------------------------------------------------------------------------
    # Usage log
    # -------------------------------------------------------------------------

    def record_access(
        self,
        request: BreakGlassRequest,
        resource_type: str,
        resource_id: str,
        access_type: AccessType = AccessType.READ,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        """Append a usage entry. Refused when the grant is not currently valid."""
        now = resolve_now(now)
        if request.status != BreakGlassStatus.GRANTED or request.expires_at <= now:
            logger.warning(f"Access under invalid break-glass {request.id} refused ({resource_type}/{resource_id})")
            return AccessOutcome(False, request, "Break-glass grant is not valid")

        entry = ResourceAccess(
            resource_type=resource_type,
            resource_id=resource_id,
            accessed_at=now,
            access_type=AccessType(access_type),
        )
        updated = replace(
            request,
            accessed_resources=request.accessed_resources + (entry,),
            version=request.version + 1,
        )
        return AccessOutcome(True, updated, "Access recorded")

    # -------------------------------------------------------------------------
    # Post-hoc review
    # -------------------------------------------------------------------------

    def review(
        self,
        request: BreakGlassRequest,
        reviewer_id: str,
        outcome: ReviewOutcome,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        now = resolve_now(now)
        if request.granted_at is None:
            return AccessOutcome(False, request, "Only granted requests are reviewed")
        if request.reviewed_at is not None:
            return AccessOutcome(False, request, "Request has already been reviewed")
        if reviewer_id == request.requester_id:
            return AccessOutcome(False, request, "Requester cannot review their own break-glass use")

        updated = replace(
            request,
            reviewed_at=now,
            reviewed_by=reviewer_id,
            review_notes=notes,
            review_outcome=ReviewOutcome(outcome),
            version=request.version + 1,
        )
        if updated.review_outcome != ReviewOutcome.APPROPRIATE:
            logger.warning(f"Break-glass {request.id} reviewed as {updated.review_outcome.value}")
        return AccessOutcome(True, updated, "Review recorded")

    @staticmethod
    def is_review_overdue(request: BreakGlassRequest, now: Optional[datetime] = None) -> bool:
        now = resolve_now(now)
        if request.review_deadline is None or request.reviewed_at is not None:
            return False
        return now > request.review_deadline
