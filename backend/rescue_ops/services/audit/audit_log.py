"""
Audit Log Service

Builds the audit entry for every state-changing operation.

Core Principles:
1. The audit log records what happened. It never decides.
2. Append-only - entries are never updated or deleted by the engine.
3. Legal preservation is forced, never opt-in, for ban/revocation,
   legal-hold and fraud flags, break-glass grants and usage, and
   proof-of-life / scam events.
4. Retention jobs may only ever see non-preserved entries.
"""
import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from uuid import uuid4

from ...clock import resolve_now
from ...models.access import BreakGlassRequest, PermissionCheckResult, TwoPersonApprovalRequest
from ...models.actors import Actor
from ...models.audit import AuditEntry, AuditEventType
from ...models.cases import Case, CaseFlagType
from ...models.roles import UserRoleAssignment

logger = logging.getLogger(__name__)


PRESERVED_EVENT_TYPES: FrozenSet[AuditEventType] = frozenset({
    AuditEventType.ROLE_REVOKED,
    AuditEventType.USER_BANNED,
    AuditEventType.CASE_LEGAL_HOLD,
    AuditEventType.BREAK_GLASS_GRANTED,
    AuditEventType.BREAK_GLASS_USED,
    AuditEventType.PROOF_OF_LIFE_RECORDED,
    AuditEventType.SCAM_DETECTED,
})

PRESERVED_FLAG_TYPES: FrozenSet[CaseFlagType] = frozenset({
    CaseFlagType.LEGAL_HOLD,
    CaseFlagType.FRAUD_SUSPECTED,
})


def must_preserve(event_type: AuditEventType, metadata: Optional[Dict[str, Any]] = None) -> bool:
    if event_type in PRESERVED_EVENT_TYPES:
        return True
    if event_type in (AuditEventType.CASE_FLAG_SET, AuditEventType.CASE_FLAG_CLEARED):
        flag_type = (metadata or {}).get("flag_type")
        return flag_type in {f.value for f in PRESERVED_FLAG_TYPES}
    return False


class AuditLogService:
    """
    Audit entry factory.

    Every ``for_*`` method returns an AuditEntry; persistence happens in
    the storage layer, in the same transaction as the change it records.
    """

    def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        action: str,
        case_id: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        preserved_for_legal: bool = False,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        metadata = dict(metadata or {})
        preserved = preserved_for_legal or must_preserve(event_type, metadata)
        entry = AuditEntry(
            entry_id=str(uuid4()),
            timestamp=resolve_now(now),
            event_type=event_type,
            actor_id=actor_id,
            action=action,
            case_id=case_id,
            user_id=user_id,
            ip_address=ip_address,
            reason=reason,
            metadata=metadata,
            preserved_for_legal=preserved,
        )
        logger.debug(f"Audit {event_type.value} by {actor_id}: {action}")
        return entry

    # =========================================================================
    # Roles
    # =========================================================================

    def for_assignment(
        self,
        event_type: AuditEventType,
        assignment: UserRoleAssignment,
        actor: Actor,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        if event_type == AuditEventType.ROLE_REVOKED and assignment.permanent_ban:
            event_type = AuditEventType.USER_BANNED
        return self.record(
            event_type,
            actor_id=actor.actor_id,
            action=f"{event_type.value}: {assignment.role_id.value}",
            user_id=assignment.user_id,
            ip_address=getattr(actor, "ip_address", None),
            reason=reason,
            metadata={
                "assignment_id": assignment.id,
                "role_id": assignment.role_id.value,
                "status": assignment.status.value,
                "version": assignment.version,
                "permanent_ban": assignment.permanent_ban,
            },
            now=now,
        )

    # =========================================================================
    # Permission decisions
    # =========================================================================

    def for_permission_check(
        self,
        result: PermissionCheckResult,
        actor: Actor,
        case_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        event_type = AuditEventType.PERMISSION_CHECKED if result.allowed else AuditEventType.PERMISSION_DENIED
        return self.record(
            event_type,
            actor_id=actor.actor_id,
            action=f"{result.decision.value}: {result.permission.value}",
            case_id=case_id,
            user_id=result.user_id,
            ip_address=getattr(actor, "ip_address", None),
            reason=result.audit_note,
            metadata={
                "decision": result.decision.value,
                "applied_policies": list(result.applied_policies),
            },
            now=now,
        )

    # =========================================================================
    # Break-glass
    # =========================================================================

    def for_break_glass(
        self,
        event_type: AuditEventType,
        request: BreakGlassRequest,
        actor_id: str,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        data = {
            "request_id": request.id,
            "status": request.status.value,
            "scopes": [s.value for s in request.scopes],
            "reason_code": request.reason_code.value,
            "version": request.version,
        }
        data.update(metadata or {})
        return self.record(
            event_type,
            actor_id=actor_id,
            action=f"{event_type.value}: {request.id}",
            case_id=request.case_id,
            user_id=request.requester_id,
            reason=reason or request.justification,
            metadata=data,
            now=now,
        )

    # =========================================================================
    # Two-person approval
    # =========================================================================

    def for_two_person(
        self,
        event_type: AuditEventType,
        request: TwoPersonApprovalRequest,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        return self.record(
            event_type,
            actor_id=actor_id,
            action=f"{event_type.value}: {request.action.value}",
            case_id=request.context.case_id,
            user_id=request.requested_by,
            reason=reason,
            metadata={
                "request_id": request.id,
                "status": request.status.value,
                "approvals": [a.user_id for a in request.approvals],
                "required_approvers": request.required_approvers,
                "target": f"{request.target_resource_type}:{request.target_resource_id}",
                "version": request.version,
            },
            now=now,
        )

    # =========================================================================
    # Cases
    # =========================================================================

    def for_case(
        self,
        event_type: AuditEventType,
        case: Case,
        actor: Actor,
        action: str,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        data = {
            "case_number": case.case_number,
            "status": case.status.value,
            "version": case.version,
        }
        data.update(metadata or {})
        return self.record(
            event_type,
            actor_id=actor.actor_id,
            action=action,
            case_id=case.id,
            ip_address=getattr(actor, "ip_address", None),
            reason=reason,
            metadata=data,
            now=now,
        )

    # =========================================================================
    # Retention
    # =========================================================================

    @staticmethod
    def retention_candidates(entries: Iterable[AuditEntry], older_than: datetime) -> List[AuditEntry]:
        """Entries a retention job may purge. Preserved entries are never returned."""
        return [e for e in entries if not e.preserved_for_legal and e.timestamp < older_than]


default_audit_service = AuditLogService()
