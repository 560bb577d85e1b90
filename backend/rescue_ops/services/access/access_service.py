"""
Access Service

Store-backed entry points for permission decisions, break-glass and
two-person approval.

Evidence ids supplied by callers are resolved from storage here; the
decision engine only ever sees typed snapshots in an ActionContext.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from ...clock import resolve_now
from ...models.access import (
    AccessOutcome,
    AccessType,
    ActionContext,
    ApprovalOutcome,
    BreakGlassReasonCode,
    BreakGlassRequest,
    BreakGlassScope,
    BreakGlassStatus,
    PermissionCheckResult,
    PermissionExplanation,
    ReviewOutcome,
    TwoPersonApprovalRequest,
)
from ...models.actors import Actor, HumanActor
from ...models.audit import AuditEventType
from ...models.roles import Permission
from ..audit.audit_log import AuditLogService, default_audit_service
from ..roles.role_service import RoleService
from ..storage.repositories import BreakGlassRepository, TwoPersonRequestRepository
from .decision_engine import PermissionDecisionEngine, PermissionLike

logger = logging.getLogger(__name__)


class AccessService:
    def __init__(
        self,
        db: Session,
        engine: Optional[PermissionDecisionEngine] = None,
        role_service: Optional[RoleService] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.engine = engine or PermissionDecisionEngine()
        self.audit = audit or default_audit_service
        self.roles = role_service or RoleService(db, audit=self.audit)
        self.break_glass_repo = BreakGlassRepository(db)
        self.approval_repo = TwoPersonRequestRepository(db)

    @property
    def break_glass(self):
        return self.engine.break_glass

    @property
    def two_person(self):
        return self.engine.two_person

    # =========================================================================
    # DECISIONS
    # =========================================================================

    def resolve_context(
        self,
        context: Optional[ActionContext] = None,
        break_glass_id: Optional[str] = None,
        approval_id: Optional[str] = None,
    ) -> ActionContext:
        """Attach stored evidence to a context. Unknown ids raise RecordNotFoundError."""
        context = context or ActionContext()
        if break_glass_id:
            context = replace(context, break_glass=self.break_glass_repo.get(break_glass_id))
        if approval_id:
            context = replace(context, approval=self.approval_repo.get(approval_id))
        return context

    def check(
        self,
        user_id: str,
        permission: PermissionLike,
        context: Optional[ActionContext] = None,
        break_glass_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        actor: Optional[Actor] = None,
        now: Optional[datetime] = None,
    ) -> PermissionCheckResult:
        """
        Evaluate a permission from stored assignments.

        When ``actor`` is given the decision is also written to the audit
        log; otherwise the call has no side effects.
        """
        now = resolve_now(now)
        context = self.resolve_context(context, break_glass_id, approval_id)
        result = self.engine.check_permission(self.roles.role_set(user_id, now), permission, context, now)
        if actor is not None:
            self.roles.repo.audit_log.append([
                self.audit.for_permission_check(result, actor, context.case_id, now),
            ])
        return result

    def explain(
        self,
        user_id: str,
        permission: PermissionLike,
        context: Optional[ActionContext] = None,
        break_glass_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PermissionExplanation:
        now = resolve_now(now)
        context = self.resolve_context(context, break_glass_id, approval_id)
        return self.engine.explain_permission(self.roles.role_set(user_id, now), permission, context, now)

    # =========================================================================
    # BREAK-GLASS
    # =========================================================================

    def request_break_glass(
        self,
        requester: HumanActor,
        scopes: Sequence[BreakGlassScope],
        reason_code: BreakGlassReasonCode,
        justification: str,
        case_id: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BreakGlassRequest:
        """
        Create and store a request. An auto-granted request is inserted
        together with its grant entry in one transaction.
        """
        now = resolve_now(now)
        request = self.break_glass.create_request(
            requester.user_id, scopes, reason_code, justification, case_id, ttl_minutes, request_id, now,
        )
        entries = [self.audit.for_break_glass(AuditEventType.BREAK_GLASS_REQUESTED, request, requester.user_id,
                                              now=now)]
        if request.status == BreakGlassStatus.GRANTED:
            entries.append(self.audit.for_break_glass(
                AuditEventType.BREAK_GLASS_GRANTED, request, request.granted_by,
                metadata={"auto_granted": True}, now=now,
            ))
        self.break_glass_repo.add(request, audit=entries)
        return request

    def _persist_break_glass(
        self,
        original: BreakGlassRequest,
        outcome: AccessOutcome,
        event_type: AuditEventType,
        actor_id: str,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        if not outcome.success:
            return outcome
        entry = self.audit.for_break_glass(event_type, outcome.request, actor_id, reason, metadata, now)
        self.break_glass_repo.update(outcome.request, expected_version=original.version, audit=[entry])
        return outcome

    def grant_break_glass(self, request_id: str, granter: HumanActor,
                          now: Optional[datetime] = None) -> AccessOutcome:
        now = resolve_now(now)
        request = self.break_glass_repo.get(request_id)
        outcome = self.break_glass.grant(request, granter.user_id, self.roles.role_set(granter.user_id, now), now)
        return self._persist_break_glass(request, outcome, AuditEventType.BREAK_GLASS_GRANTED,
                                         granter.user_id, now=now)

    def deny_break_glass(self, request_id: str, actor: HumanActor, reason: str,
                         now: Optional[datetime] = None) -> AccessOutcome:
        now = resolve_now(now)
        request = self.break_glass_repo.get(request_id)
        outcome = self.break_glass.deny(request, actor.user_id, reason, now)
        return self._persist_break_glass(request, outcome, AuditEventType.BREAK_GLASS_DENIED,
                                         actor.user_id, reason, now=now)

    def revoke_break_glass(self, request_id: str, actor: HumanActor, reason: str,
                           now: Optional[datetime] = None) -> AccessOutcome:
        now = resolve_now(now)
        request = self.break_glass_repo.get(request_id)
        outcome = self.break_glass.revoke(request, actor.user_id, reason, now)
        return self._persist_break_glass(request, outcome, AuditEventType.BREAK_GLASS_REVOKED,
                                         actor.user_id, reason, now=now)

    def record_break_glass_access(
        self,
        request_id: str,
        resource_type: str,
        resource_id: str,
        access_type: AccessType = AccessType.READ,
        now: Optional[datetime] = None,
    ) -> AccessOutcome:
        now = resolve_now(now)
        request = self.break_glass_repo.get(request_id)
        outcome = self.break_glass.record_access(request, resource_type, resource_id, access_type, now)
        return self._persist_break_glass(
            request, outcome, AuditEventType.BREAK_GLASS_USED, request.requester_id,
            metadata={"resource": f"{resource_type}:{resource_id}", "access_type": AccessType(access_type).value},
            now=now,
        )

    def review_break_glass(self, request_id: str, reviewer: HumanActor, outcome: ReviewOutcome,
                           notes: Optional[str] = None, now: Optional[datetime] = None) -> AccessOutcome:
        now = resolve_now(now)
        request = self.break_glass_repo.get(request_id)
        result = self.break_glass.review(request, reviewer.user_id, outcome, notes, now)
        return self._persist_break_glass(request, result, AuditEventType.BREAK_GLASS_REVIEWED,
                                         reviewer.user_id, notes, {"outcome": ReviewOutcome(outcome).value}, now)

    def expire_break_glass(self, request: BreakGlassRequest, actor: Actor,
                           now: Optional[datetime] = None) -> AccessOutcome:
        now = resolve_now(now)
        outcome = self.break_glass.expire(request, now)
        return self._persist_break_glass(request, outcome, AuditEventType.BREAK_GLASS_EXPIRED,
                                         actor.actor_id, "TTL elapsed", now=now)

    # =========================================================================
    # TWO-PERSON APPROVAL
    # =========================================================================

    def request_approval(
        self,
        action: Permission,
        requester: HumanActor,
        target_resource_type: str,
        target_resource_id: str,
        context: Optional[ActionContext] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TwoPersonApprovalRequest]:
        """Store a new request, or return None when the action needs no approval."""
        now = resolve_now(now)
        request = self.two_person.create_request(
            action, requester.user_id, target_resource_type, target_resource_id, context, request_id, now,
        )
        if request is None:
            return None
        entry = self.audit.for_two_person(AuditEventType.TWO_PERSON_REQUESTED, request, requester.user_id, now=now)
        return self.approval_repo.add(request, audit=[entry])

    def submit_approval(self, request_id: str, approver: HumanActor, notes: Optional[str] = None,
                        now: Optional[datetime] = None) -> ApprovalOutcome:
        """
        Validate and append one approval.

        The satisfied flag is computed from the request as stored after
        the append, so concurrent approvals by different users are all
        counted.
        """
        now = resolve_now(now)
        request = self.approval_repo.get(request_id)
        outcome = self.two_person.submit_approval(
            request, approver.user_id, self.roles.role_set(approver.user_id, now), notes, now,
        )
        if not outcome.accepted or outcome.request is request:
            return outcome

        entry = outcome.request.approvals[-1]
        audit_entry = self.audit.for_two_person(
            AuditEventType.TWO_PERSON_APPROVAL_ADDED, outcome.request, approver.user_id, notes, now,
        )
        stored, added = self.approval_repo.append_approval(request_id, entry, audit=[audit_entry])
        satisfied = self.two_person.is_satisfied(stored, now)
        if not added:
            return ApprovalOutcome(True, stored, satisfied, "Approval already recorded")
        return ApprovalOutcome(True, stored, satisfied, "Approval satisfied" if satisfied else "Approval recorded")

    def _persist_approval(
        self,
        original: TwoPersonApprovalRequest,
        outcome: ApprovalOutcome,
        event_type: AuditEventType,
        actor_id: str,
        reason: Optional[str],
        now: datetime,
    ) -> ApprovalOutcome:
        if not outcome.accepted:
            return outcome
        entry = self.audit.for_two_person(event_type, outcome.request, actor_id, reason, now)
        self.approval_repo.update(outcome.request, expected_version=original.version, audit=[entry])
        return outcome

    def deny_approval(self, request_id: str, actor: HumanActor, notes: Optional[str] = None,
                      now: Optional[datetime] = None) -> ApprovalOutcome:
        now = resolve_now(now)
        request = self.approval_repo.get(request_id)
        outcome = self.two_person.deny(request, actor.user_id, self.roles.role_set(actor.user_id, now), notes, now)
        return self._persist_approval(request, outcome, AuditEventType.TWO_PERSON_DENIED, actor.user_id, notes, now)

    def cancel_approval(self, request_id: str, actor: HumanActor, notes: Optional[str] = None,
                        now: Optional[datetime] = None) -> ApprovalOutcome:
        now = resolve_now(now)
        request = self.approval_repo.get(request_id)
        outcome = self.two_person.cancel(request, actor.user_id, notes, now)
        return self._persist_approval(request, outcome, AuditEventType.TWO_PERSON_CANCELLED,
                                      actor.user_id, notes, now)

    def complete_approval(self, request_id: str, actor: HumanActor,
                          now: Optional[datetime] = None) -> ApprovalOutcome:
        """Consume a satisfied request once the approved action has executed."""
        now = resolve_now(now)
        request = self.approval_repo.get(request_id)
        outcome = self.two_person.complete(request, actor.user_id, now)
        return self._persist_approval(request, outcome, AuditEventType.TWO_PERSON_GRANTED,
                                      actor.user_id, None, now)

    def expire_approval(self, request: TwoPersonApprovalRequest, actor: Actor,
                        now: Optional[datetime] = None) -> ApprovalOutcome:
        now = resolve_now(now)
        outcome = self.two_person.expire(request, now)
        return self._persist_approval(request, outcome, AuditEventType.TWO_PERSON_EXPIRED,
                                      actor.actor_id, "Approval window elapsed", now)
