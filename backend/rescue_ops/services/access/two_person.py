"""
Two-Person Approval Manager

Quorum approval for high-impact actions.

RULES:
- Approvals are keyed by distinct user id. Submitting twice never counts twice.
- The requester is never counted among their own approvers.
- The time window is a hard boundary. A request that has timed out can
  never become satisfied, whatever approvals arrive later.
- A satisfied request is single-use: ``complete`` marks it APPROVED once
  the action executes, after which it authorizes nothing.
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence, Tuple
from uuid import uuid4

from ...clock import resolve_now
from ...errors import ConfigurationError
from ...models.access import (
    ActionContext,
    ApprovalEntry,
    ApprovalOutcome,
    ApprovalStatus,
    TwoPersonApprovalRequest,
    TwoPersonRule,
)
from ...models.roles import Permission, RoleId, UserRoleSet
from ..roles.catalog import RoleCatalog, default_catalog

logger = logging.getLogger(__name__)


_SENIOR = (RoleId.REGIONAL_COORDINATOR, RoleId.FOUNDATION_ADMIN)
_LEAD_AND_SENIOR = (RoleId.LEAD_MODERATOR,) + _SENIOR


def _low_confidence_or_disputed(context: ActionContext) -> bool:
    return (context.claim_score is not None and context.claim_score < 60) or context.has_dispute


# =============================================================================
# TWO-PERSON RULES
# =============================================================================

TWO_PERSON_RULES: Tuple[TwoPersonRule, ...] = (
    TwoPersonRule(
        action=Permission.VOLUNTEER_SUSPEND,
        required_approvers=2,
        approver_roles=_LEAD_AND_SENIOR,
        time_window_minutes=60,
        reason="Prevents unilateral suspension of volunteers",
    ),
    TwoPersonRule(
        action=Permission.VOLUNTEER_REVOKE,
        required_approvers=2,
        approver_roles=_SENIOR,
        time_window_minutes=120,
        reason="Revocation is permanent and requires senior approval",
    ),
    TwoPersonRule(
        action=Permission.MODERATOR_SUSPEND,
        required_approvers=2,
        approver_roles=_SENIOR,
        time_window_minutes=60,
        reason="Moderator suspension requires senior oversight",
    ),
    TwoPersonRule(
        action=Permission.ALERT_TRIGGER_T4,
        required_approvers=2,
        approver_roles=_LEAD_AND_SENIOR,
        time_window_minutes=30,
        reason="High-tier alerts have significant public impact",
    ),
    TwoPersonRule(
        action=Permission.ALERT_TRIGGER_T5,
        required_approvers=2,
        approver_roles=_SENIOR,
        time_window_minutes=30,
        reason="Maximum alert tier requires senior oversight",
    ),
    TwoPersonRule(
        action=Permission.SYSTEM_EMERGENCY_MODE_ACTIVATE,
        required_approvers=2,
        approver_roles=_SENIOR,
        time_window_minutes=15,
        reason="Emergency mode relaxes vetting requirements",
    ),
    TwoPersonRule(
        action=Permission.VERIFICATION_CLEAR_HOLD,
        required_approvers=2,
        approver_roles=(RoleId.MODERATOR,) + _LEAD_AND_SENIOR,
        time_window_minutes=60,
        reason="Animal release requires verification by two people in disputed/low-confidence claims",
        condition=_low_confidence_or_disputed,
        condition_description="claim score below 60 or claim disputed",
    ),
    TwoPersonRule(
        action=Permission.CASE_LEGAL_HOLD,
        required_approvers=2,
        approver_roles=_LEAD_AND_SENIOR,
        time_window_minutes=120,
        reason="Legal holds have compliance implications",
    ),
    TwoPersonRule(
        action=Permission.CASE_REDACT_PII,
        required_approvers=2,
        approver_roles=_SENIOR,
        time_window_minutes=120,
        reason="PII redaction is irreversible",
    ),
    TwoPersonRule(
        action=Permission.SYSTEM_USER_BAN,
        required_approvers=2,
        approver_roles=_LEAD_AND_SENIOR,
        time_window_minutes=60,
        reason="User bans require oversight to prevent abuse",
    ),
)


class TwoPersonApprovalManager:
    """Creates and tracks quorum-approval requests from the static rule table."""

    def __init__(
        self,
        rules: Optional[Sequence[TwoPersonRule]] = None,
        catalog: Optional[RoleCatalog] = None,
    ):
        self.catalog = catalog or default_catalog
        self._rules: Dict[Permission, TwoPersonRule] = {}
        for rule in (rules if rules is not None else TWO_PERSON_RULES):
            self._register(rule)

    def _register(self, rule: TwoPersonRule) -> None:
        if rule.action in self._rules:
            raise ConfigurationError(f"Duplicate two-person rule for {rule.action.value}")
        if rule.required_approvers < 1:
            raise ConfigurationError(f"Two-person rule for {rule.action.value} needs at least one approver")
        if rule.time_window_minutes <= 0:
            raise ConfigurationError(f"Two-person rule for {rule.action.value} has no time window")
        if not rule.approver_roles:
            raise ConfigurationError(f"Two-person rule for {rule.action.value} names no approver roles")
        for role_id in rule.approver_roles:
            self.catalog.get(role_id)
        self._rules[rule.action] = rule

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    @property
    def rules(self) -> Tuple[TwoPersonRule, ...]:
        return tuple(self._rules.values())

    def rule_for(self, action: Permission) -> Optional[TwoPersonRule]:
        """Rule configured for ``action``, ignoring its condition."""
        return self._rules.get(action)

    def get_rule(self, action: Permission, context: Optional[ActionContext] = None) -> Optional[TwoPersonRule]:
        """Rule for ``action`` if its condition holds for ``context``."""
        rule = self._rules.get(action)
        if rule is None:
            return None
        if not rule.applies_to(context or ActionContext()):
            return None
        return rule

    def requires_approval(self, action: Permission, context: Optional[ActionContext] = None) -> bool:
        return self.get_rule(action, context) is not None

    # -------------------------------------------------------------------------
    # Request lifecycle
    # -------------------------------------------------------------------------

    def create_request(
        self,
        action: Permission,
        requested_by: str,
        target_resource_type: str,
        target_resource_id: str,
        context: Optional[ActionContext] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TwoPersonApprovalRequest]:
        """New pending request, or None when no rule applies to the action."""
        now = resolve_now(now)
        context = context or ActionContext()
        rule = self.get_rule(action, context)
        if rule is None:
            return None

        request = TwoPersonApprovalRequest(
            id=request_id or str(uuid4()),
            action=rule.action,
            requested_by=requested_by,
            requested_at=now,
            target_resource_type=target_resource_type,
            target_resource_id=target_resource_id,
            context=context.without_evidence(),
            required_approvers=rule.required_approvers,
            approver_roles=rule.approver_roles,
            timeout_at=now + timedelta(minutes=rule.time_window_minutes),
        )
        logger.info(
            f"Two-person request {request.id} for {action.value} on "
            f"{target_resource_type}/{target_resource_id} by {requested_by}"
        )
        return request

    def eligible_role(
        self,
        request: TwoPersonApprovalRequest,
        approver_role_set: UserRoleSet,
        now: Optional[datetime] = None,
    ) -> Optional[RoleId]:
        """Most senior effective role of the approver that the request accepts."""
        now = resolve_now(now)
        held = [
            a.role_id for a in approver_role_set.active_assignments(now)
            if a.user_id == approver_role_set.user_id and a.role_id in request.approver_roles
        ]
        if not held:
            return None
        return min(held, key=self.catalog.seniority_key)

    def submit_approval(
        self,
        request: TwoPersonApprovalRequest,
        approver_id: str,
        approver_role_set: UserRoleSet,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalOutcome:
        now = resolve_now(now)

        if request.status != ApprovalStatus.PENDING:
            return self._rejected(request, f"Request is {request.status.value}", now)
        if now >= request.timeout_at:
            return self._rejected(request, "Approval window has closed", now)
        if approver_id == request.requested_by:
            return self._rejected(request, "Requester cannot approve their own request", now)
        if approver_role_set.user_id != approver_id:
            return self._rejected(request, "Approver role set does not belong to the approver", now)
        if request.has_approved(approver_id):
            return ApprovalOutcome(
                accepted=True,
                request=request,
                satisfied=self.is_satisfied(request, now),
                message="Approval already recorded",
            )

        role_id = self.eligible_role(request, approver_role_set, now)
        if role_id is None:
            eligible = ", ".join(r.value for r in request.approver_roles)
            return self._rejected(request, f"Approver holds none of the eligible roles: {eligible}", now)

        updated = replace(
            request,
            approvals=request.approvals + (
                ApprovalEntry(user_id=approver_id, role_id=role_id, approved_at=now, notes=notes),
            ),
            version=request.version + 1,
        )
        satisfied = self.is_satisfied(updated, now)
        logger.info(
            f"Approval by {approver_id} ({role_id.value}) recorded on {request.id}: "
            f"{len(updated.distinct_eligible_approvers())}/{request.required_approvers}"
        )
        return ApprovalOutcome(
            accepted=True,
            request=updated,
            satisfied=satisfied,
            message="Approval satisfied" if satisfied else "Approval recorded",
        )

    def _rejected(self, request: TwoPersonApprovalRequest, message: str, now: datetime) -> ApprovalOutcome:
        return ApprovalOutcome(
            accepted=False,
            request=request,
            satisfied=self.is_satisfied(request, now),
            message=message,
        )

    @staticmethod
    def is_satisfied(request: TwoPersonApprovalRequest, now: Optional[datetime] = None) -> bool:
        """Pending, inside the time window, and enough distinct eligible approvers."""
        now = resolve_now(now)
        if request.status != ApprovalStatus.PENDING:
            return False
        if now >= request.timeout_at:
            return False
        return len(request.distinct_eligible_approvers()) >= request.required_approvers

    def deny(
        self,
        request: TwoPersonApprovalRequest,
        denied_by: str,
        approver_role_set: UserRoleSet,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalOutcome:
        """An eligible approver (not the requester) rejects the request."""
        now = resolve_now(now)
        if request.status != ApprovalStatus.PENDING:
            return self._rejected(request, f"Request is {request.status.value}", now)
        if denied_by == request.requested_by:
            return self._rejected(request, "Requester cannot deny their own request; cancel it instead", now)
        if approver_role_set.user_id != denied_by or self.eligible_role(request, approver_role_set, now) is None:
            return self._rejected(request, "Only an eligible approver can deny this request", now)

        return self._resolve(request, ApprovalStatus.DENIED, denied_by, notes, now, "Request denied")

    def cancel(
        self,
        request: TwoPersonApprovalRequest,
        cancelled_by: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalOutcome:
        now = resolve_now(now)
        if request.status != ApprovalStatus.PENDING:
            return self._rejected(request, f"Request is {request.status.value}", now)
        if cancelled_by != request.requested_by:
            return self._rejected(request, "Only the requester can cancel this request", now)

        return self._resolve(request, ApprovalStatus.CANCELLED, cancelled_by, notes, now, "Request cancelled")

    def expire(self, request: TwoPersonApprovalRequest, now: Optional[datetime] = None) -> ApprovalOutcome:
        """Pending request past its timeout -> EXPIRED. No-op otherwise."""
        now = resolve_now(now)
        if request.status != ApprovalStatus.PENDING:
            return self._rejected(request, f"Request is {request.status.value}", now)
        if now < request.timeout_at:
            return self._rejected(request, "Request has not timed out", now)

        return self._resolve(request, ApprovalStatus.EXPIRED, None, "Approval window elapsed", now, "Request expired")

    def complete(
        self,
        request: TwoPersonApprovalRequest,
        completed_by: str,
        now: Optional[datetime] = None,
    ) -> ApprovalOutcome:
        """Consume a satisfied request. Only the requester executes the action."""
        now = resolve_now(now)
        if completed_by != request.requested_by:
            return self._rejected(request, "Only the requester can complete this request", now)
        if not self.is_satisfied(request, now):
            return self._rejected(request, "Request is not satisfied", now)

        outcome = self._resolve(request, ApprovalStatus.APPROVED, completed_by, None, now, "Request approved")
        return replace(outcome, satisfied=True)

    def _resolve(
        self,
        request: TwoPersonApprovalRequest,
        status: ApprovalStatus,
        resolved_by: Optional[str],
        notes: Optional[str],
        now: datetime,
        message: str,
    ) -> ApprovalOutcome:
        updated = replace(
            request,
            status=status,
            resolved_at=now,
            resolved_by=resolved_by,
            resolution_notes=notes,
            version=request.version + 1,
        )
        logger.info(f"Two-person request {request.id} -> {status.value}")
        return ApprovalOutcome(accepted=True, request=updated, satisfied=False, message=message)
