"""
Permission Decision Engine

Given a role set, a requested permission and an action context, produce
an allow / deny / requires_break_glass / requires_two_person decision.

PIPELINE (stops at the first failing check, always returns every check run):
1. Active Role Check
2. Permission Check            (base_permission_check)
3. Region Scope Check          (region_scope_check, only with a region)
4. Break-Glass Check           (break_glass_policy, protected permissions)
5. Two-Person Approval Check   (two_person_approval_policy, when a rule applies)

Effective permissions are recomputed from the assignments on every call.
The summary fields of UserRoleSet are never trusted.

Deterministic and side-effect free: the same inputs (including ``now``)
always produce the same result.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ...clock import resolve_now
from ...errors import UnknownPermissionError
from ...models.access import (
    ActionContext,
    ApprovalStatus,
    CheckSeverity,
    Decision,
    PermissionCheck,
    PermissionCheckResult,
    PermissionExplanation,
    PolicyRelevance,
    RoleContribution,
    TwoPersonRule,
)
from ...models.roles import Permission, RoleId, UserRoleAssignment, UserRoleSet
from ..roles.catalog import RoleCatalog, default_catalog
from .break_glass import BreakGlassManager, requires_break_glass, scopes_for
from .two_person import TwoPersonApprovalManager

logger = logging.getLogger(__name__)


POLICY_BASE = "base_permission_check"
POLICY_REGION = "region_scope_check"
POLICY_BREAK_GLASS = "break_glass_policy"
POLICY_TWO_PERSON = "two_person_approval_policy"

POLICY_DESCRIPTIONS: Dict[str, str] = {
    POLICY_BASE: "Checks if any active role grants the permission",
    POLICY_REGION: "Checks if user has access to the target region",
    POLICY_BREAK_GLASS: "Requires break-glass access for sensitive data",
    POLICY_TWO_PERSON: "Requires approval from multiple people for high-impact actions",
}

PermissionLike = Union[Permission, str]


def coerce_permission(permission: PermissionLike) -> Permission:
    if isinstance(permission, Permission):
        return permission
    try:
        return Permission(permission)
    except ValueError:
        raise UnknownPermissionError(f"Unknown permission id: {permission}")


class PermissionDecisionEngine:
    """Ordered permission pipeline with break-glass and two-person policies."""

    def __init__(
        self,
        catalog: Optional[RoleCatalog] = None,
        break_glass: Optional[BreakGlassManager] = None,
        two_person: Optional[TwoPersonApprovalManager] = None,
    ):
        self.catalog = catalog or default_catalog
        self.break_glass = break_glass or BreakGlassManager(catalog=self.catalog)
        self.two_person = two_person or TwoPersonApprovalManager(catalog=self.catalog)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def effective_assignments(role_set: UserRoleSet, now: datetime) -> List[UserRoleAssignment]:
        return [
            a for a in role_set.assignments
            if a.user_id == role_set.user_id and a.is_effective(now)
        ]

    def effective_permissions(self, role_set: UserRoleSet, now: Optional[datetime] = None):
        now = resolve_now(now)
        return self.catalog.permissions_for(a.role_id for a in self.effective_assignments(role_set, now))

    # =========================================================================
    # SINGLE CHECK
    # =========================================================================

    def check_permission(
        self,
        role_set: UserRoleSet,
        permission: PermissionLike,
        context: Optional[ActionContext] = None,
        now: Optional[datetime] = None,
    ) -> PermissionCheckResult:
        permission = coerce_permission(permission)
        context = context or ActionContext()
        now = resolve_now(now)

        checks: List[PermissionCheck] = []
        policies: List[str] = []
        user_id = role_set.user_id

        # ---------------------------------------------------------------------
        # 1. Active roles
        # ---------------------------------------------------------------------
        active = self.effective_assignments(role_set, now)
        if not active:
            checks.append(PermissionCheck(
                "Active Role Check", False, "User has no active roles", CheckSeverity.ERROR,
            ))
            return self._deny(permission, user_id, checks, policies, "No active roles")
        checks.append(PermissionCheck(
            "Active Role Check", True, f"User has {len(active)} active role(s)",
        ))

        # ---------------------------------------------------------------------
        # 2. Base permission
        # ---------------------------------------------------------------------
        policies.append(POLICY_BASE)
        granting = [a.role_id for a in active if permission in self.catalog.get(a.role_id).permissions]
        if not granting:
            checks.append(PermissionCheck(
                "Permission Check", False, f"User lacks permission: {permission.value}", CheckSeverity.ERROR,
            ))
            return self._deny(
                permission, user_id, checks, policies,
                f"Missing permission: {permission.value}",
                missing=(permission,),
                granting_roles=tuple(self.catalog.roles_granting(permission)),
            )
        granting_roles = tuple(sorted(set(granting), key=self.catalog.seniority_key))
        checks.append(PermissionCheck(
            "Permission Check", True,
            f"Permission {permission.value} granted via role(s): {', '.join(r.value for r in granting_roles)}",
        ))

        # ---------------------------------------------------------------------
        # 3. Region scope
        # ---------------------------------------------------------------------
        if context.region_id:
            policies.append(POLICY_REGION)
            if not any(a.covers_region(context.region_id) for a in active):
                checks.append(PermissionCheck(
                    "Region Scope Check", False,
                    f"User not authorized for region: {context.region_id}", CheckSeverity.ERROR,
                ))
                return self._deny(
                    permission, user_id, checks, policies, "Region access denied",
                    granting_roles=granting_roles,
                )
            checks.append(PermissionCheck("Region Scope Check", True, "User authorized for region"))

        # ---------------------------------------------------------------------
        # 4. Break-glass
        # ---------------------------------------------------------------------
        if requires_break_glass(permission):
            policies.append(POLICY_BREAK_GLASS)
            required = scopes_for(permission)
            evidence = context.break_glass
            if evidence is None:
                missing = list(required)
                detail = f"Permission {permission.value} requires break-glass access"
            elif evidence.requester_id != user_id:
                missing = list(required)
                detail = f"Break-glass {evidence.id} belongs to another user"
            else:
                missing = self.break_glass.missing_scopes(evidence, required, now)
                detail = (
                    f"Break-glass {evidence.id} is not valid for scope(s): "
                    f"{', '.join(s.value for s in missing)}"
                )
            if missing:
                checks.append(PermissionCheck("Break-Glass Check", False, detail, CheckSeverity.WARNING))
                scope_names = ", ".join(s.value for s in missing)
                return PermissionCheckResult(
                    allowed=False,
                    decision=Decision.REQUIRES_BREAK_GLASS,
                    permission=permission,
                    user_id=user_id,
                    checks=tuple(checks),
                    applied_policies=tuple(policies),
                    audit_note=f"Break-glass access required for scopes: {scope_names}",
                    granting_roles=granting_roles,
                    break_glass_scopes=tuple(missing),
                )
            checks.append(PermissionCheck(
                "Break-Glass Check", True, f"Break-glass access provided: {evidence.id}",
            ))

        # ---------------------------------------------------------------------
        # 5. Two-person approval
        # ---------------------------------------------------------------------
        rule = self.two_person.get_rule(permission, context)
        if rule is not None:
            policies.append(POLICY_TWO_PERSON)
            approvals, detail = self._approval_evidence(rule, user_id, context, now)
            if approvals < rule.required_approvers:
                checks.append(PermissionCheck("Two-Person Approval Check", False, detail, CheckSeverity.WARNING))
                return PermissionCheckResult(
                    allowed=False,
                    decision=Decision.REQUIRES_TWO_PERSON,
                    permission=permission,
                    user_id=user_id,
                    checks=tuple(checks),
                    applied_policies=tuple(policies),
                    audit_note=f"Two-person approval required: {rule.reason}",
                    granting_roles=granting_roles,
                    required_approvals=rule.required_approvers,
                    approver_roles=rule.approver_roles,
                    current_approvals=approvals,
                    two_person_reason=rule.reason,
                )
            checks.append(PermissionCheck("Two-Person Approval Check", True, detail))

        return PermissionCheckResult(
            allowed=True,
            decision=Decision.ALLOW,
            permission=permission,
            user_id=user_id,
            checks=tuple(checks),
            applied_policies=tuple(policies),
            audit_note=f"Permission {permission.value} granted to user {user_id}",
            granting_roles=granting_roles,
            required_approvals=rule.required_approvers if rule else 0,
            approver_roles=rule.approver_roles if rule else (),
            current_approvals=(
                len(context.approval.distinct_eligible_approvers()) if rule and context.approval else 0
            ),
            two_person_reason=rule.reason if rule else None,
        )

    def _approval_evidence(
        self,
        rule: TwoPersonRule,
        user_id: str,
        context: ActionContext,
        now: datetime,
    ) -> Tuple[int, str]:
        """(distinct eligible approvals counted, check detail)."""
        request = context.approval
        needed = rule.required_approvers
        if request is None:
            return 0, f"Requires {needed} approvers, has 0"
        if request.action != rule.action:
            return 0, f"Approval {request.id} is for {request.action.value}, not {rule.action.value}"
        if request.requested_by != user_id:
            return 0, f"Approval {request.id} was requested by another user"
        if context.resource_id and context.resource_id != request.target_resource_id:
            return 0, f"Approval {request.id} targets a different resource"

        count = len(
            {a.user_id for a in request.approvals
             if a.role_id in rule.approver_roles and a.user_id != user_id}
        )
        if not self.two_person.is_satisfied(request, now):
            if request.status != ApprovalStatus.PENDING:
                return 0, f"Approval {request.id} is {request.status.value}"
            if now >= request.timeout_at:
                return 0, f"Approval {request.id} timed out"
            return count, f"Requires {needed} approvers, has {count}"
        return count, f"Two-person approval satisfied ({count} approvers)"

    # =========================================================================
    # RESULT BUILDERS
    # =========================================================================

    @staticmethod
    def _deny(
        permission: Permission,
        user_id: str,
        checks: List[PermissionCheck],
        policies: List[str],
        reason: str,
        missing: Tuple[Permission, ...] = (),
        granting_roles: Tuple[RoleId, ...] = (),
    ) -> PermissionCheckResult:
        return PermissionCheckResult(
            allowed=False,
            decision=Decision.DENY,
            permission=permission,
            user_id=user_id,
            checks=tuple(checks),
            applied_policies=tuple(policies),
            audit_note=f"Permission denied: {reason}",
            missing_permissions=missing,
            granting_roles=granting_roles,
        )

    # =========================================================================
    # EXPLAIN
    # =========================================================================

    def explain_permission(
        self,
        role_set: UserRoleSet,
        permission: PermissionLike,
        context: Optional[ActionContext] = None,
        now: Optional[datetime] = None,
    ) -> PermissionExplanation:
        """Reconstruct per-role contribution, relevant policies and remediation hints."""
        permission = coerce_permission(permission)
        context = context or ActionContext()
        now = resolve_now(now)
        result = self.check_permission(role_set, permission, context, now)

        breakdown = [
            RoleContribution(
                role_id=a.role_id,
                status=a.status,
                effective=a.is_effective(now),
                has_permission=permission in self.catalog.get(a.role_id).permissions,
                region_limited=bool(a.region_ids),
                expires_at=a.expires_at,
            )
            for a in role_set.assignments
            if a.user_id == role_set.user_id
        ]

        policies = [
            PolicyRelevance(POLICY_BASE, POLICY_DESCRIPTIONS[POLICY_BASE], True),
            PolicyRelevance(POLICY_REGION, POLICY_DESCRIPTIONS[POLICY_REGION], bool(context.region_id)),
            PolicyRelevance(
                POLICY_BREAK_GLASS, POLICY_DESCRIPTIONS[POLICY_BREAK_GLASS], requires_break_glass(permission),
            ),
            PolicyRelevance(
                POLICY_TWO_PERSON, POLICY_DESCRIPTIONS[POLICY_TWO_PERSON],
                self.two_person.requires_approval(permission, context),
            ),
        ]

        recommendations: List[str] = []
        if not result.allowed:
            if not self.effective_assignments(role_set, now):
                recommendations.append("Grant or reinstate an active role for this user")
            if result.missing_permissions:
                names = [self.catalog.get(r).name for r in result.granting_roles]
                if names:
                    recommendations.append(f"Permission available in roles: {', '.join(names)}")
            if result.decision == Decision.DENY and POLICY_REGION in result.applied_policies \
                    and not result.missing_permissions:
                recommendations.append(f"Request a role assignment covering region {context.region_id}")
            if result.break_glass_required:
                scopes = ", ".join(s.value for s in result.break_glass_scopes)
                recommendations.append("Submit a break-glass request with justification")
                recommendations.append(f"Break-glass scopes needed: {scopes}")
            if result.two_person_required:
                recommendations.append(f"Obtain approval from {result.required_approvals} authorized personnel")
                recommendations.append(
                    f"Eligible approver roles: {', '.join(r.value for r in result.approver_roles)}"
                )

        return PermissionExplanation(
            permission=permission,
            user_id=role_set.user_id,
            result=result,
            role_breakdown=breakdown,
            relevant_policies=policies,
            recommendations=recommendations,
        )

    # =========================================================================
    # BATCH (pure fan-outs of check_permission)
    # =========================================================================

    def check_permissions(
        self,
        role_set: UserRoleSet,
        permissions: Iterable[PermissionLike],
        context: Optional[ActionContext] = None,
        now: Optional[datetime] = None,
    ) -> Dict[Permission, PermissionCheckResult]:
        now = resolve_now(now)
        results: Dict[Permission, PermissionCheckResult] = {}
        for permission in permissions:
            result = self.check_permission(role_set, permission, context, now)
            results[result.permission] = result
        return results

    def has_all_permissions(
        self,
        role_set: UserRoleSet,
        permissions: Sequence[PermissionLike],
        context: Optional[ActionContext] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = resolve_now(now)
        return all(self.check_permission(role_set, p, context, now).allowed for p in permissions)

    def has_any_permission(
        self,
        role_set: UserRoleSet,
        permissions: Sequence[PermissionLike],
        context: Optional[ActionContext] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = resolve_now(now)
        return any(self.check_permission(role_set, p, context, now).allowed for p in permissions)
