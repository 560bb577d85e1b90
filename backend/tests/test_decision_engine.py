"""
Tests for the Permission Decision Engine

Key tests:
1. Pipeline order: active role -> permission -> region -> break-glass -> two-person
2. Missing permission is a deny with remediation roles
3. Sensitive data requires a valid break-glass grant of the requester
4. High-impact actions require quorum approval
5. explain_permission reconstructs the decision
"""
from dataclasses import replace
from datetime import timedelta

import pytest

from rescue_ops.errors import ConfigurationError, UnknownPermissionError
from rescue_ops.models.access import (
    ActionContext,
    BreakGlassReasonCode,
    BreakGlassScope,
    Decision,
)
from rescue_ops.models.roles import Permission, RoleId
from rescue_ops.services.access import (
    BreakGlassManager,
    PermissionDecisionEngine,
    TwoPersonApprovalManager,
    coerce_permission,
)
from rescue_ops.services.access.decision_engine import (
    POLICY_BASE,
    POLICY_BREAK_GLASS,
    POLICY_REGION,
    POLICY_TWO_PERSON,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    return PermissionDecisionEngine()


@pytest.fixture
def bg_manager():
    return BreakGlassManager()


@pytest.fixture
def tp_manager():
    return TwoPersonApprovalManager()


def _check_names(result):
    return [c.name for c in result.checks]


# =============================================================================
# BASE PIPELINE
# =============================================================================

class TestBasePipeline:
    """Active role and permission checks."""

    def test_allow_via_role(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        result = engine.check_permission(role_set, Permission.CASE_VIEW, now=now)

        assert result.allowed is True
        assert result.decision == Decision.ALLOW
        assert result.granting_roles == (RoleId.MODERATOR,)
        assert result.applied_policies == (POLICY_BASE,)
        assert result.audit_note == "Permission case.view granted to user mod-1"

    def test_string_permission_accepted(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        assert engine.check_permission(role_set, "case.view", now=now).allowed is True

    def test_unknown_permission_raises(self):
        with pytest.raises(UnknownPermissionError):
            coerce_permission("case.delete")

    def test_no_active_roles_denied(self, engine, manager, now):
        role_set = manager.build_role_set("ghost", [], now)
        result = engine.check_permission(role_set, Permission.CASE_VIEW, now=now)

        assert result.decision == Decision.DENY
        assert _check_names(result) == ["Active Role Check"]
        assert result.audit_note == "Permission denied: No active roles"
        assert result.applied_policies == ()

    def test_junior_moderator_cannot_approve_verification(self, engine, make_role_set, now):
        """Verification approval starts at moderator level."""
        role_set = make_role_set("jr-1", RoleId.JUNIOR_MODERATOR)
        result = engine.check_permission(role_set, Permission.VERIFICATION_APPROVE, now=now)

        assert result.decision == Decision.DENY
        assert result.missing_permissions == (Permission.VERIFICATION_APPROVE,)
        assert RoleId.MODERATOR in result.granting_roles
        assert result.checks[-1].passed is False
        assert result.audit_note == "Permission denied: Missing permission: verification.approve"

    def test_summary_fields_are_not_trusted(self, engine, make_role_set, now):
        """Permissions are recomputed from assignments, not the cached set."""
        role_set = make_role_set("jr-1", RoleId.JUNIOR_MODERATOR)
        forged = replace(role_set, effective_permissions=frozenset(Permission))
        assert engine.check_permission(forged, Permission.SYSTEM_CONFIG_EDIT, now=now).allowed is False

    def test_expired_assignment_contributes_nothing(self, engine, manager, make_assignment, now):
        lapsed = make_assignment("mod-1", RoleId.MODERATOR, expires_at=now)
        role_set = manager.build_role_set("mod-1", [lapsed], now - timedelta(hours=1))
        result = engine.check_permission(role_set, Permission.CASE_VIEW, now=now)
        assert result.decision == Decision.DENY

    def test_context_version_is_checked(self):
        with pytest.raises(ConfigurationError):
            ActionContext(version=99)


# =============================================================================
# REGION SCOPE
# =============================================================================

class TestRegionScope:
    """Region-limited assignments."""

    def test_region_outside_scope_denied(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR, region_ids=("north",))
        result = engine.check_permission(role_set, Permission.CASE_VIEW, ActionContext(region_id="south"), now)

        assert result.decision == Decision.DENY
        assert result.applied_policies == (POLICY_BASE, POLICY_REGION)
        assert result.checks[-1].detail == "User not authorized for region: south"

    def test_region_inside_scope_allowed(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR, region_ids=("north",))
        result = engine.check_permission(role_set, Permission.CASE_VIEW, ActionContext(region_id="north"), now)
        assert result.allowed is True

    def test_unrestricted_assignment_covers_every_region(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        result = engine.check_permission(role_set, Permission.CASE_VIEW, ActionContext(region_id="east"), now)
        assert result.allowed is True


# =============================================================================
# BREAK-GLASS
# =============================================================================

class TestBreakGlassPolicy:
    """Sensitive data permissions."""

    def test_pii_requires_break_glass(self, engine, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, now=now)

        assert result.decision == Decision.REQUIRES_BREAK_GLASS
        assert result.break_glass_required is True
        assert result.break_glass_scopes == (BreakGlassScope.PII,)
        assert POLICY_BREAK_GLASS in result.applied_policies

    def test_valid_grant_allows(self, engine, bg_manager, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        grant = bg_manager.create_request(
            "lead-1", [BreakGlassScope.PII], BreakGlassReasonCode.IMMEDIATE_SAFETY,
            "Animal in distress, owner unreachable", now=now,
        )
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, ActionContext(break_glass=grant), now)

        assert result.decision == Decision.ALLOW
        assert result.checks[-1].name == "Break-Glass Check"
        assert result.checks[-1].passed is True

    def test_expired_grant_is_no_grant(self, engine, bg_manager, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        grant = bg_manager.create_request(
            "lead-1", [BreakGlassScope.PII], BreakGlassReasonCode.IMMEDIATE_SAFETY, "urgent",
            ttl_minutes=30, now=now - timedelta(minutes=30),
        )
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, ActionContext(break_glass=grant), now)
        assert result.decision == Decision.REQUIRES_BREAK_GLASS

    def test_grant_for_other_scope_insufficient(self, engine, bg_manager, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        grant = bg_manager.create_request(
            "lead-1", [BreakGlassScope.ADDRESS], BreakGlassReasonCode.VET_EMERGENCY, "vet", now=now,
        )
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, ActionContext(break_glass=grant), now)
        assert result.break_glass_scopes == (BreakGlassScope.PII,)

    def test_grant_of_another_user_rejected(self, engine, bg_manager, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        grant = bg_manager.create_request(
            "lead-2", [BreakGlassScope.PII], BreakGlassReasonCode.IMMEDIATE_SAFETY, "urgent", now=now,
        )
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, ActionContext(break_glass=grant), now)

        assert result.decision == Decision.REQUIRES_BREAK_GLASS
        assert "belongs to another user" in result.checks[-1].detail

    def test_missing_base_permission_wins_over_break_glass(self, engine, make_role_set, now):
        """A moderator has no PII permission at all: deny, not break-glass."""
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        result = engine.check_permission(role_set, Permission.DATA_PII_VIEW, now=now)
        assert result.decision == Decision.DENY


# =============================================================================
# TWO-PERSON APPROVAL
# =============================================================================

class TestTwoPersonPolicy:
    """Quorum approval for high-impact actions."""

    def test_volunteer_suspend_needs_two_approvers(self, engine, tp_manager, make_role_set, now):
        requester = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        result = engine.check_permission(requester, Permission.VOLUNTEER_SUSPEND, now=now)

        assert result.decision == Decision.REQUIRES_TWO_PERSON
        assert result.required_approvals == 2
        assert result.current_approvals == 0
        assert result.applied_policies[-1] == POLICY_TWO_PERSON

        context = ActionContext(resource_type="volunteer", resource_id="vol-7")
        request = tp_manager.create_request(
            Permission.VOLUNTEER_SUSPEND, "lead-1", "volunteer", "vol-7", context, now=now,
        )
        first = tp_manager.submit_approval(request, "lead-2", make_role_set("lead-2", RoleId.LEAD_MODERATOR),
                                           now=now)
        partial = engine.check_permission(
            requester, Permission.VOLUNTEER_SUSPEND, replace(context, approval=first.request), now,
        )
        assert partial.decision == Decision.REQUIRES_TWO_PERSON
        assert partial.current_approvals == 1

        second = tp_manager.submit_approval(
            first.request, "coord-1", make_role_set("coord-1", RoleId.REGIONAL_COORDINATOR), now=now,
        )
        assert second.satisfied is True
        allowed = engine.check_permission(
            requester, Permission.VOLUNTEER_SUSPEND, replace(context, approval=second.request), now,
        )
        assert allowed.decision == Decision.ALLOW
        assert allowed.current_approvals == 2

    def test_approval_for_different_target_ignored(self, engine, tp_manager, make_role_set, now):
        requester = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        request = tp_manager.create_request(Permission.VOLUNTEER_SUSPEND, "lead-1", "volunteer", "vol-7", now=now)
        request = tp_manager.submit_approval(request, "lead-2", make_role_set("lead-2", RoleId.LEAD_MODERATOR),
                                             now=now).request
        request = tp_manager.submit_approval(request, "coord-1",
                                             make_role_set("coord-1", RoleId.REGIONAL_COORDINATOR), now=now).request

        context = ActionContext(resource_id="vol-8", approval=request)
        result = engine.check_permission(requester, Permission.VOLUNTEER_SUSPEND, context, now)
        assert result.decision == Decision.REQUIRES_TWO_PERSON

    def test_conditional_rule_only_when_condition_holds(self, engine, make_role_set, now):
        """Clearing a hold needs approval only for disputed or low-score claims."""
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        confident = engine.check_permission(
            role_set, Permission.VERIFICATION_CLEAR_HOLD, ActionContext(claim_score=85), now,
        )
        disputed = engine.check_permission(
            role_set, Permission.VERIFICATION_CLEAR_HOLD, ActionContext(claim_score=85, has_dispute=True), now,
        )
        low = engine.check_permission(
            role_set, Permission.VERIFICATION_CLEAR_HOLD, ActionContext(claim_score=40), now,
        )

        assert confident.decision == Decision.ALLOW
        assert disputed.decision == Decision.REQUIRES_TWO_PERSON
        assert low.decision == Decision.REQUIRES_TWO_PERSON


# =============================================================================
# EXPLAIN / BATCH
# =============================================================================

class TestExplain:
    """Explanations and batch helpers."""

    def test_explain_missing_permission(self, engine, make_role_set, now):
        role_set = make_role_set("jr-1", RoleId.JUNIOR_MODERATOR)
        explanation = engine.explain_permission(role_set, Permission.VERIFICATION_APPROVE, now=now)

        assert explanation.result.decision == Decision.DENY
        assert [r.role_id for r in explanation.role_breakdown] == [RoleId.JUNIOR_MODERATOR]
        assert explanation.role_breakdown[0].has_permission is False
        assert any("Moderator" in r for r in explanation.recommendations)

    def test_explain_break_glass(self, engine, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        explanation = engine.explain_permission(role_set, Permission.DATA_ADDRESS_VIEW, now=now)

        relevant = {p.policy: p.applies for p in explanation.relevant_policies}
        assert relevant[POLICY_BREAK_GLASS] is True
        assert relevant[POLICY_TWO_PERSON] is False
        assert "Break-glass scopes needed: address" in explanation.recommendations

    def test_explain_serializes(self, engine, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        data = engine.explain_permission(role_set, Permission.VOLUNTEER_SUSPEND, now=now).to_dict()
        assert data["result"]["decision"] == "requires_two_person"
        assert data["role_breakdown"][0]["role_id"] == "lead_moderator"

    def test_batch_helpers(self, engine, make_role_set, now):
        role_set = make_role_set("mod-1", RoleId.MODERATOR)
        results = engine.check_permissions(role_set, [Permission.CASE_VIEW, Permission.CASE_ARCHIVE], now=now)

        assert results[Permission.CASE_VIEW].allowed is True
        assert results[Permission.CASE_ARCHIVE].allowed is False
        assert engine.has_any_permission(role_set, [Permission.CASE_VIEW, Permission.CASE_ARCHIVE], now=now)
        assert not engine.has_all_permissions(role_set, [Permission.CASE_VIEW, Permission.CASE_ARCHIVE], now=now)

    def test_deterministic(self, engine, make_role_set, now):
        role_set = make_role_set("lead-1", RoleId.LEAD_MODERATOR)
        assert engine.check_permission(role_set, Permission.CASE_LEGAL_HOLD, now=now) == \
            engine.check_permission(role_set, Permission.CASE_LEGAL_HOLD, now=now)
