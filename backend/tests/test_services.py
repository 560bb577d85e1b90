"""
Tests for the store-backed services

Key tests:
1. RoleService: grants validated against the granter's stored roles
2. AccessService: break-glass and two-person evidence resolved from storage
3. CaseService: every change committed with its audit entry
4. Legal-hold flags write preserved entries
5. Case status changes require the claimed role to be held in storage
"""
from datetime import timedelta

import pytest

from rescue_ops.errors import ConflictError, RecordNotFoundError
from rescue_ops.models.access import (
    ActionContext,
    ApprovalStatus,
    BreakGlassReasonCode,
    BreakGlassScope,
    BreakGlassStatus,
    Decision,
)
from rescue_ops.models.actors import SYSTEM, ApproverPair, HumanActor
from rescue_ops.models.audit import AuditEventType
from rescue_ops.models.cases import (
    CaseFlagType,
    CasePriority,
    CaseStatus,
    CaseType,
    NoteVisibility,
    ResolutionType,
)
from rescue_ops.models.roles import (
    AssignmentStatus,
    BackgroundCheckStatus,
    EligibilityProfile,
    IdentityAssuranceLevel,
    Permission,
    RoleId,
    WaiverType,
)
from rescue_ops.services.access import AccessService
from rescue_ops.services.cases import CaseLifecycleManager, CaseService
from rescue_ops.services.roles import RoleService
from rescue_ops.services.storage import AuditLogStore


@pytest.fixture
def audit_log(db_session):
    return AuditLogStore(db_session)


@pytest.fixture
def transporter_profile():
    return EligibilityProfile(
        user_id="vol-1",
        age=30,
        ial=IdentityAssuranceLevel.IAL1,
        has_2fa=False,
        signed_waivers=frozenset({
            WaiverType.LIABILITY_WAIVER,
            WaiverType.VEHICLE_INDEMNIFICATION,
            WaiverType.BACKGROUND_CHECK_CONSENT,
            WaiverType.LOCATION_SHARING_CONSENT,
        }),
        completed_training=frozenset({"transporter_core", "animal_handling_basics", "safety_protocols"}),
        background_check_status=BackgroundCheckStatus.PASSED,
    )


# =============================================================================
# ROLE SERVICE
# =============================================================================

class TestRoleService:
    """Grant and lifecycle through storage."""

    def test_grant_uses_stored_granter_roles(self, db_session, seed_role, transporter_profile, moderator,
                                             audit_log, now):
        seed_role("mod-1", RoleId.MODERATOR)
        service = RoleService(db_session)

        validation, assignment = service.grant_role(transporter_profile, RoleId.TRANSPORTER, moderator, now=now)

        assert validation.valid is True
        assert service.repo.get(assignment.id).status == AssignmentStatus.ACTIVE
        assert [e.event_type for e in audit_log.list(user_id="vol-1")] == [AuditEventType.ROLE_GRANTED]

    def test_granter_without_stored_roles_blocked(self, db_session, transporter_profile, moderator, now):
        """The role claimed on the actor is not trusted."""
        validation, assignment = RoleService(db_session).grant_role(
            transporter_profile, RoleId.TRANSPORTER, moderator, now=now,
        )
        assert assignment is None
        assert "Granter does not have permission to approve transporter" in validation.blockers

    def test_suspend_and_reinstate(self, db_session, seed_role, lead_moderator, audit_log, now):
        stored = seed_role("vol-1", RoleId.TRANSPORTER)
        service = RoleService(db_session)

        change = service.suspend_role(stored.id, lead_moderator, "Investigation",
                                      ApproverPair("lead-2", "coord-1"), now=now)
        assert change.success is True
        assert service.repo.get(stored.id).version == 2

        service.reinstate_role(stored.id, lead_moderator, now=now + timedelta(minutes=1))
        assert service.repo.get(stored.id).status == AssignmentStatus.ACTIVE
        assert [e.event_type for e in audit_log.list(user_id="vol-1")] == [
            AuditEventType.ROLE_SUSPENDED, AuditEventType.ROLE_REINSTATED,
        ]

    def test_permanent_ban_is_preserved(self, db_session, seed_role, lead_moderator, audit_log, now):
        stored = seed_role("vol-1", RoleId.TRANSPORTER)
        RoleService(db_session).revoke_role(stored.id, lead_moderator, "Animal abuse",
                                            ApproverPair("lead-2", "coord-1"), permanent_ban=True, now=now)

        (entry,) = audit_log.list(user_id="vol-1")
        assert entry.event_type == AuditEventType.USER_BANNED
        assert entry.preserved_for_legal is True

    def test_failed_change_not_persisted(self, db_session, seed_role, lead_moderator, audit_log, now):
        stored = seed_role("vol-1", RoleId.TRANSPORTER)
        change = RoleService(db_session).reinstate_role(stored.id, lead_moderator, now=now)
        assert change.success is False
        assert audit_log.list() == []

    def test_expire_lapsed(self, db_session, seed_role, now):
        lapsed = seed_role("vol-1", RoleId.FOSTER, expires_at=now - timedelta(minutes=1))
        seed_role("vol-2", RoleId.FOSTER)

        expired, conflicts = RoleService(db_session).expire_lapsed(SYSTEM, now)
        assert [a.id for a in expired] == [lapsed.id]
        assert conflicts == []


# =============================================================================
# ACCESS SERVICE
# =============================================================================

class TestAccessServiceBreakGlass:
    """Break-glass through storage."""

    def test_auto_grant_stored_with_audit(self, db_session, lead_moderator, audit_log, now):
        access = AccessService(db_session)
        request = access.request_break_glass(
            lead_moderator, [BreakGlassScope.PII], BreakGlassReasonCode.IMMEDIATE_SAFETY,
            "Dog trapped in hot car, owner unreachable", case_id="case-1", now=now,
        )

        assert access.break_glass_repo.get(request.id) == request
        events = {e.event_type for e in audit_log.list(case_id="case-1")}
        assert events == {AuditEventType.BREAK_GLASS_REQUESTED, AuditEventType.BREAK_GLASS_GRANTED}
        granted = audit_log.list(event_type=AuditEventType.BREAK_GLASS_GRANTED)[0]
        assert granted.actor_id == "auto"
        assert granted.preserved_for_legal is True

    def test_check_resolves_stored_break_glass(self, db_session, seed_role, lead_moderator, now):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        access = AccessService(db_session)

        without = access.check("lead-1", Permission.DATA_PII_VIEW, now=now)
        assert without.decision == Decision.REQUIRES_BREAK_GLASS

        request = access.request_break_glass(
            lead_moderator, [BreakGlassScope.PII], BreakGlassReasonCode.VET_EMERGENCY, "Vet needs owner", now=now,
        )
        result = access.check("lead-1", Permission.DATA_PII_VIEW, break_glass_id=request.id, now=now)
        assert result.decision == Decision.ALLOW

    def test_unknown_break_glass_id(self, db_session):
        with pytest.raises(RecordNotFoundError):
            AccessService(db_session).check("lead-1", Permission.DATA_PII_VIEW, break_glass_id="missing")

    def test_check_audited_only_with_actor(self, db_session, seed_role, moderator, audit_log, now):
        seed_role("mod-1", RoleId.MODERATOR)
        access = AccessService(db_session)

        access.check("mod-1", Permission.CASE_VIEW, now=now)
        assert audit_log.list() == []

        access.check("mod-1", Permission.CASE_ARCHIVE, ActionContext(case_id="case-1"), actor=moderator, now=now)
        (entry,) = audit_log.list()
        assert entry.event_type == AuditEventType.PERMISSION_DENIED
        assert entry.case_id == "case-1"

    def test_manual_grant_and_usage(self, db_session, seed_role, lead_moderator, audit_log, now):
        seed_role("coord-1", RoleId.REGIONAL_COORDINATOR)
        access = AccessService(db_session)
        request = access.request_break_glass(
            lead_moderator, [BreakGlassScope.CONTACT], BreakGlassReasonCode.OWNER_CONTACT_FAILED,
            "Owner unreachable for 48h", now=now,
        )
        coordinator = HumanActor(user_id="coord-1", role_id=RoleId.REGIONAL_COORDINATOR)

        granted = access.grant_break_glass(request.id, coordinator, now=now + timedelta(minutes=5))
        assert granted.success is True

        used = access.record_break_glass_access(request.id, "owner_profile", "owner-9",
                                                now=now + timedelta(minutes=6))
        assert len(used.request.accessed_resources) == 1
        assert access.break_glass_repo.get(request.id).status == BreakGlassStatus.GRANTED
        assert audit_log.list(event_type=AuditEventType.BREAK_GLASS_USED)[0].preserved_for_legal is True


class TestAccessServiceTwoPerson:
    """Two-person approval through storage."""

    @pytest.fixture
    def approvers(self, seed_role):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        seed_role("lead-2", RoleId.LEAD_MODERATOR)
        seed_role("coord-1", RoleId.REGIONAL_COORDINATOR)
        return (
            HumanActor(user_id="lead-2", role_id=RoleId.LEAD_MODERATOR),
            HumanActor(user_id="coord-1", role_id=RoleId.REGIONAL_COORDINATOR),
        )

    def test_suspension_needs_two_approvals(self, db_session, approvers, lead_moderator, now):
        access = AccessService(db_session)
        context = ActionContext(resource_type="user", resource_id="vol-9")
        request = access.request_approval(Permission.VOLUNTEER_SUSPEND, lead_moderator, "user", "vol-9",
                                          context, now=now)

        def decision():
            return access.check("lead-1", Permission.VOLUNTEER_SUSPEND, context, approval_id=request.id,
                                now=now).decision

        assert decision() == Decision.REQUIRES_TWO_PERSON

        first = access.submit_approval(request.id, approvers[0], now=now)
        assert first.satisfied is False
        assert decision() == Decision.REQUIRES_TWO_PERSON

        second = access.submit_approval(request.id, approvers[1], now=now)
        assert second.satisfied is True
        assert second.request.version == request.version + 2
        assert decision() == Decision.ALLOW

    def test_duplicate_submission_counted_once(self, db_session, approvers, lead_moderator, now):
        access = AccessService(db_session)
        request = access.request_approval(Permission.VOLUNTEER_SUSPEND, lead_moderator, "user", "vol-9", now=now)

        access.submit_approval(request.id, approvers[0], now=now)
        again = access.submit_approval(request.id, approvers[0], now=now)

        assert again.message == "Approval already recorded"
        assert len(access.approval_repo.get(request.id).approvals) == 1

    def test_complete_consumes_request(self, db_session, approvers, lead_moderator, audit_log, now):
        access = AccessService(db_session)
        request = access.request_approval(Permission.VOLUNTEER_SUSPEND, lead_moderator, "user", "vol-9", now=now)
        for approver in approvers:
            access.submit_approval(request.id, approver, now=now)

        completed = access.complete_approval(request.id, lead_moderator, now=now)

        assert completed.accepted is True
        assert access.approval_repo.get(request.id).status == ApprovalStatus.APPROVED
        assert access.check("lead-1", Permission.VOLUNTEER_SUSPEND, approval_id=request.id,
                            now=now).decision == Decision.REQUIRES_TWO_PERSON
        assert len(audit_log.list(event_type=AuditEventType.TWO_PERSON_GRANTED)) == 1

    def test_no_rule_no_request(self, db_session, lead_moderator, now):
        assert AccessService(db_session).request_approval(
            Permission.CASE_VIEW, lead_moderator, "case", "case-1", now=now,
        ) is None


# =============================================================================
# CASE SERVICE
# =============================================================================

class TestCaseService:
    """Case changes through storage."""

    def test_create_and_transition(self, db_session, seed_role, moderator, audit_log, now):
        seed_role("mod-1", RoleId.MODERATOR)
        service = CaseService(db_session)
        case = service.create_case(CaseType.LOST_PET, moderator, CasePriority.URGENT, now=now)

        result = service.transition_status(case.id, CaseStatus.TRIAGED, moderator, now=now + timedelta(minutes=5))

        assert result.success is True
        assert service.get(case.id).status == CaseStatus.TRIAGED
        assert [e.event_type for e in audit_log.list(case_id=case.id)] == [
            AuditEventType.CASE_CREATED, AuditEventType.CASE_STATUS_CHANGED,
        ]

    def test_rejected_transition_writes_nothing(self, db_session, seed_role, moderator, audit_log, now):
        seed_role("mod-1", RoleId.MODERATOR)
        service = CaseService(db_session)
        case = service.create_case(CaseType.LOST_PET, moderator, now=now)

        result = service.transition_status(case.id, CaseStatus.RESOLVED, moderator, now=now)

        assert result.success is False
        assert result.message == "No transition from new to resolved"
        assert service.get(case.id).version == case.version
        assert len(audit_log.list(case_id=case.id)) == 1

    def test_legal_hold_flag_preserved(self, db_session, lead_moderator, audit_log, now):
        service = CaseService(db_session)
        case = service.create_case(CaseType.SURRENDER, lead_moderator, now=now)

        service.set_flag(case.id, CaseFlagType.LEGAL_HOLD, lead_moderator, "Court order", now=now)

        entries = [e for e in audit_log.list(case_id=case.id) if e.preserved_for_legal]
        assert {e.event_type for e in entries} == {AuditEventType.CASE_FLAG_SET, AuditEventType.CASE_LEGAL_HOLD}

    def test_note_content_not_audited(self, db_session, moderator, audit_log, now):
        service = CaseService(db_session)
        case = service.create_case(CaseType.STRAY, moderator, now=now)

        updated = service.add_note(case.id, "Finder's phone is 555-0100", moderator,
                                   visibility=NoteVisibility.ADMIN, now=now)

        assert len(updated.internal_notes) == 1
        (note_entry,) = audit_log.list(event_type=AuditEventType.CASE_NOTE_ADDED)
        assert "555-0100" not in note_entry.action
        assert note_entry.metadata["visibility"] == "admin"

    def test_open_cases(self, db_session, moderator, now):
        service = CaseService(db_session)
        open_case = service.create_case(CaseType.STRAY, moderator, now=now)
        assert [c.id for c in service.open_cases()] == [open_case.id]

    def test_claimed_role_must_be_held(self, db_session, audit_log, now):
        """A user with no stored assignments cannot close a case as lead moderator."""
        service = CaseService(db_session)
        case = service.create_case(CaseType.STRAY, HumanActor("reporter-1"), now=now)
        impostor = HumanActor("nobody", role_id=RoleId.LEAD_MODERATOR)

        closed = service.transition_status(case.id, CaseStatus.CLOSED, impostor, "spam", now=now)
        resolved = service.resolve_case(case.id, ResolutionType.REUNITED, "Found", impostor, now=now)

        for result in (closed, resolved):
            assert result.success is False
            assert result.message == "User nobody does not hold role lead_moderator"
        assert service.get(case.id).status == CaseStatus.NEW
        assert len(audit_log.list(case_id=case.id)) == 1

    def test_suspended_role_does_not_count(self, db_session, seed_role, now):
        stored = seed_role("lead-1", RoleId.LEAD_MODERATOR)
        RoleService(db_session).suspend_role(stored.id, HumanActor("coord-1", RoleId.REGIONAL_COORDINATOR),
                                             "Investigation", ApproverPair("lead-2", "coord-2"), now=now)
        service = CaseService(db_session)
        case = service.create_case(CaseType.STRAY, HumanActor("reporter-1"), now=now)

        result = service.transition_status(case.id, CaseStatus.CLOSED, HumanActor("lead-1", RoleId.LEAD_MODERATOR),
                                           "Duplicate", now=now + timedelta(minutes=1))
        assert result.success is False

    def test_held_role_may_take_its_edges(self, db_session, seed_role, lead_moderator, now):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        service = CaseService(db_session)
        case = service.create_case(CaseType.STRAY, HumanActor("reporter-1"), now=now)

        result = service.transition_status(case.id, CaseStatus.CLOSED, lead_moderator, "Duplicate",
                                           now=now + timedelta(minutes=1))
        assert result.success is True
        assert service.get(case.id).status == CaseStatus.CLOSED

    def test_system_actor_needs_no_assignment(self, db_session, seed_role, lead_moderator, now):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        service = CaseService(db_session)
        case = service.create_case(CaseType.STRAY, HumanActor("reporter-1"), now=now)
        service.transition_status(case.id, CaseStatus.CLOSED, lead_moderator, "Duplicate",
                                  now=now + timedelta(minutes=1))

        result = service.transition_status(case.id, CaseStatus.ARCHIVED, SYSTEM, now=now + timedelta(days=1))
        assert result.success is True

    def test_taken_case_number_is_redrawn(self, db_session, moderator, now):
        numbers = iter(["P911-2026-000001", "P911-2026-000001", "P911-2026-000002"])
        service = CaseService(db_session, lifecycle=CaseLifecycleManager(case_number_factory=lambda _: next(numbers)))

        first = service.create_case(CaseType.STRAY, moderator, now=now)
        second = service.create_case(CaseType.STRAY, moderator, now=now)

        assert first.case_number == "P911-2026-000001"
        assert second.case_number == "P911-2026-000002"
        assert service.repo.get_by_number("P911-2026-000002").id == second.id

    def test_no_free_case_number(self, db_session, moderator, audit_log, now):
        service = CaseService(db_session,
                              lifecycle=CaseLifecycleManager(case_number_factory=lambda _: "P911-2026-000001"))
        service.create_case(CaseType.STRAY, moderator, now=now)

        with pytest.raises(ConflictError):
            service.create_case(CaseType.STRAY, moderator, now=now)
        assert len(service.open_cases()) == 1
        assert len(audit_log.list(event_type=AuditEventType.CASE_CREATED)) == 1
