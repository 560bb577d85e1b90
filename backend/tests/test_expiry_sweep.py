"""
Tests for the Expiry Sweep

Key tests:
1. Lapsed break-glass, approvals and role assignments are closed by the system actor
2. A disabled sweep changes nothing
3. A concurrently changed assignment is skipped, the rest still expire
4. SLA check persists overdue flags once
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from rescue_ops.errors import ConflictError
from rescue_ops.models.access import (
    ApprovalStatus,
    BreakGlassReasonCode,
    BreakGlassScope,
    BreakGlassStatus,
)
from rescue_ops.models.audit import AuditEventType
from rescue_ops.models.cases import CasePriority, CaseType
from rescue_ops.models.roles import AssignmentStatus, Permission, RoleId
from rescue_ops.services.scheduler import ExpirySweeper
from rescue_ops.services.storage import AuditLogStore, RoleAssignmentRepository


@pytest.fixture
def seeded(db_session, seed_role, lead_moderator, now):
    """One of each time-bound record, all created at ``now``."""
    sweeper = ExpirySweeper(db_session, enabled=True)
    granted = sweeper.access.request_break_glass(
        lead_moderator, [BreakGlassScope.PII], BreakGlassReasonCode.IMMEDIATE_SAFETY, "Animal at risk", now=now,
    )
    pending = sweeper.access.request_break_glass(
        lead_moderator, [BreakGlassScope.CONTACT], BreakGlassReasonCode.OWNER_CONTACT_FAILED, "No reply", now=now,
    )
    approval = sweeper.access.request_approval(
        Permission.VOLUNTEER_SUSPEND, lead_moderator, "user", "vol-9", now=now,
    )
    lapsing = seed_role("vol-1", RoleId.FOSTER, expires_at=now + timedelta(hours=1))
    return {"granted": granted, "pending": pending, "approval": approval, "role": lapsing}


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

class TestExpirySweep:
    """Active expiry of lapsed records."""

    def test_nothing_lapsed_yet(self, db_session, seeded, now):
        result = ExpirySweeper(db_session, enabled=True).run_expiry_sweep(now + timedelta(minutes=10))

        assert result["break_glass_expired"] == 0
        assert result["approvals_expired"] == 0
        assert result["role_assignments_expired"] == 0

    def test_sweep_closes_everything_lapsed(self, db_session, seeded, now):
        sweeper = ExpirySweeper(db_session, enabled=True)
        result = sweeper.run_expiry_sweep(now + timedelta(hours=2))

        assert result["enabled"] is True
        assert result["break_glass_expired"] == 2
        assert result["approvals_expired"] == 1
        assert result["role_assignments_expired"] == 1
        assert result["conflicts"] == 0

        assert sweeper.access.break_glass_repo.get(seeded["granted"].id).status == BreakGlassStatus.EXPIRED
        assert sweeper.access.approval_repo.get(seeded["approval"].id).status == ApprovalStatus.EXPIRED
        assert sweeper.roles.repo.get(seeded["role"].id).status == AssignmentStatus.EXPIRED

    def test_sweep_entries_attributed_to_system(self, db_session, seeded, now):
        ExpirySweeper(db_session, enabled=True).run_expiry_sweep(now + timedelta(hours=2))

        expired = AuditLogStore(db_session).list(event_type=AuditEventType.BREAK_GLASS_EXPIRED)
        assert len(expired) == 2
        assert {e.actor_id for e in expired} == {"system"}

    def test_second_run_is_a_no_op(self, db_session, seeded, now):
        sweeper = ExpirySweeper(db_session, enabled=True)
        sweeper.run_expiry_sweep(now + timedelta(hours=2))
        again = sweeper.run_expiry_sweep(now + timedelta(hours=3))

        assert again["break_glass_expired"] == 0
        assert again["approvals_expired"] == 0
        assert again["role_assignments_expired"] == 0

    def test_disabled_sweep_changes_nothing(self, db_session, seeded, now):
        sweeper = ExpirySweeper(db_session, enabled=False)
        result = sweeper.run_expiry_sweep(now + timedelta(hours=2))

        assert result == {"task": "expiry_sweep", "run_date": (now + timedelta(hours=2)).isoformat(),
                          "enabled": False}
        assert sweeper.access.break_glass_repo.get(seeded["granted"].id).status == BreakGlassStatus.GRANTED

    def test_role_conflict_skips_only_that_assignment(self, db_session, seed_role, now):
        first = seed_role("vol-1", RoleId.FOSTER, expires_at=now - timedelta(minutes=5))
        second = seed_role("vol-2", RoleId.FOSTER, expires_at=now - timedelta(minutes=5))
        real_update = RoleAssignmentRepository.update
        calls = []

        def update_once_stale(repo, record, expected_version, audit=()):
            calls.append(record.id)
            if len(calls) == 1:
                raise ConflictError(f"UserRoleAssignment {record.id}: expected version 1, found 2")
            return real_update(repo, record, expected_version, audit=audit)

        sweeper = ExpirySweeper(db_session, enabled=True)
        with patch.object(RoleAssignmentRepository, "update", autospec=True, side_effect=update_once_stale):
            result = sweeper.run_expiry_sweep(now)

        assert len(calls) == 2
        assert result["role_assignments_expired"] == 1
        assert result["conflicts"] == 1
        (conflict,) = result["details"]["conflicts"]
        assert conflict["assignment_id"] == calls[0]

        statuses = {a.id: sweeper.roles.repo.get(a.id).status for a in (first, second)}
        assert statuses[calls[0]] == AssignmentStatus.ACTIVE
        assert statuses[calls[1]] == AssignmentStatus.EXPIRED


# =============================================================================
# SLA CHECK
# =============================================================================

class TestSLACheck:
    """Persisted overdue flags."""

    def test_overdue_flags_persisted_once(self, db_session, moderator, now):
        sweeper = ExpirySweeper(db_session, enabled=True)
        case = sweeper.cases.create_case(CaseType.LOST_PET, moderator, CasePriority.URGENT, now=now)

        first = sweeper.run_sla_check(now + timedelta(hours=2))
        assert first["cases_checked"] == 1
        assert first["cases_updated"] == 1
        assert first["cases_overdue"] == 1
        assert sweeper.cases.get(case.id).sla.first_response_overdue is True

        second = sweeper.run_sla_check(now + timedelta(hours=2, minutes=5))
        assert second["cases_updated"] == 0
        assert second["cases_overdue"] == 1

    def test_nothing_overdue(self, db_session, moderator, now):
        sweeper = ExpirySweeper(db_session, enabled=True)
        sweeper.cases.create_case(CaseType.LOST_PET, moderator, now=now)

        result = sweeper.run_sla_check(now + timedelta(minutes=5))
        assert result["cases_updated"] == 0
        assert result["cases_overdue"] == 0

    def test_disabled(self, db_session, now):
        assert ExpirySweeper(db_session, enabled=False).run_sla_check(now)["enabled"] is False
