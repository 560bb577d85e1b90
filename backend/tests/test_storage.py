"""
Tests for Snapshot Storage

Key tests:
1. Compare-and-swap on version: stale writers get ConflictError
2. Snapshots round-trip through the JSON payload unchanged
3. Audit entries commit with the change they record
4. Approvals are unique per (request, user)
"""
from datetime import timedelta

import pytest

from rescue_ops.errors import ConflictError, RecordNotFoundError, StorageError
from rescue_ops.models.access import ApprovalEntry
from rescue_ops.models.actors import ApproverPair
from rescue_ops.models.audit import AuditEventType
from rescue_ops.models.cases import CaseFlagType, CaseType, NoteType, TeamRole
from rescue_ops.models.roles import Permission, RoleId
from rescue_ops.services.access import TwoPersonApprovalManager
from rescue_ops.services.audit import default_audit_service
from rescue_ops.services.cases import CaseLifecycleManager
from rescue_ops.services.storage import (
    AuditLogStore,
    CaseRepository,
    RoleAssignmentRepository,
    TwoPersonRequestRepository,
)


@pytest.fixture
def roles_repo(db_session):
    return RoleAssignmentRepository(db_session)


@pytest.fixture
def case_repo(db_session):
    return CaseRepository(db_session)


# =============================================================================
# VERSIONED SNAPSHOTS
# =============================================================================

class TestSnapshotRepository:
    """Insert, read and compare-and-swap."""

    def test_round_trip(self, roles_repo, make_assignment, now):
        assignment = make_assignment("vol-1", RoleId.TRANSPORTER, region_ids=("north",),
                                     expires_at=now + timedelta(days=30))
        roles_repo.add(assignment)
        assert roles_repo.get(assignment.id) == assignment

    def test_duplicate_insert_conflicts(self, roles_repo, make_assignment):
        assignment = roles_repo.add(make_assignment("vol-1", RoleId.TRANSPORTER))
        with pytest.raises(ConflictError):
            roles_repo.add(assignment)

    def test_missing_record(self, roles_repo):
        assert roles_repo.find("nope") is None
        with pytest.raises(RecordNotFoundError):
            roles_repo.get("nope")

    def test_stale_version_conflicts(self, roles_repo, manager, make_assignment, now):
        """Two writers read version 1. Only the first write lands."""
        original = roles_repo.add(make_assignment("vol-1", RoleId.TRANSPORTER))
        approvers = ApproverPair("lead-2", "coord-1")

        first = manager.suspend(original, "lead-1", "Investigation", approvers, now=now).assignment
        second = manager.revoke(original, "lead-1", "Misconduct", approvers, now=now).assignment

        roles_repo.update(first, expected_version=original.version)
        with pytest.raises(ConflictError) as exc_info:
            roles_repo.update(second, expected_version=original.version)

        assert isinstance(exc_info.value, StorageError)
        assert "expected version 1, found 2" in exc_info.value.message
        assert roles_repo.get(original.id).status == first.status

    def test_update_unknown_record(self, roles_repo, manager, make_assignment, now):
        never_stored = make_assignment("vol-1", RoleId.TRANSPORTER)
        renewed = manager.renew(never_stored, "mod-1", now + timedelta(days=400), now).assignment
        with pytest.raises(RecordNotFoundError):
            roles_repo.update(renewed, expected_version=never_stored.version)

    def test_update_must_advance_version(self, roles_repo, make_assignment):
        assignment = roles_repo.add(make_assignment("vol-1", RoleId.TRANSPORTER))
        with pytest.raises(ValueError):
            roles_repo.update(assignment, expected_version=assignment.version)

    def test_queries(self, roles_repo, make_assignment):
        roles_repo.add(make_assignment("vol-1", RoleId.TRANSPORTER))
        roles_repo.add(make_assignment("vol-1", RoleId.FOSTER))
        roles_repo.add(make_assignment("vol-2", RoleId.FOSTER))

        assert len(roles_repo.list_for_user("vol-1")) == 2
        assert len(roles_repo.list_for_role(RoleId.FOSTER)) == 2

    def test_case_round_trip(self, case_repo, now):
        lifecycle = CaseLifecycleManager()
        case = lifecycle.create_case(CaseType.FOUND_PET, "reporter-1", region_id="north", tags=("cat",), now=now)
        case = lifecycle.add_team_member(case, "vol-1", TeamRole.LEAD, "mod-1", now)
        case = lifecycle.set_flag(case, CaseFlagType.SPECIAL_NEEDS, "mod-1", "Diabetic", now)
        case = lifecycle.add_note(case, "mod-1", "Internal only", NoteType.INTERNAL, now=now)
        case = lifecycle.add_custom_deadline(case, "Vet visit", now + timedelta(days=2), "mod-1", now=now)

        case_repo.add(case)

        assert case_repo.get(case.id) == case
        assert case_repo.get_by_number(case.case_number).id == case.id


# =============================================================================
# AUDIT
# =============================================================================

class TestAuditLogStore:
    """Append-only audit sink."""

    def test_entries_commit_with_change(self, db_session, roles_repo, make_assignment, now):
        assignment = make_assignment("vol-1", RoleId.TRANSPORTER)
        entry = default_audit_service.record(
            AuditEventType.ROLE_GRANTED, "admin-1", "role_granted: transporter", user_id="vol-1", now=now,
        )
        roles_repo.add(assignment, audit=[entry])

        stored = AuditLogStore(db_session).list(user_id="vol-1")
        assert [e.entry_id for e in stored] == [entry.entry_id]
        assert stored[0].timestamp == now

    def test_failed_insert_drops_entries(self, db_session, roles_repo, make_assignment, now):
        assignment = roles_repo.add(make_assignment("vol-1", RoleId.TRANSPORTER))
        entry = default_audit_service.record(AuditEventType.ROLE_GRANTED, "admin-1", "dup", now=now)
        with pytest.raises(ConflictError):
            roles_repo.add(assignment, audit=[entry])
        assert AuditLogStore(db_session).list() == []

    def test_retention_skips_preserved(self, db_session, now):
        store = AuditLogStore(db_session)
        old = now - timedelta(days=400)
        store.append([
            default_audit_service.record(AuditEventType.CASE_NOTE_ADDED, "mod-1", "note", now=old),
            default_audit_service.record(AuditEventType.ROLE_REVOKED, "lead-1", "revoked", now=old),
        ])

        candidates = store.retention_candidates(now - timedelta(days=365))

        assert [e.action for e in candidates] == ["note"]
        assert len(store.list(event_type=AuditEventType.ROLE_REVOKED)) == 1


# =============================================================================
# TWO-PERSON APPROVALS
# =============================================================================

class TestApprovalRows:
    """Approvals stored as unique rows."""

    @pytest.fixture
    def stored_request(self, db_session, now):
        request = TwoPersonApprovalManager().create_request(
            Permission.CASE_LEGAL_HOLD, "lead-1", "case", "case-1", request_id="req-1", now=now,
        )
        return TwoPersonRequestRepository(db_session).add(request)

    def test_append_merges_rows(self, db_session, stored_request, now):
        repo = TwoPersonRequestRepository(db_session)
        stored, added = repo.append_approval("req-1", ApprovalEntry("lead-2", RoleId.LEAD_MODERATOR, now))

        assert added is True
        assert [a.user_id for a in stored.approvals] == ["lead-2"]
        assert stored.approvals[0].approved_at == now
        assert stored.version == stored_request.version + 1

    def test_same_user_counted_once(self, db_session, stored_request, now):
        repo = TwoPersonRequestRepository(db_session)
        repo.append_approval("req-1", ApprovalEntry("lead-2", RoleId.LEAD_MODERATOR, now))
        stored, added = repo.append_approval(
            "req-1", ApprovalEntry("lead-2", RoleId.LEAD_MODERATOR, now + timedelta(minutes=1)),
        )

        assert added is False
        assert len(stored.approvals) == 1

    def test_unknown_request(self, db_session, now):
        with pytest.raises(RecordNotFoundError):
            TwoPersonRequestRepository(db_session).append_approval(
                "missing", ApprovalEntry("lead-2", RoleId.LEAD_MODERATOR, now),
            )
