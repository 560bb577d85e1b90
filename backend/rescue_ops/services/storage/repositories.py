"""
Snapshot Repositories

Persistence boundary for the engine's immutable snapshots.

CRITICAL:
- Writers supply the version they read. A mismatch is a ConflictError,
  never a silent overwrite.
- Every write commits together with its audit entries or not at all.
- Two-person approvals are rows with a unique (request_id, user_id)
  constraint. Concurrent approvals by different users commute; a second
  approval by the same user never counts.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import ConflictError, RecordNotFoundError
from ...models.access import (
    ApprovalEntry,
    ApprovalStatus,
    BreakGlassRequest,
    BreakGlassStatus,
    TwoPersonApprovalRequest,
)
from ...models.audit import AuditEntry, AuditEventType
from ...models.cases import Case, CaseStatus
from ...models.db_models import (
    AuditLogDB,
    BreakGlassRequestDB,
    CaseDB,
    RoleAssignmentDB,
    TwoPersonApprovalDB,
    TwoPersonRequestDB,
)
from ...models.roles import AssignmentStatus, RoleId, UserRoleAssignment
from .codec import from_payload, to_payload

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Serializes approval append + satisfied evaluation within this process.
# The unique constraint covers concurrent writers in other processes.
_APPROVAL_LOCK = threading.Lock()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# INTERFACE
# =============================================================================

class SnapshotRepository(ABC, Generic[T]):
    """Versioned store for one snapshot type."""

    @abstractmethod
    def get(self, record_id: str) -> T:
        """Return the record or raise RecordNotFoundError."""

    @abstractmethod
    def find(self, record_id: str) -> Optional[T]:
        """Return the record or None."""

    @abstractmethod
    def add(self, record: T, audit: Sequence[AuditEntry] = ()) -> T:
        """Insert a new record. A duplicate id raises ConflictError."""

    @abstractmethod
    def update(self, record: T, expected_version: int, audit: Sequence[AuditEntry] = ()) -> T:
        """Compare-and-swap on version. A mismatch raises ConflictError."""


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLogStore:
    """Append-only audit sink. There is no update or delete path."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_row(entry: AuditEntry) -> AuditLogDB:
        return AuditLogDB(
            entry_id=entry.entry_id,
            timestamp=_as_utc(entry.timestamp),
            event_type=entry.event_type.value,
            actor_id=entry.actor_id,
            action=entry.action,
            case_id=entry.case_id,
            user_id=entry.user_id,
            ip_address=entry.ip_address,
            reason=entry.reason,
            event_metadata=to_payload(entry.metadata),
            preserved_for_legal=entry.preserved_for_legal,
        )

    @staticmethod
    def _from_row(row: AuditLogDB) -> AuditEntry:
        return AuditEntry(
            entry_id=row.entry_id,
            timestamp=_as_utc(row.timestamp),
            event_type=AuditEventType(row.event_type),
            actor_id=row.actor_id,
            action=row.action,
            case_id=row.case_id,
            user_id=row.user_id,
            ip_address=row.ip_address,
            reason=row.reason,
            metadata=dict(row.event_metadata or {}),
            preserved_for_legal=bool(row.preserved_for_legal),
        )

    def stage(self, entries: Sequence[AuditEntry]) -> None:
        """Add entries to the current transaction without committing."""
        for entry in entries:
            self.db.add(self._to_row(entry))

    def append(self, entries: Sequence[AuditEntry]) -> None:
        self.stage(entries)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"Duplicate audit entry: {e.orig}") from e

    def list(
        self,
        case_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEntry]:
        query = self.db.query(AuditLogDB)
        if case_id:
            query = query.filter(AuditLogDB.case_id == case_id)
        if user_id:
            query = query.filter(AuditLogDB.user_id == user_id)
        if event_type:
            query = query.filter(AuditLogDB.event_type == event_type.value)
        return [self._from_row(r) for r in query.order_by(AuditLogDB.timestamp).all()]

    def retention_candidates(self, older_than: datetime) -> List[AuditEntry]:
        """Purgeable entries. Legally preserved entries are never returned."""
        rows = (
            self.db.query(AuditLogDB)
            .filter(AuditLogDB.preserved_for_legal.is_(False))
            .filter(AuditLogDB.timestamp < _as_utc(older_than))
            .order_by(AuditLogDB.timestamp)
            .all()
        )
        return [self._from_row(r) for r in rows]


# =============================================================================
# SQLALCHEMY SNAPSHOT STORE
# =============================================================================

class SqlSnapshotRepository(SnapshotRepository[T]):
    """
    One table per snapshot type: indexed key columns, a JSON payload and
    an integer version. Subclasses name the table, the snapshot class
    and the key columns.
    """

    model: Type[Any]
    snapshot_cls: Type[T]

    def __init__(self, db: Session):
        self.db = db
        self.audit_log = AuditLogStore(db)

    def _columns(self, record: T) -> Dict[str, Any]:
        return {}

    def _encode(self, record: T) -> Dict[str, Any]:
        return to_payload(record)

    def _decode(self, row: Any) -> T:
        return from_payload(self.snapshot_cls, row.payload)

    def _commit(self, message: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"{message}: {e.orig}") from e

    def find(self, record_id: str) -> Optional[T]:
        row = self.db.query(self.model).filter(self.model.id == record_id).first()
        return self._decode(row) if row else None

    def get(self, record_id: str) -> T:
        record = self.find(record_id)
        if record is None:
            raise RecordNotFoundError(f"{self.snapshot_cls.__name__} {record_id} not found")
        return record

    def add(self, record: T, audit: Sequence[AuditEntry] = ()) -> T:
        record_id = getattr(record, "id")
        if self.db.query(self.model.id).filter(self.model.id == record_id).first():
            raise ConflictError(f"{self.snapshot_cls.__name__} {record_id} already exists")

        self.db.add(self.model(
            id=record_id,
            version=getattr(record, "version"),
            payload=self._encode(record),
            **self._columns(record),
        ))
        self.audit_log.stage(audit)
        self._commit(f"Could not insert {self.snapshot_cls.__name__} {record_id}")
        return record

    def update(self, record: T, expected_version: int, audit: Sequence[AuditEntry] = ()) -> T:
        record_id = getattr(record, "id")
        new_version = getattr(record, "version")
        if new_version <= expected_version:
            raise ValueError(
                f"{self.snapshot_cls.__name__} {record_id} version {new_version} "
                f"does not advance past {expected_version}"
            )

        values = {"version": new_version, "payload": self._encode(record)}
        values.update(self._columns(record))
        updated = (
            self.db.query(self.model)
            .filter(self.model.id == record_id, self.model.version == expected_version)
            .update(values, synchronize_session=False)
        )
        if updated == 0:
            self.db.rollback()
            current = self.db.query(self.model.version).filter(self.model.id == record_id).first()
            if current is None:
                raise RecordNotFoundError(f"{self.snapshot_cls.__name__} {record_id} not found")
            logger.warning(
                f"Version conflict on {self.snapshot_cls.__name__} {record_id}: "
                f"expected {expected_version}, found {current[0]}"
            )
            raise ConflictError(
                f"{self.snapshot_cls.__name__} {record_id} was modified "
                f"(expected version {expected_version}, found {current[0]})"
            )

        self.audit_log.stage(audit)
        self._commit(f"Could not update {self.snapshot_cls.__name__} {record_id}")
        return record


# =============================================================================
# CONCRETE STORES
# =============================================================================

class RoleAssignmentRepository(SqlSnapshotRepository[UserRoleAssignment]):
    model = RoleAssignmentDB
    snapshot_cls = UserRoleAssignment

    def _columns(self, record: UserRoleAssignment) -> Dict[str, Any]:
        return {
            "user_id": record.user_id,
            "role_id": record.role_id.value,
            "status": record.status.value,
        }

    def list_for_user(self, user_id: str) -> List[UserRoleAssignment]:
        rows = self.db.query(RoleAssignmentDB).filter(RoleAssignmentDB.user_id == user_id).all()
        return [self._decode(r) for r in rows]

    def list_by_status(self, status: AssignmentStatus) -> List[UserRoleAssignment]:
        rows = self.db.query(RoleAssignmentDB).filter(RoleAssignmentDB.status == status.value).all()
        return [self._decode(r) for r in rows]

    def list_for_role(self, role_id: RoleId) -> List[UserRoleAssignment]:
        rows = self.db.query(RoleAssignmentDB).filter(RoleAssignmentDB.role_id == role_id.value).all()
        return [self._decode(r) for r in rows]


class CaseRepository(SqlSnapshotRepository[Case]):
    model = CaseDB
    snapshot_cls = Case

    def _columns(self, record: Case) -> Dict[str, Any]:
        return {"case_number": record.case_number, "status": record.status.value}

    def find_by_number(self, case_number: str) -> Optional[Case]:
        row = self.db.query(CaseDB).filter(CaseDB.case_number == case_number).first()
        return self._decode(row) if row else None

    def get_by_number(self, case_number: str) -> Case:
        case = self.find_by_number(case_number)
        if case is None:
            raise RecordNotFoundError(f"Case {case_number} not found")
        return case

    def list_by_status(self, statuses: Sequence[CaseStatus]) -> List[Case]:
        rows = self.db.query(CaseDB).filter(CaseDB.status.in_([s.value for s in statuses])).all()
        return [self._decode(r) for r in rows]


class BreakGlassRepository(SqlSnapshotRepository[BreakGlassRequest]):
    """
    ``add`` inserts the request and its audit entries in one transaction,
    so an auto-granted request is never visible without its log entry and
    a second insert for the same id fails with ConflictError.
    """
    model = BreakGlassRequestDB
    snapshot_cls = BreakGlassRequest

    def _columns(self, record: BreakGlassRequest) -> Dict[str, Any]:
        return {"requester_id": record.requester_id, "status": record.status.value}

    def list_by_status(self, statuses: Sequence[BreakGlassStatus]) -> List[BreakGlassRequest]:
        rows = (
            self.db.query(BreakGlassRequestDB)
            .filter(BreakGlassRequestDB.status.in_([s.value for s in statuses]))
            .all()
        )
        return [self._decode(r) for r in rows]

    def list_for_requester(self, requester_id: str) -> List[BreakGlassRequest]:
        rows = self.db.query(BreakGlassRequestDB).filter(BreakGlassRequestDB.requester_id == requester_id).all()
        return [self._decode(r) for r in rows]


class TwoPersonRequestRepository(SqlSnapshotRepository[TwoPersonApprovalRequest]):
    """
    The request row holds everything except approvals; approvals are
    read from ``two_person_approvals`` and merged on every load.
    """
    model = TwoPersonRequestDB
    snapshot_cls = TwoPersonApprovalRequest

    def _columns(self, record: TwoPersonApprovalRequest) -> Dict[str, Any]:
        return {
            "action": record.action.value,
            "requested_by": record.requested_by,
            "status": record.status.value,
        }

    def _encode(self, record: TwoPersonApprovalRequest) -> Dict[str, Any]:
        payload = to_payload(record)
        payload["approvals"] = []
        return payload

    def _approvals(self, request_id: str) -> Tuple[ApprovalEntry, ...]:
        rows = (
            self.db.query(TwoPersonApprovalDB)
            .filter(TwoPersonApprovalDB.request_id == request_id)
            .order_by(TwoPersonApprovalDB.id)
            .all()
        )
        return tuple(
            ApprovalEntry(
                user_id=r.user_id,
                role_id=RoleId(r.role_id),
                approved_at=_as_utc(r.approved_at),
                notes=r.notes,
            )
            for r in rows
        )

    def _decode(self, row: TwoPersonRequestDB) -> TwoPersonApprovalRequest:
        payload = dict(row.payload)
        # Approval appends bump the row version without rewriting the payload
        payload["version"] = row.version
        payload["approvals"] = to_payload(self._approvals(row.id))
        return from_payload(TwoPersonApprovalRequest, payload)

    def list_by_status(self, statuses: Sequence[ApprovalStatus]) -> List[TwoPersonApprovalRequest]:
        rows = (
            self.db.query(TwoPersonRequestDB)
            .filter(TwoPersonRequestDB.status.in_([s.value for s in statuses]))
            .all()
        )
        return [self._decode(r) for r in rows]

    def add(self, record: TwoPersonApprovalRequest, audit: Sequence[AuditEntry] = ()) -> TwoPersonApprovalRequest:
        super().add(record, audit)
        return self.get(record.id)

    def append_approval(
        self,
        request_id: str,
        entry: ApprovalEntry,
        audit: Sequence[AuditEntry] = (),
    ) -> Tuple[TwoPersonApprovalRequest, bool]:
        """
        Record one approver's approval.

        Returns (request as stored after the append, whether a new row was
        added). The returned request reflects every approval committed so
        far, so its satisfied state is read after the append, never before.
        """
        with _APPROVAL_LOCK:
            row = self.db.query(TwoPersonRequestDB).filter(TwoPersonRequestDB.id == request_id).first()
            if row is None:
                raise RecordNotFoundError(f"TwoPersonApprovalRequest {request_id} not found")

            self.db.add(TwoPersonApprovalDB(
                request_id=request_id,
                user_id=entry.user_id,
                role_id=entry.role_id.value,
                approved_at=_as_utc(entry.approved_at),
                notes=entry.notes,
            ))
            self.db.query(TwoPersonRequestDB).filter(TwoPersonRequestDB.id == request_id).update(
                {"version": TwoPersonRequestDB.version + 1}, synchronize_session=False
            )
            self.audit_log.stage(audit)
            try:
                self.db.commit()
                added = True
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Duplicate approval by {entry.user_id} on {request_id} ignored")
                added = False

            return self.get(request_id), added
