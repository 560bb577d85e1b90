"""
Rescue Ops - SQLAlchemy ORM Models

Each mutable entity is stored as a JSON snapshot plus an integer
``version`` used for compare-and-swap writes. Key columns are duplicated
out of the payload for indexing only; the payload is authoritative.
"""
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint,
)

from ..database import Base


# =============================================================================
# ROLE ASSIGNMENTS
# =============================================================================

class RoleAssignmentDB(Base):
    __tablename__ = "role_assignments"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    role_id = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)


# =============================================================================
# CASES
# =============================================================================

class CaseDB(Base):
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True)
    case_number = Column(String(32), nullable=False, unique=True)
    status = Column(String(30), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)


# =============================================================================
# BREAK-GLASS
# =============================================================================

class BreakGlassRequestDB(Base):
    __tablename__ = "break_glass_requests"

    id = Column(String(36), primary_key=True)
    requester_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)


# =============================================================================
# TWO-PERSON APPROVAL
# =============================================================================

class TwoPersonRequestDB(Base):
    """Request snapshot. Approvals live in ``two_person_approvals``."""
    __tablename__ = "two_person_requests"

    id = Column(String(36), primary_key=True)
    action = Column(String(64), nullable=False, index=True)
    requested_by = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)


class TwoPersonApprovalDB(Base):
    """
    One row per distinct approver.

    The unique constraint makes duplicate submissions by the same user
    impossible at the storage level.
    """
    __tablename__ = "two_person_approvals"
    __table_args__ = (
        UniqueConstraint("request_id", "user_id", name="uq_two_person_approval_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), ForeignKey("two_person_requests.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    role_id = Column(String(50), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text, nullable=True)


# =============================================================================
# AUDIT LOG (append-only)
# =============================================================================

class AuditLogDB(Base):
    """
    🔒 Immutable after insert. No update or delete path exists.
    """
    __tablename__ = "audit_log"

    entry_id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    actor_id = Column(String(64), nullable=False)
    action = Column(String(255), nullable=False)
    case_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)
    preserved_for_legal = Column(Boolean, nullable=False, default=False, index=True)
