"""Versioned snapshot storage and the append-only audit sink."""
from .codec import from_payload, to_payload
from .repositories import (
    AuditLogStore,
    BreakGlassRepository,
    CaseRepository,
    RoleAssignmentRepository,
    SnapshotRepository,
    SqlSnapshotRepository,
    TwoPersonRequestRepository,
)

__all__ = [
    "from_payload",
    "to_payload",
    "AuditLogStore",
    "BreakGlassRepository",
    "CaseRepository",
    "RoleAssignmentRepository",
    "SnapshotRepository",
    "SqlSnapshotRepository",
    "TwoPersonRequestRepository",
]
