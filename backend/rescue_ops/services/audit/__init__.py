"""Audit entry construction and legal-preservation rules."""
from .audit_log import (
    PRESERVED_EVENT_TYPES,
    PRESERVED_FLAG_TYPES,
    AuditLogService,
    default_audit_service,
    must_preserve,
)

__all__ = [
    "PRESERVED_EVENT_TYPES",
    "PRESERVED_FLAG_TYPES",
    "AuditLogService",
    "default_audit_service",
    "must_preserve",
]
