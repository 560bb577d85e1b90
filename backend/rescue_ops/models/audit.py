"""
Rescue Ops - Audit Entries

Append-only records emitted by every state-changing operation.
Entries with preserved_for_legal set are never purged by retention.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class AuditEventType(str, Enum):
    # Roles
    ROLE_GRANTED = "role_granted"
    ROLE_SUSPENDED = "role_suspended"
    ROLE_REVOKED = "role_revoked"
    ROLE_REINSTATED = "role_reinstated"
    ROLE_RENEWED = "role_renewed"
    ROLE_EXPIRED = "role_expired"
    USER_BANNED = "user_banned"

    # Permission decisions
    PERMISSION_CHECKED = "permission_checked"
    PERMISSION_DENIED = "permission_denied"

    # Break-glass
    BREAK_GLASS_REQUESTED = "break_glass_requested"
    BREAK_GLASS_GRANTED = "break_glass_granted"
    BREAK_GLASS_DENIED = "break_glass_denied"
    BREAK_GLASS_USED = "break_glass_used"
    BREAK_GLASS_REVOKED = "break_glass_revoked"
    BREAK_GLASS_EXPIRED = "break_glass_expired"
    BREAK_GLASS_REVIEWED = "break_glass_reviewed"

    # Two-person approval
    TWO_PERSON_REQUESTED = "two_person_requested"
    TWO_PERSON_APPROVAL_ADDED = "two_person_approval_added"
    TWO_PERSON_GRANTED = "two_person_granted"
    TWO_PERSON_DENIED = "two_person_denied"
    TWO_PERSON_CANCELLED = "two_person_cancelled"
    TWO_PERSON_EXPIRED = "two_person_expired"

    # Cases
    CASE_CREATED = "case_created"
    CASE_STATUS_CHANGED = "case_status_changed"
    CASE_ASSIGNED = "case_assigned"
    CASE_TEAM_CHANGED = "case_team_changed"
    CASE_FLAG_SET = "case_flag_set"
    CASE_FLAG_CLEARED = "case_flag_cleared"
    CASE_NOTE_ADDED = "case_note_added"
    CASE_RESOLVED = "case_resolved"
    CASE_SLA_UPDATED = "case_sla_updated"
    CASE_LEGAL_HOLD = "case_legal_hold"

    # Verification / fraud
    PROOF_OF_LIFE_RECORDED = "proof_of_life_recorded"
    SCAM_DETECTED = "scam_detected"


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    timestamp: datetime
    event_type: AuditEventType
    actor_id: str
    action: str
    case_id: Optional[str] = None
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    preserved_for_legal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "actor_id": self.actor_id,
            "action": self.action,
            "case_id": self.case_id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "reason": self.reason,
            "metadata": dict(self.metadata),
            "preserved_for_legal": self.preserved_for_legal,
        }
