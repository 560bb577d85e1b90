"""
Rescue Ops - Actors

Every state change is attributable to an actor:
- HumanActor: an authenticated person acting under one of their roles
- SystemActor: the engine itself (sweeps, automated transitions)

Identity is established upstream. These types only carry it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from .roles import ApproverRecord, RoleId


SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class HumanActor:
    user_id: str
    role_id: Optional[RoleId] = None
    ip_address: Optional[str] = None

    @property
    def actor_id(self) -> str:
        return self.user_id

    @property
    def is_system(self) -> bool:
        return False


@dataclass(frozen=True)
class SystemActor:
    @property
    def actor_id(self) -> str:
        return SYSTEM_ACTOR_ID

    @property
    def is_system(self) -> bool:
        return True


SYSTEM = SystemActor()

Actor = Union[HumanActor, SystemActor]


@dataclass(frozen=True)
class ApproverPair:
    """
    Two distinct approvers for a suspension or revocation.

    Construction fails when both sides name the same identity, so an
    ApproverPair that exists is always a genuine two-person approval.
    """
    approver1: str
    approver2: str

    def __post_init__(self):
        if not self.approver1 or not self.approver2:
            raise ValueError("Both approvers must be named")
        if self.approver1 == self.approver2:
            raise ValueError("Approver pair must name two distinct identities")

    def records(self, approved_at: datetime) -> Tuple[ApproverRecord, ApproverRecord]:
        return (
            ApproverRecord(user_id=self.approver1, approved_at=approved_at),
            ApproverRecord(user_id=self.approver2, approved_at=approved_at),
        )

    def includes(self, user_id: str) -> bool:
        return user_id in (self.approver1, self.approver2)
