"""
SLA Engine

Computes case deadlines from a policy table keyed by (case type,
priority) and derives overdue state at a given instant.

An unmatched key falls back to DEFAULT_SLA. A case is never created
without deadlines.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ...clock import resolve_now
from ...models.cases import (
    Case,
    CasePriority,
    CaseSLA,
    CaseType,
    SLAExtension,
    SLAMilestone,
    SLAStatus,
    UpcomingDeadline,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SLAConfig:
    triage_minutes: int
    first_response_minutes: int
    resolution_days: int


# =============================================================================
# SLA POLICY TABLE
# =============================================================================

SLA_CONFIGS: Dict[Tuple[CaseType, CasePriority], SLAConfig] = {
    # Critical
    (CaseType.EMERGENCY, CasePriority.CRITICAL): SLAConfig(5, 15, 1),
    (CaseType.INJURED, CasePriority.CRITICAL): SLAConfig(10, 30, 1),
    # Urgent
    (CaseType.LOST_PET, CasePriority.URGENT): SLAConfig(30, 60, 7),
    (CaseType.FOUND_PET, CasePriority.URGENT): SLAConfig(30, 60, 14),
    # High
    (CaseType.LOST_PET, CasePriority.HIGH): SLAConfig(60, 120, 14),
    (CaseType.FOUND_PET, CasePriority.HIGH): SLAConfig(60, 120, 21),
    (CaseType.STRAY, CasePriority.HIGH): SLAConfig(60, 180, 30),
    # Normal
    (CaseType.LOST_PET, CasePriority.NORMAL): SLAConfig(120, 240, 30),
    (CaseType.FOUND_PET, CasePriority.NORMAL): SLAConfig(120, 240, 60),
    (CaseType.TRAP_REQUEST, CasePriority.NORMAL): SLAConfig(240, 480, 30),
    (CaseType.TRANSPORT_REQUEST, CasePriority.NORMAL): SLAConfig(120, 240, 7),
    # Low
    (CaseType.WELLNESS_CHECK, CasePriority.LOW): SLAConfig(480, 1440, 14),
}

DEFAULT_SLA = SLAConfig(triage_minutes=120, first_response_minutes=240, resolution_days=30)


class SLAEngine:
    """Deadline computation and overdue detection."""

    def __init__(self, configs: Optional[Dict[Tuple[CaseType, CasePriority], SLAConfig]] = None,
                 default: SLAConfig = DEFAULT_SLA):
        self.configs = dict(configs if configs is not None else SLA_CONFIGS)
        self.default = default

    def get_config(self, case_type: CaseType, priority: CasePriority) -> SLAConfig:
        config = self.configs.get((case_type, priority))
        if config is None:
            logger.debug(f"No SLA policy for {case_type.value}/{priority.value}, using default")
            return self.default
        return config

    def create_sla(self, case_type: CaseType, priority: CasePriority, created_at: datetime) -> CaseSLA:
        config = self.get_config(case_type, priority)
        return CaseSLA(
            triage_due_at=created_at + timedelta(minutes=config.triage_minutes),
            first_response_due_at=created_at + timedelta(minutes=config.first_response_minutes),
            resolution_due_at=created_at + timedelta(days=config.resolution_days),
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @staticmethod
    def _open_deadlines(case: Case) -> List[UpcomingDeadline]:
        sla = case.sla
        deadlines = []
        if case.triaged_at is None:
            deadlines.append(UpcomingDeadline(SLAMilestone.TRIAGE.value, sla.triage_due_at))
        if case.first_response_at is None:
            deadlines.append(UpcomingDeadline(SLAMilestone.FIRST_RESPONSE.value, sla.first_response_due_at))
        if case.resolved_at is None:
            deadlines.append(UpcomingDeadline(SLAMilestone.RESOLUTION.value, sla.resolution_due_at))
        for custom in sla.custom_deadlines:
            if custom.completed_at is None:
                deadlines.append(UpcomingDeadline(custom.name, custom.due_at))
        return deadlines

    def check_sla_status(self, case: Case, now: Optional[datetime] = None) -> SLAStatus:
        """
        Overdue iff ``now`` is strictly past the due time and the
        milestone has not been reached. Milestones are write-once, so a
        reached milestone is never overdue again.
        """
        now = resolve_now(now)
        sla = case.sla
        deadlines = sorted(self._open_deadlines(case), key=lambda d: d.due_at)

        return SLAStatus(
            triage_overdue=case.triaged_at is None and now > sla.triage_due_at,
            first_response_overdue=case.first_response_at is None and now > sla.first_response_due_at,
            resolution_overdue=case.resolved_at is None and now > sla.resolution_due_at,
            checked_at=now,
            next_deadline=deadlines[0] if deadlines else None,
            overdue_custom_deadlines=tuple(
                c.id for c in sla.custom_deadlines if c.completed_at is None and now > c.due_at
            ),
        )

    def apply_status(self, sla: CaseSLA, status: SLAStatus) -> CaseSLA:
        return replace(
            sla,
            triage_overdue=status.triage_overdue,
            first_response_overdue=status.first_response_overdue,
            resolution_overdue=status.resolution_overdue,
            last_checked_at=status.checked_at,
        )

    # -------------------------------------------------------------------------
    # Extension
    # -------------------------------------------------------------------------

    @staticmethod
    def due_at(sla: CaseSLA, milestone: SLAMilestone) -> datetime:
        return {
            SLAMilestone.TRIAGE: sla.triage_due_at,
            SLAMilestone.FIRST_RESPONSE: sla.first_response_due_at,
            SLAMilestone.RESOLUTION: sla.resolution_due_at,
        }[milestone]

    def extend(
        self,
        sla: CaseSLA,
        milestone: SLAMilestone,
        new_due_at: datetime,
        extended_by: str,
        reason: str,
        now: datetime,
    ) -> CaseSLA:
        """Move a deadline later. Deadlines never move earlier."""
        previous = self.due_at(sla, milestone)
        if new_due_at <= previous:
            raise ValueError(f"SLA extension for {milestone.value} must move the deadline later")
        if not reason or not reason.strip():
            raise ValueError("SLA extension requires a reason")

        extension = SLAExtension(
            milestone=milestone,
            previous_due_at=previous,
            new_due_at=new_due_at,
            extended_at=now,
            extended_by=extended_by,
            reason=reason,
        )
        field_name = {
            SLAMilestone.TRIAGE: "triage_due_at",
            SLAMilestone.FIRST_RESPONSE: "first_response_due_at",
            SLAMilestone.RESOLUTION: "resolution_due_at",
        }[milestone]
        return replace(sla, extensions=sla.extensions + (extension,), **{field_name: new_due_at})


default_sla_engine = SLAEngine()
