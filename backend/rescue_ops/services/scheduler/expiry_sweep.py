"""
Expiry Sweep

Periodic closure of time-bound records. Lazy expiry at read time is
always in force; the sweep only makes the terminal state and its audit
entry visible promptly.

AUTHORITY: SYSTEM - every change is attributed to the system actor.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ... import config
from ...clock import resolve_now
from ...errors import ConflictError
from ...models.access import ApprovalStatus, BreakGlassStatus
from ...models.actors import SYSTEM
from ..access.access_service import AccessService
from ..cases.case_service import CaseService
from ..roles.role_service import RoleService

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Scheduler for expiry and SLA tasks.

    A record changed concurrently by another writer is skipped and
    reported under ``conflicts``; the next run picks it up.
    """

    def __init__(self, db_session: Session, enabled: bool = config.EXPIRY_SWEEP_ENABLED):
        self.db = db_session
        self.enabled = enabled
        self.roles = RoleService(db_session)
        self.access = AccessService(db_session, role_service=self.roles)
        self.cases = CaseService(db_session, role_service=self.roles)

    def _disabled(self, task: str, now: datetime) -> Dict[str, Any]:
        logger.info(f"{task} skipped: expiry sweep disabled")
        return {"task": task, "run_date": now.isoformat(), "enabled": False}

    def run_expiry_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Close lapsed grants and requests.

        Actions:
        - Granted or pending break-glass requests past expires_at -> expired
        - Pending two-person requests past timeout_at -> expired
        - Active role assignments past expires_at -> expired
        """
        now = resolve_now(now)
        if not self.enabled:
            return self._disabled("expiry_sweep", now)

        expired_break_glass = []
        expired_approvals = []
        conflicts = []

        for request in self.access.break_glass_repo.list_by_status(
            [BreakGlassStatus.PENDING, BreakGlassStatus.GRANTED]
        ):
            try:
                outcome = self.access.expire_break_glass(request, SYSTEM, now)
                if outcome.success:
                    expired_break_glass.append(request.id)
            except ConflictError as e:
                conflicts.append({"break_glass_id": request.id, "error": e.message})

        for request in self.access.approval_repo.list_by_status([ApprovalStatus.PENDING]):
            try:
                outcome = self.access.expire_approval(request, SYSTEM, now)
                if outcome.accepted:
                    expired_approvals.append(request.id)
            except ConflictError as e:
                conflicts.append({"approval_id": request.id, "error": e.message})

        lapsed, role_conflicts = self.roles.expire_lapsed(SYSTEM, now)
        expired_roles = [a.id for a in lapsed]
        conflicts.extend(role_conflicts)

        logger.info(
            f"Expiry sweep: {len(expired_break_glass)} break-glass, {len(expired_approvals)} approvals, "
            f"{len(expired_roles)} role assignments expired ({len(conflicts)} conflicts)"
        )
        return {
            "task": "expiry_sweep",
            "run_date": now.isoformat(),
            "enabled": True,
            "break_glass_expired": len(expired_break_glass),
            "approvals_expired": len(expired_approvals),
            "role_assignments_expired": len(expired_roles),
            "conflicts": len(conflicts),
            "details": {
                "break_glass": expired_break_glass,
                "approvals": expired_approvals,
                "role_assignments": expired_roles,
                "conflicts": conflicts,
            },
        }

    def run_sla_check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Persist SLA overdue flags for every open case."""
        now = resolve_now(now)
        if not self.enabled:
            return self._disabled("sla_check", now)

        updated = []
        overdue = []
        conflicts = []

        open_cases = self.cases.open_cases()
        for case in open_cases:
            try:
                refreshed = self.cases.refresh_sla(case, SYSTEM, now)
            except ConflictError as e:
                conflicts.append({"case_id": case.id, "error": e.message})
                continue
            if refreshed is not case:
                updated.append(case.id)
            sla = refreshed.sla
            if sla.triage_overdue or sla.first_response_overdue or sla.resolution_overdue:
                overdue.append({
                    "case_id": case.id,
                    "case_number": case.case_number,
                    "triage_overdue": sla.triage_overdue,
                    "first_response_overdue": sla.first_response_overdue,
                    "resolution_overdue": sla.resolution_overdue,
                })

        if overdue:
            logger.warning(f"SLA check: {len(overdue)} open case(s) overdue")
        return {
            "task": "sla_check",
            "run_date": now.isoformat(),
            "enabled": True,
            "cases_checked": len(open_cases),
            "cases_updated": len(updated),
            "cases_overdue": len(overdue),
            "conflicts": len(conflicts),
            "details": {"overdue": overdue, "conflicts": conflicts},
        }
