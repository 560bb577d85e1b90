"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Expiry sweep of break-glass grants, two-person requests and role
assignments, and the case SLA check.
"""
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .. import config
from ..database import get_db
from ..services.scheduler import ExpirySweeper


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != config.INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/expiry-sweep", response_model=dict)
async def run_expiry_sweep(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Expire lapsed break-glass grants, timed-out two-person requests and
    lapsed role assignments.

    System-automatic - no user confirmation required.
    """
    sweeper = ExpirySweeper(db)

    return sweeper.run_expiry_sweep()


@router.post("/sla-check", response_model=dict)
async def run_sla_check(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Refresh SLA overdue flags on every open case.
    """
    sweeper = ExpirySweeper(db)

    return sweeper.run_sla_check()
