"""
Access API Routes

Permission decisions and explanations evaluated from stored role
assignments. Authentication of the caller happens upstream.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import ConfigurationError, ConflictError, RecordNotFoundError
from ..models.access import ActionContext
from ..services.access import AccessService


router = APIRouter(prefix="/access", tags=["access"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class PermissionCheckRequest(BaseModel):
    """A permission to evaluate for one user, with optional evidence ids."""
    user_id: str
    permission: str  # e.g. "case.view", "data.pii_view"

    case_id: Optional[str] = None
    region_id: Optional[str] = None
    target_user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    claim_score: Optional[int] = None
    has_dispute: bool = False
    alert_tier: Optional[int] = None
    is_emergency: bool = False

    break_glass_id: Optional[str] = None
    approval_id: Optional[str] = None

    def to_context(self) -> ActionContext:
        return ActionContext(
            case_id=self.case_id,
            region_id=self.region_id,
            target_user_id=self.target_user_id,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            claim_score=self.claim_score,
            has_dispute=self.has_dispute,
            alert_tier=self.alert_tier,
            is_emergency=self.is_emergency,
        )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/check", response_model=dict)
async def check_permission(
    request: PermissionCheckRequest,
    db: Session = Depends(get_db),
):
    """
    Evaluate a permission.

    The response carries the decision (allow, deny, requires_break_glass,
    requires_two_person) with every check that ran.
    """
    service = AccessService(db)
    try:
        result = service.check(
            request.user_id,
            request.permission,
            request.to_context(),
            break_glass_id=request.break_glass_id,
            approval_id=request.approval_id,
        )
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return result.to_dict()


@router.post("/explain", response_model=dict)
async def explain_permission(
    request: PermissionCheckRequest,
    db: Session = Depends(get_db),
):
    """
    Explain a permission decision: per-role contribution, relevant
    policies and remediation hints.
    """
    service = AccessService(db)
    try:
        explanation = service.explain(
            request.user_id,
            request.permission,
            request.to_context(),
            break_glass_id=request.break_glass_id,
            approval_id=request.approval_id,
        )
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return explanation.to_dict()
