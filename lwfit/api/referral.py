# coding: utf-8
"""
Referral API Endpoints
Apply a referral code and view referral statistics
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.api.auth import get_current_user
from lwfit.database.engine import get_session
from lwfit.database.models import User
from lwfit.services.referral_service import ReferralService, ReferralStatus

# Create router
router = APIRouter(prefix="/referral", tags=["referral"])


class ApplyReferralRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=20)


_REFERRAL_ERRORS = {
    ReferralStatus.INVALID_CODE: (404, "Referral code not found"),
    ReferralStatus.SELF_REFERRAL: (400, "You cannot use your own referral code"),
    ReferralStatus.ALREADY_REFERRED: (409, "Referral code already applied"),
}


@router.get("/stats")
async def get_referral_stats(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Get user's referral code and rewards
    """
    try:
        stats = await ReferralService.get_referral_stats(session, user.id)
        if stats is None:
            raise HTTPException(status_code=404, detail="User not found")
        return stats

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching referral stats for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch referral stats")


@router.post("/apply")
async def apply_referral_code(
    request: ApplyReferralRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Apply a referral code (once per user), rewarding the code owner
    """
    try:
        result = await ReferralService.apply_referral(session, user.id, request.code)

        if not result.success:
            status_code, detail = _REFERRAL_ERRORS[result.status]
            raise HTTPException(status_code=status_code, detail=detail)

        return {"success": True, "status": result.status.value}

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error applying referral code for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to apply referral code")
