# coding: utf-8
"""
Profile API Endpoints
User profile with level and experience progress
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.api.auth import get_current_user
from lwfit.database.engine import get_session
from lwfit.database.models import User
from lwfit.services.experience_service import ExperienceService, calculate_experience_data
from lwfit.utils.time_utils import as_utc

# Create router
router = APIRouter(prefix="/profile", tags=["profile"])


@router.get("")
async def get_profile(user: User = Depends(get_current_user)) -> Dict[str, Any]:
    """
    Get current user profile

    Returns:
        Profile with level, experience and progress within the level
    """
    experience = calculate_experience_data(user.level, user.experience)

    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "telegram_id": user.telegram_id,
        "referral_code": user.referral_code,
        "level": user.level,
        "experience": user.experience,
        "max_experience": experience["max_experience"],
        "experience_to_next_level": experience["experience_to_next_level"],
        "experience_progress": experience["experience_progress"],
        "created_at": as_utc(user.created_at),
    }


@router.get("/experience")
async def get_experience_history(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    limit: int = Query(50, ge=1, le=100),
) -> List[Dict[str, Any]]:
    """
    Get user's experience history, newest first
    """
    try:
        return await ExperienceService.get_experience_transactions(session, user.id, limit=limit)

    except Exception as e:
        logger.exception(f"Error fetching experience history for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch experience history")
