# coding: utf-8
"""
Goals API Endpoints
Goal templates, goal CRUD and daily goal progress
"""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.api.auth import get_current_user
from lwfit.database.engine import get_session
from lwfit.database.models import GoalType, User
from lwfit.services.goal_service import GoalService, goal_to_dict, progress_to_dict
from lwfit.utils.time_utils import utc_now

# Create router
router = APIRouter(prefix="/goals", tags=["goals"])


# ===========================
# REQUEST MODELS
# ===========================


class GoalTargets(BaseModel):
    """Goal targets (empty = template value on create, unchanged on update)"""

    target_calories: Optional[float] = Field(None, ge=0)
    target_protein: Optional[float] = Field(None, ge=0)
    target_carbs: Optional[float] = Field(None, ge=0)
    target_fats: Optional[float] = Field(None, ge=0)
    target_steps_per_day: Optional[int] = Field(None, ge=0)
    target_workouts_per_week: Optional[int] = Field(None, ge=0, le=21)
    target_active_minutes: Optional[int] = Field(None, ge=0)
    target_weight: Optional[float] = Field(None, gt=0)


class CreateGoalRequest(GoalTargets):
    goal_type: GoalType


class DailyProgressRequest(BaseModel):
    """Manually entered actuals of a day"""

    day: Optional[date] = None
    weight: Optional[float] = Field(None, gt=0)
    calories: Optional[float] = Field(None, ge=0)
    protein: Optional[float] = Field(None, ge=0)
    carbs: Optional[float] = Field(None, ge=0)
    fats: Optional[float] = Field(None, ge=0)
    steps: Optional[int] = Field(None, ge=0)
    workouts: Optional[int] = Field(None, ge=0)
    active_minutes: Optional[int] = Field(None, ge=0)


# ===========================
# GOALS
# ===========================


@router.get("/templates")
async def get_goal_templates() -> List[Dict[str, Any]]:
    """Goal templates with recommended targets (no auth required)"""
    return GoalService.get_goal_templates()


@router.get("")
async def get_goals(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    """All goals of the user, newest first"""
    try:
        goals = await GoalService.get_user_goals(session, user.id)
        return [goal_to_dict(goal) for goal in goals]

    except Exception as e:
        logger.exception(f"Error fetching goals for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch goals")


@router.get("/active")
async def get_active_goal(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Active goal with today's progress"""
    try:
        goal = await GoalService.get_active_goal(session, user.id)
        if goal is None:
            raise HTTPException(status_code=404, detail="No active goal")

        today = await GoalService.get_today_progress(session, user.id)
        return {
            **goal_to_dict(goal),
            "today_progress": progress_to_dict(today) if today else None,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching active goal for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch active goal")


@router.post("")
async def create_goal(
    request: CreateGoalRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Create a new active goal (previous goals are deactivated)"""
    try:
        goal = await GoalService.create_goal(
            session,
            user.id,
            request.goal_type.value,
            targets=request.model_dump(exclude={"goal_type"}, exclude_none=True),
        )
        return goal_to_dict(goal)

    except Exception as e:
        logger.exception(f"Error creating goal for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create goal")


@router.put("/{goal_id}")
async def update_goal(
    goal_id: int,
    request: GoalTargets,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Update goal targets"""
    try:
        goal = await GoalService.update_goal(
            session, user.id, goal_id, request.model_dump(exclude_none=True)
        )
        if goal is None:
            raise HTTPException(status_code=404, detail="Goal not found")
        return goal_to_dict(goal)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error updating goal {goal_id} for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update goal")


@router.delete("/{goal_id}")
async def delete_goal(
    goal_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Delete a goal and its progress"""
    try:
        if not await GoalService.delete_goal(session, user.id, goal_id):
            raise HTTPException(status_code=404, detail="Goal not found")
        return {"success": True}

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error deleting goal {goal_id} for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete goal")


# ===========================
# DAILY PROGRESS
# ===========================


@router.post("/progress")
async def update_daily_progress(
    request: DailyProgressRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Enter actuals manually and recompute the day's progress"""
    try:
        manual = request.model_dump(exclude={"day"}, exclude_none=True)
        progress = await GoalService.update_daily_progress(
            session, user.id, request.day or utc_now().date(), manual
        )
        if progress is None:
            raise HTTPException(status_code=404, detail="No active goal")
        return progress_to_dict(progress)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error updating daily progress for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update progress")


@router.post("/progress/recalculate")
async def recalculate_daily_progress(
    day: Optional[date] = Query(None, description="Day to recompute, defaults to today"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Recompute a day's progress from logged food and activity"""
    try:
        progress = await GoalService.recompute_daily_progress(session, user.id, day)
        if progress is None:
            raise HTTPException(status_code=404, detail="No active goal")
        return progress_to_dict(progress)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error recalculating progress for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to recalculate progress")


@router.get("/{goal_id}/progress")
async def get_progress_history(
    goal_id: int,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    """Daily progress of a goal, oldest first"""
    try:
        history = await GoalService.get_progress_history(
            session, user.id, goal_id, start_date, end_date
        )
        if history is None:
            raise HTTPException(status_code=404, detail="Goal not found")
        return [progress_to_dict(p) for p in history]

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching progress of goal {goal_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch progress")


@router.get("/{goal_id}/stats")
async def get_goal_stats(
    goal_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Total days, completed days and average progress of a goal"""
    try:
        stats = await GoalService.get_goal_stats(session, user.id, goal_id)
        if stats is None:
            raise HTTPException(status_code=404, detail="Goal not found")
        return stats

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching stats of goal {goal_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch goal stats")
