# coding: utf-8
"""
Experience Service - levels and experience points

Level N spans [LEVEL_EXPERIENCE[N - 1], LEVEL_EXPERIENCE[N]); the last
threshold of the table is the cap.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.goals_config import LEVEL_EXPERIENCE
from lwfit.database import crud
from lwfit.database.models import ExperienceTransaction
from lwfit.services.ledger import user_lock
from lwfit.utils.time_utils import as_utc


def calculate_experience_data(level: int, experience: int) -> Dict[str, Any]:
    """
    Position of a user inside their current level

    Args:
        level: Current level (1-based)
        experience: Cumulative experience

    Returns:
        Dict with max_experience (threshold of the next level),
        experience_to_next_level and experience_progress (0-100, 1 decimal)
    """
    requirements = LEVEL_EXPERIENCE

    current_min = requirements[level - 1] if 1 < level and level - 1 < len(requirements) else 0
    next_max = requirements[level] if level < len(requirements) else requirements[-1]

    needed_for_level = next_max - current_min
    if needed_for_level > 0:
        progress = min(100.0, max(0.0, (experience - current_min) / needed_for_level * 100))
    else:
        progress = 100.0

    return {
        "level": level,
        "experience": experience,
        "max_experience": next_max,
        "experience_to_next_level": max(0, next_max - experience),
        "experience_progress": round(progress, 1),
    }


def calculate_level(experience: int) -> int:
    """Highest level whose threshold the experience reaches"""
    level = 1
    for index, required in enumerate(LEVEL_EXPERIENCE):
        if experience >= required:
            level = index + 1
    return level


class ExperienceService:
    """Experience points and level-ups"""

    @staticmethod
    async def add_experience(
        session: AsyncSession,
        user_id: int,
        amount: int,
        source: str,
        description: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Award experience and level up when a threshold is crossed

        Levels never go down.

        Returns:
            Dict with level_before, level_after, leveled_up and experience,
            None if user doesn't exist
        """
        if amount <= 0:
            raise ValueError(f"Experience amount must be positive, got {amount}")

        async with user_lock(user_id):
            try:
                user = await crud.get_user_for_update(session, user_id)
                if user is None:
                    return None

                level_before = user.level
                user.experience += amount
                level_after = max(level_before, calculate_level(user.experience))
                user.level = level_after

                crud.add_experience_transaction(
                    session,
                    user_id=user_id,
                    amount=amount,
                    source=source,
                    level_before=level_before,
                    level_after=level_after,
                    description=description,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        if level_after > level_before:
            logger.success(f"⭐ User {user_id} leveled up {level_before} -> {level_after}")
        logger.info(f"User {user_id} +{amount} XP from {source}")

        return {
            "level_before": level_before,
            "level_after": level_after,
            "leveled_up": level_after > level_before,
            "experience": user.experience,
        }

    @staticmethod
    async def get_experience_data(session: AsyncSession, user_id: int) -> Optional[Dict[str, Any]]:
        """Level/experience summary of a user"""
        user = await crud.get_user(session, user_id)
        if user is None:
            return None
        return calculate_experience_data(user.level, user.experience)

    @staticmethod
    async def get_experience_transactions(
        session: AsyncSession, user_id: int, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """User's experience history, newest first"""
        stmt = (
            select(ExperienceTransaction)
            .where(ExperienceTransaction.user_id == user_id)
            .order_by(ExperienceTransaction.created_at.desc(), ExperienceTransaction.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)

        return [
            {
                "amount": tx.amount,
                "source": tx.source,
                "description": tx.description,
                "level_before": tx.level_before,
                "level_after": tx.level_after,
                "created_at": as_utc(tx.created_at),
            }
            for tx in result.scalars().all()
        ]
