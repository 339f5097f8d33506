# coding: utf-8
"""
Goal Service - goals and daily goal progress

Progress math:
- Per-metric progress = min(100, actual / target * 100), only for metrics
  whose target is set and > 0
- Workouts use a daily target of target_workouts_per_week / 7
- Overall progress = mean of the included metrics, 1 decimal
- Weight is stored for trends, never part of the percentage
- Goal.progress_percentage mirrors the latest dated day's overall progress
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

import config.goals_config as goals_config
from config.goals_config import EXPERIENCE_REWARDS, GOAL_TEMPLATES
from lwfit.database import crud
from lwfit.database.models import DailyGoalProgress, Goal, GoalType
from lwfit.services.experience_service import ExperienceService
from lwfit.services.facts_source import DailyFactsSource, DatabaseFactsSource
from lwfit.utils.time_utils import as_utc, utc_now


# Metric -> DailyGoalProgress column holding its progress
METRIC_PROGRESS_COLUMNS = {
    "calories": "calories_progress",
    "protein": "protein_progress",
    "carbs": "carbs_progress",
    "fats": "fats_progress",
    "steps": "steps_progress",
    "workout": "workout_progress",
}

# Manual progress fields -> DailyGoalProgress columns
MANUAL_FIELDS = {
    "calories": "actual_calories",
    "protein": "actual_protein",
    "carbs": "actual_carbs",
    "fats": "actual_fats",
    "steps": "actual_steps",
    "workouts": "actual_workouts",
    "active_minutes": "actual_active_minutes",
    "weight": "actual_weight",
}

GOAL_TARGET_FIELDS = (
    "target_calories",
    "target_protein",
    "target_carbs",
    "target_fats",
    "target_steps_per_day",
    "target_workouts_per_week",
    "target_active_minutes",
    "target_weight",
)


@dataclass
class ProgressResult:
    """Computed progress of one day"""

    metrics: Dict[str, Optional[float]]
    overall_progress: float
    is_completed: bool


def compute_metric_progress(actual: float, target: Optional[float]) -> Optional[float]:
    """
    Progress of one metric in percent

    Returns:
        Value in [0, 100], None when the metric has no usable target
    """
    if target is None or target <= 0:
        return None
    return min(100.0, max(0.0, actual / target * 100))


def goal_daily_targets(goal: Goal) -> Dict[str, Optional[float]]:
    """Daily target per metric (None = metric not tracked)"""
    weekly_workouts = goal.target_workouts_per_week
    return {
        "calories": goal.target_calories,
        "protein": goal.target_protein,
        "carbs": goal.target_carbs,
        "fats": goal.target_fats,
        "steps": goal.target_steps_per_day,
        "workout": weekly_workouts / 7 if weekly_workouts and weekly_workouts > 0 else None,
    }


def calculate_progress(
    targets: Mapping[str, Optional[float]],
    actuals: Mapping[str, float],
    threshold: Optional[float] = None,
) -> ProgressResult:
    """
    Compute per-metric and overall progress

    Args:
        targets: Daily target per metric
        actuals: Actual value per metric (missing = 0)
        threshold: Completion threshold (defaults to GOAL_COMPLETION_THRESHOLD)

    Returns:
        ProgressResult
    """
    if threshold is None:
        threshold = goals_config.GOAL_COMPLETION_THRESHOLD

    metrics = {
        metric: compute_metric_progress(actuals.get(metric, 0) or 0, targets.get(metric))
        for metric in METRIC_PROGRESS_COLUMNS
    }
    included = [value for value in metrics.values() if value is not None]
    overall = round(sum(included) / len(included), 1) if included else 0.0

    return ProgressResult(
        metrics={k: round(v, 1) if v is not None else None for k, v in metrics.items()},
        overall_progress=overall,
        is_completed=bool(included) and overall >= threshold,
    )


def progress_to_dict(progress: DailyGoalProgress) -> Dict[str, Any]:
    return {
        "goal_id": progress.goal_id,
        "date": progress.progress_date,
        "actual_calories": progress.actual_calories,
        "actual_protein": progress.actual_protein,
        "actual_carbs": progress.actual_carbs,
        "actual_fats": progress.actual_fats,
        "actual_steps": progress.actual_steps,
        "actual_workouts": progress.actual_workouts,
        "actual_active_minutes": progress.actual_active_minutes,
        "actual_weight": progress.actual_weight,
        "calories_progress": progress.calories_progress,
        "protein_progress": progress.protein_progress,
        "carbs_progress": progress.carbs_progress,
        "fats_progress": progress.fats_progress,
        "steps_progress": progress.steps_progress,
        "workout_progress": progress.workout_progress,
        "overall_progress": progress.overall_progress,
        "is_completed": progress.is_completed,
    }


def goal_to_dict(goal: Goal) -> Dict[str, Any]:
    data = {
        "id": goal.id,
        "goal_type": goal.goal_type,
        "is_active": goal.is_active,
        "progress_percentage": goal.progress_percentage,
        "created_at": as_utc(goal.created_at),
        "updated_at": as_utc(goal.updated_at),
    }
    for field in GOAL_TARGET_FIELDS:
        data[field] = getattr(goal, field)
    return data


class GoalService:
    """Goal CRUD and daily progress recomputation"""

    # ===========================
    # GOALS
    # ===========================

    @staticmethod
    def get_goal_templates() -> List[Dict[str, Any]]:
        """Goal templates with recommended targets"""
        return [{"goal_type": goal_type, **template} for goal_type, template in GOAL_TEMPLATES.items()]

    @staticmethod
    async def create_goal(
        session: AsyncSession,
        user_id: int,
        goal_type: str,
        targets: Optional[Mapping[str, Any]] = None,
        today: Optional[date] = None,
    ) -> Goal:
        """
        Create the user's new active goal

        Earlier goals are deactivated, empty targets are filled from the
        goal type template, experience is awarded and today's progress row
        is created.

        Args:
            session: Database session
            user_id: User ID
            goal_type: GoalType value
            targets: Target overrides (GOAL_TARGET_FIELDS)
            today: Progress day to initialize (defaults to current UTC date)

        Returns:
            Created Goal

        Raises:
            ValueError: If goal_type is unknown
        """
        goal_type = GoalType(goal_type).value
        template = GOAL_TEMPLATES.get(goal_type, {})
        targets = dict(targets or {})

        try:
            deactivated = await crud.deactivate_user_goals(session, user_id)

            goal = Goal(user_id=user_id, goal_type=goal_type, is_active=True)
            for field in GOAL_TARGET_FIELDS:
                value = targets.get(field)
                setattr(goal, field, value if value is not None else template.get(field))

            session.add(goal)
            await session.commit()
            await session.refresh(goal)
        except Exception:
            await session.rollback()
            raise

        logger.info(
            f"🎯 Goal {goal.id} ({goal_type}) created for user {user_id}, "
            f"{deactivated} previous goal(s) deactivated"
        )

        await ExperienceService.add_experience(
            session,
            user_id,
            EXPERIENCE_REWARDS["goal_created"],
            "goal_created",
            description=f"New goal: {template.get('name', goal_type)}",
        )
        await GoalService.recompute_daily_progress(session, user_id, today)

        await session.refresh(goal)
        return goal

    @staticmethod
    async def update_goal(
        session: AsyncSession, user_id: int, goal_id: int, updates: Mapping[str, Any]
    ) -> Optional[Goal]:
        """
        Update goal targets (None values are ignored)

        Returns:
            Updated Goal or None if not found
        """
        goal = await crud.get_goal(session, user_id, goal_id)
        if goal is None:
            return None

        for field in GOAL_TARGET_FIELDS:
            value = updates.get(field)
            if value is not None:
                setattr(goal, field, value)

        await session.commit()
        await session.refresh(goal)
        return goal

    @staticmethod
    async def delete_goal(session: AsyncSession, user_id: int, goal_id: int) -> bool:
        """Delete a goal with its progress rows"""
        deleted = await crud.delete_goal(session, user_id, goal_id)
        if deleted:
            logger.info(f"Goal {goal_id} of user {user_id} deleted")
        return deleted

    @staticmethod
    async def get_active_goal(session: AsyncSession, user_id: int) -> Optional[Goal]:
        return await crud.get_active_goal(session, user_id)

    @staticmethod
    async def get_user_goals(session: AsyncSession, user_id: int) -> List[Goal]:
        return await crud.get_user_goals(session, user_id)

    # ===========================
    # DAILY PROGRESS
    # ===========================

    @staticmethod
    async def recompute_daily_progress(
        session: AsyncSession,
        user_id: int,
        day: Optional[date] = None,
        facts_source: Optional[DailyFactsSource] = None,
        manual: Optional[Mapping[str, Any]] = None,
    ) -> Optional[DailyGoalProgress]:
        """
        Recompute and upsert the active goal's progress for a day

        Safe to call repeatedly: the (user, goal, date) row is overwritten.

        Args:
            session: Database session
            user_id: User ID
            day: Progress day (defaults to current UTC date)
            facts_source: Activity/nutrition provider (defaults to the database)
            manual: Actual values overriding the facts (MANUAL_FIELDS keys)

        Returns:
            Progress row or None if the user has no active goal
        """
        day = day or utc_now().date()
        facts_source = facts_source or DatabaseFactsSource(session)

        goal = await crud.get_active_goal(session, user_id)
        if goal is None:
            return None

        activity = await facts_source.get_daily_activity_facts(user_id, day)
        nutrition = await facts_source.get_daily_nutrition_facts(user_id, day)

        values: Dict[str, Any] = {
            "actual_calories": nutrition.calories,
            "actual_protein": nutrition.protein,
            "actual_carbs": nutrition.carbs,
            "actual_fats": nutrition.fats,
            "actual_steps": activity.steps,
            "actual_workouts": activity.workouts,
            "actual_active_minutes": activity.active_minutes,
        }
        if activity.weight is not None:
            values["actual_weight"] = activity.weight

        for key, value in (manual or {}).items():
            if value is not None and key in MANUAL_FIELDS:
                values[MANUAL_FIELDS[key]] = value

        result = calculate_progress(
            goal_daily_targets(goal),
            {
                "calories": values["actual_calories"],
                "protein": values["actual_protein"],
                "carbs": values["actual_carbs"],
                "fats": values["actual_fats"],
                "steps": values["actual_steps"],
                "workout": values["actual_workouts"],
            },
        )
        for metric, column in METRIC_PROGRESS_COLUMNS.items():
            values[column] = result.metrics[metric]
        values["overall_progress"] = result.overall_progress
        values["is_completed"] = result.is_completed

        try:
            progress = await crud.upsert_daily_progress(session, user_id, goal.id, day, values)

            latest = await crud.get_latest_daily_progress(session, goal.id)
            goal.progress_percentage = latest.overall_progress if latest else result.overall_progress

            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.debug(
            f"Goal {goal.id} progress {day}: overall={result.overall_progress}, "
            f"completed={result.is_completed}"
        )
        return progress

    @staticmethod
    async def update_daily_progress(
        session: AsyncSession,
        user_id: int,
        day: date,
        manual: Mapping[str, Any],
        facts_source: Optional[DailyFactsSource] = None,
    ) -> Optional[DailyGoalProgress]:
        """Store manually entered actuals for a day and recompute its progress"""
        return await GoalService.recompute_daily_progress(
            session, user_id, day, facts_source=facts_source, manual=manual
        )

    @staticmethod
    async def get_today_progress(
        session: AsyncSession, user_id: int, today: Optional[date] = None
    ) -> Optional[DailyGoalProgress]:
        """Active goal's progress row for today, None if missing"""
        goal = await crud.get_active_goal(session, user_id)
        if goal is None:
            return None
        return await crud.get_daily_progress(session, user_id, goal.id, today or utc_now().date())

    @staticmethod
    async def get_progress_history(
        session: AsyncSession,
        user_id: int,
        goal_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Optional[List[DailyGoalProgress]]:
        """Progress rows of a user's goal, oldest first (None if goal not found)"""
        if await crud.get_goal(session, user_id, goal_id) is None:
            return None
        return await crud.get_progress_history(session, goal_id, start_date, end_date)

    @staticmethod
    async def get_goal_stats(
        session: AsyncSession, user_id: int, goal_id: int
    ) -> Optional[Dict[str, Any]]:
        """Total/completed days and average progress of a user's goal"""
        if await crud.get_goal(session, user_id, goal_id) is None:
            return None
        return await crud.get_goal_stats(session, goal_id)
