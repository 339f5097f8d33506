# coding: utf-8
"""
Daily activity / nutrition facts consumed by goal progress
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database import crud


@dataclass
class ActivityFacts:
    """Aggregated activity of one day"""

    steps: int = 0
    workouts: int = 0
    active_minutes: int = 0
    weight: Optional[float] = None


@dataclass
class NutritionFacts:
    """Aggregated food intake of one day"""

    calories: float = 0.0
    protein: float = 0.0
    carbs: float = 0.0
    fats: float = 0.0


class DailyFactsSource(Protocol):
    """Provider of per-day aggregated facts"""

    async def get_daily_activity_facts(self, user_id: int, day: date) -> ActivityFacts: ...

    async def get_daily_nutrition_facts(self, user_id: int, day: date) -> NutritionFacts: ...


class DatabaseFactsSource:
    """Facts aggregated from FoodIntake, DailySteps and Activity rows"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_daily_activity_facts(self, user_id: int, day: date) -> ActivityFacts:
        totals = await crud.get_activity_totals(self.session, user_id, day)
        return ActivityFacts(**totals)

    async def get_daily_nutrition_facts(self, user_id: int, day: date) -> NutritionFacts:
        totals = await crud.get_nutrition_totals(self.session, user_id, day)
        return NutritionFacts(
            calories=float(round(totals["calories"])),
            protein=round(totals["protein"], 1),
            carbs=round(totals["carbs"], 1),
            fats=round(totals["fats"], 1),
        )
