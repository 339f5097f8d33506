# coding: utf-8
"""
Goals & Experience Configuration

Goal templates per goal type, completion threshold and level table.
"""

from typing import Dict, List, Any

from lwfit.database.models import GoalType


# =======================
# GOAL PROGRESS
# =======================

# Day counts as completed when overall progress reaches this value
GOAL_COMPLETION_THRESHOLD: float = 100.0

# Default targets filled into a new goal when the user leaves them empty
GOAL_TEMPLATES: Dict[str, Dict[str, Any]] = {
    GoalType.WEIGHT_LOSS.value: {
        "name": "Weight loss",
        "description": "Calorie deficit with high protein and daily movement",
        "target_calories": 1800.0,
        "target_protein": 120.0,
        "target_carbs": 150.0,
        "target_fats": 60.0,
        "target_workouts_per_week": 4,
        "target_steps_per_day": 10000,
        "target_active_minutes": 30,
    },
    GoalType.WEIGHT_MAINTAIN.value: {
        "name": "Weight maintenance",
        "description": "Balanced nutrition and regular activity",
        "target_calories": 2200.0,
        "target_protein": 100.0,
        "target_carbs": 220.0,
        "target_fats": 80.0,
        "target_workouts_per_week": 3,
        "target_steps_per_day": 8000,
        "target_active_minutes": 25,
    },
    GoalType.MUSCLE_GAIN.value: {
        "name": "Muscle gain",
        "description": "Calorie surplus with strength training",
        "target_calories": 2800.0,
        "target_protein": 160.0,
        "target_carbs": 300.0,
        "target_fats": 100.0,
        "target_workouts_per_week": 5,
        "target_steps_per_day": 6000,
        "target_active_minutes": 45,
    },
}


# =======================
# EXPERIENCE / LEVELS
# =======================

# Cumulative experience required to reach level N is LEVEL_EXPERIENCE[N - 1]
LEVEL_EXPERIENCE: List[int] = [
    0,
    100,
    250,
    450,
    700,
    1000,
    1350,
    1750,
    2200,
    2700,
    3250,
    3850,
    4500,
    5200,
    5950,
    6750,
    7600,
    8500,
    9450,
    10450,
    11500,
]

# Experience rewards
EXPERIENCE_REWARDS: Dict[str, int] = {
    "goal_created": 50,
}
