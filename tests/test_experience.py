"""
Tests for experience points and levels
"""

import pytest
from datetime import datetime, UTC

from lwfit.services.experience_service import (
    ExperienceService,
    calculate_experience_data,
    calculate_level,
)


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


# ============================================================================
# LEVEL MATH
# ============================================================================


def test_first_level_data():
    data = calculate_experience_data(1, 0)

    assert data["max_experience"] == 100
    assert data["experience_to_next_level"] == 100
    assert data["experience_progress"] == 0.0


def test_progress_inside_level():
    data = calculate_experience_data(2, 175)

    assert data["max_experience"] == 250
    assert data["experience_to_next_level"] == 75
    assert data["experience_progress"] == 50.0


def test_max_level_is_full():
    data = calculate_experience_data(21, 12000)

    assert data["experience_progress"] == 100.0
    assert data["experience_to_next_level"] == 0


@pytest.mark.parametrize(
    "experience,level",
    [(0, 1), (99, 1), (100, 2), (249, 2), (250, 3), (11500, 21), (99999, 21)],
)
def test_calculate_level(experience, level):
    assert calculate_level(experience) == level


# ============================================================================
# AWARDING EXPERIENCE
# ============================================================================


@pytest.mark.asyncio
async def test_add_experience_levels_up(db_session, make_user):
    user = await make_user(now=NOW)

    small = await ExperienceService.add_experience(db_session, user.id, 60, "goal_created")
    assert small["leveled_up"] is False
    assert small["level_after"] == 1

    big = await ExperienceService.add_experience(db_session, user.id, 200, "daily_goal")
    assert big["level_before"] == 1
    assert big["level_after"] == 3
    assert big["leveled_up"] is True
    assert big["experience"] == 260

    data = await ExperienceService.get_experience_data(db_session, user.id)
    assert data["level"] == 3
    assert data["max_experience"] == 450

    history = await ExperienceService.get_experience_transactions(db_session, user.id)
    assert [h["amount"] for h in history] == [200, 60]
    assert history[0]["level_after"] == 3


@pytest.mark.asyncio
async def test_non_positive_experience_is_rejected(db_session, make_user):
    user = await make_user(now=NOW)

    with pytest.raises(ValueError):
        await ExperienceService.add_experience(db_session, user.id, 0, "nothing")


@pytest.mark.asyncio
async def test_experience_for_unknown_user(db_session):
    assert await ExperienceService.add_experience(db_session, 999, 10, "goal_created") is None
    assert await ExperienceService.get_experience_data(db_session, 999) is None
