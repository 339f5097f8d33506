"""
Unit tests for configuration
"""

import pytest
from decimal import Decimal

import config.config as cfg
from config.coins_config import (
    DEFAULT_FEATURE_COST,
    MONTHLY_ALLOWANCE,
    REFERRAL_BONUS,
    REGISTRATION_BONUS,
    get_feature_cost,
    get_package_by_amount,
)
from config.goals_config import GOAL_COMPLETION_THRESHOLD, LEVEL_EXPERIENCE


def test_coin_economy_defaults():
    """Test that coin constants load correctly"""
    assert MONTHLY_ALLOWANCE == Decimal("300")
    assert REGISTRATION_BONUS == Decimal("50")
    assert REFERRAL_BONUS == Decimal("150")
    assert GOAL_COMPLETION_THRESHOLD == 100.0


def test_feature_cost_lookup():
    assert get_feature_cost("ai_food_scan") == Decimal("2.5")
    assert get_feature_cost("AI_VOICE_FOOD") == Decimal("1.5")
    assert get_feature_cost("body_scan") == Decimal("0")
    assert get_feature_cost("brand_new_feature") == DEFAULT_FEATURE_COST


def test_webhook_packages():
    assert get_package_by_amount(Decimal("10")).coins == 600
    assert get_package_by_amount(Decimal("10")).duration_days == 180
    assert get_package_by_amount(Decimal("3")) is None


def test_level_table_is_increasing():
    assert LEVEL_EXPERIENCE[0] == 0
    assert all(a < b for a, b in zip(LEVEL_EXPERIENCE, LEVEL_EXPERIENCE[1:]))


def test_validate_config_lists_missing_settings(monkeypatch):
    monkeypatch.setattr(cfg, "JWT_SECRET", "")
    monkeypatch.setattr(cfg, "TRIBUTE_API_KEY", "")

    with pytest.raises(ValueError) as exc_info:
        cfg.validate_config()

    assert "JWT_SECRET" in str(exc_info.value)
    assert "TRIBUTE_API_KEY" in str(exc_info.value)


def test_validate_config_passes(monkeypatch):
    monkeypatch.setattr(cfg, "DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setattr(cfg, "JWT_SECRET", "secret")
    monkeypatch.setattr(cfg, "TRIBUTE_API_KEY", "key")

    assert cfg.validate_config() is True
