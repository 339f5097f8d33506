# coding: utf-8
"""
LW Coin economy configuration

Centralized configuration for coin allowances, bonuses, feature costs
and purchasable packages. Allows easy adjustments without code changes.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional


# =======================
# ALLOWANCES & BONUSES
# =======================

# Free coins granted at every calendar month rollover
MONTHLY_ALLOWANCE: Decimal = Decimal("300")

# One-time grants (permanent coins, never expire)
REGISTRATION_BONUS: Decimal = Decimal("50")
REFERRAL_BONUS: Decimal = Decimal("150")

# Registration/referral bonus: one retry after this delay (seconds)
BONUS_RETRY_ATTEMPTS: int = 2
BONUS_RETRY_DELAY: float = 0.5

# Spend retries on optimistic-lock conflict (row changed by another writer)
SPEND_MAX_ATTEMPTS: int = 3

# Premium "expiring soon" notification window
PREMIUM_EXPIRY_WARNING_DAYS: int = 3


# =======================
# FEATURE COSTS
# =======================

FEATURE_COSTS: Dict[str, Decimal] = {
    # Photo analysis
    "photo": Decimal("2.5"),
    "ai_food_scan": Decimal("2.5"),
    "food_scan": Decimal("2.5"),
    # Voice input
    "voice": Decimal("1.5"),
    "ai_voice_workout": Decimal("1.5"),
    "ai_voice_food": Decimal("1.5"),
    # Text analysis
    "text": Decimal("1.0"),
    "ai_text": Decimal("1.0"),
    # Free features
    "body_scan": Decimal("0"),
    "exercise": Decimal("0"),
}

DEFAULT_FEATURE_COST: Decimal = Decimal("1.0")


def get_feature_cost(feature: str) -> Decimal:
    """
    Get coin cost of a paid feature

    Args:
        feature: Feature identifier (e.g. 'ai_food_scan')

    Returns:
        Cost in coins (DEFAULT_FEATURE_COST for unknown features)
    """
    return FEATURE_COSTS.get(feature.lower(), DEFAULT_FEATURE_COST)


# =======================
# PACKAGES
# =======================


@dataclass(frozen=True)
class CoinPackage:
    """Coins and duration a purchase grants"""

    coins: int
    duration_days: int  # 0 = permanent coins
    price: Decimal
    period: Optional[str] = None
    is_premium: bool = False  # Unlimited usage while active


# Webhook payments carry only the paid amount (EUR)
# Unknown amounts map to nothing: never guess a package
WEBHOOK_PRICE_PACKAGES: Dict[Decimal, CoinPackage] = {
    Decimal("2"): CoinPackage(coins=100, duration_days=30, price=Decimal("2"), period="1 month"),
    Decimal("5"): CoinPackage(coins=300, duration_days=90, price=Decimal("5"), period="3 months"),
    Decimal("10"): CoinPackage(coins=600, duration_days=180, price=Decimal("10"), period="6 months"),
    Decimal("20"): CoinPackage(coins=1200, duration_days=365, price=Decimal("20"), period="1 year"),
}


GOOGLE_PLAY_PRODUCTS: Dict[str, CoinPackage] = {
    # Subscriptions (subscription coins, expire with the subscription)
    "lw_subscription_weekly": CoinPackage(50, 7, Decimal("0.99"), "1 week"),
    "lw_subscription_biweekly": CoinPackage(100, 14, Decimal("1.99"), "2 weeks"),
    "lw_subscription_monthly_basic": CoinPackage(100, 30, Decimal("2.99"), "1 month"),
    "lw_subscription_monthly_standard": CoinPackage(200, 30, Decimal("3.99"), "1 month"),
    "lw_subscription_monthly_premium": CoinPackage(500, 30, Decimal("7.99"), "1 month"),
    "lw_subscription_unlimited": CoinPackage(0, 30, Decimal("8.99"), "1 month", is_premium=True),
    # Coin packs (permanent coins)
    "lw_coins_50": CoinPackage(50, 0, Decimal("0.99")),
    "lw_coins_100": CoinPackage(100, 0, Decimal("1.99")),
    "lw_coins_200": CoinPackage(200, 0, Decimal("3.99")),
    "lw_coins_500": CoinPackage(500, 0, Decimal("8.99")),
}


APP_STORE_PRODUCTS: Dict[str, CoinPackage] = {
    "dev.tfox.lw.subscription.weekly": CoinPackage(50, 7, Decimal("0.99"), "1 week"),
    "dev.tfox.lw.subscription.biweekly": CoinPackage(100, 14, Decimal("1.99"), "2 weeks"),
    "dev.tfox.lw.subscription.monthly.basic": CoinPackage(100, 30, Decimal("2.99"), "1 month"),
    "dev.tfox.lw.subscription.monthly.standard": CoinPackage(200, 30, Decimal("3.99"), "1 month"),
    "dev.tfox.lw.subscription.monthly.premium": CoinPackage(500, 30, Decimal("7.99"), "1 month"),
    "dev.tfox.lw.subscription.unlimited": CoinPackage(0, 30, Decimal("8.99"), "1 month", is_premium=True),
    "dev.tfox.lw.coins.50": CoinPackage(50, 0, Decimal("0.99")),
    "dev.tfox.lw.coins.100": CoinPackage(100, 0, Decimal("1.99")),
    "dev.tfox.lw.coins.200": CoinPackage(200, 0, Decimal("3.99")),
    "dev.tfox.lw.coins.500": CoinPackage(500, 0, Decimal("8.99")),
}


def get_package_by_amount(amount: Decimal) -> Optional[CoinPackage]:
    """
    Resolve a webhook payment amount to a package

    Args:
        amount: Paid amount

    Returns:
        CoinPackage or None for unrecognized amounts
    """
    return WEBHOOK_PRICE_PACKAGES.get(Decimal(str(amount)))
