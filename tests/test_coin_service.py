"""
Tests for the LW Coin balance engine
Balance reads, spending, consumption order, premium bypass and concurrency
"""

import asyncio
import pytest
from datetime import datetime, timedelta, UTC
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from config.coins_config import get_feature_cost
from lwfit.database.models import (
    CoinSource,
    CoinTransaction,
    CoinTransactionType,
    User,
)
from lwfit.services.coin_service import CoinService, CreditStatus, SpendStatus
from lwfit.services.user_service import UserService


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


async def ledger(session, user_id, transaction_type=None):
    stmt = select(CoinTransaction).where(CoinTransaction.user_id == user_id)
    if transaction_type:
        stmt = stmt.where(CoinTransaction.type == transaction_type.value)
    result = await session.execute(stmt.order_by(CoinTransaction.id))
    return list(result.scalars().all())


async def reload_user(session, user_id) -> User:
    return await session.get(User, user_id, populate_existing=True)


# ============================================================================
# BALANCE
# ============================================================================


@pytest.mark.asyncio
async def test_registration_bonus_shows_in_balance(db_session):
    """New user receives the 50 coin registration bonus"""
    registration = await UserService.register_user(db_session, email="new@example.com")

    balance = await CoinService.get_balance(db_session, registration.user.id)

    assert balance["fractional_balance"] == Decimal("50")
    assert balance["balance"] == 50
    assert balance["permanent_coins"] == Decimal("50")

    entries = await ledger(db_session, registration.user.id)
    assert len(entries) == 1
    assert entries[0].type == CoinTransactionType.REGISTRATION.value
    assert entries[0].coin_source == CoinSource.PERMANENT.value


@pytest.mark.asyncio
async def test_get_balance_unknown_user(db_session):
    assert await CoinService.get_balance(db_session, 999) is None


@pytest.mark.asyncio
async def test_next_refill_date_is_first_of_next_month(db_session, make_user):
    user = await make_user(now=NOW)

    balance = await CoinService.get_balance(db_session, user.id, now=NOW)

    assert balance["next_refill_date"] == datetime(2025, 4, 1, tzinfo=UTC)
    assert balance["monthly_allowance"] == Decimal("300")


# ============================================================================
# SPEND
# ============================================================================


@pytest.mark.asyncio
async def test_spend_until_insufficient(db_session, make_user):
    """Balance 10, three spends of 1, then a spend of 10 is refused"""
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("10"), now=NOW)

    for _ in range(3):
        result = await CoinService.spend(
            db_session, user.id, Decimal("1"), feature_used="ai_food_scan", now=NOW
        )
        assert result.success
        assert result.status == SpendStatus.CHARGED

    assert result.fractional_balance == Decimal("7")
    assert result.balance == 7

    refused = await CoinService.spend(db_session, user.id, Decimal("10"), now=NOW)

    assert refused.success is False
    assert refused.status == SpendStatus.INSUFFICIENT_BALANCE
    assert refused.message == "Insufficient LW Coins"
    assert refused.fractional_balance == Decimal("7")

    user = await reload_user(db_session, user.id)
    assert user.fractional_coin_balance == Decimal("7")
    assert len(await ledger(db_session, user.id, CoinTransactionType.SPENT)) == 3


@pytest.mark.asyncio
async def test_fractional_spend_rounds_integer_mirror_down(db_session, make_user):
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("10"), now=NOW)

    result = await CoinService.spend_for_feature(db_session, user.id, "ai_food_scan", now=NOW)

    assert result.charged == Decimal("2.5")
    assert result.fractional_balance == Decimal("7.5")
    assert result.balance == 7

    spent = await ledger(db_session, user.id, CoinTransactionType.SPENT)
    assert spent[0].fractional_amount == Decimal("-2.5")
    assert spent[0].amount == -3
    assert spent[0].feature_used == "ai_food_scan"


@pytest.mark.asyncio
async def test_spend_consumes_monthly_then_subscription_then_permanent(db_session, make_user):
    """Expiring buckets are drawn first"""
    user = await make_user(now=NOW, month_start=datetime(2025, 2, 1, tzinfo=UTC))

    # First write of the month applies the rollover: 300 monthly coins
    await CoinService.purchase_subscription_coins(
        db_session, user.id, coins=100, duration_days=30, price=Decimal("2.99"), now=NOW
    )
    await CoinService.add_coins(db_session, user.id, Decimal("20"), now=NOW)

    result = await CoinService.spend(db_session, user.id, Decimal("410"), now=NOW)

    assert result.success
    assert result.sources == {
        CoinSource.MONTHLY_FREE.value: Decimal("300"),
        CoinSource.SUBSCRIPTION.value: Decimal("100"),
        CoinSource.PERMANENT.value: Decimal("10"),
    }

    user = await reload_user(db_session, user.id)
    assert user.monthly_coins == Decimal("0")
    assert user.monthly_coins_used == Decimal("300")
    assert user.subscription_coins == Decimal("0")
    assert user.permanent_coins == Decimal("10")
    assert user.fractional_coin_balance == Decimal("10")

    spent = await ledger(db_session, user.id, CoinTransactionType.SPENT)
    assert [entry.coin_source for entry in spent] == [
        CoinSource.MONTHLY_FREE.value,
        CoinSource.SUBSCRIPTION.value,
        CoinSource.PERMANENT.value,
    ]


@pytest.mark.asyncio
async def test_spend_partially_from_monthly(db_session, make_user):
    user = await make_user(now=NOW, month_start=datetime(2025, 2, 1, tzinfo=UTC))
    await CoinService.add_coins(db_session, user.id, Decimal("50"), now=NOW)

    result = await CoinService.spend(db_session, user.id, Decimal("1.5"), now=NOW)

    assert result.sources == {CoinSource.MONTHLY_FREE.value: Decimal("1.5")}

    balance = await CoinService.get_balance(db_session, user.id, now=NOW)
    assert balance["monthly_remaining"] == Decimal("298.5")
    assert balance["monthly_used"] == Decimal("1.5")
    assert balance["permanent_coins"] == Decimal("50")


@pytest.mark.asyncio
async def test_spend_rejects_non_positive_amount(db_session, make_user):
    user = await make_user(now=NOW)

    with pytest.raises(ValueError):
        await CoinService.spend(db_session, user.id, Decimal("0"), now=NOW)

    with pytest.raises(ValueError):
        await CoinService.spend(db_session, user.id, Decimal("-1"), now=NOW)


@pytest.mark.asyncio
async def test_spend_unknown_user_raises(db_session):
    with pytest.raises(ValueError):
        await CoinService.spend(db_session, 404, Decimal("1"), now=NOW)


@pytest.mark.asyncio
async def test_balance_never_negative(db_session, make_user):
    """Any mix of spends and credits keeps the balance >= 0"""
    user = await make_user(now=NOW)
    operations = [
        ("spend", "3"),
        ("credit", "5"),
        ("spend", "2.5"),
        ("spend", "2.5"),
        ("spend", "0.01"),
        ("credit", "1.5"),
        ("spend", "1.5"),
        ("spend", "100"),
        ("credit", "0.75"),
        ("spend", "1"),
    ]

    for operation, amount in operations:
        if operation == "spend":
            await CoinService.spend(db_session, user.id, Decimal(amount), now=NOW)
        else:
            await CoinService.add_coins(db_session, user.id, Decimal(amount), now=NOW)

        user = await reload_user(db_session, user.id)
        assert user.fractional_coin_balance >= 0
        assert user.coin_balance >= 0
        assert user.fractional_coin_balance == (
            user.monthly_coins + user.subscription_coins + user.permanent_coins
        )


@pytest.mark.asyncio
async def test_concurrent_spends_cannot_overdraw(session_maker, db_session, make_user):
    """Five concurrent spends of 1 against a balance of 3: exactly three succeed"""
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("3"), now=NOW)

    async def spend_once():
        async with session_maker() as session:
            return await CoinService.spend(session, user.id, Decimal("1"), now=NOW)

    results = await asyncio.gather(*(spend_once() for _ in range(5)))

    assert sum(1 for r in results if r.success) == 3
    assert sum(1 for r in results if r.status == SpendStatus.INSUFFICIENT_BALANCE) == 2

    user = await reload_user(db_session, user.id)
    assert user.fractional_coin_balance == Decimal("0")


@pytest.mark.asyncio
async def test_spend_retries_on_version_conflict(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("5"), now=NOW)

    original = CoinService._spend_locked
    calls = {"n": 0}

    async def flaky_spend(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("row changed")
        return await original(*args, **kwargs)

    monkeypatch.setattr(CoinService, "_spend_locked", flaky_spend)

    result = await CoinService.spend(db_session, user.id, Decimal("2"), now=NOW)

    assert result.success
    assert calls["n"] == 2
    assert result.fractional_balance == Decimal("3")


@pytest.mark.asyncio
async def test_spend_gives_up_after_bounded_retries(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW)
    calls = {"n": 0}

    async def always_stale(*args, **kwargs):
        calls["n"] += 1
        raise StaleDataError("row changed")

    monkeypatch.setattr(CoinService, "_spend_locked", always_stale)

    with pytest.raises(StaleDataError):
        await CoinService.spend(db_session, user.id, Decimal("1"), now=NOW)

    assert calls["n"] == 3


# ============================================================================
# PREMIUM
# ============================================================================


@pytest.mark.asyncio
async def test_premium_spend_is_free(db_session, make_user):
    user = await make_user(now=NOW)
    user.has_premium_subscription = True
    user.premium_expires_at = NOW + timedelta(days=10)
    await db_session.commit()

    result = await CoinService.spend(
        db_session, user.id, Decimal("1000"), feature_used="ai_text", now=NOW
    )

    assert result.success
    assert result.status == SpendStatus.PREMIUM
    assert result.charged == Decimal("0")
    assert result.fractional_balance == Decimal("0")

    spent = await ledger(db_session, user.id, CoinTransactionType.SPENT)
    assert len(spent) == 1
    assert spent[0].fractional_amount == Decimal("0")
    assert spent[0].coin_source == CoinSource.SUBSCRIPTION.value


@pytest.mark.asyncio
async def test_expired_premium_is_charged(db_session, make_user):
    user = await make_user(now=NOW)
    user.has_premium_subscription = True
    user.premium_expires_at = NOW - timedelta(days=1)
    await db_session.commit()

    result = await CoinService.spend(db_session, user.id, Decimal("1"), now=NOW)

    assert result.success is False
    assert result.status == SpendStatus.INSUFFICIENT_BALANCE

    user = await reload_user(db_session, user.id)
    assert user.has_premium_subscription is False


@pytest.mark.asyncio
async def test_premium_notification_expiring_soon(db_session, make_user):
    user = await make_user(now=NOW)
    user.has_premium_subscription = True
    user.premium_expires_at = NOW + timedelta(days=2, hours=1)
    await db_session.commit()

    balance = await CoinService.get_balance(db_session, user.id, now=NOW)

    assert balance["is_premium"] is True
    assert balance["premium_notification"]["type"] == "expiring_soon"
    assert balance["premium_notification"]["days_left"] == 2


# ============================================================================
# FEATURES
# ============================================================================


def test_feature_costs():
    assert get_feature_cost("ai_food_scan") == Decimal("2.5")
    assert get_feature_cost("ai_voice_food") == Decimal("1.5")
    assert get_feature_cost("AI_TEXT") == Decimal("1.0")
    assert get_feature_cost("exercise") == Decimal("0")
    assert get_feature_cost("something_new") == Decimal("1.0")


@pytest.mark.asyncio
async def test_free_feature_writes_nothing(db_session, make_user):
    user = await make_user(now=NOW)

    result = await CoinService.spend_for_feature(db_session, user.id, "body_scan", now=NOW)

    assert result.success
    assert result.status == SpendStatus.FREE_FEATURE
    assert await ledger(db_session, user.id) == []


# ============================================================================
# CREDIT
# ============================================================================


@pytest.mark.asyncio
async def test_add_coins_with_idempotency_key_grants_once(db_session, make_user):
    user = await make_user(now=NOW)

    first = await CoinService.add_coins(
        db_session, user.id, Decimal("25"), idempotency_key="promo:spring", now=NOW
    )
    second = await CoinService.add_coins(
        db_session, user.id, Decimal("25"), idempotency_key="promo:spring", now=NOW
    )

    assert first.status == CreditStatus.CREDITED
    assert second.status == CreditStatus.ALREADY_GRANTED
    assert second.credited == Decimal("0")
    assert second.fractional_balance == Decimal("25")


@pytest.mark.asyncio
async def test_add_coins_rejects_subscription_source(db_session, make_user):
    user = await make_user(now=NOW)

    with pytest.raises(ValueError):
        await CoinService.add_coins(
            db_session, user.id, Decimal("5"), coin_source=CoinSource.SUBSCRIPTION, now=NOW
        )


@pytest.mark.asyncio
async def test_transaction_history_newest_first(db_session, make_user):
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("10"), now=NOW)
    await CoinService.spend(
        db_session, user.id, Decimal("1"), feature_used="ai_text", now=NOW + timedelta(minutes=1)
    )

    history = await CoinService.get_transaction_history(db_session, user.id)

    assert [tx["type"] for tx in history] == ["spent", "earned"]
    assert history[0]["usage_date"] == "2025-03-15"

    spent_only = await CoinService.get_transaction_history(
        db_session, user.id, transaction_type="spent"
    )
    assert len(spent_only) == 1


@pytest.mark.asyncio
async def test_limits_report_feature_usage(db_session, make_user):
    user = await make_user(now=NOW)
    await CoinService.add_coins(db_session, user.id, Decimal("10"), now=NOW)
    await CoinService.spend_for_feature(db_session, user.id, "ai_food_scan", now=NOW)
    await CoinService.spend_for_feature(
        db_session, user.id, "ai_food_scan", now=NOW + timedelta(minutes=5)
    )

    limits = await CoinService.get_limits(db_session, user.id, now=NOW)

    assert limits["feature_usage"]["ai_food_scan"]["count"] == 2
    assert Decimal(str(limits["spent_today"])) == Decimal("5")
