"""
Unit tests for CRUD operations
"""

import pytest
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from lwfit.database.crud import (
    complete_pending_payment,
    create_pending_payment,
    create_purchase_verification,
    create_referral,
    create_user,
    get_user_by_referral_code,
    get_user_by_telegram_id,
    mark_purchase_verified,
)
from lwfit.database.models import PaymentStatus, User


@pytest.mark.asyncio
async def test_create_user(db_session):
    """Test user creation"""
    user = await create_user(db_session, email="test@example.com", name="Test", telegram_id=123456789)

    assert user.telegram_id == 123456789
    assert user.fractional_coin_balance == Decimal("0")
    assert user.coin_balance == 0
    assert user.level == 1
    assert user.experience == 0
    assert len(user.referral_code) == 8
    assert user.referral_code == user.referral_code.upper()


@pytest.mark.asyncio
async def test_get_user_by_telegram_id(db_session):
    """Test getting user by Telegram ID"""
    created_user = await create_user(db_session, telegram_id=123456789)

    user = await get_user_by_telegram_id(db_session, 123456789)
    assert user is not None
    assert user.id == created_user.id

    # Try non-existent user
    assert await get_user_by_telegram_id(db_session, 999999999) is None


@pytest.mark.asyncio
async def test_referral_code_lookup_ignores_case(db_session):
    user = await create_user(db_session, email="code@example.com")

    found = await get_user_by_referral_code(db_session, user.referral_code.lower())

    assert found.id == user.id


@pytest.mark.asyncio
async def test_negative_bucket_is_rejected(db_session):
    """Balance columns can't go below zero even if code misbehaves"""
    user = await create_user(db_session, email="neg@example.com")

    user.permanent_coins = Decimal("-1")
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_purchase_verification_is_unique_per_token(db_session):
    user = await create_user(db_session, email="buyer@example.com")

    first, created = await create_purchase_verification(
        db_session, user.id, "google", "token-1", "lw_coins_50", 50, 0, Decimal("0.99")
    )
    second, created_again = await create_purchase_verification(
        db_session, user.id, "google", "token-1", "lw_coins_50", 50, 0, Decimal("0.99")
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id

    # Only the first transition wins
    assert await mark_purchase_verified(db_session, first.id) is True
    assert await mark_purchase_verified(db_session, first.id) is False
    await db_session.commit()


@pytest.mark.asyncio
async def test_pending_payment_is_unique_per_payment_id(db_session):
    user = await create_user(db_session, telegram_id=42)

    payment, created = await create_pending_payment(db_session, "pay-1", 42, user.id, Decimal("5"))
    again, created_again = await create_pending_payment(db_session, "pay-1", 42, user.id, Decimal("5"))

    assert created is True
    assert created_again is False
    assert again.id == payment.id
    assert again.status == PaymentStatus.PENDING.value

    assert await complete_pending_payment(db_session, payment.id) is True
    assert await complete_pending_payment(db_session, payment.id) is False
    await db_session.commit()


@pytest.mark.asyncio
async def test_duplicate_referral_is_blocked(db_session):
    referrer = await create_user(db_session, email="a@example.com")
    other = await create_user(db_session, email="b@example.com")
    referee = await create_user(db_session, email="c@example.com")
    referrer_id, referrer_code = referrer.id, referrer.referral_code
    referee_id = referee.id

    first = await create_referral(db_session, referrer_id, referee_id, referrer_code)
    second = await create_referral(db_session, other.id, referee_id, other.referral_code)

    assert first is not None
    assert second is None
    assert await create_referral(db_session, referrer_id, referrer_id, referrer_code) is None

    referee = await db_session.get(User, referee_id, populate_existing=True)
    assert referee.referred_by_id == referrer_id
