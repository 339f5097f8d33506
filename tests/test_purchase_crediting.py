"""
Tests for exactly-once crediting of store purchases and webhook payments
"""

import asyncio
import pytest
from datetime import datetime, timedelta, UTC
from decimal import Decimal

from sqlalchemy import func, select

from lwfit.database import crud
from lwfit.database.models import (
    CoinTransaction,
    PaymentStatus,
    PendingPayment,
    PurchaseVerification,
    Subscription,
    User,
    VerificationStatus,
)
from lwfit.services.coin_service import CoinService
from lwfit.services.purchase_adapters import (
    DevelopmentReceiptValidator,
    StoreReceipt,
    TributeAdapter,
    UnconfiguredReceiptValidator,
    WebhookPaymentEvent,
    get_receipt_validator,
    get_store_adapter,
    set_receipt_validator,
)
from lwfit.services.purchase_service import PurchaseService, PurchaseStatus
from lwfit.utils.time_utils import as_utc


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
TELEGRAM_ID = 777000111


async def count(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def reload_user(session, user_id) -> User:
    return await session.get(User, user_id, populate_existing=True)


def payment_event(amount="5", order_id="order-1", status="completed", telegram_id=TELEGRAM_ID):
    return WebhookPaymentEvent(
        order_id=order_id,
        amount=Decimal(amount),
        telegram_id=telegram_id,
        status=status,
        currency="EUR",
        product_id="42",
        created_at=NOW,
    )


def receipt(product_id="lw_coins_100", token="gp-token-1", valid=True):
    return StoreReceipt(valid=valid, product_id=product_id, natural_key=token)


# ============================================================================
# WEBHOOK PAYMENTS
# ============================================================================


@pytest.mark.asyncio
async def test_webhook_payment_credits_subscription_once(db_session, make_user):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)

    result = await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    assert result.status == PurchaseStatus.COMPLETED
    assert result.credited
    assert result.coins_added == 300
    assert result.duration_days == 90
    assert result.expires_at == NOW + timedelta(days=90)
    assert result.fractional_balance == Decimal("300")

    subscription = await db_session.get(Subscription, result.subscription_id)
    assert subscription.coins_remaining == Decimal("300")

    payment = await crud.get_pending_payment(db_session, "order-1")
    assert payment.status == PaymentStatus.COMPLETED.value

    # Provider retries the same webhook
    replay = await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    assert replay.success
    assert replay.status == PurchaseStatus.ALREADY_PROCESSED
    assert replay.coins_added == 0

    user = await reload_user(db_session, user.id)
    assert user.subscription_coins == Decimal("300")
    assert await count(db_session, Subscription) == 1
    assert await count(db_session, PendingPayment) == 1


@pytest.mark.asyncio
async def test_unmapped_amount_credits_nothing(db_session, make_user):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)

    result = await PurchaseService.process_webhook_payment(
        db_session, payment_event(amount="7"), now=NOW
    )

    assert result.success is False
    assert result.status == PurchaseStatus.INVALID_PACKAGE
    assert await count(db_session, PendingPayment) == 0
    assert await count(db_session, CoinTransaction) == 0

    user = await reload_user(db_session, user.id)
    assert user.fractional_coin_balance == Decimal("0")


def test_determine_coins_from_amount():
    adapter = TributeAdapter()

    assert adapter.determine_coins_from_amount(Decimal("2")) == (100, 30)
    assert adapter.determine_coins_from_amount(Decimal("5.00")) == (300, 90)
    assert adapter.determine_coins_from_amount(Decimal("20")) == (1200, 365)
    assert adapter.determine_coins_from_amount(Decimal("7")) == (0, 0)
    assert adapter.determine_coins_from_amount(Decimal("0")) == (0, 0)


@pytest.mark.asyncio
async def test_event_without_order_id_uses_derived_key(db_session, make_user):
    await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    event = payment_event(order_id=None)

    assert event.natural_key == f"{TELEGRAM_ID}_42_5_20250315120000"

    first = await PurchaseService.process_webhook_payment(db_session, event, now=NOW)
    second = await PurchaseService.process_webhook_payment(db_session, event, now=NOW)

    assert first.status == PurchaseStatus.COMPLETED
    assert second.status == PurchaseStatus.ALREADY_PROCESSED
    assert await crud.get_pending_payment(db_session, event.natural_key) is not None


@pytest.mark.asyncio
async def test_failed_payment_then_completed(db_session, make_user):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)

    failed = await PurchaseService.process_webhook_payment(
        db_session, payment_event(status="cancelled"), now=NOW
    )
    assert failed.status == PurchaseStatus.PAYMENT_FAILED

    payment = await crud.get_pending_payment(db_session, "order-1")
    assert payment.status == PaymentStatus.FAILED.value

    user = await reload_user(db_session, user.id)
    assert user.fractional_coin_balance == Decimal("0")

    completed = await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    assert completed.status == PurchaseStatus.COMPLETED
    assert completed.fractional_balance == Decimal("300")


@pytest.mark.asyncio
async def test_payment_for_unknown_telegram_user(db_session):
    result = await PurchaseService.process_webhook_payment(
        db_session, payment_event(telegram_id=1), now=NOW
    )

    assert result.status == PurchaseStatus.USER_NOT_FOUND
    assert await count(db_session, PendingPayment) == 0


@pytest.mark.asyncio
async def test_register_intent_is_idempotent(db_session, make_user):
    await make_user(now=NOW, telegram_id=TELEGRAM_ID)

    intent = await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-1", telegram_id=TELEGRAM_ID, amount=Decimal("5")
    )
    assert intent.status == PaymentStatus.PENDING.value
    assert intent.coins_amount == 300

    again = await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-1", telegram_id=TELEGRAM_ID, amount=Decimal("5")
    )
    assert again.id == intent.id
    assert await count(db_session, PendingPayment) == 1


@pytest.mark.asyncio
async def test_intents_paid_in_turn_are_each_credited(db_session, make_user):
    """Paying one intent must not complete another intent of the same user"""
    await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    for order_id in ("A", "B"):
        await PurchaseService.register_pending_payment(
            db_session, payment_id=order_id, telegram_id=TELEGRAM_ID, amount=Decimal("5")
        )

    first = await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id="A"), now=NOW
    )
    intent_b = await crud.get_pending_payment(db_session, "B")
    assert intent_b.status == PaymentStatus.PENDING.value

    second = await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id="B"), now=NOW
    )

    assert first.status == PurchaseStatus.COMPLETED
    assert second.status == PurchaseStatus.COMPLETED
    assert second.fractional_balance == Decimal("600")
    for order_id in ("A", "B"):
        payment = await crud.get_pending_payment(db_session, order_id)
        assert payment.is_credited


@pytest.mark.asyncio
async def test_keyless_payment_closes_latest_intent_of_same_amount(db_session, make_user):
    await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-5", telegram_id=TELEGRAM_ID, amount=Decimal("5")
    )
    await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-2", telegram_id=TELEGRAM_ID, amount=Decimal("2")
    )

    result = await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id=None), now=NOW
    )

    assert result.status == PurchaseStatus.COMPLETED
    assert result.fractional_balance == Decimal("300")

    closed = await crud.get_pending_payment(db_session, "intent-5")
    assert closed.status == PaymentStatus.COMPLETED.value
    assert closed.closed_by_payment_id == f"{TELEGRAM_ID}_42_5_20250315120000"
    assert not closed.is_credited

    other = await crud.get_pending_payment(db_session, "intent-2")
    assert other.status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_intent_closed_by_keyless_payment_is_still_claimable(db_session, make_user):
    await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-1", telegram_id=TELEGRAM_ID, amount=Decimal("5")
    )
    await PurchaseService.process_webhook_payment(db_session, payment_event(order_id=None), now=NOW)

    own = await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id="intent-1"), now=NOW
    )
    replay = await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id="intent-1"), now=NOW
    )

    assert own.status == PurchaseStatus.COMPLETED
    assert own.fractional_balance == Decimal("600")
    assert replay.status == PurchaseStatus.ALREADY_PROCESSED

    intent = await crud.get_pending_payment(db_session, "intent-1")
    assert intent.is_credited
    assert intent.closed_by_payment_id is None


@pytest.mark.asyncio
async def test_payment_status_is_visible_to_its_owner_only(db_session, make_user):
    buyer = await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    stranger = await make_user(now=NOW)
    buyer_id, stranger_id = buyer.id, stranger.id
    await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-1", telegram_id=TELEGRAM_ID, amount=Decimal("5")
    )

    status = await PurchaseService.get_payment_status(db_session, buyer_id, "intent-1")
    assert status["status"] == PaymentStatus.PENDING.value
    assert status["credited"] is False
    assert status["coins_amount"] == 300

    assert await PurchaseService.get_payment_status(db_session, stranger_id, "intent-1") is None
    assert await PurchaseService.get_payment_status(db_session, buyer_id, "missing") is None

    await PurchaseService.process_webhook_payment(
        db_session, payment_event(order_id="intent-1"), now=NOW
    )
    payments = await PurchaseService.get_telegram_payments(db_session, TELEGRAM_ID)

    assert [p["order_id"] for p in payments] == ["intent-1"]
    assert payments[0]["credited"] is True


@pytest.mark.asyncio
async def test_register_intent_for_unknown_user(db_session):
    intent = await PurchaseService.register_pending_payment(
        db_session, payment_id="intent-x", telegram_id=42, amount=Decimal("5")
    )

    assert intent is None


@pytest.mark.asyncio
async def test_webhook_crash_leaves_payment_retryable(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    user_id = user.id

    async def broken_grant(*args, **kwargs):
        raise RuntimeError("database went away")

    with monkeypatch.context() as patch:
        patch.setattr(CoinService, "grant_subscription_coins", broken_grant)
        with pytest.raises(RuntimeError):
            await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    payment = await crud.get_pending_payment(db_session, "order-1")
    assert payment.status == PaymentStatus.PENDING.value

    user = await reload_user(db_session, user_id)
    assert user.fractional_coin_balance == Decimal("0")

    retry = await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    assert retry.status == PurchaseStatus.COMPLETED
    assert retry.fractional_balance == Decimal("300")


# ============================================================================
# STORE PURCHASES
# ============================================================================


@pytest.mark.asyncio
async def test_store_purchase_credits_once(db_session, make_user):
    user = await make_user(now=NOW)

    first = await PurchaseService.verify_store_purchase(
        db_session, user.id, "google", receipt(), now=NOW
    )
    second = await PurchaseService.verify_store_purchase(
        db_session, user.id, "google", receipt(), now=NOW
    )

    assert first.status == PurchaseStatus.VERIFIED
    assert first.coins_added == 100
    assert first.fractional_balance == Decimal("100")

    assert second.success
    assert second.status == PurchaseStatus.ALREADY_VERIFIED
    assert second.coins_added == 0

    user = await reload_user(db_session, user.id)
    assert user.permanent_coins == Decimal("100")
    assert await count(db_session, PurchaseVerification) == 1

    history = await PurchaseService.get_purchase_history(db_session, user.id)
    assert [p["product_id"] for p in history] == ["lw_coins_100"]


@pytest.mark.asyncio
async def test_invalid_receipt_is_recorded_and_not_credited(db_session, make_user):
    user = await make_user(now=NOW)

    result = await PurchaseService.verify_store_purchase(
        db_session, user.id, "google", receipt(valid=False), now=NOW
    )

    assert result.status == PurchaseStatus.INVALID_RECEIPT
    record = await crud.get_purchase_verification(db_session, "google", "gp-token-1")
    assert record.verification_status == VerificationStatus.FAILED.value

    # A later valid verdict for the same token still credits once
    valid = await PurchaseService.verify_store_purchase(
        db_session, user.id, "google", receipt(), now=NOW
    )
    assert valid.status == PurchaseStatus.VERIFIED
    assert valid.fractional_balance == Decimal("100")


@pytest.mark.asyncio
async def test_unknown_product_is_rejected(db_session, make_user):
    user = await make_user(now=NOW)

    result = await PurchaseService.verify_store_purchase(
        db_session, user.id, "google", receipt(product_id="lw_coins_9999"), now=NOW
    )

    assert result.status == PurchaseStatus.INVALID_PACKAGE
    assert await count(db_session, PurchaseVerification) == 0


@pytest.mark.asyncio
async def test_token_owned_by_another_user(db_session, make_user):
    owner = await make_user(now=NOW)
    other = await make_user(now=NOW)

    await PurchaseService.verify_store_purchase(db_session, owner.id, "google", receipt(), now=NOW)
    result = await PurchaseService.verify_store_purchase(
        db_session, other.id, "google", receipt(), now=NOW
    )

    assert result.status == PurchaseStatus.OWNERSHIP_MISMATCH
    other = await reload_user(db_session, other.id)
    assert other.fractional_coin_balance == Decimal("0")


@pytest.mark.asyncio
async def test_store_purchase_for_unknown_user(db_session):
    result = await PurchaseService.verify_store_purchase(
        db_session, 999, "google", receipt(), now=NOW
    )

    assert result.status == PurchaseStatus.USER_NOT_FOUND


@pytest.mark.asyncio
async def test_subscription_product_grants_expiring_coins(db_session, make_user):
    user = await make_user(now=NOW)

    result = await PurchaseService.verify_store_purchase(
        db_session,
        user.id,
        "apple",
        receipt(product_id="dev.tfox.lw.subscription.monthly.basic", token="apple-tx-1"),
        now=NOW,
    )

    assert result.status == PurchaseStatus.VERIFIED
    assert result.duration_days == 30
    assert result.expires_at == NOW + timedelta(days=30)

    status = await PurchaseService.get_subscription_status(db_session, user.id, now=NOW)
    assert status["is_premium"] is False
    assert status["subscription_coins"] == Decimal("100")
    assert status["subscriptions"][0]["days_left"] == 30

    # Past expiry nothing is reported active
    later = await PurchaseService.get_subscription_status(
        db_session, user.id, now=NOW + timedelta(days=31)
    )
    assert later["subscriptions"] == []


@pytest.mark.asyncio
async def test_premium_product_unlocks_unlimited_usage(db_session, make_user):
    user = await make_user(now=NOW)

    result = await PurchaseService.verify_store_purchase(
        db_session,
        user.id,
        "google",
        receipt(product_id="lw_subscription_unlimited", token="gp-premium"),
        now=NOW,
    )

    assert result.status == PurchaseStatus.VERIFIED
    assert result.is_premium is True

    user = await reload_user(db_session, user.id)
    assert user.has_premium_subscription is True
    assert as_utc(user.premium_expires_at) == NOW + timedelta(days=30)

    status = await PurchaseService.get_subscription_status(db_session, user.id, now=NOW)
    assert status["is_premium"] is True


@pytest.mark.asyncio
async def test_crediting_failure_marks_record_failed(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW)
    user_id = user.id

    def broken_credit(*args, **kwargs):
        raise RuntimeError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr("lwfit.services.purchase_service.credit_bucket", broken_credit)
        with pytest.raises(RuntimeError):
            await PurchaseService.verify_store_purchase(
                db_session, user_id, "google", receipt(), now=NOW
            )

    record = await crud.get_purchase_verification(db_session, "google", "gp-token-1")
    assert record.verification_status == VerificationStatus.FAILED.value
    assert "disk full" in record.error_message

    user = await reload_user(db_session, user_id)
    assert user.fractional_coin_balance == Decimal("0")

    retry = await PurchaseService.verify_store_purchase(
        db_session, user_id, "google", receipt(), now=NOW
    )
    assert retry.status == PurchaseStatus.VERIFIED
    assert retry.fractional_balance == Decimal("100")


@pytest.mark.asyncio
async def test_lost_claim_credits_nothing(db_session, make_user):
    user = await make_user(now=NOW)
    user_id = user.id

    async def lost_claim() -> bool:
        return False

    credited = await PurchaseService._credit_locked(
        db_session,
        user_id,
        claim=lost_claim,
        coins=100,
        duration_days=0,
        price=Decimal("1.99"),
        is_premium=False,
        description="Concurrent duplicate",
        now=NOW,
    )

    assert credited is None
    user = await reload_user(db_session, user_id)
    assert user.fractional_coin_balance == Decimal("0")
    assert await count(db_session, CoinTransaction) == 0


def test_unsupported_store_platform():
    with pytest.raises(ValueError):
        get_store_adapter("windows")

    assert get_store_adapter("GOOGLE").platform == "google"


# ============================================================================
# CONCURRENT DELIVERIES
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_store_verifications_credit_once(session_maker, db_session, make_user):
    """Four devices submit the same purchase token at once: one credit"""
    user = await make_user(now=NOW)
    user_id = user.id

    async def verify_once():
        async with session_maker() as session:
            return await PurchaseService.verify_store_purchase(
                session, user_id, "google", receipt(), now=NOW
            )

    results = await asyncio.gather(*(verify_once() for _ in range(4)))

    assert [r.status for r in results].count(PurchaseStatus.VERIFIED) == 1
    assert [r.status for r in results].count(PurchaseStatus.ALREADY_VERIFIED) == 3

    user = await reload_user(db_session, user_id)
    assert user.permanent_coins == Decimal("100")
    assert await count(db_session, PurchaseVerification) == 1
    assert await count(db_session, CoinTransaction) == 1


@pytest.mark.asyncio
async def test_concurrent_webhook_deliveries_credit_once(session_maker, db_session, make_user):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    user_id = user.id

    async def deliver():
        async with session_maker() as session:
            return await PurchaseService.process_webhook_payment(session, payment_event(), now=NOW)

    results = await asyncio.gather(*(deliver() for _ in range(4)))

    assert [r.status for r in results].count(PurchaseStatus.COMPLETED) == 1
    assert [r.status for r in results].count(PurchaseStatus.ALREADY_PROCESSED) == 3

    user = await reload_user(db_session, user_id)
    assert user.subscription_coins == Decimal("300")
    assert await count(db_session, PendingPayment) == 1
    assert await count(db_session, Subscription) == 1


@pytest.mark.asyncio
async def test_verification_row_written_by_another_request_is_reread(db_session, make_user, monkeypatch):
    """Losing the insert race still credits through the winner's row"""
    user = await make_user(now=NOW)
    user_id = user.id
    create = crud.create_purchase_verification

    async def lost_insert(*args, **kwargs):
        await create(*args, **kwargs)
        return None, False

    monkeypatch.setattr(crud, "create_purchase_verification", lost_insert)

    result = await PurchaseService.verify_store_purchase(
        db_session, user_id, "google", receipt(), now=NOW
    )

    assert result.status == PurchaseStatus.VERIFIED
    assert result.fractional_balance == Decimal("100")


@pytest.mark.asyncio
async def test_unreadable_verification_row_reports_in_progress(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW)
    user_id = user.id

    async def lost_insert(*args, **kwargs):
        return None, False

    monkeypatch.setattr(crud, "create_purchase_verification", lost_insert)

    result = await PurchaseService.verify_store_purchase(
        db_session, user_id, "google", receipt(), now=NOW
    )

    assert not result.success
    assert result.status == PurchaseStatus.IN_PROGRESS
    user = await reload_user(db_session, user_id)
    assert user.fractional_coin_balance == Decimal("0")


@pytest.mark.asyncio
async def test_unreadable_payment_row_reports_in_progress(db_session, make_user, monkeypatch):
    user = await make_user(now=NOW, telegram_id=TELEGRAM_ID)
    user_id = user.id

    async def lost_insert(*args, **kwargs):
        return None, False

    monkeypatch.setattr(crud, "create_pending_payment", lost_insert)

    result = await PurchaseService.process_webhook_payment(db_session, payment_event(), now=NOW)

    assert result.status == PurchaseStatus.IN_PROGRESS
    user = await reload_user(db_session, user_id)
    assert user.fractional_coin_balance == Decimal("0")


# ============================================================================
# RESTORE / RECEIPT VALIDATION
# ============================================================================


@pytest.mark.asyncio
async def test_restore_credits_new_purchases_only(db_session, make_user):
    user = await make_user(now=NOW)
    user_id = user.id
    await PurchaseService.verify_store_purchase(
        db_session, user_id, "google", receipt(token="gp-old"), now=NOW
    )

    restored = await PurchaseService.restore_store_purchases(
        db_session,
        user_id,
        "google",
        [receipt(token="gp-old"), receipt(token="gp-new"), receipt(token="gp-bad", valid=False)],
        now=NOW,
    )

    assert restored["restored_count"] == 1
    assert restored["total_coins_restored"] == 100
    assert [r["status"] for r in restored["results"]] == [
        "already_verified",
        "verified",
        "invalid_receipt",
    ]

    new = await crud.get_purchase_verification(db_session, "google", "gp-new")
    assert new.is_restored is True
    user = await reload_user(db_session, user_id)
    assert user.permanent_coins == Decimal("200")


@pytest.mark.asyncio
async def test_development_validator_accepts_known_products():
    validator = DevelopmentReceiptValidator()

    known = await validator.validate("apple", "dev.tfox.lw.coins.50", "tx-1")
    unknown = await validator.validate("apple", "dev.tfox.lw.coins.9999", "tx-2")

    assert known.valid
    assert known.natural_key == "tx-1"
    assert known.price == Decimal("0.99")
    assert not unknown.valid


@pytest.mark.asyncio
async def test_receipt_validator_selection(monkeypatch):
    monkeypatch.setattr("lwfit.services.purchase_adapters.ENVIRONMENT", "production")
    validator = get_receipt_validator()

    assert isinstance(validator, UnconfiguredReceiptValidator)
    assert not (await validator.validate("google", "lw_coins_100", "gp-1")).valid

    monkeypatch.setattr("lwfit.services.purchase_adapters.ENVIRONMENT", "development")
    assert isinstance(get_receipt_validator(), DevelopmentReceiptValidator)

    installed = UnconfiguredReceiptValidator()
    set_receipt_validator(installed)
    try:
        assert get_receipt_validator() is installed
    finally:
        set_receipt_validator(None)
