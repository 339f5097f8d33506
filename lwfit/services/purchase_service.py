# coding: utf-8
"""
Purchase Service - exactly-once crediting of store and webhook payments

Flow (store and webhook converge on _credit_locked):
1. Idempotency record is created first (PurchaseVerification / PendingPayment,
   unique on the natural key) and committed in `pending`
2. Under the user lock, one transaction performs the conditional
   pending/failed -> terminal status flip AND the coin grant
3. Only the caller whose flip hit the row credits; everyone else gets
   already_verified / already_processed

A crash during crediting rolls back both the flip and the grant, so the
record stays non-terminal and a retry re-attempts it.

Requests for the same natural key are serialized in-process by
purchase_lock; across processes the unique key and the conditional flip
keep a single winner.
"""

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database import crud
from lwfit.database.models import (
    CoinSource,
    CoinTransactionType,
    PendingPayment,
    Subscription,
    User,
    VerificationStatus,
)
from lwfit.services.coin_service import CoinService
from lwfit.services.entitlement_service import is_premium_active
from lwfit.services.ledger import credit_bucket, to_decimal, user_lock
from lwfit.services.purchase_adapters import (
    StoreReceipt,
    TributeAdapter,
    WebhookPaymentEvent,
    get_store_adapter,
)
from lwfit.utils.time_utils import as_utc, utc_now


# Per-purchase serialization point inside this process, keyed "{platform}:{natural_key}"
_purchase_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def purchase_lock(key: str) -> asyncio.Lock:
    """Get the asyncio lock guarding crediting of one purchase key"""
    lock = _purchase_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _purchase_locks[key] = lock
    return lock


class PurchaseStatus(str, Enum):
    """Outcome of a purchase crediting request"""

    VERIFIED = "verified"  # Store purchase credited now
    ALREADY_VERIFIED = "already_verified"  # Store purchase credited earlier
    COMPLETED = "completed"  # Webhook payment credited now
    ALREADY_PROCESSED = "already_processed"  # Webhook payment credited earlier
    INVALID_PACKAGE = "invalid_package"
    INVALID_RECEIPT = "invalid_receipt"
    USER_NOT_FOUND = "user_not_found"
    PAYMENT_FAILED = "payment_failed"
    OWNERSHIP_MISMATCH = "ownership_mismatch"  # Token already credited to another user
    IN_PROGRESS = "in_progress"  # Record owned by a concurrent request, retry later


@dataclass
class PurchaseResult:
    """Result of PurchaseService crediting operations"""

    success: bool
    status: PurchaseStatus
    coins_added: int = 0
    duration_days: int = 0
    is_premium: bool = False
    fractional_balance: Optional[Decimal] = None
    balance: Optional[int] = None
    subscription_id: Optional[int] = None
    expires_at: Optional[datetime] = None

    @property
    def credited(self) -> bool:
        return self.status in (PurchaseStatus.VERIFIED, PurchaseStatus.COMPLETED)


class PurchaseService:
    """Shared crediting engine for all payment platforms"""

    # ===========================
    # SHARED CREDITING
    # ===========================

    @staticmethod
    async def _credit_locked(
        session: AsyncSession,
        user_id: int,
        claim: Callable[[], Awaitable[bool]],
        coins: int,
        duration_days: int,
        price: Decimal,
        is_premium: bool,
        description: str,
        now: datetime,
        period: Optional[str] = None,
    ) -> Optional[Tuple[User, Optional[Subscription]]]:
        """
        Claim the idempotency record and grant the package in one transaction

        Args:
            claim: Conditional status flip, True if this caller won the record

        Returns:
            (user, subscription) or None if the record was already claimed
        """
        async with user_lock(user_id):
            try:
                user, _ = await CoinService.load_for_update(session, user_id, now)

                if not await claim():
                    await session.rollback()
                    return None

                subscription = None
                if duration_days > 0:
                    subscription = await CoinService.grant_subscription_coins(
                        session,
                        user,
                        coins,
                        duration_days,
                        price,
                        subscription_type="premium" if is_premium else "subscription",
                        now=now,
                        is_premium=is_premium,
                        period=period,
                    )
                else:
                    credit_bucket(
                        session,
                        user,
                        Decimal(coins),
                        CoinSource.PERMANENT,
                        CoinTransactionType.PURCHASE,
                        now,
                        description=description,
                        price=price,
                        period=period,
                    )

                await session.commit()
                return user, subscription
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    async def _balance_snapshot(session: AsyncSession, user_id: int) -> Tuple[Optional[Decimal], Optional[int]]:
        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            return None, None
        return user.fractional_coin_balance, user.coin_balance

    @staticmethod
    def _credited_result(
        status: PurchaseStatus,
        user: User,
        subscription: Optional[Subscription],
        coins: int,
        duration_days: int,
        is_premium: bool,
    ) -> PurchaseResult:
        return PurchaseResult(
            success=True,
            status=status,
            coins_added=coins,
            duration_days=duration_days,
            is_premium=is_premium,
            fractional_balance=user.fractional_coin_balance,
            balance=user.coin_balance,
            subscription_id=subscription.id if subscription else None,
            expires_at=as_utc(subscription.expires_at) if subscription else None,
        )

    # ===========================
    # STORE PURCHASES
    # ===========================

    @staticmethod
    async def verify_and_credit(
        session: AsyncSession,
        platform: str,
        natural_key: str,
        product_id: str,
        user_id: int,
        coins: int,
        duration_days: int,
        price: Decimal,
        is_premium: bool = False,
        is_restored: bool = False,
        now: Optional[datetime] = None,
    ) -> PurchaseResult:
        """
        Credit a validated store purchase exactly once

        Args:
            session: Database session
            platform: Store platform (google/apple)
            natural_key: Purchase token / transaction id
            product_id: Store product id
            user_id: Buyer
            coins: Coins the product grants
            duration_days: Subscription length, 0 for permanent coins
            price: Paid price
            is_premium: Product unlocks unlimited usage
            is_restored: Purchase restored on a new device
            now: Current time (defaults to utc_now)

        Returns:
            PurchaseResult

        Raises:
            Exception: Infrastructure errors during crediting, after the
                record was marked failed for a later retry
        """
        async with purchase_lock(f"{platform}:{natural_key}"):
            return await PurchaseService._verify_and_credit(
                session,
                platform,
                natural_key,
                product_id,
                user_id,
                coins,
                duration_days,
                to_decimal(price),
                is_premium,
                is_restored,
                now or utc_now(),
            )

    @staticmethod
    async def _verify_and_credit(
        session: AsyncSession,
        platform: str,
        natural_key: str,
        product_id: str,
        user_id: int,
        coins: int,
        duration_days: int,
        price: Decimal,
        is_premium: bool,
        is_restored: bool,
        now: datetime,
    ) -> PurchaseResult:
        if await crud.get_user(session, user_id) is None:
            logger.warning(f"Purchase {platform}/{natural_key[:16]} for unknown user {user_id}")
            return PurchaseResult(success=False, status=PurchaseStatus.USER_NOT_FOUND)

        if coins <= 0 and not is_premium:
            logger.warning(
                f"⚠️ Invalid package for {platform} product {product_id}: "
                f"coins={coins}, days={duration_days}, refusing to credit"
            )
            return PurchaseResult(success=False, status=PurchaseStatus.INVALID_PACKAGE)

        verification = await crud.get_purchase_verification(session, platform, natural_key)
        if verification is None:
            verification, _ = await crud.create_purchase_verification(
                session,
                user_id=user_id,
                platform=platform,
                purchase_token=natural_key,
                product_id=product_id,
                coins_amount=coins,
                duration_days=duration_days,
                price=price,
                is_restored=is_restored,
            )
            if verification is None:
                # Lost the insert race and the winner's row isn't readable yet
                verification = await crud.get_purchase_verification(session, platform, natural_key)
            if verification is None:
                logger.warning(f"Purchase {platform}/{natural_key[:16]} held by a concurrent request")
                return PurchaseResult(success=False, status=PurchaseStatus.IN_PROGRESS)

        if verification.user_id != user_id:
            logger.warning(
                f"🚨 Purchase token {natural_key[:16]} belongs to user {verification.user_id}, "
                f"claimed by user {user_id}"
            )
            return PurchaseResult(success=False, status=PurchaseStatus.OWNERSHIP_MISMATCH)

        if verification.verification_status == VerificationStatus.VERIFIED.value:
            return await PurchaseService._already(session, user_id, PurchaseStatus.ALREADY_VERIFIED)

        verification_id = verification.id
        try:
            credited = await PurchaseService._credit_locked(
                session,
                user_id,
                claim=lambda: crud.mark_purchase_verified(session, verification_id),
                coins=coins,
                duration_days=duration_days,
                price=price,
                is_premium=is_premium,
                description=f"Purchase {product_id} ({platform})",
                now=now,
            )
        except Exception as e:
            logger.exception(f"❌ Crediting {platform} purchase {natural_key[:16]} failed: {e}")
            await crud.mark_purchase_failed(session, verification_id, str(e))
            raise

        if credited is None:
            logger.info(f"Purchase {platform}/{natural_key[:16]} verified concurrently, skipping")
            return await PurchaseService._already(session, user_id, PurchaseStatus.ALREADY_VERIFIED)

        user, subscription = credited
        logger.success(
            f"🛒 {platform} purchase {product_id} verified for user {user_id}: "
            f"+{coins} coins, {duration_days} days, premium={is_premium}"
        )
        return PurchaseService._credited_result(
            PurchaseStatus.VERIFIED, user, subscription, coins, duration_days, is_premium
        )

    @staticmethod
    async def _already(
        session: AsyncSession, user_id: int, status: PurchaseStatus
    ) -> PurchaseResult:
        fractional, balance = await PurchaseService._balance_snapshot(session, user_id)
        return PurchaseResult(
            success=True,
            status=status,
            coins_added=0,
            fractional_balance=fractional,
            balance=balance,
        )

    @staticmethod
    async def verify_store_purchase(
        session: AsyncSession,
        user_id: int,
        platform: str,
        receipt: StoreReceipt,
        is_restored: bool = False,
        now: Optional[datetime] = None,
    ) -> PurchaseResult:
        """
        Credit a store purchase from a receipt validator's verdict

        Invalid receipts are recorded as failed verifications and never credited.

        Raises:
            ValueError: If the platform isn't supported
        """
        adapter = get_store_adapter(platform)

        if not receipt.valid:
            async with purchase_lock(f"{adapter.platform}:{receipt.natural_key}"):
                existing = await crud.get_purchase_verification(
                    session, adapter.platform, receipt.natural_key
                )
                if existing is None:
                    await crud.create_purchase_verification(
                        session,
                        user_id=user_id,
                        platform=adapter.platform,
                        purchase_token=receipt.natural_key,
                        product_id=receipt.product_id,
                        coins_amount=0,
                        duration_days=0,
                        price=to_decimal(receipt.price or 0),
                        is_restored=is_restored,
                        status=VerificationStatus.FAILED.value,
                        error_message="Receipt validation failed",
                    )
            logger.warning(
                f"❌ Invalid {adapter.platform} receipt for user {user_id}: {receipt.product_id}"
            )
            return PurchaseResult(success=False, status=PurchaseStatus.INVALID_RECEIPT)

        package = adapter.resolve_package(product_id=receipt.product_id)
        if package is None:
            return PurchaseResult(success=False, status=PurchaseStatus.INVALID_PACKAGE)

        return await PurchaseService.verify_and_credit(
            session,
            platform=adapter.platform,
            natural_key=receipt.natural_key,
            product_id=receipt.product_id,
            user_id=user_id,
            coins=package.coins,
            duration_days=package.duration_days,
            price=receipt.price if receipt.price is not None else package.price,
            is_premium=package.is_premium,
            is_restored=is_restored,
            now=now,
        )

    @staticmethod
    async def restore_store_purchases(
        session: AsyncSession,
        user_id: int,
        platform: str,
        receipts: List[StoreReceipt],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Re-submit a device's store purchases

        Purchases this user already got coins for are reported, not re-credited.

        Returns:
            Dict with restored_count, total_coins_restored and per-receipt results
        """
        results = []
        restored_count = 0
        total_coins = 0

        for receipt in receipts:
            result = await PurchaseService.verify_store_purchase(
                session, user_id, platform, receipt, is_restored=True, now=now
            )
            if result.credited:
                restored_count += 1
                total_coins += result.coins_added
            results.append(
                {
                    "product_id": receipt.product_id,
                    "status": result.status.value,
                    "coins_added": result.coins_added,
                }
            )

        logger.info(
            f"🔄 Restored {restored_count}/{len(receipts)} {platform} purchases "
            f"for user {user_id}: +{total_coins} coins"
        )
        return {
            "restored_count": restored_count,
            "total_coins_restored": total_coins,
            "results": results,
        }

    # ===========================
    # WEBHOOK PAYMENTS
    # ===========================

    @staticmethod
    async def register_pending_payment(
        session: AsyncSession,
        payment_id: str,
        telegram_id: int,
        amount: Decimal,
        currency: str = "EUR",
        package_id: Optional[str] = None,
    ) -> Optional[PendingPayment]:
        """
        Register a payment intent before the provider confirms it

        Returns:
            PendingPayment (existing one on repeat), None for unknown telegram users
        """
        user = await crud.get_user_by_telegram_id(session, telegram_id)
        if user is None:
            logger.warning(f"Pending payment {payment_id} for unknown telegram user {telegram_id}")
            return None

        coins, duration_days = TributeAdapter().determine_coins_from_amount(to_decimal(amount))
        payment, _ = await crud.create_pending_payment(
            session,
            payment_id=payment_id,
            telegram_id=telegram_id,
            user_id=user.id,
            amount=to_decimal(amount),
            currency=currency,
            package_id=package_id,
            coins_amount=coins,
            duration_days=duration_days,
        )
        return payment

    @staticmethod
    async def process_webhook_payment(
        session: AsyncSession,
        event: WebhookPaymentEvent,
        now: Optional[datetime] = None,
    ) -> PurchaseResult:
        """
        Credit a verified webhook payment exactly once

        The package is derived from the paid amount; unknown amounts credit
        nothing. Replays of the same event return ALREADY_PROCESSED.

        Only the record keyed by the event is completed. An event without an
        order id also closes the newest pending intent of the same amount,
        which its own payment can still claim later.

        Args:
            session: Database session
            event: Signature-verified payment event
            now: Current time (defaults to utc_now)

        Returns:
            PurchaseResult
        """
        async with purchase_lock(f"{TributeAdapter.platform}:{event.natural_key}"):
            return await PurchaseService._process_webhook_payment(
                session, event, now or utc_now()
            )

    @staticmethod
    async def _process_webhook_payment(
        session: AsyncSession, event: WebhookPaymentEvent, now: datetime
    ) -> PurchaseResult:
        adapter = TributeAdapter()
        payment_id = event.natural_key
        amount = to_decimal(event.amount)

        user = await crud.get_user_by_telegram_id(session, event.telegram_id)
        if user is None:
            logger.warning(f"⚠️ Payment {payment_id} for unknown telegram user {event.telegram_id}")
            return PurchaseResult(success=False, status=PurchaseStatus.USER_NOT_FOUND)
        user_id = user.id

        payment = await crud.get_pending_payment(session, payment_id)
        if payment is not None and payment.is_credited:
            logger.info(f"Payment {payment_id} already processed, skipping")
            return await PurchaseService._already(session, user_id, PurchaseStatus.ALREADY_PROCESSED)

        coins, duration_days = adapter.determine_coins_from_amount(amount)

        if payment is None and (event.is_failure or coins > 0):
            payment, _ = await crud.create_pending_payment(
                session,
                payment_id=payment_id,
                telegram_id=event.telegram_id,
                user_id=user_id,
                amount=amount,
                currency=event.currency,
                package_id=event.product_id,
                coins_amount=coins,
                duration_days=duration_days,
            )
            if payment is None:
                # Lost the insert race and the winner's row isn't readable yet
                payment = await crud.get_pending_payment(session, payment_id)
            if payment is None:
                logger.warning(f"Payment {payment_id} held by a concurrent request")
                return PurchaseResult(success=False, status=PurchaseStatus.IN_PROGRESS)
            if payment.is_credited:
                return await PurchaseService._already(session, user_id, PurchaseStatus.ALREADY_PROCESSED)

        if event.is_failure:
            await crud.fail_pending_payment(session, payment.id)
            logger.warning(f"Payment {payment_id} reported as {event.status}")
            return PurchaseResult(success=False, status=PurchaseStatus.PAYMENT_FAILED)

        if coins <= 0:
            logger.warning(
                f"⚠️ Unmapped payment {payment_id}: {amount} {event.currency} "
                f"from telegram user {event.telegram_id}, nothing credited"
            )
            return PurchaseResult(success=False, status=PurchaseStatus.INVALID_PACKAGE)

        pending_id = payment.id
        package = adapter.resolve_package(amount=amount)
        keyless = not event.order_id

        async def claim() -> bool:
            if not await crud.complete_pending_payment(session, pending_id):
                return False
            if keyless:
                # No order id to match: close the intent this payment most likely paid for
                await crud.close_latest_payment_intent(
                    session, event.telegram_id, amount, closed_by=payment_id, exclude_id=pending_id
                )
            return True

        try:
            credited = await PurchaseService._credit_locked(
                session,
                user_id,
                claim=claim,
                coins=coins,
                duration_days=duration_days,
                price=amount,
                is_premium=package.is_premium,
                description=f"Payment {amount} {event.currency} ({adapter.platform})",
                now=now,
                period=package.period,
            )
        except Exception as e:
            # Pending row untouched, the provider's retry re-attempts it
            logger.exception(f"❌ Crediting payment {payment_id} failed: {e}")
            raise

        if credited is None:
            logger.info(f"Payment {payment_id} processed concurrently, skipping")
            return await PurchaseService._already(session, user_id, PurchaseStatus.ALREADY_PROCESSED)

        user, subscription = credited
        logger.success(
            f"💳 Payment {payment_id} completed for user {user_id}: "
            f"+{coins} coins for {duration_days} days"
        )
        return PurchaseService._credited_result(
            PurchaseStatus.COMPLETED, user, subscription, coins, duration_days, package.is_premium
        )

    # ===========================
    # READ OPERATIONS
    # ===========================

    @staticmethod
    async def get_subscription_status(
        session: AsyncSession, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Active subscriptions and premium state of a user

        Returns:
            Status dict or None if user doesn't exist
        """
        now = now or utc_now()

        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            return None

        subscriptions = [
            s
            for s in await crud.get_active_subscriptions(session, user_id)
            if as_utc(s.expires_at) > now
        ]

        return {
            "user_id": user.id,
            "is_premium": is_premium_active(user, now),
            "premium_expires_at": as_utc(user.premium_expires_at),
            "subscription_coins": sum(
                (to_decimal(s.coins_remaining) for s in subscriptions), Decimal("0")
            ),
            "subscriptions": [
                {
                    "id": s.id,
                    "type": s.type,
                    "coins_granted": s.coins_granted,
                    "coins_remaining": s.coins_remaining,
                    "is_premium": s.is_premium,
                    "purchased_at": as_utc(s.purchased_at),
                    "expires_at": as_utc(s.expires_at),
                    "days_left": max(0, (as_utc(s.expires_at) - now).days),
                }
                for s in subscriptions
            ],
        }

    @staticmethod
    async def get_purchase_history(session: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
        """Verified store purchases of a user, newest first"""
        purchases = await crud.get_user_purchases(session, user_id)

        return [
            {
                "platform": p.platform,
                "product_id": p.product_id,
                "coins_amount": p.coins_amount,
                "duration_days": p.duration_days,
                "price": p.price,
                "is_restored": p.is_restored,
                "verified_at": as_utc(p.verified_at),
            }
            for p in purchases
        ]

    @staticmethod
    def _payment_view(payment: PendingPayment) -> Dict[str, Any]:
        return {
            "order_id": payment.payment_id,
            "status": payment.status,
            "credited": payment.is_credited,
            "closed_by_payment_id": payment.closed_by_payment_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "coins_amount": payment.coins_amount,
            "duration_days": payment.duration_days,
            "created_at": as_utc(payment.created_at),
            "completed_at": as_utc(payment.completed_at),
        }

    @staticmethod
    async def get_payment_status(
        session: AsyncSession, user_id: int, order_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Status of one webhook payment or intent

        Returns:
            Payment dict, None if it doesn't exist or belongs to someone else
        """
        payment = await crud.get_pending_payment(session, order_id)
        if payment is None or payment.user_id != user_id:
            return None
        return PurchaseService._payment_view(payment)

    @staticmethod
    async def get_telegram_payments(
        session: AsyncSession, telegram_id: int, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Webhook payments and intents of a telegram user, newest first"""
        payments = await crud.get_telegram_payments(session, telegram_id, limit=limit)
        return [PurchaseService._payment_view(p) for p in payments]
