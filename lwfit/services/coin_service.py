# coding: utf-8
"""
Coin Service - LW Coin balance engine

Handles:
- Balance reads (with in-memory monthly rollover / expiry projection)
- Spending coins on paid features (premium = free)
- Crediting coins (permanent / monthly / time-boxed subscription grants)
- Transaction history and usage limits

Consumption order for spends: monthly_free -> subscription -> permanent.
Expected outcomes (insufficient balance, duplicate one-time grant) are
returned as result objects, never raised.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.coins_config import (
    MONTHLY_ALLOWANCE,
    FEATURE_COSTS,
    PREMIUM_EXPIRY_WARNING_DAYS,
    SPEND_MAX_ATTEMPTS,
    get_feature_cost,
)
from lwfit.database import crud
from lwfit.database.models import (
    User,
    Subscription,
    CoinSource,
    CoinTransactionType,
)
from lwfit.services.entitlement_service import (
    EntitlementService,
    is_premium_active,
    project_entitlements,
)
from lwfit.services.ledger import (
    bucket_balances,
    credit_bucket,
    debit_bucket,
    display_balance,
    plan_consumption,
    to_decimal,
    user_lock,
)
from lwfit.utils.time_utils import (
    as_utc,
    start_of_month,
    start_of_next_month,
    usage_date,
    utc_now,
)


class SpendStatus(str, Enum):
    """Outcome of a spend request"""

    CHARGED = "charged"
    PREMIUM = "premium"  # Premium user, nothing charged
    FREE_FEATURE = "free_feature"  # Feature costs nothing
    INSUFFICIENT_BALANCE = "insufficient_balance"


class CreditStatus(str, Enum):
    """Outcome of a credit request"""

    CREDITED = "credited"
    ALREADY_GRANTED = "already_granted"  # Idempotency key seen before


@dataclass
class SpendResult:
    """Result of CoinService.spend"""

    success: bool
    status: SpendStatus
    charged: Decimal
    fractional_balance: Decimal
    balance: int
    sources: Dict[str, Decimal]

    @property
    def message(self) -> str:
        if self.status == SpendStatus.INSUFFICIENT_BALANCE:
            return "Insufficient LW Coins"
        return "OK"


@dataclass
class CreditResult:
    """Result of CoinService.add_coins / purchase_subscription_coins"""

    success: bool
    status: CreditStatus
    credited: Decimal
    fractional_balance: Decimal
    balance: int
    subscription_id: Optional[int] = None
    expires_at: Optional[datetime] = None


class CoinService:
    """Service for managing LW Coin balances"""

    # ===========================
    # LOCKED ROW HELPERS
    # ===========================

    @staticmethod
    async def load_for_update(
        session: AsyncSession, user_id: int, now: datetime
    ) -> tuple[User, List[Subscription]]:
        """
        Lock a user row and bring its entitlements up to date (flush only)

        Caller must hold user_lock(user_id).

        Raises:
            ValueError: If the user doesn't exist
        """
        user = await crud.get_user_for_update(session, user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")

        subscriptions = await EntitlementService.apply_pending_changes(session, user, now)
        return user, subscriptions

    @staticmethod
    async def grant_subscription_coins(
        session: AsyncSession,
        user: User,
        coins: int,
        duration_days: int,
        price: Decimal,
        subscription_type: str,
        now: datetime,
        is_premium: bool = False,
        period: Optional[str] = None,
    ) -> Subscription:
        """
        Create a time-boxed grant on a locked user row (flush only)

        Coins land in the subscription bucket and expire with the subscription.
        Premium grants extend premium_expires_at instead of adding coins.
        """
        expires_at = now + timedelta(days=duration_days)

        subscription = Subscription(
            user_id=user.id,
            type=subscription_type,
            price=price,
            coins_granted=Decimal(coins),
            coins_remaining=Decimal(coins),
            duration_days=duration_days,
            is_premium=is_premium,
            purchased_at=now,
            expires_at=expires_at,
            is_active=True,
        )
        session.add(subscription)
        await session.flush()

        if coins > 0:
            credit_bucket(
                session,
                user,
                Decimal(coins),
                CoinSource.SUBSCRIPTION,
                CoinTransactionType.PURCHASE,
                now,
                description=f"Subscription {subscription_type}: {coins} coins for {duration_days} days",
                price=price,
                period=period or f"{duration_days} days",
                expires_at=expires_at,
                subscription=subscription,
            )

        if is_premium:
            current_expiry = as_utc(user.premium_expires_at)
            base = current_expiry if is_premium_active(user, now) and current_expiry else now
            user.has_premium_subscription = True
            user.premium_expires_at = base + timedelta(days=duration_days)

        return subscription

    # ===========================
    # READ OPERATIONS
    # ===========================

    @staticmethod
    async def get_balance(
        session: AsyncSession, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Get user's effective coin balance

        A due month rollover and lapsed subscriptions are projected in memory,
        so this read never reports stale allowance even before a write applies them.

        Args:
            session: Database session
            user_id: User ID
            now: Current time (defaults to utc_now)

        Returns:
            Balance dict or None if user doesn't exist
        """
        now = now or utc_now()

        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            return None

        subscriptions = await crud.get_active_subscriptions(session, user_id)
        view = project_entitlements(user, subscriptions, now)

        return {
            "user_id": user.id,
            "fractional_balance": view.total,
            "balance": display_balance(view.total),
            "monthly_allowance": MONTHLY_ALLOWANCE,
            "monthly_used": view.monthly_coins_used,
            "monthly_remaining": view.monthly_coins,
            "subscription_coins": view.subscription_coins,
            "permanent_coins": view.permanent_coins,
            "is_premium": view.is_premium,
            "premium_expires_at": view.premium_expires_at,
            "premium_notification": CoinService._premium_notification(user, now),
            "next_refill_date": start_of_next_month(now),
        }

    @staticmethod
    def _premium_notification(user: User, now: datetime) -> Optional[Dict[str, Any]]:
        """Expiring-soon / expired notice for premium users"""
        expires_at = as_utc(user.premium_expires_at)
        if expires_at is None:
            return None

        if expires_at <= now:
            if not user.has_premium_subscription and now - expires_at > timedelta(
                days=PREMIUM_EXPIRY_WARNING_DAYS
            ):
                return None
            return {"type": "expired", "expires_at": expires_at, "days_left": 0}

        days_left = (expires_at - now).days
        if days_left < PREMIUM_EXPIRY_WARNING_DAYS:
            return {"type": "expiring_soon", "expires_at": expires_at, "days_left": days_left}

        return None

    @staticmethod
    async def get_transaction_history(
        session: AsyncSession,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Get user's coin ledger, newest first

        Returns:
            List of transaction dicts
        """
        transactions = await crud.get_coin_transactions(
            session, user_id, limit=limit, offset=offset, transaction_type=transaction_type
        )

        return [
            {
                "id": tx.id,
                "type": tx.type,
                "coin_source": tx.coin_source,
                "amount": tx.amount,
                "fractional_amount": tx.fractional_amount,
                "description": tx.description,
                "feature_used": tx.feature_used,
                "price": tx.price,
                "period": tx.period,
                "usage_date": tx.usage_date,
                "created_at": as_utc(tx.created_at),
                "expires_at": as_utc(tx.expires_at),
            }
            for tx in transactions
        ]

    @staticmethod
    async def get_limits(
        session: AsyncSession, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Monthly allowance and per-feature usage for the current month

        Returns:
            Dict with balance summary, feature usage and today's spend
        """
        now = now or utc_now()

        balance = await CoinService.get_balance(session, user_id, now=now)
        if balance is None:
            return None

        usage = await crud.get_feature_usage(session, user_id, since=start_of_month(now))
        spent_today = await crud.get_spent_on_day(session, user_id, usage_date(now))

        return {
            "balance": balance["balance"],
            "fractional_balance": balance["fractional_balance"],
            "is_premium": balance["is_premium"],
            "monthly_allowance": balance["monthly_allowance"],
            "monthly_used": balance["monthly_used"],
            "monthly_remaining": balance["monthly_remaining"],
            "next_refill_date": balance["next_refill_date"],
            "feature_usage": usage,
            "spent_today": spent_today,
            "feature_costs": dict(FEATURE_COSTS),
        }

    # ===========================
    # SPEND
    # ===========================

    @staticmethod
    async def spend(
        session: AsyncSession,
        user_id: int,
        amount: Decimal,
        description: Optional[str] = None,
        feature_used: Optional[str] = None,
        transaction_type: CoinTransactionType = CoinTransactionType.SPENT,
        now: Optional[datetime] = None,
    ) -> SpendResult:
        """
        Spend coins on a paid action

        Premium users are never charged (a zero-amount usage entry is still
        recorded). Otherwise the balance is checked and decremented under
        the per-user lock, the row lock and the optimistic version check.
        Insufficient balance changes nothing and returns success=False.

        Args:
            session: Database session
            user_id: User ID
            amount: Coins to spend (> 0)
            description: Ledger description
            feature_used: Paid feature identifier
            transaction_type: Ledger entry type
            now: Current time (defaults to utc_now)

        Returns:
            SpendResult

        Raises:
            ValueError: If amount <= 0 or user doesn't exist
            StaleDataError: If the row kept changing after SPEND_MAX_ATTEMPTS
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive, got {amount}")

        async with user_lock(user_id):
            for attempt in range(1, SPEND_MAX_ATTEMPTS + 1):
                try:
                    return await CoinService._spend_locked(
                        session,
                        user_id,
                        amount,
                        description,
                        feature_used,
                        transaction_type,
                        now or utc_now(),
                    )
                except StaleDataError:
                    await session.rollback()
                    if attempt == SPEND_MAX_ATTEMPTS:
                        logger.error(f"Spend for user {user_id} kept conflicting, giving up")
                        raise
                    logger.warning(
                        f"Balance of user {user_id} changed concurrently, "
                        f"retrying spend ({attempt}/{SPEND_MAX_ATTEMPTS})"
                    )
                except Exception:
                    await session.rollback()
                    raise

    @staticmethod
    async def _spend_locked(
        session: AsyncSession,
        user_id: int,
        amount: Decimal,
        description: Optional[str],
        feature_used: Optional[str],
        transaction_type: CoinTransactionType,
        now: datetime,
    ) -> SpendResult:
        user, subscriptions = await CoinService.load_for_update(session, user_id, now)

        if is_premium_active(user, now):
            debit_bucket(
                session,
                user,
                Decimal("0"),
                CoinSource.SUBSCRIPTION,
                transaction_type,
                now,
                description=description or f"Premium usage: {feature_used or 'feature'}",
                feature_used=feature_used,
            )
            await session.commit()

            logger.info(f"💎 Premium usage for user {user_id}: {feature_used} (requested {amount})")
            return SpendResult(
                success=True,
                status=SpendStatus.PREMIUM,
                charged=Decimal("0"),
                fractional_balance=user.fractional_coin_balance,
                balance=user.coin_balance,
                sources={},
            )

        balance = to_decimal(user.fractional_coin_balance)
        if balance < amount:
            # Lazy refill/expiry writes are kept, the spend itself changed nothing
            await session.commit()

            logger.warning(
                f"Insufficient coins for user {user_id}: balance={balance}, requested={amount}"
            )
            return SpendResult(
                success=False,
                status=SpendStatus.INSUFFICIENT_BALANCE,
                charged=Decimal("0"),
                fractional_balance=balance,
                balance=display_balance(balance),
                sources={},
            )

        plan = plan_consumption(bucket_balances(user), amount)
        sources: Dict[str, Decimal] = {}

        for source, drawn in plan:
            sources[source.value] = drawn

            if source == CoinSource.SUBSCRIPTION:
                CoinService._draw_from_subscriptions(
                    session, user, subscriptions, drawn, transaction_type, now, description, feature_used
                )
                continue

            debit_bucket(
                session,
                user,
                drawn,
                source,
                transaction_type,
                now,
                description=description,
                feature_used=feature_used,
            )
            if source == CoinSource.MONTHLY_FREE:
                user.monthly_coins_used = to_decimal(user.monthly_coins_used) + drawn

        await session.commit()

        logger.success(
            f"💸 User {user_id} spent {amount} coins on {feature_used or 'feature'} "
            f"({', '.join(f'{k}={v}' for k, v in sources.items())}), "
            f"balance={user.fractional_coin_balance}"
        )
        return SpendResult(
            success=True,
            status=SpendStatus.CHARGED,
            charged=amount,
            fractional_balance=user.fractional_coin_balance,
            balance=user.coin_balance,
            sources=sources,
        )

    @staticmethod
    def _draw_from_subscriptions(
        session: AsyncSession,
        user: User,
        subscriptions: List[Subscription],
        amount: Decimal,
        transaction_type: CoinTransactionType,
        now: datetime,
        description: Optional[str],
        feature_used: Optional[str],
    ) -> None:
        """Consume subscription coins, soonest-expiring subscription first"""
        remaining = amount

        for subscription in subscriptions:
            if remaining <= 0:
                break
            available = to_decimal(subscription.coins_remaining)
            if available <= 0:
                continue

            drawn = min(available, remaining)
            debit_bucket(
                session,
                user,
                drawn,
                CoinSource.SUBSCRIPTION,
                transaction_type,
                now,
                description=description,
                feature_used=feature_used,
                subscription=subscription,
            )
            remaining -= drawn

        if remaining > 0:
            # Bucket total and per-subscription remainders disagree; bucket is authoritative
            logger.warning(
                f"Subscription bucket of user {user.id} not backed by subscriptions ({remaining} unassigned)"
            )
            debit_bucket(
                session,
                user,
                remaining,
                CoinSource.SUBSCRIPTION,
                transaction_type,
                now,
                description=description,
                feature_used=feature_used,
            )

    @staticmethod
    async def spend_for_feature(
        session: AsyncSession,
        user_id: int,
        feature: str,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SpendResult:
        """
        Spend the configured cost of a feature

        Free features (cost 0) succeed without a ledger entry.
        """
        cost = get_feature_cost(feature)

        if cost <= 0:
            balance = await CoinService.get_balance(session, user_id, now=now)
            if balance is None:
                raise ValueError(f"User {user_id} not found")
            return SpendResult(
                success=True,
                status=SpendStatus.FREE_FEATURE,
                charged=Decimal("0"),
                fractional_balance=balance["fractional_balance"],
                balance=balance["balance"],
                sources={},
            )

        return await CoinService.spend(
            session,
            user_id,
            cost,
            description=description or f"AI feature: {feature}",
            feature_used=feature,
            now=now,
        )

    # ===========================
    # CREDIT
    # ===========================

    @staticmethod
    async def add_coins(
        session: AsyncSession,
        user_id: int,
        amount: Decimal,
        transaction_type: CoinTransactionType = CoinTransactionType.EARNED,
        description: Optional[str] = None,
        coin_source: CoinSource = CoinSource.PERMANENT,
        idempotency_key: Optional[str] = None,
        price: Optional[Decimal] = None,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditResult:
        """
        Credit coins to a bucket

        Idempotency is the caller's choice: pass idempotency_key for
        one-time grants, a repeated key returns ALREADY_GRANTED.

        Args:
            session: Database session
            user_id: User ID
            amount: Coins to add (> 0)
            transaction_type: Ledger entry type (earned/purchase/referral/registration)
            description: Ledger description
            coin_source: Target bucket (subscription coins go through
                purchase_subscription_coins)
            idempotency_key: Unique key for one-time grants
            price: Money paid, for purchases
            period: Purchased period, for purchases
            now: Current time (defaults to utc_now)

        Returns:
            CreditResult

        Raises:
            ValueError: If amount <= 0, source is subscription or user doesn't exist
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        if coin_source == CoinSource.SUBSCRIPTION:
            raise ValueError("Subscription coins require a subscription, use purchase_subscription_coins")

        now = now or utc_now()

        async with user_lock(user_id):
            try:
                user, _ = await CoinService.load_for_update(session, user_id, now)

                if idempotency_key and await crud.get_transaction_by_idempotency_key(
                    session, idempotency_key
                ):
                    await session.commit()
                    logger.info(f"Grant {idempotency_key} already applied, skipping")
                    return CoinService._already_granted(user)

                credit_bucket(
                    session,
                    user,
                    amount,
                    coin_source,
                    transaction_type,
                    now,
                    description=description,
                    price=price,
                    period=period,
                    idempotency_key=idempotency_key,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if idempotency_key is None:
                    raise
                # Concurrent grant with the same key won
                logger.info(f"Grant {idempotency_key} applied concurrently, skipping")
                user = await session.get(User, user_id, populate_existing=True)
                return CoinService._already_granted(user)
            except Exception:
                await session.rollback()
                raise

        logger.success(
            f"💰 User {user_id} +{amount} coins ({transaction_type.value}/{coin_source.value}), "
            f"balance={user.fractional_coin_balance}"
        )
        return CreditResult(
            success=True,
            status=CreditStatus.CREDITED,
            credited=amount,
            fractional_balance=user.fractional_coin_balance,
            balance=user.coin_balance,
        )

    @staticmethod
    def _already_granted(user: User) -> CreditResult:
        return CreditResult(
            success=True,
            status=CreditStatus.ALREADY_GRANTED,
            credited=Decimal("0"),
            fractional_balance=user.fractional_coin_balance,
            balance=user.coin_balance,
        )

    @staticmethod
    async def purchase_subscription_coins(
        session: AsyncSession,
        user_id: int,
        coins: int,
        duration_days: int,
        price: Decimal,
        subscription_type: str = "subscription",
        is_premium: bool = False,
        now: Optional[datetime] = None,
    ) -> CreditResult:
        """
        Grant time-boxed subscription coins (not idempotent)

        Purchases go through PurchaseService, which wraps this grant in an
        idempotency record.

        Returns:
            CreditResult with the created subscription
        """
        if duration_days <= 0:
            raise ValueError("Subscription duration must be positive")
        if coins < 0:
            raise ValueError("Subscription coins must not be negative")

        now = now or utc_now()

        async with user_lock(user_id):
            try:
                user, _ = await CoinService.load_for_update(session, user_id, now)
                subscription = await CoinService.grant_subscription_coins(
                    session,
                    user,
                    coins,
                    duration_days,
                    to_decimal(price),
                    subscription_type,
                    now,
                    is_premium=is_premium,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.success(
            f"🎫 User {user_id} subscription {subscription_type}: +{coins} coins "
            f"until {subscription.expires_at:%Y-%m-%d}"
        )
        return CreditResult(
            success=True,
            status=CreditStatus.CREDITED,
            credited=Decimal(coins),
            fractional_balance=user.fractional_coin_balance,
            balance=user.coin_balance,
            subscription_id=subscription.id,
            expires_at=subscription.expires_at,
        )
