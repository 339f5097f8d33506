# coding: utf-8
"""
Entitlement Service - monthly allowance and lazy expiry

Handles:
- Monthly free allowance refill on calendar month rollover
- Lazy expiry of subscription coins past their expires_at
- Lazy premium expiry
- Read-only projection of all of the above for balance reads

No background scheduler: everything here runs right before a balance
read or write that depends on it.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from config.coins_config import MONTHLY_ALLOWANCE
from lwfit.database import crud
from lwfit.database.models import User, Subscription, CoinSource, CoinTransactionType
from lwfit.services.ledger import credit_bucket, debit_bucket, to_decimal, user_lock
from lwfit.utils.time_utils import as_utc, is_same_month, start_of_month, utc_now


@dataclass
class EntitlementView:
    """Effective coin buckets at a point in time (nothing persisted)"""

    monthly_coins: Decimal
    monthly_coins_used: Decimal
    subscription_coins: Decimal
    permanent_coins: Decimal
    is_premium: bool
    premium_expires_at: Optional[datetime]
    rollover_due: bool

    @property
    def total(self) -> Decimal:
        return self.monthly_coins + self.subscription_coins + self.permanent_coins


def is_premium_active(user: User, now: datetime) -> bool:
    """Premium flag set and not expired (no expiry date = lifetime)"""
    if not user.has_premium_subscription:
        return False
    expires_at = as_utc(user.premium_expires_at)
    return expires_at is None or expires_at > now


def is_rollover_due(user: User, now: datetime) -> bool:
    """True if the allowance counters refer to an earlier calendar month"""
    return not is_same_month(user.current_month_start, now)


def project_entitlements(
    user: User, subscriptions: Sequence[Subscription], now: datetime
) -> EntitlementView:
    """
    Compute effective buckets in memory

    Applies a due month rollover and lapsed subscriptions without writing,
    so a read never reports last month's leftovers or expired coins.
    """
    rollover_due = is_rollover_due(user, now)

    if rollover_due:
        monthly_coins = MONTHLY_ALLOWANCE
        monthly_used = Decimal("0")
    else:
        monthly_coins = to_decimal(user.monthly_coins)
        monthly_used = to_decimal(user.monthly_coins_used)

    subscription_coins = to_decimal(user.subscription_coins)
    for subscription in subscriptions:
        if subscription.is_active and as_utc(subscription.expires_at) <= now:
            subscription_coins -= to_decimal(subscription.coins_remaining)

    return EntitlementView(
        monthly_coins=monthly_coins,
        monthly_coins_used=monthly_used,
        subscription_coins=max(subscription_coins, Decimal("0")),
        permanent_coins=to_decimal(user.permanent_coins),
        is_premium=is_premium_active(user, now),
        premium_expires_at=as_utc(user.premium_expires_at),
        rollover_due=rollover_due,
    )


class EntitlementService:
    """Monthly refill and lazy expiry on a locked user row"""

    @staticmethod
    def apply_monthly_refill(session: AsyncSession, user: User, now: datetime) -> bool:
        """
        Reset the monthly bucket if a calendar month rollover is due (flush only)

        Leftover monthly coins are expired (audited), then the full allowance
        is granted as a refill entry.

        Returns:
            True if a rollover was applied
        """
        if not is_rollover_due(user, now):
            return False

        leftover = to_decimal(user.monthly_coins)
        if leftover > 0:
            debit_bucket(
                session,
                user,
                leftover,
                CoinSource.MONTHLY_FREE,
                CoinTransactionType.EXPIRED,
                now,
                description="Unused monthly coins expired",
            )

        credit_bucket(
            session,
            user,
            MONTHLY_ALLOWANCE,
            CoinSource.MONTHLY_FREE,
            CoinTransactionType.REFILL,
            now,
            description=f"Monthly allowance {now:%Y-%m}",
        )

        user.monthly_coins_used = Decimal("0")
        user.current_month_start = start_of_month(now)
        user.last_monthly_refill = now

        logger.info(
            f"🔄 Monthly refill for user {user.id}: +{MONTHLY_ALLOWANCE} "
            f"(expired leftover {leftover})"
        )
        return True

    @staticmethod
    def expire_subscription_coins(
        session: AsyncSession,
        user: User,
        subscriptions: Sequence[Subscription],
        now: datetime,
    ) -> List[Subscription]:
        """
        Expire coins of subscriptions past expires_at (flush only)

        Returns:
            Subscriptions deactivated by this call
        """
        expired = []

        for subscription in subscriptions:
            if not subscription.is_active or as_utc(subscription.expires_at) > now:
                continue

            remaining = min(
                to_decimal(subscription.coins_remaining), to_decimal(user.subscription_coins)
            )
            if remaining > 0:
                debit_bucket(
                    session,
                    user,
                    remaining,
                    CoinSource.SUBSCRIPTION,
                    CoinTransactionType.EXPIRED,
                    now,
                    description=f"Subscription {subscription.type} expired",
                    subscription=subscription,
                )

            subscription.coins_remaining = Decimal("0")
            subscription.is_active = False
            expired.append(subscription)

            logger.info(
                f"⌛ Subscription {subscription.id} of user {user.id} expired, "
                f"{remaining} coins removed"
            )

        return expired

    @staticmethod
    def expire_premium(user: User, now: datetime) -> bool:
        """Clear a lapsed premium flag (flush only)"""
        if user.has_premium_subscription and not is_premium_active(user, now):
            user.has_premium_subscription = False
            logger.info(f"Premium expired for user {user.id}")
            return True
        return False

    @staticmethod
    async def apply_pending_changes(
        session: AsyncSession, user: User, now: datetime
    ) -> List[Subscription]:
        """
        Apply every lazy entitlement change to a locked user row (flush only)

        Returns:
            The user's still-active subscriptions, soonest-expiring first
        """
        subscriptions = await crud.get_active_subscriptions(session, user.id, for_update=True)

        expired = EntitlementService.expire_subscription_coins(session, user, subscriptions, now)
        EntitlementService.apply_monthly_refill(session, user, now)
        EntitlementService.expire_premium(user, now)

        return [s for s in subscriptions if s not in expired]

    @staticmethod
    async def check_and_apply_monthly_refill(
        session: AsyncSession, user_id: int, now: Optional[datetime] = None
    ) -> bool:
        """
        Persist a due monthly rollover (and any lazy expiry) for a user

        Args:
            session: Database session
            user_id: User ID
            now: Current time (defaults to utc_now)

        Returns:
            True if a rollover was applied
        """
        now = now or utc_now()

        async with user_lock(user_id):
            try:
                user = await crud.get_user_for_update(session, user_id)
                if user is None:
                    raise ValueError(f"User {user_id} not found")

                rollover_due = is_rollover_due(user, now)
                await EntitlementService.apply_pending_changes(session, user, now)
                await session.commit()
                return rollover_due
            except Exception:
                await session.rollback()
                raise
