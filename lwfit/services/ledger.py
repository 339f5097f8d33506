# coding: utf-8
"""
Coin ledger primitives

Bucket-level credit/debit on a locked User row plus the matching ledger
entry. Nothing here commits: callers (CoinService, EntitlementService,
PurchaseService) own the transaction and hold the per-user lock.

Invariant kept by every function:
    fractional_coin_balance == monthly_coins + subscription_coins + permanent_coins
    coin_balance == floor(fractional_coin_balance)
"""

import asyncio
import weakref
from datetime import datetime
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database.crud import add_coin_transaction
from lwfit.database.models import (
    User,
    Subscription,
    CoinTransaction,
    CoinTransactionType,
    CoinSource,
    COIN_CONSUMPTION_ORDER,
)
from lwfit.utils.time_utils import usage_date


# Per-user serialization point for balance writes inside this process.
# Cross-process races are caught by the row lock and User.version_id.
_user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def user_lock(user_id: int) -> asyncio.Lock:
    """Get the asyncio lock guarding balance writes of a user"""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


def to_decimal(value) -> Decimal:
    """Coerce int/float/str/Decimal to Decimal without float noise"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def display_balance(fractional: Decimal) -> int:
    """User-facing integer balance (never shows more than the user has)"""
    return int(to_decimal(fractional).to_integral_value(rounding=ROUND_FLOOR))


def rounded_credit(amount: Decimal) -> int:
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def rounded_debit(amount: Decimal) -> int:
    return -int(amount.to_integral_value(rounding=ROUND_CEILING))


_BUCKET_COLUMNS = {
    CoinSource.MONTHLY_FREE: "monthly_coins",
    CoinSource.SUBSCRIPTION: "subscription_coins",
    CoinSource.PERMANENT: "permanent_coins",
}


def bucket_balances(user: User) -> Dict[CoinSource, Decimal]:
    """Current bucket values of a user row"""
    return {source: to_decimal(getattr(user, column)) for source, column in _BUCKET_COLUMNS.items()}


def plan_consumption(
    buckets: Dict[CoinSource, Decimal], amount: Decimal
) -> List[Tuple[CoinSource, Decimal]]:
    """
    Split a spend across buckets in COIN_CONSUMPTION_ORDER

    Args:
        buckets: Available coins per source
        amount: Coins to spend (> 0)

    Returns:
        [(source, drawn)] for every bucket that contributes

    Raises:
        ValueError: If the buckets cannot cover the amount
    """
    remaining = amount
    plan = []

    for source in COIN_CONSUMPTION_ORDER:
        if remaining <= 0:
            break
        available = buckets.get(source, Decimal("0"))
        if available <= 0:
            continue
        drawn = min(available, remaining)
        plan.append((source, drawn))
        remaining -= drawn

    if remaining > 0:
        raise ValueError(f"Insufficient coins: short by {remaining}")

    return plan


def _sync_totals(user: User) -> None:
    total = sum(bucket_balances(user).values(), Decimal("0"))
    user.fractional_coin_balance = total
    user.coin_balance = display_balance(total)


def credit_bucket(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    source: CoinSource,
    transaction_type: CoinTransactionType,
    now: datetime,
    description: Optional[str] = None,
    price: Optional[Decimal] = None,
    period: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    subscription: Optional[Subscription] = None,
    idempotency_key: Optional[str] = None,
) -> CoinTransaction:
    """Add coins to a bucket and append the ledger entry"""
    column = _BUCKET_COLUMNS[source]
    setattr(user, column, to_decimal(getattr(user, column)) + amount)
    _sync_totals(user)

    transaction = add_coin_transaction(
        session,
        user_id=user.id,
        fractional_amount=amount,
        amount=rounded_credit(amount),
        transaction_type=transaction_type.value,
        coin_source=source.value,
        usage_date=usage_date(now),
        description=description,
        price=price,
        period=period,
        expires_at=expires_at,
        subscription_id=subscription.id if subscription else None,
        idempotency_key=idempotency_key,
    )
    transaction.created_at = now
    return transaction


def debit_bucket(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    source: CoinSource,
    transaction_type: CoinTransactionType,
    now: datetime,
    description: Optional[str] = None,
    feature_used: Optional[str] = None,
    subscription: Optional[Subscription] = None,
) -> CoinTransaction:
    """Remove coins from a bucket and append the (negative) ledger entry"""
    column = _BUCKET_COLUMNS[source]
    current = to_decimal(getattr(user, column))
    if amount > current:
        raise ValueError(f"Bucket {source.value} of user {user.id} cannot cover {amount}")

    setattr(user, column, current - amount)
    if subscription is not None:
        subscription.coins_remaining = to_decimal(subscription.coins_remaining) - amount
    _sync_totals(user)

    transaction = add_coin_transaction(
        session,
        user_id=user.id,
        fractional_amount=-amount,
        amount=rounded_debit(amount),
        transaction_type=transaction_type.value,
        coin_source=source.value,
        usage_date=usage_date(now),
        description=description,
        feature_used=feature_used,
        subscription_id=subscription.id if subscription else None,
    )
    transaction.created_at = now
    return transaction
