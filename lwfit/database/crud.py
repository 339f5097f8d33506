"""
CRUD operations for LW Fitness backend

Async database operations using SQLAlchemy 2.0

Functions documented as "flush only" participate in the caller's transaction;
the caller commits. Everything else commits itself.
"""

import logging
import random
import string
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, update, delete, func, case, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database.models import (
    User,
    CoinTransaction,
    CoinTransactionType,
    Subscription,
    PurchaseVerification,
    VerificationStatus,
    PendingPayment,
    PaymentStatus,
    Referral,
    ExperienceTransaction,
    Goal,
    DailyGoalProgress,
    FoodIntake,
    Activity,
    DailySteps,
)
from lwfit.utils.time_utils import day_bounds, utc_now

logger = logging.getLogger(__name__)


# ===========================
# USER OPERATIONS
# ===========================


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    """
    Get user by ID

    Args:
        session: Database session
        user_id: User ID

    Returns:
        User or None if not found
    """
    return await session.get(User, user_id)


async def get_user_for_update(session: AsyncSession, user_id: int) -> Optional[User]:
    """
    Get user by ID with a row lock (SELECT ... FOR UPDATE)

    Always re-reads the row so balance decisions never use stale identity-map values.
    """
    stmt = (
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_telegram_id(session: AsyncSession, telegram_id: int) -> Optional[User]:
    """
    Get user by Telegram ID

    Args:
        session: Database session
        telegram_id: Telegram user ID

    Returns:
        User or None if not found
    """
    stmt = select(User).where(User.telegram_id == telegram_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    """Get user by email"""
    stmt = select(User).where(User.email == email)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_referral_code(session: AsyncSession, code: str) -> Optional[User]:
    """Get user owning a referral code"""
    stmt = select(User).where(User.referral_code == code.upper())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    email: Optional[str] = None,
    name: Optional[str] = None,
    telegram_id: Optional[int] = None,
) -> User:
    """
    Create new user with an empty coin balance

    The monthly allowance starts at the first month rollover.

    Args:
        session: Database session
        email: Email address
        name: Display name
        telegram_id: Telegram user ID

    Returns:
        Created User model
    """
    user = User(
        email=email,
        name=name,
        telegram_id=telegram_id,
        referral_code=await generate_referral_code(session),
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"User created: id={user.id}, email={email}, telegram_id={telegram_id}")
    return user


async def generate_referral_code(session: AsyncSession) -> str:
    """
    Generate unique referral code

    Returns:
        Unique referral code (8 characters, A-Z0-9)
    """
    while True:
        code = "".join(random.choices(string.ascii_uppercase + string.digits, k=8))

        stmt = select(User.id).where(User.referral_code == code)
        result = await session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return code


# ===========================
# COIN LEDGER
# ===========================


def add_coin_transaction(
    session: AsyncSession,
    user_id: int,
    fractional_amount: Decimal,
    amount: int,
    transaction_type: str,
    coin_source: str,
    usage_date: str,
    description: Optional[str] = None,
    feature_used: Optional[str] = None,
    price: Optional[Decimal] = None,
    period: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    subscription_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> CoinTransaction:
    """
    Append a ledger entry (flush only)

    Returns:
        Pending CoinTransaction added to the session
    """
    transaction = CoinTransaction(
        user_id=user_id,
        fractional_amount=fractional_amount,
        amount=amount,
        type=transaction_type,
        coin_source=coin_source,
        usage_date=usage_date,
        description=description,
        feature_used=feature_used,
        price=price,
        period=period,
        expires_at=expires_at,
        subscription_id=subscription_id,
        idempotency_key=idempotency_key,
    )
    session.add(transaction)
    return transaction


async def get_transaction_by_idempotency_key(
    session: AsyncSession, idempotency_key: str
) -> Optional[CoinTransaction]:
    """Get ledger entry by its idempotency key"""
    stmt = select(CoinTransaction).where(CoinTransaction.idempotency_key == idempotency_key)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_coin_transactions(
    session: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    transaction_type: Optional[str] = None,
) -> List[CoinTransaction]:
    """
    Get user's ledger entries, newest first

    Args:
        session: Database session
        user_id: User ID
        limit: Page size
        offset: Page offset
        transaction_type: Optional CoinTransactionType value filter

    Returns:
        List of CoinTransaction
    """
    stmt = select(CoinTransaction).where(CoinTransaction.user_id == user_id)

    if transaction_type:
        stmt = stmt.where(CoinTransaction.type == transaction_type)

    stmt = (
        stmt.order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_feature_usage(
    session: AsyncSession, user_id: int, since: datetime
) -> Dict[str, Dict[str, float]]:
    """
    Aggregate paid feature usage since a point in time

    Returns:
        {feature: {"count": uses, "coins": coins spent}}
    """
    stmt = (
        select(
            CoinTransaction.feature_used,
            func.count(func.distinct(CoinTransaction.created_at)),
            func.coalesce(func.sum(CoinTransaction.fractional_amount), 0),
        )
        .where(
            CoinTransaction.user_id == user_id,
            CoinTransaction.type == CoinTransactionType.SPENT.value,
            CoinTransaction.feature_used.is_not(None),
            CoinTransaction.created_at >= since,
        )
        .group_by(CoinTransaction.feature_used)
    )
    result = await session.execute(stmt)

    return {
        feature: {"count": int(count), "coins": abs(float(total))}
        for feature, count, total in result.all()
    }


async def get_spent_on_day(session: AsyncSession, user_id: int, usage_date: str) -> Decimal:
    """Total coins spent on a day bucket (positive number)"""
    stmt = select(func.coalesce(func.sum(CoinTransaction.fractional_amount), 0)).where(
        CoinTransaction.user_id == user_id,
        CoinTransaction.type == CoinTransactionType.SPENT.value,
        CoinTransaction.usage_date == usage_date,
    )
    result = await session.execute(stmt)
    return abs(Decimal(str(result.scalar_one())))


# ===========================
# SUBSCRIPTIONS
# ===========================


async def get_active_subscriptions(
    session: AsyncSession, user_id: int, for_update: bool = False
) -> List[Subscription]:
    """
    Get user's active subscriptions, soonest-expiring first

    Args:
        session: Database session
        user_id: User ID
        for_update: Lock rows (spend/expiry paths)

    Returns:
        List of Subscription (may include ones past expires_at not yet swept)
    """
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.is_active.is_(True))
        .order_by(Subscription.expires_at.asc(), Subscription.id.asc())
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_user_subscriptions(session: AsyncSession, user_id: int) -> List[Subscription]:
    """All subscriptions of a user, newest first"""
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.purchased_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# PURCHASE VERIFICATIONS
# ===========================


async def get_purchase_verification(
    session: AsyncSession, platform: str, purchase_token: str
) -> Optional[PurchaseVerification]:
    """Get verification record by natural key (platform, token)"""
    stmt = (
        select(PurchaseVerification)
        .where(
            PurchaseVerification.platform == platform,
            PurchaseVerification.purchase_token == purchase_token,
        )
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_purchase_verification(
    session: AsyncSession,
    user_id: int,
    platform: str,
    purchase_token: str,
    product_id: str,
    coins_amount: int,
    duration_days: int,
    price: Decimal,
    is_restored: bool = False,
    status: str = VerificationStatus.PENDING.value,
    error_message: Optional[str] = None,
) -> tuple[Optional[PurchaseVerification], bool]:
    """
    Create verification record, idempotent on (platform, token)

    Returns:
        (record, created) - created is False if a concurrent request won
    """
    try:
        async with session.begin_nested():
            verification = PurchaseVerification(
                user_id=user_id,
                platform=platform,
                purchase_token=purchase_token,
                product_id=product_id,
                coins_amount=coins_amount,
                duration_days=duration_days,
                price=price,
                is_restored=is_restored,
                verification_status=status,
                error_message=error_message,
            )
            session.add(verification)
        await session.commit()
        return verification, True
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Duplicate purchase verification blocked: {platform}/{purchase_token[:16]}")
        existing = await get_purchase_verification(session, platform, purchase_token)
        return existing, False


async def mark_purchase_verified(session: AsyncSession, verification_id: int) -> bool:
    """
    Transition pending/failed -> verified (flush only)

    Returns:
        True if this call performed the transition, False if already verified
    """
    stmt = (
        update(PurchaseVerification)
        .where(
            PurchaseVerification.id == verification_id,
            PurchaseVerification.verification_status.in_(
                [VerificationStatus.PENDING.value, VerificationStatus.FAILED.value]
            ),
        )
        .values(
            verification_status=VerificationStatus.VERIFIED.value,
            verified_at=utc_now(),
            error_message=None,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def mark_purchase_failed(
    session: AsyncSession, verification_id: int, error_message: str
) -> None:
    """Record a failed crediting attempt; verified records are never downgraded"""
    stmt = (
        update(PurchaseVerification)
        .where(
            PurchaseVerification.id == verification_id,
            PurchaseVerification.verification_status != VerificationStatus.VERIFIED.value,
        )
        .values(
            verification_status=VerificationStatus.FAILED.value,
            error_message=error_message[:1000],
        )
    )
    await session.execute(stmt)
    await session.commit()


async def get_user_purchases(session: AsyncSession, user_id: int) -> List[PurchaseVerification]:
    """User's verified store purchases, newest first"""
    stmt = (
        select(PurchaseVerification)
        .where(
            PurchaseVerification.user_id == user_id,
            PurchaseVerification.verification_status == VerificationStatus.VERIFIED.value,
        )
        .order_by(PurchaseVerification.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# PENDING (WEBHOOK) PAYMENTS
# ===========================


async def get_pending_payment(session: AsyncSession, payment_id: str) -> Optional[PendingPayment]:
    """Get webhook payment by provider payment ID"""
    stmt = (
        select(PendingPayment)
        .where(PendingPayment.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_pending_payment(
    session: AsyncSession,
    payment_id: str,
    telegram_id: int,
    user_id: int,
    amount: Decimal,
    currency: str = "EUR",
    package_id: Optional[str] = None,
    coins_amount: int = 0,
    duration_days: int = 0,
) -> tuple[Optional[PendingPayment], bool]:
    """
    Register a webhook payment intent, idempotent on payment_id

    Returns:
        (payment, created) - created is False if the payment already existed
    """
    try:
        async with session.begin_nested():
            payment = PendingPayment(
                payment_id=payment_id,
                telegram_id=telegram_id,
                user_id=user_id,
                amount=amount,
                currency=currency,
                package_id=package_id,
                coins_amount=coins_amount,
                duration_days=duration_days,
                status=PaymentStatus.PENDING.value,
            )
            session.add(payment)
        await session.commit()

        logger.info(f"Pending payment created: {payment_id} (telegram_id={telegram_id}, amount={amount})")
        return payment, True
    except IntegrityError:
        await session.rollback()
        existing = await get_pending_payment(session, payment_id)
        return existing, False


async def complete_pending_payment(session: AsyncSession, pending_id: int) -> bool:
    """
    Transition pending/failed -> completed (flush only)

    An intent closed by a keyless payment is still claimable by its own
    payment; the claim clears closed_by_payment_id.

    Returns:
        True if this call performed the transition
    """
    stmt = (
        update(PendingPayment)
        .where(
            PendingPayment.id == pending_id,
            or_(
                PendingPayment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
                and_(
                    PendingPayment.status == PaymentStatus.COMPLETED.value,
                    PendingPayment.closed_by_payment_id.is_not(None),
                ),
            ),
        )
        .values(
            status=PaymentStatus.COMPLETED.value,
            completed_at=utc_now(),
            closed_by_payment_id=None,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def fail_pending_payment(session: AsyncSession, pending_id: int) -> bool:
    """Mark a non-completed payment as failed"""
    stmt = (
        update(PendingPayment)
        .where(
            PendingPayment.id == pending_id,
            PendingPayment.status == PaymentStatus.PENDING.value,
        )
        .values(status=PaymentStatus.FAILED.value)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def close_latest_payment_intent(
    session: AsyncSession,
    telegram_id: int,
    amount: Decimal,
    closed_by: str,
    exclude_id: int,
) -> Optional[PendingPayment]:
    """
    Close the newest pending intent of the same amount (flush only)

    Used for payments that arrive without an order id: the intent they
    paid for can't be matched by key. The closing payment is recorded in
    closed_by_payment_id.
    """
    stmt = (
        select(PendingPayment)
        .where(
            PendingPayment.telegram_id == telegram_id,
            PendingPayment.status == PaymentStatus.PENDING.value,
            PendingPayment.amount == amount,
            PendingPayment.id != exclude_id,
        )
        .order_by(PendingPayment.created_at.desc(), PendingPayment.id.desc())
        .limit(1)
    )
    intent = (await session.execute(stmt)).scalar_one_or_none()

    if intent is not None:
        intent.status = PaymentStatus.COMPLETED.value
        intent.completed_at = utc_now()
        intent.closed_by_payment_id = closed_by
        await session.flush()
        logger.info(f"Payment intent {intent.payment_id} closed by keyless payment {closed_by}")

    return intent


async def get_telegram_payments(
    session: AsyncSession, telegram_id: int, limit: int = 20
) -> List[PendingPayment]:
    """Webhook payments and intents of a telegram user, newest first"""
    stmt = (
        select(PendingPayment)
        .where(PendingPayment.telegram_id == telegram_id)
        .order_by(PendingPayment.created_at.desc(), PendingPayment.id.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# REFERRAL OPERATIONS
# ===========================


async def get_referral_by_referee(session: AsyncSession, referee_id: int) -> Optional[Referral]:
    """Get referral record of a referred user"""
    stmt = select(Referral).where(Referral.referee_id == referee_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_referral(
    session: AsyncSession,
    referrer_id: int,
    referee_id: int,
    referral_code: str,
) -> Optional[Referral]:
    """
    Create referral relationship

    Args:
        session: Database session
        referrer_id: User who referred
        referee_id: User who was referred
        referral_code: Referral code used

    Returns:
        Created Referral model or None if validation fails
    """
    # Block self-referrals
    if referrer_id == referee_id:
        logger.warning(f"Self-referral blocked: user {referrer_id} tried to refer themselves")
        return None

    try:
        async with session.begin_nested():
            referral = Referral(
                referrer_id=referrer_id,
                referee_id=referee_id,
                referral_code=referral_code,
                bonus_granted=False,
            )
            session.add(referral)
            await session.execute(
                update(User).where(User.id == referee_id).values(referred_by_id=referrer_id)
            )
        await session.commit()
        await session.refresh(referral)

        logger.info(f"Referral created: {referrer_id} -> {referee_id} with code {referral_code}")
        return referral
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Duplicate referral blocked: {referrer_id} -> {referee_id}")
        return None


async def get_referrals(session: AsyncSession, referrer_id: int) -> List[Referral]:
    """Referrals made by a user, newest first"""
    stmt = (
        select(Referral)
        .where(Referral.referrer_id == referrer_id)
        .order_by(Referral.created_at.desc())
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_unrewarded_referrals(session: AsyncSession) -> List[Referral]:
    """Referrals whose referrer bonus was never marked granted, oldest first"""
    stmt = (
        select(Referral)
        .where(Referral.bonus_granted.is_(False))
        .order_by(Referral.created_at, Referral.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# EXPERIENCE
# ===========================


def add_experience_transaction(
    session: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    level_before: int,
    level_after: int,
    description: Optional[str] = None,
) -> ExperienceTransaction:
    """Append experience audit row (flush only)"""
    transaction = ExperienceTransaction(
        user_id=user_id,
        amount=amount,
        source=source,
        description=description,
        level_before=level_before,
        level_after=level_after,
    )
    session.add(transaction)
    return transaction


# ===========================
# GOALS
# ===========================


async def get_goal(session: AsyncSession, user_id: int, goal_id: int) -> Optional[Goal]:
    """Get user's goal by ID"""
    stmt = select(Goal).where(Goal.id == goal_id, Goal.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_goal(session: AsyncSession, user_id: int) -> Optional[Goal]:
    """Get user's active goal (newest if several slipped through)"""
    stmt = (
        select(Goal)
        .where(Goal.user_id == user_id, Goal.is_active.is_(True))
        .order_by(Goal.created_at.desc(), Goal.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_goals(session: AsyncSession, user_id: int) -> List[Goal]:
    """All goals of a user, newest first"""
    stmt = (
        select(Goal)
        .where(Goal.user_id == user_id)
        .order_by(Goal.created_at.desc(), Goal.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def deactivate_user_goals(session: AsyncSession, user_id: int) -> int:
    """
    Deactivate all active goals of a user (flush only)

    Returns:
        Number of goals deactivated
    """
    stmt = (
        update(Goal)
        .where(Goal.user_id == user_id, Goal.is_active.is_(True))
        .values(is_active=False, updated_at=utc_now())
    )
    result = await session.execute(stmt)
    return result.rowcount


async def delete_goal(session: AsyncSession, user_id: int, goal_id: int) -> bool:
    """
    Hard delete a goal and its daily progress

    Returns:
        True if deleted, False if not found
    """
    if await get_goal(session, user_id, goal_id) is None:
        return False

    await session.execute(delete(DailyGoalProgress).where(DailyGoalProgress.goal_id == goal_id))
    await session.execute(delete(Goal).where(Goal.id == goal_id, Goal.user_id == user_id))
    await session.commit()
    return True


async def get_daily_progress(
    session: AsyncSession, user_id: int, goal_id: int, progress_date: date
) -> Optional[DailyGoalProgress]:
    """Get progress row for (user, goal, date)"""
    stmt = (
        select(DailyGoalProgress)
        .where(
            DailyGoalProgress.user_id == user_id,
            DailyGoalProgress.goal_id == goal_id,
            DailyGoalProgress.progress_date == progress_date,
        )
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def upsert_daily_progress(
    session: AsyncSession,
    user_id: int,
    goal_id: int,
    progress_date: date,
    values: dict,
) -> DailyGoalProgress:
    """
    Insert or overwrite the progress row for (user, goal, date) (flush only)

    A concurrent insert of the same key is caught and turned into an update,
    so the key always converges to one row.
    """
    progress = await get_daily_progress(session, user_id, goal_id, progress_date)

    if progress is None:
        try:
            async with session.begin_nested():
                progress = DailyGoalProgress(
                    user_id=user_id, goal_id=goal_id, progress_date=progress_date, **values
                )
                session.add(progress)
            return progress
        except IntegrityError:
            logger.info(f"Concurrent progress insert for goal {goal_id} on {progress_date}, updating")
            progress = await get_daily_progress(session, user_id, goal_id, progress_date)

    for key, value in values.items():
        setattr(progress, key, value)
    await session.flush()
    return progress


async def get_latest_daily_progress(
    session: AsyncSession, goal_id: int
) -> Optional[DailyGoalProgress]:
    """Most recent dated progress row of a goal"""
    stmt = (
        select(DailyGoalProgress)
        .where(DailyGoalProgress.goal_id == goal_id)
        .order_by(DailyGoalProgress.progress_date.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_progress_history(
    session: AsyncSession,
    goal_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[DailyGoalProgress]:
    """Progress rows of a goal in [start_date, end_date], oldest first"""
    stmt = select(DailyGoalProgress).where(DailyGoalProgress.goal_id == goal_id)
    if start_date:
        stmt = stmt.where(DailyGoalProgress.progress_date >= start_date)
    if end_date:
        stmt = stmt.where(DailyGoalProgress.progress_date <= end_date)

    result = await session.execute(stmt.order_by(DailyGoalProgress.progress_date.asc()))
    return list(result.scalars().all())


async def get_goal_stats(session: AsyncSession, goal_id: int) -> dict:
    """
    Aggregate stats for a goal

    Returns:
        Dict with total_days, completed_days, average_progress
    """
    stmt = select(
        func.count(DailyGoalProgress.id),
        func.coalesce(func.sum(case((DailyGoalProgress.is_completed.is_(True), 1), else_=0)), 0),
        func.coalesce(func.avg(DailyGoalProgress.overall_progress), 0.0),
    ).where(DailyGoalProgress.goal_id == goal_id)
    total, completed, average = (await session.execute(stmt)).one()

    return {
        "total_days": int(total),
        "completed_days": int(completed),
        "average_progress": round(float(average), 1),
    }


# ===========================
# ACTIVITY / NUTRITION FACTS
# ===========================


def add_food_intake(
    session: AsyncSession,
    user_id: int,
    name: str,
    weight_grams: float,
    date_time: datetime,
    calories_per_100g: float = 0.0,
    protein_per_100g: float = 0.0,
    carbs_per_100g: float = 0.0,
    fats_per_100g: float = 0.0,
) -> FoodIntake:
    """Log a meal item (flush only)"""
    intake = FoodIntake(
        user_id=user_id,
        name=name,
        weight_grams=weight_grams,
        date_time=date_time,
        calories_per_100g=calories_per_100g,
        protein_per_100g=protein_per_100g,
        carbs_per_100g=carbs_per_100g,
        fats_per_100g=fats_per_100g,
    )
    session.add(intake)
    return intake


def add_activity(
    session: AsyncSession,
    user_id: int,
    activity_type: str,
    start_date: date,
    duration_minutes: int = 0,
    calories: Optional[int] = None,
) -> Activity:
    """Log a workout (flush only)"""
    activity = Activity(
        user_id=user_id,
        type=activity_type,
        start_date=start_date,
        duration_minutes=duration_minutes,
        calories=calories,
    )
    session.add(activity)
    return activity


async def set_daily_steps(session: AsyncSession, user_id: int, step_date: date, steps: int) -> DailySteps:
    """Set step count for a day (flush only)"""
    stmt = select(DailySteps).where(DailySteps.user_id == user_id, DailySteps.step_date == step_date)
    entry = (await session.execute(stmt)).scalar_one_or_none()

    if entry is None:
        entry = DailySteps(user_id=user_id, step_date=step_date, steps=steps)
        session.add(entry)
    else:
        entry.steps = steps

    await session.flush()
    return entry


async def get_nutrition_totals(session: AsyncSession, user_id: int, day: date) -> Dict[str, float]:
    """
    Sum a day's food intake

    Returns:
        Dict with calories, protein, carbs, fats
    """
    start, end = day_bounds(day)
    factor = FoodIntake.weight_grams / 100.0

    stmt = select(
        func.coalesce(func.sum(FoodIntake.calories_per_100g * factor), 0.0),
        func.coalesce(func.sum(FoodIntake.protein_per_100g * factor), 0.0),
        func.coalesce(func.sum(FoodIntake.carbs_per_100g * factor), 0.0),
        func.coalesce(func.sum(FoodIntake.fats_per_100g * factor), 0.0),
    ).where(
        FoodIntake.user_id == user_id,
        FoodIntake.date_time >= start,
        FoodIntake.date_time < end,
    )
    calories, protein, carbs, fats = (await session.execute(stmt)).one()

    return {
        "calories": float(calories),
        "protein": float(protein),
        "carbs": float(carbs),
        "fats": float(fats),
    }


async def get_activity_totals(session: AsyncSession, user_id: int, day: date) -> Dict[str, int]:
    """
    Sum a day's activity

    Returns:
        Dict with steps, workouts, active_minutes
    """
    steps_stmt = select(DailySteps.steps).where(
        DailySteps.user_id == user_id, DailySteps.step_date == day
    )
    steps = (await session.execute(steps_stmt)).scalar_one_or_none() or 0

    activity_stmt = select(
        func.count(Activity.id),
        func.coalesce(func.sum(Activity.duration_minutes), 0),
    ).where(Activity.user_id == user_id, Activity.start_date == day)
    workouts, minutes = (await session.execute(activity_stmt)).one()

    return {"steps": int(steps), "workouts": int(workouts), "active_minutes": int(minutes)}
