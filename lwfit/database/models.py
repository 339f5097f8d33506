"""
Database models for LW Fitness backend

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, date, UTC
from typing import Optional
from enum import Enum
from decimal import Decimal

from sqlalchemy import (
    String,
    BigInteger,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Numeric,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from lwfit.utils.time_utils import start_of_month, utc_now


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# Money-like quantities: 2 decimal places (fractional coin pricing)
CoinAmount = Numeric(12, 2, asdecimal=True)


# ===========================
# ENUMS
# ===========================


class CoinTransactionType(str, Enum):
    """Kind of economic event recorded in the coin ledger"""

    EARNED = "earned"  # Generic credit (admin grant, achievements)
    SPENT = "spent"  # Paid feature usage
    REFILL = "refill"  # Monthly free allowance granted
    PURCHASE = "purchase"  # Store/webhook purchase credit
    REFERRAL = "referral"  # Referral bonus
    REGISTRATION = "registration"  # One-time registration bonus
    EXPIRED = "expired"  # Monthly leftovers / lapsed subscription coins


class CoinSource(str, Enum):
    """Bucket a ledger entry drew from or added to"""

    MONTHLY_FREE = "monthly_free"  # Resets every calendar month
    SUBSCRIPTION = "subscription"  # Expires with its subscription
    PERMANENT = "permanent"  # Never expires


# Spend consumption order: expiring buckets first
COIN_CONSUMPTION_ORDER = (
    CoinSource.MONTHLY_FREE,
    CoinSource.SUBSCRIPTION,
    CoinSource.PERMANENT,
)


class PurchasePlatform(str, Enum):
    """Mobile store platforms"""

    GOOGLE = "google"
    APPLE = "apple"


class VerificationStatus(str, Enum):
    """Store purchase verification status"""

    PENDING = "pending"  # Record created, crediting not finished
    VERIFIED = "verified"  # Coins credited (terminal)
    FAILED = "failed"  # Invalid receipt or crediting error (retryable)


class PaymentStatus(str, Enum):
    """Webhook payment status"""

    PENDING = "pending"  # Payment intent registered
    COMPLETED = "completed"  # Coins credited (terminal)
    FAILED = "failed"  # Provider reported failure


class GoalType(str, Enum):
    """User goal profiles"""

    WEIGHT_LOSS = "weight_loss"
    WEIGHT_MAINTAIN = "weight_maintain"
    MUSCLE_GAIN = "muscle_gain"


# ===========================
# MODELS
# ===========================


class User(Base):
    """
    User model - identity and mutable economic state

    Coin balance is split into three buckets (see CoinSource):
    fractional_coin_balance == monthly_coins + subscription_coins + permanent_coins
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "fractional_coin_balance >= 0", name="ck_users_fractional_balance_non_negative"
        ),
        CheckConstraint("monthly_coins >= 0", name="ck_users_monthly_coins_non_negative"),
        CheckConstraint(
            "subscription_coins >= 0", name="ck_users_subscription_coins_non_negative"
        ),
        CheckConstraint("permanent_coins >= 0", name="ck_users_permanent_coins_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    email: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True, nullable=True, comment="Email address"
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Display name"
    )
    telegram_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        unique=True,
        index=True,
        nullable=True,
        comment="Telegram user ID (webhook payments are keyed by it)",
    )

    # Coin balance
    coin_balance: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="User-facing balance: floor(fractional_coin_balance)",
    )
    fractional_coin_balance: Mapped[Decimal] = mapped_column(
        CoinAmount,
        default=Decimal("0"),
        nullable=False,
        comment="Authoritative balance (sum of all buckets)",
    )
    monthly_coins: Mapped[Decimal] = mapped_column(
        CoinAmount,
        default=Decimal("0"),
        nullable=False,
        comment="Remaining monthly free allowance",
    )
    subscription_coins: Mapped[Decimal] = mapped_column(
        CoinAmount,
        default=Decimal("0"),
        nullable=False,
        comment="Remaining coins from active subscriptions",
    )
    permanent_coins: Mapped[Decimal] = mapped_column(
        CoinAmount,
        default=Decimal("0"),
        nullable=False,
        comment="Purchased/earned coins that never expire",
    )

    # Monthly allowance tracking
    monthly_coins_used: Mapped[Decimal] = mapped_column(
        CoinAmount,
        default=Decimal("0"),
        nullable=False,
        comment="Monthly allowance spent in the current month",
    )
    current_month_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: start_of_month(utc_now()),
        nullable=False,
        comment="Start of the month the allowance counters refer to",
    )
    last_monthly_refill: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the monthly allowance was last granted",
    )

    # Premium (unlimited usage)
    has_premium_subscription: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Premium = free feature usage"
    )
    premium_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Premium expiration"
    )

    # Gamification
    level: Mapped[int] = mapped_column(
        Integer, default=1, nullable=False, comment="Current level"
    )
    experience: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Cumulative experience"
    )

    # Referral program
    referral_code: Mapped[Optional[str]] = mapped_column(
        String(20), unique=True, index=True, nullable=True, comment="Own referral code"
    )
    referred_by_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Referrer user ID",
    )
    total_referrals: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Number of referred users"
    )
    total_referral_rewards: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Coins earned from referrals"
    )

    # Optimistic concurrency token for balance updates
    version_id: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Row version (optimistic locking)"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Registration timestamp",
    )

    __mapper_args__ = {"version_id_col": version_id}

    # Relationships
    subscriptions = relationship(
        "Subscription", back_populates="user", cascade="all, delete-orphan"
    )
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return (
            f"<User(id={self.id}, coins={self.fractional_coin_balance}, "
            f"premium={self.has_premium_subscription})>"
        )


class CoinTransaction(Base):
    """
    Coin ledger entry - append-only audit trail

    Never updated or deleted. The user's balance is a cached value
    (monthly refill resets are not a plain ledger sum).
    """

    __tablename__ = "coin_transactions"
    __table_args__ = (
        Index("ix_coin_transactions_user_created", "user_id", "created_at"),
        Index("ix_coin_transactions_user_usage_date", "user_id", "usage_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )

    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Rounded amount (negative for spend)",
    )
    fractional_amount: Mapped[Decimal] = mapped_column(
        CoinAmount,
        nullable=False,
        comment="Authoritative signed amount",
    )

    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="CoinTransactionType value",
    )
    coin_source: Mapped[str] = mapped_column(
        String(20),
        default=CoinSource.PERMANENT.value,
        nullable=False,
        comment="CoinSource value",
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Human readable description"
    )
    feature_used: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, index=True, comment="Paid feature (spend only)"
    )
    price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True, comment="Money paid (purchases only)"
    )
    period: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, comment="Purchased period, e.g. '30 days'"
    )
    usage_date: Mapped[str] = mapped_column(
        String(10), nullable=False, comment="Day bucket, yyyy-MM-dd"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Expiry of credited coins"
    )
    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        comment="Subscription this entry belongs to",
    )

    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Unique key for one-time grants (registration:<id>, referral:<id>)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Transaction timestamp",
    )

    def __repr__(self) -> str:
        return (
            f"<CoinTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"source={self.coin_source}, amount={self.fractional_amount})>"
        )


class Subscription(Base):
    """
    Subscription model - time-boxed coin grant

    is_active is flipped lazily once expires_at passes.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_active", "user_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )

    type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="Product/package identifier"
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False, comment="Price paid"
    )
    coins_granted: Mapped[Decimal] = mapped_column(
        CoinAmount, default=Decimal("0"), nullable=False, comment="Coins granted"
    )
    coins_remaining: Mapped[Decimal] = mapped_column(
        CoinAmount, default=Decimal("0"), nullable=False, comment="Coins not yet spent"
    )
    duration_days: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Subscription length in days"
    )
    is_premium: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Grants unlimited usage"
    )

    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Purchase timestamp",
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, comment="purchased_at + duration_days"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, comment="False once expired"
    )

    user = relationship("User", back_populates="subscriptions")

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"remaining={self.coins_remaining}, expires_at={self.expires_at})>"
        )


class PurchaseVerification(Base):
    """
    Store purchase idempotency record

    Exactly one record per (platform, purchase_token).
    """

    __tablename__ = "purchase_verifications"
    __table_args__ = (
        UniqueConstraint("platform", "purchase_token", name="uq_purchase_platform_token"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    platform: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="PurchasePlatform value"
    )
    purchase_token: Mapped[str] = mapped_column(
        String(512), nullable=False, comment="Purchase token / transaction id"
    )
    product_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Store product identifier"
    )
    verification_status: Mapped[str] = mapped_column(
        String(20),
        default=VerificationStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="VerificationStatus value",
    )
    coins_amount: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Coins granted by the product"
    )
    duration_days: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="0 = permanent coins"
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False, comment="Price paid"
    )
    is_restored: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Restored purchase"
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Last failure reason"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Request timestamp",
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When coins were credited"
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseVerification(id={self.id}, platform={self.platform}, "
            f"product={self.product_id}, status={self.verification_status})>"
        )


class PendingPayment(Base):
    """
    Webhook payment idempotency record

    Transitioned to completed exactly once by the webhook handler.
    """

    __tablename__ = "pending_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    payment_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, comment="Provider order/payment ID"
    )
    telegram_id: Mapped[int] = mapped_column(
        BigInteger, index=True, nullable=False, comment="Telegram user ID"
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Amount paid"
    )
    currency: Mapped[str] = mapped_column(
        String(10), default="EUR", nullable=False, comment="Currency code"
    )
    package_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, comment="Package identifier"
    )
    coins_amount: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Coins the package grants"
    )
    duration_days: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Package duration"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="PaymentStatus value",
    )
    closed_by_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Keyless payment that closed this intent without crediting it",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Payment intent timestamp",
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When coins were credited"
    )

    @property
    def is_credited(self) -> bool:
        """Completed by its own payment, not just closed by a keyless one"""
        return self.status == PaymentStatus.COMPLETED.value and self.closed_by_payment_id is None

    def __repr__(self) -> str:
        return (
            f"<PendingPayment(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Referral(Base):
    """
    Referral model - who referred whom

    A user can be referred only once (unique referee_id).
    """

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    referrer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID who referred (foreign key)",
    )
    referee_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        comment="User ID who was referred (foreign key)",
    )
    referral_code: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, comment="Referral code used"
    )
    reward_coins: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Coins granted to referrer"
    )
    bonus_granted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Has bonus been granted to referrer"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Referral creation timestamp",
    )

    def __repr__(self) -> str:
        return (
            f"<Referral(referrer_id={self.referrer_id}, referee_id={self.referee_id}, "
            f"bonus_granted={self.bonus_granted})>"
        )


class ExperienceTransaction(Base):
    """Experience grant audit row"""

    __tablename__ = "experience_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Experience gained")
    source: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="What granted the experience"
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Human readable description"
    )
    level_before: Mapped[int] = mapped_column(Integer, nullable=False, comment="Level before")
    level_after: Mapped[int] = mapped_column(Integer, nullable=False, comment="Level after")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Grant timestamp",
    )

    def __repr__(self) -> str:
        return f"<ExperienceTransaction(user_id={self.user_id}, amount={self.amount}, source={self.source})>"


class Goal(Base):
    """
    Goal model - user's nutrition/activity target profile

    At most one active goal per user.
    """

    __tablename__ = "goals"
    __table_args__ = (Index("ix_goals_user_active", "user_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    goal_type: Mapped[str] = mapped_column(
        String(30), nullable=False, comment="GoalType value"
    )

    # Targets (None = not tracked)
    target_calories: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="kcal/day")
    target_protein: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="g/day")
    target_carbs: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="g/day")
    target_fats: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="g/day")
    target_steps_per_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="Steps/day")
    target_workouts_per_week: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="Workouts/week"
    )
    target_active_minutes: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="Active minutes/day"
    )
    target_weight: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True, comment="Target weight, kg (informational)"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, comment="Only one active goal per user"
    )
    progress_percentage: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False, comment="Latest day's overall progress"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Goal creation timestamp",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
        comment="Last update timestamp",
    )

    user = relationship("User", back_populates="goals")
    daily_progress = relationship(
        "DailyGoalProgress", back_populates="goal", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Goal(id={self.id}, user_id={self.user_id}, type={self.goal_type}, "
            f"active={self.is_active}, progress={self.progress_percentage})>"
        )


class DailyGoalProgress(Base):
    """
    Daily goal progress - one row per (user, goal, date)

    Recomputation overwrites the row in place.
    """

    __tablename__ = "daily_goal_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "goal_id", "progress_date", name="uq_daily_goal_progress"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    goal_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("goals.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="Goal ID (foreign key)",
    )
    progress_date: Mapped[date] = mapped_column(Date, nullable=False, comment="Progress day")

    # Actual values
    actual_calories: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    actual_protein: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    actual_carbs: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    actual_fats: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    actual_steps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    actual_workouts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    actual_active_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    actual_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Per-metric progress (None = metric has no target)
    calories_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    protein_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    carbs_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fats_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    steps_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    workout_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    overall_progress: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False, comment="Mean of tracked metric progress"
    )
    is_completed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="overall >= completion threshold"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    goal = relationship("Goal", back_populates="daily_progress")

    def __repr__(self) -> str:
        return (
            f"<DailyGoalProgress(goal_id={self.goal_id}, date={self.progress_date}, "
            f"overall={self.overall_progress}, completed={self.is_completed})>"
        )


# ===========================
# ACTIVITY / NUTRITION FACTS
# ===========================


class FoodIntake(Base):
    """Logged meal item (nutrients per 100 g)"""

    __tablename__ = "food_intakes"
    __table_args__ = (Index("ix_food_intakes_user_time", "user_id", "date_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    weight_grams: Mapped[float] = mapped_column(Float, nullable=False)
    calories_per_100g: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    protein_per_100g: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    carbs_per_100g: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    fats_per_100g: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<FoodIntake(user_id={self.user_id}, name={self.name}, weight={self.weight_grams})>"


class Activity(Base):
    """Logged workout/activity"""

    __tablename__ = "activities"
    __table_args__ = (Index("ix_activities_user_date", "user_id", "start_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, comment="strength/cardio/...")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    calories: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Activity(user_id={self.user_id}, type={self.type}, date={self.start_date})>"


class DailySteps(Base):
    """Step count per day"""

    __tablename__ = "daily_steps"
    __table_args__ = (UniqueConstraint("user_id", "step_date", name="uq_daily_steps_user_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    step_date: Mapped[date] = mapped_column(Date, nullable=False)
    steps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<DailySteps(user_id={self.user_id}, date={self.step_date}, steps={self.steps})>"
