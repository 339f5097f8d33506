# coding: utf-8
"""
Bonus Service - one-time registration and referral grants

Both grants are permanent coins, keyed by an idempotency key so they are
credited at most once. A failed grant is retried once; if it still fails
the error is logged and reported in BonusResult instead of raised, so the
flow that triggered it (user creation, referral) is never rolled back.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from config.coins_config import (
    BONUS_RETRY_ATTEMPTS,
    BONUS_RETRY_DELAY,
    REFERRAL_BONUS,
    REGISTRATION_BONUS,
)
from lwfit.database.models import CoinSource, CoinTransactionType
from lwfit.services.coin_service import CoinService, CreditResult, CreditStatus

# Create standard logger for tenacity
std_logger = logging.getLogger(__name__)


class BonusStatus(str, Enum):
    """Outcome of a one-time grant"""

    GRANTED = "granted"
    ALREADY_GRANTED = "already_granted"
    FAILED = "failed"


@dataclass
class BonusResult:
    """Result of a one-time grant"""

    status: BonusStatus
    amount: Decimal
    error: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.status != BonusStatus.FAILED


def registration_key(user_id: int) -> str:
    return f"registration:{user_id}"


def referral_key(referral_id: int) -> str:
    return f"referral:{referral_id}"


async def grant_with_retry(
    grant: Callable[[], Awaitable[CreditResult]], what: str
) -> BonusResult:
    """
    Run a grant, retrying once on storage errors

    Args:
        grant: Coroutine factory performing the credit
        what: Human readable grant name for logs

    Returns:
        BonusResult (FAILED after the retry is exhausted)
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SQLAlchemyError),
            stop=stop_after_attempt(BONUS_RETRY_ATTEMPTS),
            wait=wait_fixed(BONUS_RETRY_DELAY),
            before_sleep=before_sleep_log(std_logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await grant()
    except (SQLAlchemyError, RetryError) as e:
        logger.error(f"❌ {what} failed after {BONUS_RETRY_ATTEMPTS} attempts: {e}")
        return BonusResult(status=BonusStatus.FAILED, amount=Decimal("0"), error=str(e))

    if result.status == CreditStatus.ALREADY_GRANTED:
        return BonusResult(status=BonusStatus.ALREADY_GRANTED, amount=Decimal("0"))

    return BonusResult(status=BonusStatus.GRANTED, amount=result.credited)


class BonusService:
    """One-time coin grants"""

    @staticmethod
    async def grant_registration_bonus(session: AsyncSession, user_id: int) -> BonusResult:
        """
        Credit the registration bonus (once per user)

        Safe to call for existing users missing the bonus.
        """
        result = await grant_with_retry(
            lambda: CoinService.add_coins(
                session,
                user_id,
                REGISTRATION_BONUS,
                transaction_type=CoinTransactionType.REGISTRATION,
                description="Registration bonus",
                coin_source=CoinSource.PERMANENT,
                idempotency_key=registration_key(user_id),
            ),
            what=f"Registration bonus for user {user_id}",
        )

        if result.status == BonusStatus.GRANTED:
            logger.success(f"🎁 Registration bonus {REGISTRATION_BONUS} granted to user {user_id}")
        return result

    @staticmethod
    async def grant_referral_bonus(session: AsyncSession, referrer_id: int, referral_id: int) -> BonusResult:
        """Credit the referral bonus to a referrer (once per referral)"""
        result = await grant_with_retry(
            lambda: CoinService.add_coins(
                session,
                referrer_id,
                REFERRAL_BONUS,
                transaction_type=CoinTransactionType.REFERRAL,
                description="Referral bonus",
                coin_source=CoinSource.PERMANENT,
                idempotency_key=referral_key(referral_id),
            ),
            what=f"Referral bonus for user {referrer_id} (referral {referral_id})",
        )

        if result.status == BonusStatus.GRANTED:
            logger.success(f"🎁 Referral bonus {REFERRAL_BONUS} granted to user {referrer_id}")
        return result
