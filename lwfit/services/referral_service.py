# coding: utf-8
"""
Referral Service - referral codes and referrer rewards

A user can be referred once; the referrer receives REFERRAL_BONUS
permanent coins once per referred signup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config.coins_config import REFERRAL_BONUS
from lwfit.database import crud
from lwfit.database.models import Referral, User
from lwfit.services.bonus_service import BonusResult, BonusService
from lwfit.utils.time_utils import as_utc


class ReferralStatus(str, Enum):
    """Outcome of applying a referral code"""

    APPLIED = "applied"
    INVALID_CODE = "invalid_code"
    SELF_REFERRAL = "self_referral"
    ALREADY_REFERRED = "already_referred"


@dataclass
class ReferralResult:
    """Result of ReferralService.apply_referral"""

    success: bool
    status: ReferralStatus
    referrer_id: Optional[int] = None
    bonus: Optional[BonusResult] = None


class ReferralService:
    """Referral program operations"""

    @staticmethod
    async def apply_referral(
        session: AsyncSession, referee_id: int, referral_code: str
    ) -> ReferralResult:
        """
        Link a user to the owner of a referral code and reward the referrer

        Args:
            session: Database session
            referee_id: User who signed up with the code
            referral_code: Code entered by the user

        Returns:
            ReferralResult
        """
        code = referral_code.strip().upper()
        referrer = await crud.get_user_by_referral_code(session, code)

        if referrer is None:
            logger.warning(f"Unknown referral code {code} used by user {referee_id}")
            return ReferralResult(success=False, status=ReferralStatus.INVALID_CODE)

        if referrer.id == referee_id:
            logger.warning(f"Self-referral blocked: user {referee_id}")
            return ReferralResult(success=False, status=ReferralStatus.SELF_REFERRAL)

        referrer_id = referrer.id

        if await crud.get_referral_by_referee(session, referee_id):
            return ReferralResult(
                success=False, status=ReferralStatus.ALREADY_REFERRED, referrer_id=referrer_id
            )

        referral = await crud.create_referral(session, referrer_id, referee_id, code)
        if referral is None:
            # Lost a race against another referral of the same user
            return ReferralResult(
                success=False, status=ReferralStatus.ALREADY_REFERRED, referrer_id=referrer_id
            )

        referral_id = referral.id
        bonus = await ReferralService.ensure_referral_bonus(session, referral_id, referrer_id)

        logger.info(
            f"🤝 Referral applied: {referrer_id} -> {referee_id}, bonus {bonus.status.value}"
        )
        return ReferralResult(
            success=True,
            status=ReferralStatus.APPLIED,
            referrer_id=referrer_id,
            bonus=bonus,
        )

    @staticmethod
    async def ensure_referral_bonus(
        session: AsyncSession, referral_id: int, referrer_id: int
    ) -> BonusResult:
        """
        Grant the bonus of a referral whose reward never went through

        Also finishes referrals where the coins were credited but the
        referral wasn't marked yet. No double credit: the grant is keyed
        per referral.
        """
        bonus = await BonusService.grant_referral_bonus(session, referrer_id, referral_id)

        if bonus.granted:
            await ReferralService._mark_rewarded(session, referral_id, referrer_id)
        return bonus

    @staticmethod
    async def _mark_rewarded(session: AsyncSession, referral_id: int, referrer_id: int) -> None:
        """Flip bonus_granted once and bump the referrer counters"""
        result = await session.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.bonus_granted.is_(False))
            .values(bonus_granted=True, reward_coins=int(REFERRAL_BONUS))
        )
        if result.rowcount != 1:
            await session.commit()
            return

        # Counters only, the balance columns (and version_id) stay untouched
        await session.execute(
            update(User)
            .where(User.id == referrer_id)
            .values(
                total_referrals=User.total_referrals + 1,
                total_referral_rewards=User.total_referral_rewards + int(REFERRAL_BONUS),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    @staticmethod
    async def get_referral_stats(session: AsyncSession, user_id: int) -> Optional[Dict[str, Any]]:
        """
        Get referral statistics for user

        Returns:
            Dict with code, counters and recent referrals, None if user doesn't exist
        """
        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            return None

        referrals = await crud.get_referrals(session, user_id)

        return {
            "referral_code": user.referral_code,
            "total_referrals": user.total_referrals,
            "total_rewards": user.total_referral_rewards,
            "reward_per_referral": int(REFERRAL_BONUS),
            "referrals": [
                {
                    "referee_id": r.referee_id,
                    "bonus_granted": r.bonus_granted,
                    "reward_coins": r.reward_coins,
                    "created_at": as_utc(r.created_at),
                }
                for r in referrals
            ],
        }
