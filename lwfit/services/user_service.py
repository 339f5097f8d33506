# coding: utf-8
"""
User Service - registration with one-time bonuses

User creation always succeeds on its own; the registration bonus and the
optional referral are applied afterwards and reported, never rolled back into it.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database import crud
from lwfit.database.models import User
from lwfit.services.bonus_service import BonusResult, BonusService
from lwfit.services.referral_service import ReferralResult, ReferralService


@dataclass
class RegistrationResult:
    """Result of UserService.register_user"""

    user: User
    registration_bonus: BonusResult
    referral: Optional[ReferralResult] = None


class UserService:
    """User lifecycle operations"""

    @staticmethod
    async def register_user(
        session: AsyncSession,
        email: Optional[str] = None,
        name: Optional[str] = None,
        telegram_id: Optional[int] = None,
        referral_code: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Create a user, grant the registration bonus and apply a referral code

        Args:
            session: Database session
            email: Email address
            name: Display name
            telegram_id: Telegram user ID
            referral_code: Code of the referring user, if any

        Returns:
            RegistrationResult (bonus failures are reported, not raised)
        """
        user = await crud.create_user(session, email=email, name=name, telegram_id=telegram_id)

        bonus = await BonusService.grant_registration_bonus(session, user.id)
        if not bonus.granted:
            logger.error(
                f"❌ User {user.id} registered without registration bonus: {bonus.error}"
            )

        referral = None
        if referral_code:
            referral = await ReferralService.apply_referral(session, user.id, referral_code)

        await session.refresh(user)
        logger.success(f"👤 User {user.id} registered (bonus: {bonus.status.value})")
        return RegistrationResult(user=user, registration_bonus=bonus, referral=referral)

    @staticmethod
    async def ensure_registration_bonus(session: AsyncSession, user_id: int) -> BonusResult:
        """
        Grant the registration bonus to a user that never received it

        Repairs users whose bonus failed after retry. No-op (ALREADY_GRANTED)
        when the bonus is already on the ledger.
        """
        return await BonusService.grant_registration_bonus(session, user_id)
