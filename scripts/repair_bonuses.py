"""
Grant one-time bonuses that never went through

- Registration bonus: users without a `registration` ledger entry
- Referral bonus: referrals still marked bonus_granted=False

Both flows log and continue when a grant still fails after its retry, so
this leaves them to be repaired here. Safe to run multiple times - every
bonus is keyed, nothing is credited twice.
"""
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from lwfit.database import crud
from lwfit.database.engine import dispose_engine, get_session_maker
from lwfit.database.models import CoinTransaction, CoinTransactionType, User
from lwfit.services.bonus_service import BonusStatus
from lwfit.services.referral_service import ReferralService
from lwfit.services.user_service import UserService


async def repair_registration_bonuses(session: AsyncSession) -> int:
    """
    Grant missing registration bonuses

    Returns:
        Number of users repaired
    """
    logger.info("🔍 Checking for users without registration bonus...")

    granted = select(CoinTransaction.user_id).where(
        CoinTransaction.type == CoinTransactionType.REGISTRATION.value
    )
    stmt = select(User.id).where(User.id.not_in(granted)).order_by(User.id)
    user_ids = list((await session.execute(stmt)).scalars().all())

    if not user_ids:
        logger.info("✅ All users already have their registration bonus!")
        return 0

    logger.info(f"📝 Found {len(user_ids)} users without registration bonus")

    repaired = 0
    for user_id in user_ids:
        result = await UserService.ensure_registration_bonus(session, user_id)

        if result.status == BonusStatus.GRANTED:
            repaired += 1
            logger.info(f"✅ Registration bonus granted to user {user_id}")
        elif result.status == BonusStatus.FAILED:
            logger.error(f"❌ Failed to grant bonus to user {user_id}: {result.error}")

    logger.info(f"🎉 Repaired {repaired} of {len(user_ids)} users")
    return repaired


async def repair_referral_bonuses(session: AsyncSession) -> int:
    """
    Grant referrer bonuses of referrals never marked rewarded

    Returns:
        Number of referrals repaired
    """
    logger.info("🔍 Checking for unrewarded referrals...")

    referrals = [(r.id, r.referrer_id) for r in await crud.get_unrewarded_referrals(session)]

    if not referrals:
        logger.info("✅ All referrals are rewarded!")
        return 0

    logger.info(f"📝 Found {len(referrals)} unrewarded referrals")

    repaired = 0
    for referral_id, referrer_id in referrals:
        result = await ReferralService.ensure_referral_bonus(session, referral_id, referrer_id)

        if result.granted:
            repaired += 1
            logger.info(f"✅ Referral {referral_id} rewarded (referrer {referrer_id}, {result.status.value})")
        else:
            logger.error(f"❌ Failed to reward referral {referral_id}: {result.error}")

    logger.info(f"🎉 Repaired {repaired} of {len(referrals)} referrals")
    return repaired


async def main():
    """Main entry point"""
    session_maker = get_session_maker()
    try:
        async with session_maker() as session:
            await repair_registration_bonuses(session)
            await repair_referral_bonuses(session)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
