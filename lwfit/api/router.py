"""
FastAPI Router for the LW Fitness API
"""

from fastapi import APIRouter

# Import sub-routers
from lwfit.api.coins import router as coins_router
from lwfit.api.goals import router as goals_router
from lwfit.api.profile import router as profile_router
from lwfit.api.purchases import router as purchases_router
from lwfit.api.referral import router as referral_router
from lwfit.api.webhooks_tribute import router as tribute_router


# Main router
router = APIRouter()

# Include sub-routers (they already carry their prefixes)
router.include_router(coins_router)  # LW Coins balance and spending
router.include_router(goals_router)  # Goals and daily progress
router.include_router(profile_router)  # Level and experience
router.include_router(referral_router)
router.include_router(purchases_router)  # Store purchases, subscriptions, payment status
router.include_router(tribute_router)  # Tribute webhook (public, signed)
