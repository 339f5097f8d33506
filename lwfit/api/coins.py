# coding: utf-8
"""
LW Coins API Endpoints
Balance, spending on paid features, ledger history and limits
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.coins_config import DEFAULT_FEATURE_COST, FEATURE_COSTS
from lwfit.api.auth import get_current_user
from lwfit.database.engine import get_session
from lwfit.database.models import User
from lwfit.services.coin_service import CoinService

# Create router
router = APIRouter(prefix="/coins", tags=["coins"])


# ===========================
# REQUEST / RESPONSE MODELS
# ===========================


class BalanceResponse(BaseModel):
    """User's effective coin balance"""

    balance: int
    fractional_balance: float
    monthly_allowance: float
    monthly_used: float
    monthly_remaining: float
    subscription_coins: float
    permanent_coins: float
    is_premium: bool
    premium_expires_at: Optional[datetime]
    premium_notification: Optional[Dict[str, Any]]
    next_refill_date: datetime


class SpendRequest(BaseModel):
    """Spend coins on a paid feature"""

    feature: str = Field(..., min_length=1, max_length=50)
    amount: Optional[float] = Field(None, gt=0, description="Defaults to the feature cost")
    description: Optional[str] = Field(None, max_length=500)


class SpendResponse(BaseModel):
    success: bool
    status: str
    charged: float
    balance: int
    fractional_balance: float
    sources: Dict[str, float]


class CoinTransactionResponse(BaseModel):
    """Individual ledger entry"""

    id: int
    type: str
    coin_source: str
    amount: int
    fractional_amount: float
    description: Optional[str]
    feature_used: Optional[str]
    price: Optional[float]
    period: Optional[str]
    usage_date: str
    created_at: datetime
    expires_at: Optional[datetime]


# ===========================
# ENDPOINTS
# ===========================


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """
    Get user's coin balance

    Returns:
        Balance with monthly allowance, bucket breakdown and premium info
    """
    try:
        balance = await CoinService.get_balance(session, user.id)
        if balance is None:
            raise HTTPException(status_code=404, detail="Balance not found")

        return BalanceResponse(**{k: v for k, v in balance.items() if k != "user_id"})

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching coin balance for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch balance")


@router.post("/spend", response_model=SpendResponse)
async def spend_coins(
    request: SpendRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """
    Spend coins on a paid feature

    Premium users are never charged.

    Errors:
        402: Insufficient balance
    """
    try:
        if request.amount is None:
            result = await CoinService.spend_for_feature(
                session, user.id, request.feature, description=request.description
            )
        else:
            result = await CoinService.spend(
                session,
                user.id,
                request.amount,
                description=request.description,
                feature_used=request.feature,
            )

        if not result.success:
            raise HTTPException(status_code=402, detail=result.message)

        return SpendResponse(
            success=True,
            status=result.status.value,
            charged=float(result.charged),
            balance=result.balance,
            fractional_balance=float(result.fractional_balance),
            sources={k: float(v) for k, v in result.sources.items()},
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error spending coins for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to spend coins")


@router.get("/transactions", response_model=List[CoinTransactionResponse])
async def get_transactions(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    limit: int = Query(50, ge=1, le=100, description="Number of transactions to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    transaction_type: Optional[str] = Query(None, description="Filter by transaction type"),
):
    """
    Get user's coin ledger, most recent first
    """
    try:
        transactions = await CoinService.get_transaction_history(
            session, user.id, limit=limit, offset=offset, transaction_type=transaction_type
        )
        return [CoinTransactionResponse(**tx) for tx in transactions]

    except Exception as e:
        logger.exception(f"Error fetching coin transactions for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch transactions")


@router.get("/limits")
async def get_limits(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Get monthly allowance usage and per-feature spend of the current month
    """
    try:
        limits = await CoinService.get_limits(session, user.id)
        if limits is None:
            raise HTTPException(status_code=404, detail="User not found")
        return limits

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching limits for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch limits")


@router.get("/costs")
async def get_feature_costs() -> Dict[str, Any]:
    """
    Coin cost of each paid feature (no auth required)
    """
    return {
        "costs": {feature: float(cost) for feature, cost in FEATURE_COSTS.items()},
        "default_cost": float(DEFAULT_FEATURE_COST),
    }
