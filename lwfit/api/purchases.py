# coding: utf-8
"""
Purchases API Endpoints
Store purchase verification and restore, subscription status,
purchase history and webhook payment status
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.api.auth import get_current_user
from lwfit.database.engine import get_session
from lwfit.database.models import PurchasePlatform, User
from lwfit.services.purchase_adapters import ReceiptValidator, get_receipt_validator
from lwfit.services.purchase_service import PurchaseResult, PurchaseService, PurchaseStatus

# Create router
router = APIRouter(prefix="/purchases", tags=["purchases"])


class VerifyGooglePurchaseRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=255)
    purchase_token: str = Field(..., min_length=1, max_length=4096)


class VerifyApplePurchaseRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=255)
    transaction_id: str = Field(..., min_length=1, max_length=255)


class RestoredPurchase(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=255)
    token: str = Field(..., min_length=1, max_length=4096, description="Purchase token / transaction id")


class RestorePurchasesRequest(BaseModel):
    platform: Literal["google", "apple"]
    purchases: List[RestoredPurchase] = Field(..., min_length=1, max_length=100)


def _purchase_response(result: PurchaseResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "status": result.status.value,
        "coins_added": result.coins_added,
        "duration_days": result.duration_days,
        "is_premium": result.is_premium,
        "fractional_balance": result.fractional_balance,
        "balance": result.balance,
        "expires_at": result.expires_at,
    }


async def _verify(
    session: AsyncSession,
    validator: ReceiptValidator,
    user: User,
    platform: str,
    product_id: str,
    token: str,
) -> Dict[str, Any]:
    receipt = await validator.validate(platform, product_id, token)
    result = await PurchaseService.verify_store_purchase(session, user.id, platform, receipt)

    if result.status == PurchaseStatus.IN_PROGRESS:
        raise HTTPException(status_code=409, detail="Purchase is being processed, retry later")

    return _purchase_response(result)


@router.post("/verify/google")
async def verify_google_purchase(
    request: VerifyGooglePurchaseRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    validator: ReceiptValidator = Depends(get_receipt_validator),
) -> Dict[str, Any]:
    """
    Verify a Google Play purchase and credit its coins
    """
    try:
        logger.info(f"🤖 Google Play verification: {request.product_id} for user {user.id}")
        return await _verify(
            session,
            validator,
            user,
            PurchasePlatform.GOOGLE.value,
            request.product_id,
            request.purchase_token,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Google Play verification failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify purchase")


@router.post("/verify/apple")
async def verify_apple_purchase(
    request: VerifyApplePurchaseRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    validator: ReceiptValidator = Depends(get_receipt_validator),
) -> Dict[str, Any]:
    """
    Verify an App Store purchase and credit its coins
    """
    try:
        logger.info(f"🍎 Apple verification: {request.product_id} for user {user.id}")
        return await _verify(
            session,
            validator,
            user,
            PurchasePlatform.APPLE.value,
            request.product_id,
            request.transaction_id,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Apple verification failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify purchase")


@router.post("/restore")
async def restore_purchases(
    request: RestorePurchasesRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    validator: ReceiptValidator = Depends(get_receipt_validator),
) -> Dict[str, Any]:
    """
    Restore store purchases made on another device
    """
    try:
        receipts = [
            await validator.validate(request.platform, p.product_id, p.token)
            for p in request.purchases
        ]
        return await PurchaseService.restore_store_purchases(
            session, user.id, request.platform, receipts
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Restoring {request.platform} purchases failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to restore purchases")


@router.get("/subscription")
async def get_subscription_status(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Get active subscriptions and premium status
    """
    try:
        status = await PurchaseService.get_subscription_status(session, user.id)
        if status is None:
            raise HTTPException(status_code=404, detail="User not found")
        return status

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching subscription status for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch subscription status")


@router.get("/history")
async def get_purchase_history(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    """
    Get verified store purchases, newest first
    """
    try:
        return await PurchaseService.get_purchase_history(session, user.id)

    except Exception as e:
        logger.exception(f"Error fetching purchases for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch purchases")


@router.get("/payments")
async def get_payments(
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    """
    Get Telegram payments and payment intents of the current user, newest first
    """
    try:
        if user.telegram_id is None:
            return []
        return await PurchaseService.get_telegram_payments(session, user.telegram_id, limit=limit)

    except Exception as e:
        logger.exception(f"Error fetching payments for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch payments")


@router.get("/payments/{order_id}")
async def get_payment_status(
    order_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Get status of one Telegram payment (for polling after checkout)
    """
    try:
        payment: Optional[Dict[str, Any]] = await PurchaseService.get_payment_status(
            session, user.id, order_id
        )
        if payment is None:
            raise HTTPException(status_code=404, detail="Payment not found")
        return payment

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error fetching payment {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch payment status")
