# coding: utf-8
"""
Tribute Webhook Handler

Processes Telegram digital product payments.

Security:
- HMAC-SHA256 of the raw body, keyed with TRIBUTE_API_KEY
- Signature in the trbt-signature header (lowercase hex)

Only `new_digital_product` events credit coins; other events are acknowledged.
"""

import json
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lwfit.database.engine import get_session
from lwfit.services.purchase_service import PurchaseService, PurchaseStatus
from lwfit.services.tribute_service import TributeService, get_tribute_service

router = APIRouter(prefix="/tribute", tags=["webhooks"])


class PendingPaymentRequest(BaseModel):
    """Payment intent registered by the bot before redirecting to Tribute"""

    order_id: str = Field(..., min_length=1, max_length=255)
    telegram_id: int
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("EUR", max_length=10)
    package_id: Optional[str] = Field(None, max_length=100)


@router.post("/webhook")
async def tribute_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    service: TributeService = Depends(get_tribute_service),
    trbt_signature: Optional[str] = Header(None),
):
    """
    Tribute payment webhook

    Returns:
        {"status": "ok", ...} when credited or ignored,
        {"status": "already_processed"} for replays
    """
    try:
        # Raw body (needed for signature verification)
        body = await request.body()

        if not trbt_signature:
            logger.warning("⚠️ Tribute webhook without signature")
            raise HTTPException(status_code=400, detail="Missing signature")

        if not service.verify_signature(body, trbt_signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            webhook_data = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid payload")
        if not isinstance(webhook_data, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")

        logger.info(f"📨 Tribute webhook: {webhook_data.get('name')}")

        if not service.is_purchase_event(webhook_data):
            return {"status": "ok", "message": "Event ignored"}

        try:
            event = service.parse_payment_event(webhook_data)
        except ValueError as e:
            logger.warning(f"⚠️ Invalid Tribute payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")

        result = await PurchaseService.process_webhook_payment(session, event)

        if result.status == PurchaseStatus.USER_NOT_FOUND:
            raise HTTPException(status_code=404, detail="User not found")
        if result.status == PurchaseStatus.INVALID_PACKAGE:
            raise HTTPException(status_code=400, detail="Unknown package amount")
        if result.status == PurchaseStatus.ALREADY_PROCESSED:
            return {"status": "already_processed"}
        if result.status == PurchaseStatus.PAYMENT_FAILED:
            return {"status": "ok", "message": "Payment failure recorded"}

        return {
            "status": "ok",
            "coins_added": result.coins_added,
            "duration_days": result.duration_days,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"❌ Error processing Tribute webhook: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/pending")
async def create_pending_payment(
    request: PendingPaymentRequest,
    session: AsyncSession = Depends(get_session),
):
    """
    Register a payment intent before the user pays
    """
    try:
        payment = await PurchaseService.register_pending_payment(
            session,
            payment_id=request.order_id,
            telegram_id=request.telegram_id,
            amount=request.amount,
            currency=request.currency,
            package_id=request.package_id,
        )
        if payment is None:
            raise HTTPException(status_code=400, detail="User not found")

        return {
            "success": True,
            "pending_payment_id": payment.id,
            "status": payment.status,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"❌ Error creating pending payment {request.order_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
