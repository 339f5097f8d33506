# coding: utf-8
"""
Tribute Service - Telegram payment webhooks

Functionality:
- HMAC-SHA256 signature check of the raw webhook body (trbt-signature header)
- Parsing webhook JSON into a WebhookPaymentEvent

Webhook shape:
    {
        "name": "new_digital_product",
        "created_at": "2025-01-01T12:00:00Z",
        "payload": {
            "product_id": 42,
            "telegram_user_id": 123456789,
            "amount": 5,
            "currency": "EUR",
            "order_id": "optional"
        }
    }
"""

import hashlib
import hmac
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from loguru import logger

from config.config import TRIBUTE_API_KEY
from lwfit.services.purchase_adapters import WebhookPaymentEvent


# The only event that carries a completed payment
PURCHASE_EVENT = "new_digital_product"


class TributeService:
    """Tribute webhook helpers"""

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else TRIBUTE_API_KEY

        if not self.webhook_secret:
            logger.warning("⚠️ TRIBUTE_API_KEY is not configured, webhooks will be rejected")

    def verify_signature(self, request_body: bytes, signature: Optional[str]) -> bool:
        """
        Verify webhook signature (HMAC-SHA256, lowercase hex)

        Args:
            request_body: Raw request body
            signature: Value of the trbt-signature header

        Returns:
            True if signature is valid
        """
        if not self.webhook_secret or not signature:
            return False

        expected_signature = hmac.new(
            self.webhook_secret.encode(),
            request_body,
            hashlib.sha256,
        ).hexdigest()

        is_valid = hmac.compare_digest(signature.strip().lower(), expected_signature)
        if not is_valid:
            logger.warning("❌ Invalid Tribute webhook signature")

        return is_valid

    @staticmethod
    def is_purchase_event(webhook_data: Dict[str, Any]) -> bool:
        return webhook_data.get("name") == PURCHASE_EVENT

    @staticmethod
    def parse_payment_event(webhook_data: Dict[str, Any]) -> WebhookPaymentEvent:
        """
        Build a payment event from webhook JSON

        Raises:
            ValueError: If payload, telegram_user_id or amount is missing/invalid
        """
        payload = webhook_data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("Invalid payload")

        telegram_id = payload.get("telegram_user_id")
        if telegram_id is None:
            raise ValueError("Missing telegram_user_id")

        try:
            amount = Decimal(str(payload.get("amount")))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {payload.get('amount')}")
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {payload.get('amount')}")

        product_id = payload.get("product_id")

        return WebhookPaymentEvent(
            order_id=payload.get("order_id"),
            amount=amount,
            telegram_id=int(telegram_id),
            status=payload.get("status", "completed"),
            currency=payload.get("currency") or "EUR",
            product_id=str(product_id) if product_id is not None else None,
            created_at=_parse_timestamp(webhook_data.get("created_at")),
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable webhook timestamp: {value}")
        return None


# Global singleton
_tribute_service: Optional[TributeService] = None


def get_tribute_service() -> TributeService:
    """Get global TributeService instance (singleton)"""
    global _tribute_service

    if _tribute_service is None:
        _tribute_service = TributeService()

    return _tribute_service
