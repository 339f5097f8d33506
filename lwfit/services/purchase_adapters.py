# coding: utf-8
"""
Payment platform adapters

Each adapter turns what its platform reports (store product id or paid
amount) into a CoinPackage. Crediting itself lives in PurchaseService and
is shared by all platforms.

A StoreReceipt comes from a ReceiptValidator, a WebhookPaymentEvent from a
signature-checked webhook; both are trusted input by the time they get here.
Store validation itself is installed with set_receipt_validator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from loguru import logger

from config.config import ENVIRONMENT
from config.coins_config import (
    APP_STORE_PRODUCTS,
    GOOGLE_PLAY_PRODUCTS,
    CoinPackage,
    get_package_by_amount,
)
from lwfit.database.models import PurchasePlatform


# Webhook statuses that mean the money never arrived
FAILED_PAYMENT_STATUSES = frozenset({"failed", "cancelled", "canceled", "refunded", "expired"})


@dataclass(frozen=True)
class StoreReceipt:
    """Outcome of a store receipt validation"""

    valid: bool
    product_id: str
    natural_key: str  # Google purchase token / Apple transaction id
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class WebhookPaymentEvent:
    """Signature-verified payment notification"""

    order_id: Optional[str]
    amount: Decimal
    telegram_id: int
    status: str = "completed"
    currency: str = "EUR"
    product_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def natural_key(self) -> str:
        """Provider order id, or a key derived from the event when it has none"""
        if self.order_id:
            return str(self.order_id)

        created = f"{self.created_at:%Y%m%d%H%M%S}" if self.created_at else "unknown"
        return f"{self.telegram_id}_{self.product_id}_{self.amount}_{created}"

    @property
    def is_failure(self) -> bool:
        return self.status.lower() in FAILED_PAYMENT_STATUSES


class PurchaseAdapter(ABC):
    """Maps platform purchase data to a coin package"""

    platform: str

    @abstractmethod
    def resolve_package(
        self, product_id: Optional[str] = None, amount: Optional[Decimal] = None
    ) -> Optional[CoinPackage]:
        """
        Resolve a purchase to a package

        Returns:
            CoinPackage or None if the purchase maps to nothing
        """


class CatalogAdapter(PurchaseAdapter):
    """Store platforms identifying packages by product id"""

    catalog: Dict[str, CoinPackage] = {}

    def resolve_package(
        self, product_id: Optional[str] = None, amount: Optional[Decimal] = None
    ) -> Optional[CoinPackage]:
        package = self.catalog.get(product_id or "")
        if package is None:
            logger.warning(f"Unknown {self.platform} product: {product_id}")
        return package


class GooglePlayAdapter(CatalogAdapter):
    platform = PurchasePlatform.GOOGLE.value
    catalog = GOOGLE_PLAY_PRODUCTS


class AppStoreAdapter(CatalogAdapter):
    platform = PurchasePlatform.APPLE.value
    catalog = APP_STORE_PRODUCTS


class TributeAdapter(PurchaseAdapter):
    """Telegram payments: only the paid amount identifies the package"""

    platform = "tribute"

    def resolve_package(
        self, product_id: Optional[str] = None, amount: Optional[Decimal] = None
    ) -> Optional[CoinPackage]:
        if amount is None:
            return None
        try:
            package = get_package_by_amount(amount)
        except InvalidOperation:
            package = None

        if package is None:
            logger.warning(f"Unmapped payment amount: {amount}")
        return package

    def determine_coins_from_amount(self, amount: Decimal) -> Tuple[int, int]:
        """
        Coins and duration for a paid amount

        Returns:
            (coins, duration_days), (0, 0) for unrecognized amounts
        """
        package = self.resolve_package(amount=amount)
        if package is None:
            return 0, 0
        return package.coins, package.duration_days


_STORE_ADAPTERS: Dict[str, PurchaseAdapter] = {
    PurchasePlatform.GOOGLE.value: GooglePlayAdapter(),
    PurchasePlatform.APPLE.value: AppStoreAdapter(),
}


def get_store_adapter(platform: str) -> PurchaseAdapter:
    """
    Get adapter for a store platform

    Raises:
        ValueError: If the platform isn't supported
    """
    key = platform.value if isinstance(platform, PurchasePlatform) else str(platform).lower()
    adapter = _STORE_ADAPTERS.get(key)
    if adapter is None:
        raise ValueError(f"Unsupported purchase platform: {platform}")
    return adapter


class ReceiptValidator(ABC):
    """Turns what a store client sent into a StoreReceipt verdict"""

    @abstractmethod
    async def validate(self, platform: str, product_id: str, purchase_token: str) -> StoreReceipt:
        """
        Validate a store purchase

        Returns:
            StoreReceipt with valid=False when the store rejects it
        """


class DevelopmentReceiptValidator(ReceiptValidator):
    """Accepts every receipt for a known product. Development only"""

    async def validate(self, platform: str, product_id: str, purchase_token: str) -> StoreReceipt:
        package = get_store_adapter(platform).resolve_package(product_id=product_id)
        logger.warning(f"🧪 Accepting unverified {platform} receipt {purchase_token[:16]} (development)")
        return StoreReceipt(
            valid=package is not None,
            product_id=product_id,
            natural_key=purchase_token,
            price=package.price if package else None,
        )


class UnconfiguredReceiptValidator(ReceiptValidator):
    """Rejects everything until a store validator is installed"""

    async def validate(self, platform: str, product_id: str, purchase_token: str) -> StoreReceipt:
        logger.error(f"No {platform} receipt validator configured, rejecting {purchase_token[:16]}")
        return StoreReceipt(valid=False, product_id=product_id, natural_key=purchase_token)


_receipt_validator: Optional[ReceiptValidator] = None


def set_receipt_validator(validator: Optional[ReceiptValidator]) -> None:
    """Install the store receipt validator (None restores the default)"""
    global _receipt_validator
    _receipt_validator = validator


def get_receipt_validator() -> ReceiptValidator:
    """
    FastAPI Dependency: configured receipt validator

    Falls back to DevelopmentReceiptValidator in development and to
    UnconfiguredReceiptValidator everywhere else.
    """
    if _receipt_validator is not None:
        return _receipt_validator

    if ENVIRONMENT == "development":
        return DevelopmentReceiptValidator()
    return UnconfiguredReceiptValidator()
