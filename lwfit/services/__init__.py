"""Coin, purchase and goal engines"""
from .coin_service import CoinService
from .entitlement_service import EntitlementService
from .purchase_service import PurchaseService
from .goal_service import GoalService

__all__ = ['CoinService', 'EntitlementService', 'PurchaseService', 'GoalService']
