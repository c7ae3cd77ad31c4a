"""Ledger Store repositories."""

from .catalog_repo import PlanRepository, ProductRepository
from .customer_repo import CustomerRepository
from .order_repo import OrderRepository
from .purchase_repo import PurchaseRepository
from .subscription_repo import SubscriptionRepository

__all__ = [
    "CustomerRepository",
    # Catalog
    "ProductRepository",
    "PlanRepository",
    # Ledger
    "OrderRepository",
    "SubscriptionRepository",
    "PurchaseRepository",
]
