"""
Module 'orders' (feature-first): calcul des totaux, stockage et création des commandes.
Les routes HTTP vivent dans storefront.orders.views (non importées ici).
"""

from .models import Order, OrderStatus, PaymentStatus, Provider, JointState
from .totals import compute_totals, price_items
from .repository import OrderStore, MemoryOrderStore, SupabaseOrderStore
from .service import OrderFactory

__all__ = [
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "Provider",
    "JointState",
    "compute_totals",
    "price_items",
    "OrderStore",
    "MemoryOrderStore",
    "SupabaseOrderStore",
    "OrderFactory",
]
