"""
Module 'payments' (feature-first): point d'entrée public.
Réunit prestataires, vérification des événements, moteur de réconciliation et remboursements.
"""

from .gateway import IntentSession, PaymentGateway, RefundReceipt, resolve_gateway
from .collaborators import CartService, InventoryService, NotificationService
from .reconciliation import ApplyResult, ApplyStatus, ReconciliationEngine, next_state
from .verifier import EventVerifier, normalize_stripe_event
from .intents import PaymentIntentIssuer
from .refunds import RefundHandler

__all__ = [
    # prestataires
    "IntentSession",
    "PaymentGateway",
    "RefundReceipt",
    "resolve_gateway",
    # collaborateurs
    "CartService",
    "InventoryService",
    "NotificationService",
    # réconciliation
    "ApplyResult",
    "ApplyStatus",
    "ReconciliationEngine",
    "next_state",
    "EventVerifier",
    "normalize_stripe_event",
    "PaymentIntentIssuer",
    "RefundHandler",
]
