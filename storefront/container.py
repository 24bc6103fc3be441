"""
Assemblage des services (store, prestataires, collaborateurs, moteur).
- build_services(): construit le graphe à partir de storefront.config; chaque pièce est injectable.
- get_services(request): dépendance FastAPI lisant app.state.services (posé par le lifespan).
Un prestataire n'est activé que si ses identifiants sont configurés.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request

from storefront import config
from storefront.orders.models import Provider
from storefront.orders.repository import MemoryOrderStore, OrderStore, SupabaseOrderStore
from storefront.orders.service import OrderFactory
from storefront.payments.bkash_client import BkashGateway
from storefront.payments.collaborators import (
    CartService,
    InventoryService,
    MemoryCartService,
    NotificationService,
    SupabaseCartService,
)
from storefront.payments.gateway import PaymentGateway
from storefront.payments.intents import PaymentIntentIssuer
from storefront.payments.nagad_client import NagadGateway
from storefront.payments.reconciliation import ReconciliationEngine
from storefront.payments.refunds import RefundHandler
from storefront.payments.stripe_client import StripeGateway
from storefront.payments.verifier import EventVerifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: OrderStore
    carts: CartService
    notifications: NotificationService
    inventory: InventoryService
    gateways: Dict[Provider, PaymentGateway]
    factory: OrderFactory
    issuer: PaymentIntentIssuer
    verifier: EventVerifier
    engine: ReconciliationEngine
    refunds: RefundHandler


def build_gateways() -> Dict[Provider, PaymentGateway]:
    gateways: Dict[Provider, PaymentGateway] = {}
    if config.STRIPE_SECRET_KEY:
        gateways[Provider.STRIPE] = StripeGateway()
    if config.BKASH_APP_KEY and config.BKASH_USERNAME:
        gateways[Provider.BKASH] = BkashGateway()
    if config.NAGAD_MERCHANT_ID and config.NAGAD_PRIVATE_KEY and config.NAGAD_PUBLIC_KEY:
        gateways[Provider.NAGAD] = NagadGateway()
    logger.info("payments gateways enabled=%s", sorted(p.value for p in gateways))
    return gateways


def build_services(
    *,
    store: Optional[OrderStore] = None,
    carts: Optional[CartService] = None,
    notifications: Optional[NotificationService] = None,
    inventory: Optional[InventoryService] = None,
    gateways: Optional[Dict[Provider, PaymentGateway]] = None,
    factory: Optional[OrderFactory] = None,
) -> Services:
    use_memory = config.ORDER_STORE == "memory"
    store = store or (MemoryOrderStore() if use_memory else SupabaseOrderStore())
    carts = carts or (MemoryCartService() if use_memory else SupabaseCartService())
    notifications = notifications or NotificationService()
    inventory = inventory or InventoryService()
    gateways = build_gateways() if gateways is None else gateways
    engine = ReconciliationEngine(store, notifications=notifications, inventory=inventory)
    return Services(
        store=store,
        carts=carts,
        notifications=notifications,
        inventory=inventory,
        gateways=gateways,
        factory=factory or OrderFactory(store),
        issuer=PaymentIntentIssuer(store, gateways),
        verifier=EventVerifier(gateways, store=store),
        engine=engine,
        refunds=RefundHandler(store, gateways, engine),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services
