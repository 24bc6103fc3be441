"""
Émission des intentions de paiement (Payment Intent Issuer).
- La commande doit appartenir au demandeur et être (pending, pending).
- Le prestataire reçoit exactement payment.amount dans payment.currency, avec une clé
  d'idempotence dérivée de la commande (une réémission renvoie la même intention chez Stripe).
- L'intention est rattachée par écriture conditionnelle; un prestataire injoignable
  laisse la commande inchangée (ProviderUnavailable).
"""
import logging
from typing import Any, Mapping, Optional

from storefront.errors import IntentConflict, OrderNotFound, ValidationError
from storefront.orders.models import PENDING_PAYMENT, Provider
from storefront.orders.repository import OrderStore
from storefront.payments.gateway import IntentSession, PaymentGateway, resolve_gateway

logger = logging.getLogger(__name__)


def intent_idempotency_key(order_id: str, provider: Provider) -> str:
    return f"order-{order_id}-{provider.value}-intent"


class PaymentIntentIssuer:
    def __init__(self, store: OrderStore, gateways: Mapping[Provider, PaymentGateway]):
        self.store = store
        self.gateways = gateways

    def issue(self, order_id: str, provider: Any, *, user_id: Optional[str] = None) -> IntentSession:
        """
        Crée (ou réémet) l'intention de paiement d'une commande.
        Erreurs: UnknownProvider, OrderNotFound (absente ou autre propriétaire), IntentConflict,
        ValidationError (devise non supportée), ProviderUnavailable.
        """
        gateway = resolve_gateway(self.gateways, provider)
        order = self.store.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound()
        if order.joint_state != PENDING_PAYMENT:
            raise IntentConflict()
        if not gateway.supports_currency(order.payment.currency):
            raise ValidationError(f"{gateway.name.value} ne supporte pas la devise {order.payment.currency}")

        session = gateway.create_intent(order, idempotency_key=intent_idempotency_key(order.id, gateway.name))
        updated = self.store.attach_intent(order.id, gateway.name, session.intent_id)
        if updated is None:
            logger.warning("payments.intents attach lost race order_id=%s intent_id=%s", order.id, session.intent_id)
            raise IntentConflict()
        logger.info("payments.intents issued order_id=%s provider=%s intent_id=%s amount=%s %s",
                    order.id, gateway.name.value, session.intent_id, order.payment.amount, order.payment.currency)
        return session
