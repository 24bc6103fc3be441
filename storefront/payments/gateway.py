"""
Interface commune des clients prestataires (Stripe, bKash, Nagad).
- mode "webhook": le prestataire pousse des événements signés (Stripe).
- mode "redirect": le client revient sur notre callback; le statut est revérifié côté serveur (wallets).
Les clients sont injectés (storefront.container) et remplaçables en tests.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional

from storefront.errors import RefundNotSupported, UnknownProvider
from storefront.orders.models import Order, Provider

WEBHOOK = "webhook"
REDIRECT = "redirect"


@dataclass
class IntentSession:
    """Artefact opaque renvoyé au client pour poursuivre le paiement."""
    provider: Provider
    intent_id: str
    artifact: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundReceipt:
    refund_id: str
    amount: Decimal
    status: str = "pending"


class PaymentGateway:
    name: Provider
    label: str = ""
    mode: str = WEBHOOK
    supported_currencies: FrozenSet[str] = frozenset()

    def supports_currency(self, currency: str) -> bool:
        return (currency or "").upper() in self.supported_currencies

    def create_intent(self, order: Order, *, idempotency_key: str) -> IntentSession:
        raise NotImplementedError

    def refund(
        self, order: Order, amount: Decimal, *, reason: Optional[str], idempotency_key: str
    ) -> RefundReceipt:
        raise RefundNotSupported()

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.name.value,
            "name": self.label or self.name.value,
            "mode": self.mode,
            "currencies": sorted(self.supported_currencies),
        }


def resolve_gateway(gateways: Mapping[Provider, PaymentGateway], provider: Any, *, mode: Optional[str] = None) -> PaymentGateway:
    """Résout un prestataire configuré; UnknownProvider s'il est inconnu, non configuré ou d'un autre mode."""
    try:
        key = Provider(str(getattr(provider, "value", provider)).lower())
    except ValueError:
        raise UnknownProvider()
    gateway = gateways.get(key)
    if gateway is None or (mode and gateway.mode != mode):
        raise UnknownProvider()
    return gateway
