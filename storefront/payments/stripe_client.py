"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.
- Clé API passée par requête (api_key=...), jamais via l'état global du module stripe.
- Chaque appel mutatif porte une clé d'idempotence; les erreurs réseau sont retentées
  avec la même clé (STRIPE_MAX_NETWORK_RETRIES).
- Webhooks: signature HMAC-SHA256 vérifiée par stripe.WebhookSignature avant tout parsing.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe

from storefront import config
from storefront.errors import InvalidSignature, ProviderUnavailable, ValidationError
from storefront.orders.models import Order, Provider
from storefront.orders.totals import to_minor_units
from storefront.payments.gateway import WEBHOOK, IntentSession, PaymentGateway, RefundReceipt

logger = logging.getLogger(__name__)

# module storefront.payments.stripe_client
class StripeGateway(PaymentGateway):
    name = Provider.STRIPE
    label = "Carte bancaire"
    mode = WEBHOOK
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "BDT"})

    def __init__(
        self,
        secret_key: str = config.STRIPE_SECRET_KEY,
        webhook_secret: str = config.STRIPE_WEBHOOK_SECRET,
        *,
        max_network_retries: int = config.STRIPE_MAX_NETWORK_RETRIES,
        tolerance: int = config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.max_network_retries = max(0, int(max_network_retries))
        self.tolerance = tolerance

    def _call(self, op: str, fn: Callable[..., Any], *, idempotency_key: str, **params) -> Any:
        if not self.secret_key:
            raise ProviderUnavailable("STRIPE_SECRET_KEY manquant")
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_network_retries + 2):
            try:
                return fn(api_key=self.secret_key, idempotency_key=idempotency_key, **params)
            except stripe.APIConnectionError as e:
                last_error = e
                logger.warning("payments.stripe.%s network error attempt=%s key=%s", op, attempt, idempotency_key)
            except stripe.StripeError as e:
                logger.exception("payments.stripe.%s failed key=%s", op, idempotency_key)
                raise ProviderUnavailable(getattr(e, "user_message", None) or "Erreur Stripe") from e
        raise ProviderUnavailable("Stripe injoignable") from last_error

    def create_intent(self, order: Order, *, idempotency_key: str) -> IntentSession:
        """
        Crée un PaymentIntent pour exactement payment.amount (en centimes).
        Retour: IntentSession avec artifact {client_secret, payment_intent_id}.
        """
        intent = self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            amount=to_minor_units(order.payment.amount),
            currency=order.payment.currency.lower(),
            automatic_payment_methods={"enabled": True},
            description=f"Order {order.order_number}",
            receipt_email=str(order.contact_info.email),
            metadata={"orderId": order.id, "orderNumber": order.order_number, "userId": order.user_id},
        )
        intent_id = getattr(intent, "id", None)
        if not intent_id:
            raise ProviderUnavailable("PaymentIntent Stripe invalide")
        return IntentSession(
            provider=self.name,
            intent_id=intent_id,
            artifact={"client_secret": getattr(intent, "client_secret", None), "payment_intent_id": intent_id},
        )

    def refund(self, order: Order, amount: Decimal, *, reason: Optional[str], idempotency_key: str) -> RefundReceipt:
        refund = self._call(
            "refund",
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            charge=order.payment.charge_id,
            amount=to_minor_units(amount),
            metadata={"orderId": order.id, "orderNumber": order.order_number, "reason": reason or ""},
        )
        return RefundReceipt(
            refund_id=getattr(refund, "id", None) or idempotency_key,
            amount=amount,
            status=getattr(refund, "status", None) or "pending",
        )

    def parse_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Valide la signature (Stripe-Signature + STRIPE_WEBHOOK_SECRET) puis décode le JSON.
        - Sans secret configuré ou sans en-tête: InvalidSignature (fermé par défaut).
        - Le corps n'est jamais interprété avant une signature valide.
        """
        if not self.webhook_secret or not sig_header:
            raise InvalidSignature()
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, sig_header, self.webhook_secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("payments.stripe.parse_webhook invalid signature")
            raise InvalidSignature() from e
        try:
            event = json.loads(text)
        except ValueError as e:
            raise ValidationError("Payload webhook invalide") from e
        if not isinstance(event, dict):
            raise ValidationError("Payload webhook invalide")
        return event
