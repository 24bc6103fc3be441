"""
Vérification et normalisation des notifications prestataires (Event Verifier & Normalizer).
- Webhooks signés (Stripe): signature vérifiée avant tout parsing, puis traduction en PaymentOutcome.
- Callbacks de redirection (bKash, Nagad): les paramètres de requête ne sont jamais crus;
  le statut est relu côté serveur auprès du prestataire.
Un événement hors taxonomie ne produit aucun outcome (journalisé, acquitté).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, NamedTuple, Optional

from storefront.errors import UnknownProvider, ValidationError
from storefront.orders.models import OutcomeKind, PaymentOutcome, Provider
from storefront.orders.repository import OrderStore
from storefront.orders.totals import from_minor_units
from storefront.payments.gateway import REDIRECT, WEBHOOK, PaymentGateway, resolve_gateway

logger = logging.getLogger(__name__)

STRIPE_EVENT_KINDS: Dict[str, OutcomeKind] = {
    "payment_intent.succeeded": OutcomeKind.SUCCEEDED,
    "payment_intent.payment_failed": OutcomeKind.FAILED,
    "payment_intent.canceled": OutcomeKind.CANCELED,
    "charge.refunded": OutcomeKind.REFUNDED,
    "charge.dispute.created": OutcomeKind.DISPUTED,
}

BKASH_STATUS_KINDS: Dict[str, OutcomeKind] = {
    "Completed": OutcomeKind.SUCCEEDED,
    "Cancelled": OutcomeKind.CANCELED,
    "Expired": OutcomeKind.CANCELED,
    "Failed": OutcomeKind.FAILED,
    "Declined": OutcomeKind.FAILED,
}

NAGAD_STATUS_KINDS: Dict[str, OutcomeKind] = {
    "Success": OutcomeKind.SUCCEEDED,
    "Cancelled": OutcomeKind.CANCELED,
    "Aborted": OutcomeKind.CANCELED,
    "Failed": OutcomeKind.FAILED,
}


class CallbackResult(NamedTuple):
    reference: str
    outcome: Optional[PaymentOutcome]


def callback_event_id(reference: str, kind: OutcomeKind) -> str:
    return f"callback:{reference}:{kind.value}"


def _occurred_at(created: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(created), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


def normalize_stripe_event(event: Mapping[str, Any]) -> Optional[PaymentOutcome]:
    """
    Traduit un événement Stripe (déjà authentifié) en PaymentOutcome.
    - payment_intent.*: l'objet est le PaymentIntent (id, latest_charge, amount_received, metadata.orderId)
    - charge.refunded: l'objet est la Charge (id, payment_intent)
    - charge.dispute.created: l'objet est le Dispute (charge, payment_intent)
    Retourne None pour tout autre type.
    """
    etype = event.get("type")
    kind = STRIPE_EVENT_KINDS.get(etype)
    if kind is None:
        logger.info("payments.verifier ignored stripe event type=%s id=%s", etype, event.get("id"))
        return None
    event_id = event.get("id")
    if not event_id:
        raise ValidationError("Événement Stripe sans identifiant")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    intent_id = charge_id = None
    amount = None
    match kind:
        case OutcomeKind.SUCCEEDED | OutcomeKind.FAILED | OutcomeKind.CANCELED:
            intent_id = obj.get("id")
            if kind is OutcomeKind.SUCCEEDED:
                charge_id = obj.get("latest_charge")
                if obj.get("amount_received") is not None:
                    amount = from_minor_units(obj["amount_received"])
        case OutcomeKind.REFUNDED:
            charge_id = obj.get("id")
            intent_id = obj.get("payment_intent")
        case OutcomeKind.DISPUTED:
            charge_id = obj.get("charge")
            intent_id = obj.get("payment_intent")

    if not (intent_id or charge_id):
        logger.warning("payments.verifier stripe event without reference type=%s id=%s", etype, event_id)
        return None
    return PaymentOutcome(
        provider=Provider.STRIPE,
        provider_event_id=event_id,
        kind=kind,
        intent_id=intent_id,
        charge_id=charge_id,
        amount=amount,
        order_id=metadata.get("orderId"),
        occurred_at=_occurred_at(event.get("created")),
    )


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return None


class EventVerifier:
    def __init__(self, gateways: Mapping[Provider, PaymentGateway], store: Optional[OrderStore] = None):
        self.gateways = gateways
        # Sert à refuser la capture d'un paiement wallet qu'aucune commande ne reconnaît
        self.store = store

    def verify_webhook(self, provider: Any, payload: bytes, headers: Mapping[str, str]) -> Optional[PaymentOutcome]:
        """
        Authentifie puis normalise un webhook.
        - InvalidSignature si la signature est absente/incorrecte (aucun état touché).
        - None si l'événement est hors taxonomie.
        """
        gateway = resolve_gateway(self.gateways, provider, mode=WEBHOOK)
        match gateway.name:
            case Provider.STRIPE:
                event = gateway.parse_webhook(payload, _header(headers, "stripe-signature"))
                return normalize_stripe_event(event)
        raise UnknownProvider()

    def verify_callback(self, provider: Any, params: Mapping[str, str]) -> CallbackResult:
        gateway = resolve_gateway(self.gateways, provider, mode=REDIRECT)
        match gateway.name:
            case Provider.BKASH:
                return self._verify_bkash(gateway, params)
            case Provider.NAGAD:
                return self._verify_nagad(gateway, params)
        raise UnknownProvider()

    def _verify_bkash(self, gateway, params: Mapping[str, str]) -> CallbackResult:
        payment_id = (params.get("paymentID") or "").strip()
        if not payment_id:
            raise ValidationError("paymentID manquant")
        claimed = (params.get("status") or "").lower()
        known = self.store is None or self.store.find_by_payment_ref(Provider.BKASH, intent_id=payment_id) is not None
        if claimed == "success" and not known:
            logger.warning("payments.verifier bkash execute skipped, no order for payment_id=%s", payment_id)
        # L'exécution est l'appel autoritatif qui capture le paiement; la consultation sert de repli
        data = gateway.execute_payment(payment_id) if claimed == "success" and known else {}
        if not data.get("transactionStatus"):
            data = gateway.query_payment(payment_id)
        status = data.get("transactionStatus")
        kind = BKASH_STATUS_KINDS.get(status)
        if kind is None:
            logger.info("payments.verifier bkash no outcome payment_id=%s status=%s claimed=%s", payment_id, status, claimed)
            return CallbackResult(payment_id, None)
        trx_id = data.get("trxID")
        return CallbackResult(
            payment_id,
            PaymentOutcome(
                provider=Provider.BKASH,
                provider_event_id=callback_event_id(payment_id, kind),
                kind=kind,
                intent_id=payment_id,
                charge_id=trx_id if kind is OutcomeKind.SUCCEEDED else None,
                transaction_id=trx_id,
                amount=data.get("amount") if kind is OutcomeKind.SUCCEEDED else None,
            ),
        )

    def _verify_nagad(self, gateway, params: Mapping[str, str]) -> CallbackResult:
        reference = (params.get("payment_ref_id") or params.get("paymentRefId") or "").strip()
        if not reference:
            raise ValidationError("payment_ref_id manquant")
        data = gateway.verify_payment(reference)
        status = data.get("status")
        kind = NAGAD_STATUS_KINDS.get(status)
        if kind is None:
            logger.info("payments.verifier nagad no outcome ref=%s status=%s", reference, status)
            return CallbackResult(reference, None)
        trx_id = (data.get("additionalMerchantInfo") or {}).get("trxId") or data.get("issuerPaymentRefNo")
        return CallbackResult(
            reference,
            PaymentOutcome(
                provider=Provider.NAGAD,
                provider_event_id=callback_event_id(reference, kind),
                kind=kind,
                intent_id=reference,
                charge_id=trx_id if kind is OutcomeKind.SUCCEEDED else None,
                transaction_id=trx_id,
                amount=data.get("amount") if kind is OutcomeKind.SUCCEEDED else None,
            ),
        )
