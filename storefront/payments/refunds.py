"""
Remboursements initiés par un administrateur (Refund/Dispute Handler).
- Exige un débit enregistré (payment.charge_id) et une commande (processing, succeeded).
- Appelle l'API de remboursement du prestataire avec une clé d'idempotence (commande + montant),
  puis réinjecte un outcome « refunded » synthétique dans le moteur de réconciliation.
- Les litiges n'arrivent que par webhook (voir verifier/reconciliation).
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from storefront.errors import NoChargeToRefund, OrderNotFound, RefundNotAllowed, ValidationError
from storefront.orders.models import PAID, Order, OutcomeKind, PaymentOutcome, Provider, to_money
from storefront.orders.repository import OrderStore
from storefront.orders.totals import to_minor_units
from storefront.payments.gateway import PaymentGateway, RefundReceipt, resolve_gateway
from storefront.payments.reconciliation import ApplyResult, ApplyStatus, Dispatch, ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    receipt: RefundReceipt
    apply: ApplyResult
    order: Optional[Order]


def refund_idempotency_key(order_id: str, amount: Decimal) -> str:
    return f"refund-{order_id}-{to_minor_units(amount)}"


class RefundHandler:
    def __init__(
        self,
        store: OrderStore,
        gateways: Mapping[Provider, PaymentGateway],
        engine: ReconciliationEngine,
    ):
        self.store = store
        self.gateways = gateways
        self.engine = engine

    def create_refund(
        self,
        order_id: str,
        amount: Any = None,
        reason: Optional[str] = None,
        *,
        dispatch: Optional[Dispatch] = None,
    ) -> RefundResult:
        """
        Rembourse tout ou partie d'une commande payée.
        - amount: montant en unités majeures (défaut: grand_total), 0 < amount <= grand_total
        Erreurs: OrderNotFound, NoChargeToRefund, RefundNotAllowed, ValidationError,
        UnknownProvider, RefundNotSupported, ProviderUnavailable.
        """
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound()
        if not order.payment.charge_id:
            raise NoChargeToRefund()
        if order.joint_state != PAID:
            raise RefundNotAllowed()

        try:
            value = order.totals.grand_total if amount is None else to_money(amount)
        except (ValueError, TypeError):
            raise ValidationError("Montant de remboursement invalide")
        if value <= 0 or value > order.totals.grand_total:
            raise ValidationError("Le montant doit être compris entre 0 et le total de la commande")

        gateway = resolve_gateway(self.gateways, order.payment.provider)
        receipt = gateway.refund(order, value, reason=reason, idempotency_key=refund_idempotency_key(order.id, value))
        logger.info("payments.refunds provider refund order_id=%s refund_id=%s amount=%s status=%s",
                    order.id, receipt.refund_id, value, receipt.status)

        outcome = PaymentOutcome(
            provider=order.payment.provider,
            provider_event_id=f"refund:{receipt.refund_id}",
            kind=OutcomeKind.REFUNDED,
            intent_id=order.payment.intent_id,
            charge_id=order.payment.charge_id,
            amount=value,
            order_id=order.id,
        )
        result = self.engine.apply(outcome, dispatch=dispatch)
        if result.status not in (ApplyStatus.APPLIED, ApplyStatus.DUPLICATE):
            # Argent rendu chez le prestataire mais commande non passée en refunded (ex: litige arrivé avant)
            state = tuple(s.value for s in result.previous) if result.previous else None
            logger.error("payments.refunds order not refunded after provider refund order_id=%s refund_id=%s "
                         "amount=%s apply=%s state=%s", order.id, receipt.refund_id, value, result.status.value, state)
        updated = self.store.append_note(order.id, f"Refund: {reason or 'n/a'} - Amount: {value}")
        return RefundResult(receipt=receipt, apply=result, order=updated or result.order)
