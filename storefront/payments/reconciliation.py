"""
Moteur de réconciliation: seul composant qui modifie status / payment.status d'une commande.

Table de transitions (état joint (order, payment) -> état cible):
  (pending, pending)            + succeeded -> (processing, succeeded)
  (pending, pending)            + failed    -> (pending, failed)
  (pending, pending)            + canceled  -> (cancelled, cancelled)
  (pending|processing, *)       + disputed  -> (pending, disputed)
  (processing, succeeded)       + refunded  -> (refunded, refunded)
Étapes d'expédition (administrateur, sans événement prestataire):
  (processing, succeeded) -> (shipped, succeeded) -> (delivered, succeeded)
Toute autre combinaison est un no-op « stale » (journalisé, acquitté).

Garanties:
- Registre d'idempotence consulté d'abord: un événement déjà appliqué est un no-op réussi.
- Écriture conditionnelle sur l'état observé; en cas de course, relecture puis réévaluation (borné).
- Les effets collaborateurs partent après le commit, via un dispatcher injectable
  (BackgroundTasks pour les routes synchrones, exécution directe dans le thread du webhook);
  leurs échecs sont journalisés, jamais propagés.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, assert_never

from storefront.errors import (
    EventAlreadyProcessed,
    FulfilmentNotAllowed,
    OrderNotFound,
    StaleTransition,
    ValidationError,
)
from storefront.orders.models import (
    PAID,
    PENDING_PAYMENT,
    JointState,
    Order,
    OrderStatus,
    OutcomeKind,
    PaymentOutcome,
    PaymentStatus,
    ProcessedEvent,
)
from storefront.orders.repository import OrderStore
from storefront.payments.collaborators import InventoryService, NotificationService, run_safely

logger = logging.getLogger(__name__)

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})
DISPUTABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})
SHIPPED = JointState(OrderStatus.SHIPPED, PaymentStatus.SUCCEEDED)
DELIVERED = JointState(OrderStatus.DELIVERED, PaymentStatus.SUCCEEDED)
FULFILMENT_STEPS: Dict[OrderStatus, Tuple[JointState, JointState]] = {
    OrderStatus.SHIPPED: (PAID, SHIPPED),
    OrderStatus.DELIVERED: (SHIPPED, DELIVERED),
}

Dispatch = Callable[..., Any]


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class ApplyResult:
    status: ApplyStatus
    order: Optional[Order] = None
    previous: Optional[JointState] = None


def next_state(kind: OutcomeKind, current: JointState) -> Optional[JointState]:
    """Retourne l'état cible, ou None si l'outcome n'a pas de transition depuis current."""
    if current.order in TERMINAL_ORDER_STATUSES:
        return None
    match kind:
        case OutcomeKind.SUCCEEDED:
            return PAID if current == PENDING_PAYMENT else None
        case OutcomeKind.FAILED:
            return JointState(OrderStatus.PENDING, PaymentStatus.FAILED) if current == PENDING_PAYMENT else None
        case OutcomeKind.CANCELED:
            return JointState(OrderStatus.CANCELLED, PaymentStatus.CANCELLED) if current == PENDING_PAYMENT else None
        case OutcomeKind.DISPUTED:
            if current.order in DISPUTABLE_ORDER_STATUSES:
                return JointState(OrderStatus.PENDING, PaymentStatus.DISPUTED)
            return None
        case OutcomeKind.REFUNDED:
            return JointState(OrderStatus.REFUNDED, PaymentStatus.REFUNDED) if current == PAID else None
        case _:
            assert_never(kind)


def _inline(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class ReconciliationEngine:
    def __init__(
        self,
        store: OrderStore,
        *,
        notifications: Optional[NotificationService] = None,
        inventory: Optional[InventoryService] = None,
        max_attempts: int = 3,
    ):
        self.store = store
        self.notifications = notifications or NotificationService()
        self.inventory = inventory or InventoryService()
        self.max_attempts = max(1, int(max_attempts))

    def locate(self, outcome: PaymentOutcome) -> Optional[Order]:
        """Retrouve la commande: par intent, puis par charge, puis par l'indice orderId des métadonnées."""
        order = self.store.find_by_payment_ref(
            outcome.provider, intent_id=outcome.intent_id, charge_id=outcome.charge_id
        )
        if order is None and outcome.order_id:
            candidate = self.store.get(outcome.order_id)
            # L'indice n'est accepté que si aucune autre intention n'a été rattachée
            if candidate is not None and candidate.payment.intent_id in (None, outcome.intent_id):
                order = candidate
        return order

    def apply(self, outcome: PaymentOutcome, *, dispatch: Optional[Dispatch] = None) -> ApplyResult:
        """
        Applique un outcome vérifié à sa commande.
        Retour: ApplyResult(status) avec status dans applied|duplicate|stale|unmatched|rejected.
        Les erreurs de stockage (StoreUnavailable) remontent pour que le prestataire relivre.
        """
        ref = {"provider": outcome.provider.value, "event_id": outcome.provider_event_id, "kind": outcome.kind.value}
        if self.store.is_processed(outcome.provider, outcome.provider_event_id):
            logger.info("payments.reconciliation duplicate %s", ref)
            return ApplyResult(ApplyStatus.DUPLICATE)

        order = self.locate(outcome)
        if order is None:
            logger.warning("payments.reconciliation unmatched %s intent_id=%s charge_id=%s",
                           ref, outcome.intent_id, outcome.charge_id)
            return ApplyResult(ApplyStatus.UNMATCHED)
        if self._superseded(order, outcome):
            logger.info("payments.reconciliation stale superseded intent %s order_id=%s intent_id=%s current=%s",
                        ref, order.id, outcome.intent_id, order.payment.intent_id)
            return ApplyResult(ApplyStatus.STALE, order, order.joint_state)

        for _ in range(self.max_attempts):
            current = order.joint_state
            target = next_state(outcome.kind, current)
            if target is None or target == current:
                logger.info("payments.reconciliation stale %s order_id=%s state=%s",
                            ref, order.id, tuple(s.value for s in current))
                return ApplyResult(ApplyStatus.STALE, order, current)
            if (
                outcome.kind is OutcomeKind.SUCCEEDED
                and outcome.amount is not None
                and outcome.amount != order.payment.amount
            ):
                logger.error("payments.reconciliation amount mismatch %s order_id=%s expected=%s received=%s",
                             ref, order.id, order.payment.amount, outcome.amount)
                return ApplyResult(ApplyStatus.REJECTED, order, current)

            event = ProcessedEvent(
                provider=outcome.provider, provider_event_id=outcome.provider_event_id, order_id=order.id
            )
            try:
                updated = self.store.apply_transition(order.id, current, target, event, self._changes(order, outcome))
            except EventAlreadyProcessed:
                logger.info("payments.reconciliation duplicate (race) %s", ref)
                return ApplyResult(ApplyStatus.DUPLICATE, order)
            except (StaleTransition, OrderNotFound):
                reloaded = self.store.get(order.id)
                if reloaded is None:
                    return ApplyResult(ApplyStatus.UNMATCHED)
                order = reloaded
                continue

            logger.info("payments.reconciliation applied %s order_id=%s %s -> %s", ref, updated.id,
                        tuple(s.value for s in current), tuple(s.value for s in target))
            self._after_commit(updated, dispatch or _inline)
            return ApplyResult(ApplyStatus.APPLIED, updated, current)

        logger.warning("payments.reconciliation gave up after %s attempts %s", self.max_attempts, ref)
        return ApplyResult(ApplyStatus.STALE, order, order.joint_state)

    def fulfil(
        self,
        order_id: str,
        status: Any,
        *,
        tracking_number: Optional[str] = None,
        dispatch: Optional[Dispatch] = None,
    ) -> ApplyResult:
        """
        Étape d'expédition décidée par un administrateur (shipped, puis delivered).
        - Écriture conditionnelle sur l'état observé, sans registre (aucun événement prestataire).
        - Redemander l'étape déjà atteinte est un no-op « stale ».
        Erreurs: ValidationError (statut hors expédition), OrderNotFound, FulfilmentNotAllowed.
        """
        try:
            expected, target = FULFILMENT_STEPS[OrderStatus(status)]
        except (ValueError, KeyError):
            raise ValidationError("Statut d'expédition invalide (shipped ou delivered)")
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound()

        for _ in range(self.max_attempts):
            current = order.joint_state
            if current == target:
                logger.info("payments.reconciliation fulfilment stale order_id=%s state=%s",
                            order.id, tuple(s.value for s in current))
                return ApplyResult(ApplyStatus.STALE, order, current)
            if current != expected:
                raise FulfilmentNotAllowed()
            changes = {"tracking_number": tracking_number} if tracking_number else {}
            try:
                updated = self.store.transition_status(order.id, current, target, changes)
            except StaleTransition:
                order = self.store.get(order.id)
                if order is None:
                    raise OrderNotFound()
                continue
            logger.info("payments.reconciliation fulfilment order_id=%s %s -> %s tracking=%s", updated.id,
                        tuple(s.value for s in current), tuple(s.value for s in target), updated.tracking_number)
            self._after_commit(updated, dispatch or _inline)
            return ApplyResult(ApplyStatus.APPLIED, updated, current)

        logger.warning("payments.reconciliation fulfilment gave up after %s attempts order_id=%s",
                       self.max_attempts, order.id)
        return ApplyResult(ApplyStatus.STALE, order, order.joint_state)

    @staticmethod
    def _superseded(order: Order, outcome: PaymentOutcome) -> bool:
        """Échec/annulation d'une intention remplacée par une réémission: sans effet sur la commande."""
        if outcome.kind not in (OutcomeKind.FAILED, OutcomeKind.CANCELED):
            return False
        current = (order.payment.provider, order.payment.intent_id)
        return order.payment.intent_id is not None and current != (outcome.provider, outcome.intent_id)

    def _changes(self, order: Order, outcome: PaymentOutcome) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        # Un succès fixe l'intention qui a réellement capturé le paiement (éventuellement remplacée)
        if outcome.intent_id and (order.payment.intent_id is None or outcome.kind is OutcomeKind.SUCCEEDED):
            changes["provider"] = outcome.provider
            changes["intent_id"] = outcome.intent_id
        if outcome.kind is OutcomeKind.SUCCEEDED:
            changes["charge_id"] = outcome.charge_id
            changes["transaction_id"] = outcome.transaction_id
        return {k: v for k, v in changes.items() if v is not None}

    def effects_for(self, order: Order) -> List[Callable[[Order], Any]]:
        effects: List[Callable[[Order], Any]] = []
        if order.joint_state == PAID:
            effects.append(self.notifications.send_order_confirmation)
        if order.payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
            effects.append(self.inventory.restore)
        if order.payment.status is PaymentStatus.DISPUTED:
            effects.append(self.notifications.send_dispute_alert)
        if order.status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            effects.append(self.notifications.send_shipping_update)
        return effects

    def _after_commit(self, order: Order, dispatch: Dispatch) -> None:
        for effect in self.effects_for(order):
            dispatch(run_safely, effect, order)
