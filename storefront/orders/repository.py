"""
Accès aux données pour la feature 'orders' (Order Store).

Contrat de cohérence (quel que soit le backend):
- order_number est unique: un doublon lève DuplicateOrderNumber (la factory retente).
- attach_intent et apply_transition sont des écritures conditionnelles (compare-and-swap)
  sur l'état joint (status, payment.status) observé par l'appelant.
- Chaque intention rattachée reste enregistrée (provider, intent_id) -> commande: une intention
  remplacée par une réémission retrouve toujours sa commande.
- apply_transition enregistre l'événement dans le registre d'idempotence et met à jour
  la commande dans la même unité atomique: les deux sont visibles ensemble ou pas du tout.

Deux implémentations:
- SupabaseOrderStore: tables 'orders' / 'processed_events' / 'payment_intents' + fonctions SQL
  apply_payment_transition, attach_payment_intent, append_order_note (voir supabase/migrations).
- MemoryOrderStore: dev/tests, un verrou par appel émule l'atomicité d'une instruction SQL.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from postgrest.exceptions import APIError

import storefront.infra.supabase_client as supabase_client
from storefront.errors import (
    DuplicateOrderNumber,
    EventAlreadyProcessed,
    OrderNotFound,
    StaleTransition,
    StoreUnavailable,
)
from storefront.orders.models import (
    PENDING_PAYMENT,
    JointState,
    Order,
    OrderStatus,
    ProcessedEvent,
    Provider,
    utcnow,
)

logger = logging.getLogger(__name__)

# Champs de paiement qu'une transition peut renseigner (jamais le montant ni la devise)
PAYMENT_CHANGE_FIELDS = ("provider", "intent_id", "charge_id", "transaction_id")
# Champs de la commande qu'une transition d'exécution peut renseigner
ORDER_CHANGE_FIELDS = ("tracking_number",)
UNIQUE_VIOLATION = "23505"


class OrderStore:
    """Interface du stockage des commandes; voir le contrat en tête de module."""

    backend = "abstract"

    def insert(self, order: Order) -> Order:
        raise NotImplementedError

    def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    def find_by_payment_ref(
        self, provider: Provider, *, intent_id: Optional[str] = None, charge_id: Optional[str] = None
    ) -> Optional[Order]:
        raise NotImplementedError

    def attach_intent(self, order_id: str, provider: Provider, intent_id: str) -> Optional[Order]:
        """
        Renseigne payment.provider/intent_id si la commande est encore (pending, pending), et enregistre
        l'intention dans le registre des intentions émises; None sinon.
        """
        raise NotImplementedError

    def is_processed(self, provider: Provider, provider_event_id: str) -> bool:
        raise NotImplementedError

    def apply_transition(
        self,
        order_id: str,
        expected: JointState,
        target: JointState,
        event: ProcessedEvent,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Order:
        """
        Écrit target si l'état courant vaut expected, et enregistre event, atomiquement.
        Lève EventAlreadyProcessed, StaleTransition ou OrderNotFound sans rien modifier.
        """
        raise NotImplementedError

    def append_note(self, order_id: str, note: str) -> Optional[Order]:
        raise NotImplementedError

    def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        """Commandes les plus récentes d'abord, filtrées par propriétaire et statut; retourne (page, total)."""
        raise NotImplementedError

    def transition_status(
        self,
        order_id: str,
        expected: JointState,
        target: JointState,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Order:
        """
        Écriture conditionnelle d'exécution de commande (expédition, livraison), hors registre.
        Lève StaleTransition ou OrderNotFound sans rien modifier.
        """
        raise NotImplementedError


def _merge_notes(current: Optional[str], note: str) -> str:
    return f"{current}\n{note}" if current else note


def _transitioned(order: Order, target: JointState, changes: Optional[Mapping[str, Any]]) -> Order:
    payment_update: Dict[str, Any] = {
        k: v for k, v in (changes or {}).items() if k in PAYMENT_CHANGE_FIELDS and v is not None
    }
    payment_update["status"] = target.payment
    payment = order.payment.model_copy(update=payment_update)
    return order.model_copy(update={"status": target.order, "payment": payment, "updated_at": utcnow()})


class MemoryOrderStore(OrderStore):
    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._numbers: Dict[str, str] = {}
        self._ledger: Dict[Tuple[str, str], ProcessedEvent] = {}
        self._intents: Dict[Tuple[str, str], str] = {}

    def insert(self, order: Order) -> Order:
        with self._lock:
            if order.order_number in self._numbers:
                raise DuplicateOrderNumber(order.order_number)
            self._orders[order.id] = order.model_copy(deep=True)
            self._numbers[order.order_number] = order.id
        return order.model_copy(deep=True)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def find_by_payment_ref(self, provider, *, intent_id=None, charge_id=None):
        with self._lock:
            if intent_id:
                for order in self._orders.values():
                    if order.payment.provider == provider and order.payment.intent_id == intent_id:
                        return order.model_copy(deep=True)
                owner = self._intents.get((Provider(provider).value, intent_id))
                if owner in self._orders:
                    return self._orders[owner].model_copy(deep=True)
            if charge_id:
                for order in self._orders.values():
                    if order.payment.charge_id == charge_id:
                        return order.model_copy(deep=True)
        return None

    def attach_intent(self, order_id, provider, intent_id):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.joint_state != PENDING_PAYMENT:
                return None
            payment = order.payment.model_copy(update={"provider": Provider(provider), "intent_id": intent_id})
            updated = order.model_copy(update={"payment": payment, "updated_at": utcnow()})
            self._orders[order_id] = updated
            self._intents[(Provider(provider).value, intent_id)] = order_id
            return updated.model_copy(deep=True)

    def is_processed(self, provider, provider_event_id):
        with self._lock:
            return (Provider(provider).value, provider_event_id) in self._ledger

    def apply_transition(self, order_id, expected, target, event, changes=None):
        key = (Provider(event.provider).value, event.provider_event_id)
        with self._lock:
            if key in self._ledger:
                raise EventAlreadyProcessed(event.provider_event_id)
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound()
            if order.joint_state != expected:
                raise StaleTransition(f"attendu {tuple(expected)} trouvé {tuple(order.joint_state)}")
            updated = _transitioned(order, target, changes)
            self._orders[order_id] = updated
            self._ledger[key] = event.model_copy(update={"order_id": order_id})
            return updated.model_copy(deep=True)

    def append_note(self, order_id, note):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            updated = order.model_copy(update={"notes": _merge_notes(order.notes, note), "updated_at": utcnow()})
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def list_orders(self, *, user_id=None, status=None, limit=20, offset=0):
        with self._lock:
            orders = [
                o.model_copy(deep=True)
                for o in self._orders.values()
                if (not user_id or o.user_id == user_id) and (not status or o.status == OrderStatus(status))
            ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[offset:offset + limit], len(orders)

    def transition_status(self, order_id, expected, target, changes=None):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound()
            if order.joint_state != expected:
                raise StaleTransition(f"attendu {tuple(expected)} trouvé {tuple(order.joint_state)}")
            update = {k: v for k, v in (changes or {}).items() if k in ORDER_CHANGE_FIELDS}
            payment = order.payment.model_copy(update={"status": target.payment})
            updated = order.model_copy(
                update={**update, "status": target.order, "payment": payment, "updated_at": utcnow()}
            )
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def processed_events(self) -> List[ProcessedEvent]:
        with self._lock:
            return list(self._ledger.values())


# --- Supabase ---

TOTAL_COLUMNS = ("subtotal", "shipping", "tax", "discount", "grand_total")
PAYMENT_COLUMNS = (
    "payment_provider",
    "payment_intent_id",
    "payment_charge_id",
    "payment_transaction_id",
    "payment_status",
    "payment_amount",
    "payment_currency",
)


def order_to_row(order: Order) -> Dict[str, Any]:
    """Aplati une Order en ligne 'orders' (totaux et paiement en colonnes, le reste en jsonb)."""
    data = order.model_dump(mode="json")
    totals = data.pop("totals")
    payment = data.pop("payment")
    row = {**data, **totals}
    row.update({f"payment_{k}": v for k, v in payment.items()})
    return row


def row_to_order(row: Mapping[str, Any]) -> Order:
    payment = {col[len("payment_"):]: row.get(col) for col in PAYMENT_COLUMNS}
    totals = {col: row.get(col) for col in TOTAL_COLUMNS}
    base = {k: v for k, v in row.items() if k not in TOTAL_COLUMNS and k not in PAYMENT_COLUMNS}
    return Order.model_validate({**base, "totals": totals, "payment": payment})


def _first(res) -> Optional[Dict[str, Any]]:
    rows = getattr(res, "data", None) or []
    if isinstance(rows, list):
        return rows[0] if rows else None
    return rows


class SupabaseOrderStore(OrderStore):
    backend = "supabase"

    def __init__(self, client_factory: Optional[Callable[[], Any]] = None) -> None:
        self._client_factory = client_factory or supabase_client.get_service_supabase

    def _table(self, name: str):
        return self._client_factory().table(name)

    def _run(self, op: str, build: Callable[[], Any], **ctx):
        try:
            return build().execute()
        except Exception as e:
            logger.exception("orders.repository.%s failed %s", op, ctx)
            raise StoreUnavailable() from e

    def insert(self, order: Order) -> Order:
        try:
            res = self._table("orders").insert(order_to_row(order)).execute()
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise DuplicateOrderNumber(order.order_number) from e
            logger.exception("orders.repository.insert failed order_number=%s", order.order_number)
            raise StoreUnavailable() from e
        except Exception as e:
            logger.exception("orders.repository.insert failed order_number=%s", order.order_number)
            raise StoreUnavailable() from e
        row = _first(res)
        return row_to_order(row) if row else order

    def get(self, order_id: str) -> Optional[Order]:
        res = self._run(
            "get",
            lambda: self._table("orders").select("*").eq("id", order_id).limit(1),
            order_id=order_id,
        )
        row = _first(res)
        return row_to_order(row) if row else None

    def find_by_payment_ref(self, provider, *, intent_id=None, charge_id=None):
        if intent_id:
            res = self._run(
                "find_by_payment_ref",
                lambda: (
                    self._table("orders")
                    .select("*")
                    .eq("payment_provider", Provider(provider).value)
                    .eq("payment_intent_id", intent_id)
                    .limit(1)
                ),
                intent_id=intent_id,
            )
            row = _first(res)
            if row:
                return row_to_order(row)
            # Intention remplacée par une réémission: registre des intentions émises
            res = self._run(
                "find_by_payment_ref",
                lambda: (
                    self._table("payment_intents")
                    .select("order_id")
                    .eq("provider", Provider(provider).value)
                    .eq("intent_id", intent_id)
                    .limit(1)
                ),
                intent_id=intent_id,
            )
            row = _first(res)
            if row:
                return self.get(row["order_id"])
        if charge_id:
            res = self._run(
                "find_by_payment_ref",
                lambda: self._table("orders").select("*").eq("payment_charge_id", charge_id).limit(1),
                charge_id=charge_id,
            )
            row = _first(res)
            if row:
                return row_to_order(row)
        return None

    def attach_intent(self, order_id, provider, intent_id):
        params = {"p_order_id": order_id, "p_provider": Provider(provider).value, "p_intent_id": intent_id}
        res = self._run(
            "attach_intent",
            lambda: self._client_factory().rpc("attach_payment_intent", params),
            order_id=order_id,
            intent_id=intent_id,
        )
        data = _first(res) or {}
        if data.get("result") == "attached":
            return row_to_order(data["order"])
        return None

    def is_processed(self, provider, provider_event_id):
        res = self._run(
            "is_processed",
            lambda: (
                self._table("processed_events")
                .select("provider_event_id")
                .eq("provider", Provider(provider).value)
                .eq("provider_event_id", provider_event_id)
                .limit(1)
            ),
            event_id=provider_event_id,
        )
        return bool(getattr(res, "data", None))

    def apply_transition(self, order_id, expected, target, event, changes=None):
        changes = dict(changes or {})
        provider = changes.get("provider")
        params = {
            "p_order_id": order_id,
            "p_provider": Provider(event.provider).value,
            "p_event_id": event.provider_event_id,
            "p_expected_status": expected.order.value,
            "p_expected_payment_status": expected.payment.value,
            "p_target_status": target.order.value,
            "p_target_payment_status": target.payment.value,
            "p_payment_provider": Provider(provider).value if provider else None,
            "p_intent_id": changes.get("intent_id"),
            "p_charge_id": changes.get("charge_id"),
            "p_transaction_id": changes.get("transaction_id"),
        }
        res = self._run(
            "apply_transition",
            lambda: self._client_factory().rpc("apply_payment_transition", params),
            order_id=order_id,
            event_id=event.provider_event_id,
        )
        data = _first(res) or {}
        result = data.get("result")
        if result == "applied":
            return row_to_order(data["order"])
        if result == "duplicate":
            raise EventAlreadyProcessed(event.provider_event_id)
        if result == "stale":
            raise StaleTransition()
        if result == "missing":
            raise OrderNotFound()
        logger.error("orders.repository.apply_transition unexpected result=%s order_id=%s", result, order_id)
        raise StoreUnavailable()

    def append_note(self, order_id, note):
        # Concaténation faite en SQL: deux notes concurrentes ne s'écrasent pas
        res = self._run(
            "append_note",
            lambda: self._client_factory().rpc("append_order_note", {"p_order_id": order_id, "p_note": note}),
            order_id=order_id,
        )
        row = _first(res)
        return row_to_order(row) if row else None

    def list_orders(self, *, user_id=None, status=None, limit=20, offset=0):
        def build():
            query = self._table("orders").select("*", count="exact")
            if user_id:
                query = query.eq("user_id", user_id)
            if status:
                query = query.eq("status", OrderStatus(status).value)
            return query.order("created_at", desc=True).range(offset, offset + limit - 1)

        res = self._run("list_orders", build, user_id=user_id, status=status)
        rows = getattr(res, "data", None) or []
        total = getattr(res, "count", None)
        return [row_to_order(row) for row in rows], (total if total is not None else len(rows))

    def transition_status(self, order_id, expected, target, changes=None):
        update: Dict[str, Any] = {
            "status": target.order.value,
            "payment_status": target.payment.value,
            "updated_at": utcnow().isoformat(),
        }
        update.update({k: v for k, v in (changes or {}).items() if k in ORDER_CHANGE_FIELDS})
        res = self._run(
            "transition_status",
            lambda: (
                self._table("orders")
                .update(update)
                .eq("id", order_id)
                .eq("status", expected.order.value)
                .eq("payment_status", expected.payment.value)
            ),
            order_id=order_id,
        )
        row = _first(res)
        if row:
            return row_to_order(row)
        if self.get(order_id) is None:
            raise OrderNotFound()
        raise StaleTransition()
