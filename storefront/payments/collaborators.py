"""
Collaborateurs externes consommés par le checkout et la réconciliation.
- NotificationService: confirmation de commande, alerte litige, suivi d'expédition (fire-and-forget).
- InventoryService: réservation au checkout, restitution sur annulation/échec/remboursement.
- CartService: panier finalisé de l'utilisateur (Supabase 'carts' + 'cart_items').
Les implémentations par défaut journalisent; un échec de collaborateur n'affecte jamais l'état d'une commande.
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional

import storefront.infra.supabase_client as supabase_client
from storefront.errors import StoreUnavailable
from storefront.orders.models import Cart, CartLine, Order

logger = logging.getLogger(__name__)


def run_safely(fn: Callable[[Order], Any], order: Order) -> None:
    """Exécute un effet collaborateur; toute erreur est journalisée, jamais propagée."""
    try:
        fn(order)
    except Exception:
        logger.exception(
            "payments.collaborators %s failed order_id=%s",
            getattr(fn, "__qualname__", repr(fn)), order.id,
        )


class NotificationService:
    def send_order_confirmation(self, order: Order) -> None:
        logger.info(
            "notifications.order_confirmation order=%s email=%s total=%s %s",
            order.order_number, order.contact_info.email, order.totals.grand_total, order.currency,
        )

    def send_dispute_alert(self, order: Order) -> None:
        logger.warning(
            "notifications.dispute_alert order=%s charge_id=%s provider=%s",
            order.order_number, order.payment.charge_id, getattr(order.payment.provider, "value", None),
        )

    def send_shipping_update(self, order: Order) -> None:
        logger.info(
            "notifications.shipping_update order=%s status=%s tracking=%s",
            order.order_number, order.status.value, order.tracking_number,
        )


class InventoryService:
    def reserve(self, order: Order) -> None:
        logger.info("inventory.reserve order=%s lines=%s", order.order_number, len(order.items))

    def restore(self, order: Order) -> None:
        logger.info("inventory.restore order=%s lines=%s", order.order_number, len(order.items))


class CartService:
    def get_checkout_cart(self, user_id: str) -> Cart:
        raise NotImplementedError

    def clear(self, user_id: str) -> None:
        raise NotImplementedError


class MemoryCartService(CartService):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._carts: Dict[str, Cart] = {}

    def set_cart(self, user_id: str, cart: Cart) -> None:
        with self._lock:
            self._carts[user_id] = cart.model_copy(deep=True)

    def get_checkout_cart(self, user_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id)
            return cart.model_copy(deep=True) if cart else Cart()

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._carts.pop(user_id, None)


class SupabaseCartService(CartService):
    def __init__(self, client_factory: Optional[Callable[[], Any]] = None) -> None:
        self._client_factory = client_factory or supabase_client.get_service_supabase

    def get_checkout_cart(self, user_id: str) -> Cart:
        """Lit le panier (carts + cart_items imbriqués); panier vide si absent."""
        try:
            res = (
                self._client_factory()
                .table("carts")
                .select("id, discount, cart_items(product_id, variant_id, name, sku, quantity, unit_price)")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception("payments.collaborators.get_checkout_cart failed user_id=%s", user_id)
            raise StoreUnavailable() from e
        rows = res.data or []
        if not rows:
            return Cart()
        row = rows[0]
        return Cart(
            items=[CartLine.model_validate(line) for line in row.get("cart_items") or []],
            discount=row.get("discount") or 0,
        )

    def clear(self, user_id: str) -> None:
        try:
            (
                self._client_factory()
                .table("carts")
                .delete()
                .eq("user_id", user_id)
                .execute()
            )
        except Exception:
            logger.exception("payments.collaborators.clear_cart failed user_id=%s", user_id)
