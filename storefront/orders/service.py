"""Couche service de la feature 'orders' (Order Factory).
Rôles:
- Construire une commande « pending » à partir du panier finalisé de l'utilisateur.
- Figer les lignes et les totaux (storefront.orders.totals) au moment du checkout.
- Attribuer un numéro ORD + AAMMJJ + suffixe aléatoire à 4 chiffres; la contrainte d'unicité
  du store est la vraie garantie, la factory retente un nombre borné de fois.
Seul effet de bord: une insertion dans le store.
"""
import logging
import random
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from storefront import config
from storefront.errors import DuplicateOrderNumber, OrderNumberExhausted, ValidationError
from storefront.orders.models import (
    Address,
    Cart,
    ContactInfo,
    Order,
    PaymentInfo,
    ShippingMethod,
    utcnow,
)
from storefront.orders.repository import OrderStore
from storefront.orders.totals import compute_totals, price_items

logger = logging.getLogger(__name__)


def default_shipping_methods() -> Dict[str, ShippingMethod]:
    return {
        "standard": ShippingMethod(name="standard", cost=config.SHIPPING_FLAT_FEE, estimated_days=7),
        "express": ShippingMethod(name="express", cost=config.EXPRESS_SHIPPING_FEE, estimated_days=2),
    }


class OrderFactory:
    def __init__(
        self,
        store: OrderStore,
        *,
        tax_rate: Decimal = config.TAX_RATE,
        free_shipping_threshold: Decimal = config.FREE_SHIPPING_THRESHOLD,
        shipping_methods: Optional[Dict[str, ShippingMethod]] = None,
        currency: str = config.DEFAULT_CURRENCY,
        max_attempts: int = config.ORDER_NUMBER_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tax_rate = tax_rate
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_methods = shipping_methods or default_shipping_methods()
        self.currency = currency
        self.max_attempts = max(1, int(max_attempts))
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    def generate_order_number(self, now: Optional[datetime] = None) -> str:
        """ORD + AAMMJJ + suffixe dans [1000, 9999] (ex: ORD2406011234)."""
        now = now or self._clock()
        return f"ORD{now.strftime('%y%m%d')}{self._rng.randint(1000, 9999)}"

    def shipping_method(self, name: Optional[str]) -> ShippingMethod:
        method = self.shipping_methods.get((name or "standard").strip().lower())
        if method is None:
            raise ValidationError(f"Mode de livraison inconnu: {name}")
        return method

    def create_order(
        self,
        *,
        user_id: str,
        cart: Cart,
        shipping_address: Address,
        contact_info: ContactInfo,
        shipping_method: Optional[str] = None,
        billing_address: Optional[Address] = None,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Crée et persiste une commande (pending, pending) à partir du panier.
        - ValidationError: panier vide, quantité/prix/remise invalides, mode de livraison inconnu.
        - OrderNumberExhausted: toutes les tentatives de numéro sont entrées en collision.
        """
        if not user_id:
            raise ValidationError("Utilisateur requis")
        method = self.shipping_method(shipping_method)
        items = price_items(cart.items)
        totals = compute_totals(
            items,
            cart.discount,
            tax_rate=self.tax_rate,
            free_shipping_threshold=self.free_shipping_threshold,
            flat_fee=method.cost,
        )
        order_currency = (currency or self.currency).upper()
        base: Dict[str, Any] = {
            "user_id": user_id,
            "items": items,
            "totals": totals,
            "shipping_address": shipping_address,
            "billing_address": billing_address or shipping_address,
            "contact_info": contact_info,
            "shipping_method": method,
            "currency": order_currency,
            "payment": PaymentInfo(amount=totals.grand_total, currency=order_currency),
            "notes": notes,
        }

        for attempt in range(1, self.max_attempts + 1):
            now = self._clock()
            number = self.generate_order_number(now)
            order = Order(id=str(uuid.uuid4()), order_number=number, created_at=now, updated_at=now, **base)
            try:
                saved = self.store.insert(order)
            except DuplicateOrderNumber:
                logger.warning("orders.factory order number collision number=%s attempt=%s", number, attempt)
                continue
            logger.info(
                "orders.factory created order_id=%s number=%s user_id=%s total=%s %s",
                saved.id, saved.order_number, user_id, totals.grand_total, order_currency,
            )
            return saved

        logger.error("orders.factory order numbers exhausted user_id=%s attempts=%s", user_id, self.max_attempts)
        raise OrderNumberExhausted()
