"""
Calcul des totaux (logique pure: pas de DB, pas de prestataire).
Seul endroit où sous-total, taxe, livraison et total sont calculés:
  subtotal    = Σ unit_price × quantity
  tax         = (subtotal - discount) × tax_rate, arrondi au centime (half-up)
  shipping    = 0 si (subtotal - discount) >= seuil de gratuité, sinon frais fixes
  grand_total = subtotal - discount + tax + shipping
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, List

from storefront.errors import ValidationError
from storefront.orders.models import CENT, OrderItem, Totals, to_money

# module storefront.orders.totals

def _field(line: Any, name: str) -> Any:
    if isinstance(line, dict):
        return line.get(name)
    return getattr(line, name, None)

def _money(value: Any, label: str) -> Decimal:
    try:
        return to_money(value if value is not None else 0)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"{label} invalide")

def _quantity(line: Any) -> int:
    raw = _field(line, "quantity")
    try:
        qty = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Quantité invalide")
    if qty != raw and not isinstance(raw, str):
        raise ValidationError("Quantité invalide")
    if qty < 1:
        raise ValidationError("La quantité doit être au moins 1")
    return qty

def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)

def to_minor_units(amount: Decimal) -> int:
    """Convertit un montant (unités majeures) en centimes entiers pour les APIs prestataires."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(int(value)) / 100)

def price_items(lines: Iterable[Any]) -> List[OrderItem]:
    """
    Fige les lignes de panier en OrderItem (total_price = unit_price × quantity).
    - Soulève ValidationError si une quantité < 1 ou un prix négatif est présent.
    - Soulève ValidationError si aucune ligne n'est fournie.
    """
    items: List[OrderItem] = []
    for line in lines or []:
        qty = _quantity(line)
        unit_price = _money(_field(line, "unit_price"), "Prix unitaire")
        if unit_price < 0:
            raise ValidationError("Le prix unitaire ne peut pas être négatif")
        items.append(
            OrderItem(
                product_id=str(_field(line, "product_id") or ""),
                variant_id=_field(line, "variant_id"),
                name=str(_field(line, "name") or ""),
                sku=str(_field(line, "sku") or ""),
                quantity=qty,
                unit_price=unit_price,
                total_price=line_total(unit_price, qty),
            )
        )
    if not items:
        raise ValidationError("Panier vide")
    return items

def compute_totals(
    lines: Iterable[Any],
    discount: Any = 0,
    *,
    tax_rate: Any,
    free_shipping_threshold: Any,
    flat_fee: Any,
) -> Totals:
    """
    Calcule les totaux d'une commande à partir de lignes {unit_price, quantity} (dict ou objet).
    Erreurs (ValidationError):
    - remise négative ou supérieure au sous-total
    - quantité < 1, prix unitaire négatif
    - taux de taxe ou frais de livraison négatifs
    """
    discount_value = _money(discount, "Remise")
    if discount_value < 0:
        raise ValidationError("La remise ne peut pas être négative")
    rate = Decimal(str(tax_rate))
    if rate < 0:
        raise ValidationError("Le taux de taxe ne peut pas être négatif")
    fee = _money(flat_fee, "Frais de livraison")
    if fee < 0:
        raise ValidationError("Les frais de livraison ne peuvent pas être négatifs")
    threshold = _money(free_shipping_threshold, "Seuil de livraison gratuite")

    subtotal = Decimal("0.00")
    for line in lines or []:
        qty = _quantity(line)
        unit_price = _money(_field(line, "unit_price"), "Prix unitaire")
        if unit_price < 0:
            raise ValidationError("Le prix unitaire ne peut pas être négatif")
        subtotal += line_total(unit_price, qty)

    if discount_value > subtotal:
        raise ValidationError("La remise dépasse le sous-total")

    taxable = subtotal - discount_value
    tax = (taxable * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = Decimal("0.00") if taxable >= threshold else fee
    return Totals(
        subtotal=subtotal,
        discount=discount_value,
        tax=tax,
        shipping=shipping,
        grand_total=taxable + tax + shipping,
    )
