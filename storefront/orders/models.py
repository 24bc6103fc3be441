# module storefront.orders.models
"""Modèles de la feature 'orders'.
- Order: instantané figé au checkout (lignes, totaux, adresses) + état de paiement.
- PaymentOutcome: résultat normalisé d'un événement prestataire (transitoire).
- ProcessedEvent: entrée du registre d'idempotence (provider, provider_event_id).
Les montants sont des Decimal quantifiés au centime (ROUND_HALF_UP).
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, List, NamedTuple, Optional

from pydantic import BaseModel, BeforeValidator, EmailStr, Field, model_validator

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Convertit str|int|float|Decimal en Decimal au centime (float passé par str pour éviter 0.1 binaire)."""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"montant invalide: {value!r}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Money = Annotated[Decimal, BeforeValidator(to_money)]


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class Provider(str, Enum):
    STRIPE = "stripe"
    BKASH = "bkash"
    NAGAD = "nagad"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class JointState(NamedTuple):
    order: OrderStatus
    payment: PaymentStatus


class Address(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str


class ContactInfo(BaseModel):
    email: EmailStr
    phone: Optional[str] = None


class ShippingMethod(BaseModel):
    name: str
    cost: Money
    estimated_days: int


class CartLine(BaseModel):
    """Ligne de panier finalisé fournie par le collaborateur panier (non validée ici)."""
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str = ""
    quantity: int
    unit_price: Money


class Cart(BaseModel):
    items: List[CartLine] = Field(default_factory=list)
    discount: Money = Decimal("0.00")


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str = ""
    quantity: int = Field(ge=1)
    unit_price: Money = Field(ge=0)
    total_price: Money = Field(ge=0)


class Totals(BaseModel):
    subtotal: Money = Field(ge=0)
    shipping: Money = Field(ge=0)
    tax: Money = Field(ge=0)
    discount: Money = Field(default=Decimal("0.00"), ge=0)
    grand_total: Money = Field(ge=0)

    @model_validator(mode="after")
    def _grand_total_identity(self):
        expected = self.subtotal - self.discount + self.tax + self.shipping
        if self.grand_total != expected:
            raise ValueError(f"grand_total {self.grand_total} != {expected}")
        return self


class PaymentInfo(BaseModel):
    provider: Optional[Provider] = None
    intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount: Money
    currency: str


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    items: List[OrderItem]
    totals: Totals
    shipping_address: Address
    billing_address: Optional[Address] = None
    contact_info: ContactInfo
    shipping_method: ShippingMethod
    currency: str
    status: OrderStatus = OrderStatus.PENDING
    payment: PaymentInfo
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def joint_state(self) -> JointState:
        return JointState(self.status, self.payment.status)


class PaymentOutcome(BaseModel):
    """Résultat normalisé d'un événement prestataire (webhook, callback ou remboursement)."""
    provider: Provider
    provider_event_id: str
    kind: OutcomeKind
    intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Money] = None
    order_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _needs_reference(self):
        if not (self.intent_id or self.charge_id):
            raise ValueError("intent_id ou charge_id requis")
        return self


class ProcessedEvent(BaseModel):
    provider: Provider
    provider_event_id: str
    order_id: Optional[str] = None
    applied_at: datetime = Field(default_factory=utcnow)


PENDING_PAYMENT = JointState(OrderStatus.PENDING, PaymentStatus.PENDING)
PAID = JointState(OrderStatus.PROCESSING, PaymentStatus.SUCCEEDED)
