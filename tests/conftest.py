import hashlib
import hmac
import json
import os
import random
import time
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

# Avant tout import de storefront: store mémoire et pas de Redis pendant les tests
os.environ["ORDER_STORE"] = "memory"
os.environ["DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS"] = "1"

from storefront.app import app as fastapi_app
from storefront.container import build_services
from storefront.orders.models import Address, Cart, CartLine, ContactInfo, Provider
from storefront.orders.repository import MemoryOrderStore
from storefront.orders.service import OrderFactory
from storefront.payments.collaborators import InventoryService, MemoryCartService, NotificationService
from storefront.payments.gateway import REDIRECT, WEBHOOK, IntentSession, PaymentGateway, RefundReceipt
from storefront.payments.stripe_client import StripeGateway
from storefront.utils.security import require_admin, require_user

WEBHOOK_SECRET = "whsec_test_secret"


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)
        elif "tests/functional/" in nodeid:
            item.add_marker(pytest.mark.functional)


class FakeGateway(PaymentGateway):
    """Prestataire factice: enregistre les appels, échec injectable via .fail."""

    def __init__(self, name: Provider = Provider.STRIPE, mode: str = WEBHOOK, currencies=("USD", "BDT")):
        self.name = name
        self.mode = mode
        self.supported_currencies = frozenset(currencies)
        self.intents: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.fail: Optional[Exception] = None
        # Réponses de relecture pour les wallets (execute/query/verify)
        self.status_response: Dict[str, Any] = {}

    def create_intent(self, order, *, idempotency_key):
        if self.fail:
            raise self.fail
        intent_id = f"{self.name.value}_intent_{len(self.intents) + 1}"
        self.intents.append({"order_id": order.id, "key": idempotency_key, "amount": order.payment.amount})
        return IntentSession(self.name, intent_id, {"client_secret": f"{intent_id}_secret"})

    def refund(self, order, amount, *, reason, idempotency_key):
        if self.fail:
            raise self.fail
        self.refunds.append({"order_id": order.id, "amount": amount, "reason": reason, "key": idempotency_key})
        return RefundReceipt(refund_id=f"re_{len(self.refunds)}", amount=amount, status="succeeded")

    def execute_payment(self, payment_id):
        return dict(self.status_response)

    def query_payment(self, payment_id):
        return dict(self.status_response)


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture
def store() -> MemoryOrderStore:
    return MemoryOrderStore()


@pytest.fixture
def carts() -> MemoryCartService:
    return MemoryCartService()


@pytest.fixture
def notifications():
    return MagicMock(spec=NotificationService)


@pytest.fixture
def inventory():
    return MagicMock(spec=InventoryService)


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, max_network_retries=1)


@pytest.fixture
def wallet_gateway() -> FakeGateway:
    return FakeGateway(Provider.BKASH, REDIRECT, currencies=("BDT", "USD"))


@pytest.fixture
def order_factory(store) -> OrderFactory:
    return OrderFactory(
        store,
        tax_rate=Decimal("0.10"),
        free_shipping_threshold=Decimal("50"),
        currency="USD",
        rng=random.Random(1234),
    )


@pytest.fixture
def services(app, store, carts, notifications, inventory, stripe_gateway, wallet_gateway, order_factory):
    """Conteneur neuf par test, posé sur app.state (le lifespan ne le reconstruit pas)."""
    svc = build_services(
        store=store,
        carts=carts,
        notifications=notifications,
        inventory=inventory,
        gateways={Provider.STRIPE: stripe_gateway, Provider.BKASH: wallet_gateway},
        factory=order_factory,
    )
    app.state.services = svc
    yield svc
    app.state.services = None


@pytest.fixture
def client(app, services) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    fake_user: Dict[str, Any] = {
        "id": "test-user",
        "email": "test@example.com",
        "role": "user",
        "metadata": {"full_name": "Test User"},
        "token": "fake-token",
    }
    app.dependency_overrides[require_user] = lambda: fake_user
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)


@pytest.fixture
def admin_client(app, client):
    def _override_require_admin():
        return {"id": "admin-user-id", "role": "admin", "email": "admin@example.com"}
    app.dependency_overrides[require_admin] = _override_require_admin
    yield client
    app.dependency_overrides.pop(require_admin, None)


# Aucun accès Supabase réel pendant les tests
@pytest.fixture(autouse=True)
def mock_supabase_clients(monkeypatch):
    monkeypatch.setattr("storefront.infra.supabase_client.get_supabase", lambda: MagicMock())
    monkeypatch.setattr("storefront.infra.supabase_client.get_service_supabase", lambda: MagicMock())


@pytest.fixture
def address() -> Address:
    return Address(line1="12 Rue de Rivoli", city="Paris", postal_code="75001", country="FR")


@pytest.fixture
def contact() -> ContactInfo:
    return ContactInfo(email="buyer@example.com", phone="+33600000000")


@pytest.fixture
def sample_cart() -> Cart:
    # 2 × 20.00 -> sous-total 40, taxe 4, livraison 5.99, total 49.99
    return Cart(items=[CartLine(product_id="p1", name="T-shirt", sku="TS-1", quantity=2, unit_price="20.00")])


@pytest.fixture
def make_order(order_factory, sample_cart, address, contact):
    """Crée une commande (pending, pending) pour un utilisateur donné."""
    def _make(user_id: str = "test-user", cart: Optional[Cart] = None, currency: Optional[str] = None):
        return order_factory.create_order(
            user_id=user_id,
            cart=cart or sample_cart,
            shipping_address=address,
            contact_info=contact,
            currency=currency,
        )
    return _make


def sign_stripe(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def stripe_event():
    """Construit (payload, en-têtes signés) pour un événement Stripe."""
    def _build(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1", secret: str = WEBHOOK_SECRET):
        payload = json.dumps({
            "id": event_id,
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }).encode("utf-8")
        return payload, {"Stripe-Signature": sign_stripe(payload, secret), "Content-Type": "application/json"}
    return _build


@pytest.fixture
def fake_stripe_api(monkeypatch):
    """Remplace stripe.PaymentIntent.create / stripe.Refund.create et enregistre les appels."""
    import stripe
    from types import SimpleNamespace

    calls: Dict[str, List[Dict[str, Any]]] = {"intents": [], "refunds": []}

    def _create_intent(**params):
        calls["intents"].append(params)
        intent_id = f"pi_{len(calls['intents'])}"
        return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret_abc")

    def _create_refund(**params):
        calls["refunds"].append(params)
        return SimpleNamespace(id=f"re_{len(calls['refunds'])}", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", _create_intent)
    monkeypatch.setattr(stripe.Refund, "create", _create_refund)
    return calls


@pytest.fixture
def stripe_signer():
    return sign_stripe
