from urllib.parse import parse_qs, urlparse

from storefront import config
from storefront.errors import ProviderUnavailable
from storefront.orders.models import PAID, PENDING_PAYMENT, Provider


def test_payment_methods_lists_enabled_gateways(client):
    methods = client.get("/api/v1/payments/methods").json()["methods"]

    assert [m["id"] for m in methods] == ["stripe", "bkash"]
    assert methods[1]["mode"] == "redirect"


def test_create_stripe_intent(client, services, make_order, fake_stripe_api):
    order = make_order()

    r = client.post("/api/v1/payments/stripe/intent", json={"orderId": order.id})

    assert r.status_code == 200
    assert r.json() == {
        "provider": "stripe",
        "intentId": "pi_1",
        "client_secret": "pi_1_secret_abc",
        "payment_intent_id": "pi_1",
    }
    assert fake_stripe_api["intents"][0]["amount"] == 4999
    assert services.store.get(order.id).payment.intent_id == "pi_1"


def test_intent_for_foreign_order_is_404(client, make_order, fake_stripe_api):
    order = make_order(user_id="someone-else")

    r = client.post("/api/v1/payments/stripe/intent", json={"orderId": order.id})

    assert r.status_code == 404
    assert fake_stripe_api["intents"] == []


def test_intent_unknown_provider_is_404(client, make_order):
    assert client.post("/api/v1/payments/paypal/intent", json={"orderId": make_order().id}).status_code == 404


def test_intent_on_paid_order_is_409(client, services, make_order, fake_stripe_api):
    from storefront.orders.models import ProcessedEvent

    order = make_order()
    services.store.apply_transition(
        order.id, PENDING_PAYMENT, PAID, ProcessedEvent(provider=Provider.STRIPE, provider_event_id="e")
    )

    assert client.post("/api/v1/payments/stripe/intent", json={"orderId": order.id}).status_code == 409


def test_intent_provider_down_is_503(client, services, make_order, monkeypatch):
    order = make_order()

    def _down(*args, **kwargs):
        raise ProviderUnavailable()

    monkeypatch.setattr(services.gateways[Provider.STRIPE], "create_intent", _down)
    r = client.post("/api/v1/payments/stripe/intent", json={"orderId": order.id})

    assert r.status_code == 503
    assert r.headers["Retry-After"] == "1"
    assert services.store.get(order.id) == order


def test_payment_status_endpoint(client, make_order):
    order = make_order()

    body = client.get(f"/api/v1/payments/{order.id}/status").json()

    assert body == {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "status": "pending",
        "paymentStatus": "pending",
        "provider": None,
        "amount": "49.99",
        "currency": "USD",
    }


def _bkash_order(services, make_order, wallet_gateway):
    order = make_order(currency="BDT")
    session = services.issuer.issue(order.id, "bkash")
    return order, session.intent_id


def test_bkash_callback_success_redirects_and_marks_paid(client, services, make_order, wallet_gateway, notifications):
    order, payment_id = _bkash_order(services, make_order, wallet_gateway)
    wallet_gateway.status_response = {"transactionStatus": "Completed", "trxID": "TRX1", "amount": "49.99"}

    r = client.get(
        "/api/v1/payments/bkash/callback",
        params={"paymentID": payment_id, "status": "success"},
        follow_redirects=False,
    )

    assert r.status_code == 303
    location = urlparse(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}" == config.FRONTEND_URL
    assert location.path == "/checkout/success"
    assert parse_qs(location.query)["order"] == [order.order_number]
    saved = services.store.get(order.id)
    assert saved.joint_state == PAID
    assert saved.payment.charge_id == "TRX1"
    notifications.send_order_confirmation.assert_called_once()


def test_bkash_callback_replay_is_idempotent(client, services, make_order, wallet_gateway, notifications):
    _, payment_id = _bkash_order(services, make_order, wallet_gateway)
    wallet_gateway.status_response = {"transactionStatus": "Completed", "trxID": "TRX1"}
    params = {"paymentID": payment_id, "status": "success"}

    first = client.get("/api/v1/payments/bkash/callback", params=params, follow_redirects=False)
    second = client.get("/api/v1/payments/bkash/callback", params=params, follow_redirects=False)

    assert "/checkout/success" in first.headers["location"]
    assert "/checkout/success" in second.headers["location"]
    notifications.send_order_confirmation.assert_called_once()


def test_bkash_forged_success_is_not_trusted(client, services, make_order, wallet_gateway):
    order, payment_id = _bkash_order(services, make_order, wallet_gateway)
    wallet_gateway.status_response = {"transactionStatus": "Failed"}

    r = client.get(
        "/api/v1/payments/bkash/callback",
        params={"paymentID": payment_id, "status": "success"},
        follow_redirects=False,
    )

    assert "/checkout/failed" in r.headers["location"]
    assert services.store.get(order.id).payment.status.value == "failed"


def test_callback_missing_reference_redirects_to_failed(client):
    r = client.get("/api/v1/payments/bkash/callback", params={"status": "success"}, follow_redirects=False)

    assert r.status_code == 303
    assert "reason=ValidationError" in r.headers["location"]


def test_callback_for_webhook_provider_is_404(client):
    assert client.get("/api/v1/payments/stripe/callback", follow_redirects=False).status_code == 404


def test_wallet_payment_completed_after_switching_provider_pays_order(
    client, services, make_order, wallet_gateway, fake_stripe_api, notifications
):
    order = make_order(currency="BDT")
    bkash = client.post("/api/v1/payments/bkash/intent", json={"orderId": order.id}).json()
    client.post("/api/v1/payments/stripe/intent", json={"orderId": order.id})
    assert services.store.get(order.id).payment.provider is Provider.STRIPE
    wallet_gateway.status_response = {"transactionStatus": "Completed", "trxID": "TRX1", "amount": "49.99"}

    r = client.get(
        "/api/v1/payments/bkash/callback",
        params={"paymentID": bkash["intentId"], "status": "success"},
        follow_redirects=False,
    )

    assert "/checkout/success" in r.headers["location"]
    saved = services.store.get(order.id)
    assert saved.joint_state == PAID
    assert saved.payment.provider is Provider.BKASH
    assert saved.payment.intent_id == bkash["intentId"]
    assert saved.payment.charge_id == "TRX1"
    notifications.send_order_confirmation.assert_called_once()
