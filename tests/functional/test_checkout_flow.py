from storefront.orders.models import Cart, CartLine


def test_full_card_checkout_then_refund(admin_client, services, carts, stripe_event, fake_stripe_api, notifications, inventory):
    # 1) Panier finalisé puis checkout
    carts.set_cart("test-user", Cart(items=[
        CartLine(product_id="p1", name="Sweat", sku="SW-1", quantity=1, unit_price="35.00"),
        CartLine(product_id="p2", name="Chaussettes", sku="CH-1", quantity=3, unit_price="5.00"),
    ]))
    checkout = admin_client.post("/api/v1/orders", json={
        "shipping_address": {"line1": "1 Quai Branly", "city": "Paris", "postal_code": "75007", "country": "FR"},
        "contact_info": {"email": "buyer@example.com"},
    })
    assert checkout.status_code == 201
    order = checkout.json()
    # 50.00 atteint le seuil: livraison offerte, taxe 5.00
    assert order["totals"]["grand_total"] == "55.00"

    # 2) Intention Stripe pour le montant exact
    intent = admin_client.post("/api/v1/payments/stripe/intent", json={"orderId": order["id"]})
    assert intent.status_code == 200
    assert fake_stripe_api["intents"][0]["amount"] == 5500
    intent_id = intent.json()["intentId"]

    # 3) Webhook signé (livré deux fois)
    payload, headers = stripe_event("payment_intent.succeeded", {
        "id": intent_id, "latest_charge": "ch_flow", "amount_received": 5500, "metadata": {"orderId": order["id"]},
    }, event_id="evt_flow")
    assert admin_client.post("/api/v1/webhooks/stripe", content=payload, headers=headers).json()["status"] == "applied"
    assert admin_client.post("/api/v1/webhooks/stripe", content=payload, headers=headers).json()["status"] == "duplicate"

    status = admin_client.get(f"/api/v1/payments/{order['id']}/status").json()
    assert (status["status"], status["paymentStatus"], status["provider"]) == ("processing", "succeeded", "stripe")
    notifications.send_order_confirmation.assert_called_once()

    # 4) Remboursement admin, puis le webhook charge.refunded de Stripe arrive en retard
    refund = admin_client.post(f"/api/v1/orders/{order['id']}/refund", json={"reason": "Taille"})
    assert refund.status_code == 200
    assert refund.json()["order"]["status"] == "refunded"
    assert fake_stripe_api["refunds"][0]["charge"] == "ch_flow"

    late, late_headers = stripe_event(
        "charge.refunded", {"id": "ch_flow", "payment_intent": intent_id}, event_id="evt_refunded"
    )
    assert admin_client.post("/api/v1/webhooks/stripe", content=late, headers=late_headers).json()["status"] == "stale"

    final = admin_client.get(f"/api/v1/orders/{order['id']}").json()
    assert (final["status"], final["payment"]["status"]) == ("refunded", "refunded")
    assert final["notes"] == "Refund: Taille - Amount: 55.00"
    inventory.reserve.assert_called_once()
    inventory.restore.assert_called_once()
