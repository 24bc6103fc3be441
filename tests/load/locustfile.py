"""
Scénario de charge: checkout concurrent + relivraison de webhooks Stripe.

Usage:
    locust -f tests/load/locustfile.py --host http://localhost:8000

Variables d'environnement:
- LOCUST_BEARER: jeton Supabase d'un utilisateur de test (requis pour /api/v1/orders)
- STRIPE_WEBHOOK_SECRET: même secret que le serveur, pour signer les webhooks simulés
- LOCUST_REDELIVERIES: nombre de relivraisons par événement (défaut 3)
"""
import hashlib
import hmac
import json
import os
import time
import uuid

from locust import HttpUser, between, task

BEARER = os.getenv("LOCUST_BEARER", "").strip()
WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
REDELIVERIES = int(os.getenv("LOCUST_REDELIVERIES", "3"))

CHECKOUT_BODY = {
    "shipping_address": {"line1": "1 Load Street", "city": "Paris", "postal_code": "75001", "country": "FR"},
    "contact_info": {"email": "load@example.com"},
    "shipping_method": "standard",
}


def _sign(payload: str) -> str:
    ts = int(time.time())
    digest = hmac.new(WEBHOOK_SECRET.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


class StorefrontUser(HttpUser):
    wait_time = between(0.5, 2.0)

    def on_start(self):
        if not BEARER:
            raise RuntimeError("Fournissez un jeton via LOCUST_BEARER.")
        self.client.headers.update({"Authorization": f"Bearer {BEARER}"})

    @task(3)
    def health(self):
        self.client.get("/health", name="health")

    @task(2)
    def checkout_and_intent(self):
        # Le panier doit être alimenté côté serveur; un 400 « Panier vide » reste un résultat attendu
        with self.client.post("/api/v1/orders", json=CHECKOUT_BODY, name="checkout", catch_response=True) as r:
            if r.status_code == 201:
                r.success()
                order_id = r.json()["id"]
                self.client.post("/api/v1/payments/stripe/intent", json={"orderId": order_id}, name="intent")
            elif r.status_code in (400, 429, 503):
                r.success()
            else:
                r.failure(f"checkout status={r.status_code}")

    @task(1)
    def webhook_redelivery(self):
        """Même événement livré plusieurs fois: une seule application, le reste en duplicate/unmatched."""
        if not WEBHOOK_SECRET:
            return
        payload = json.dumps({
            "id": f"evt_load_{uuid.uuid4().hex}",
            "type": "payment_intent.succeeded",
            "created": int(time.time()),
            "data": {"object": {"id": f"pi_load_{uuid.uuid4().hex[:12]}", "amount_received": 100}},
        })
        for _ in range(REDELIVERIES):
            with self.client.post(
                "/api/v1/webhooks/stripe",
                data=payload,
                headers={"Stripe-Signature": _sign(payload), "Content-Type": "application/json"},
                name="webhook",
                catch_response=True,
            ) as r:
                if r.status_code == 200 and r.json().get("status") in ("applied", "duplicate", "unmatched", "stale"):
                    r.success()
                else:
                    r.failure(f"webhook status={r.status_code}")
