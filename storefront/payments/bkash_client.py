"""
Client bKash (checkout tokenisé, API v1.2.0-beta).
- Jeton: POST /checkout/token/grant (en-têtes username/password), mis en cache jusqu'à expiration.
- Création: POST /checkout/payment/create -> paymentID + bkashURL (redirection client).
- Exécution: POST /checkout/payment/execute/{paymentID} -> trxID + transactionStatus (autoritatif).
- Consultation: GET /checkout/payment/query/{paymentID}.
- Remboursement: POST /checkout/payment/refund (paymentID + trxID).
Aucun retry automatique: bKash n'offre pas de clé d'idempotence.
"""
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx

from storefront import config
from storefront.errors import ProviderUnavailable
from storefront.orders.models import Order, Provider
from storefront.payments.gateway import REDIRECT, IntentSession, PaymentGateway, RefundReceipt

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"
TOKEN_SAFETY_MARGIN_SECONDS = 60


class BkashGateway(PaymentGateway):
    name = Provider.BKASH
    label = "bKash"
    mode = REDIRECT
    supported_currencies = frozenset({"BDT"})

    def __init__(
        self,
        *,
        app_key: str = config.BKASH_APP_KEY,
        app_secret: str = config.BKASH_APP_SECRET,
        username: str = config.BKASH_USERNAME,
        password: str = config.BKASH_PASSWORD,
        base_url: str = config.BKASH_BASE_URL,
        callback_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url or f"{config.BASE_URL}/api/v1/payments/bkash/callback"
        self._http = http_client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _post(self, path: str, *, headers: Dict[str, str], json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._send("POST", path, headers=headers, json=json)

    def _send(self, method: str, path: str, *, headers: Dict[str, str], json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.request(method, url, headers=headers, json=json)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            logger.exception("payments.bkash %s %s failed", method, path)
            raise ProviderUnavailable("bKash injoignable") from e
        except ValueError as e:
            logger.exception("payments.bkash %s %s invalid json", method, path)
            raise ProviderUnavailable("Réponse bKash invalide") from e

    def grant_token(self) -> str:
        now = self._clock()
        if self._token and now < self._token_expires_at:
            return self._token
        data = self._post(
            "/checkout/token/grant",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "username": self.username,
                "password": self.password,
            },
            json={"app_key": self.app_key, "app_secret": self.app_secret},
        )
        token = data.get("id_token")
        if not token:
            logger.error("payments.bkash.grant_token no id_token status=%s", data.get("statusMessage"))
            raise ProviderUnavailable("Jeton bKash indisponible")
        expires_in = int(data.get("expires_in") or 3600)
        self._token = token
        self._token_expires_at = now + max(0, expires_in - TOKEN_SAFETY_MARGIN_SECONDS)
        return token

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "authorization": self.grant_token(),
            "x-app-key": self.app_key,
        }

    def create_intent(self, order: Order, *, idempotency_key: str) -> IntentSession:
        data = self._post(
            "/checkout/payment/create",
            headers=self._auth_headers(),
            json={
                "mode": "0011",
                "payerReference": order.contact_info.phone or order.user_id,
                "callbackURL": self.callback_url,
                "amount": f"{order.payment.amount:.2f}",
                "currency": order.payment.currency,
                "intent": "sale",
                "merchantInvoiceNumber": order.order_number,
            },
        )
        payment_id = data.get("paymentID")
        if data.get("statusCode") != SUCCESS_CODE or not payment_id:
            logger.error(
                "payments.bkash.create_intent rejected order_id=%s code=%s message=%s",
                order.id, data.get("statusCode"), data.get("statusMessage"),
            )
            raise ProviderUnavailable(data.get("statusMessage") or "Création du paiement bKash refusée")
        return IntentSession(
            provider=self.name,
            intent_id=payment_id,
            artifact={"payment_id": payment_id, "redirect_url": data.get("bkashURL")},
        )

    def execute_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._post(f"/checkout/payment/execute/{payment_id}", headers=self._auth_headers())

    def query_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._send("GET", f"/checkout/payment/query/{payment_id}", headers=self._auth_headers())

    def refund(self, order: Order, amount: Decimal, *, reason: Optional[str], idempotency_key: str) -> RefundReceipt:
        data = self._post(
            "/checkout/payment/refund",
            headers=self._auth_headers(),
            json={
                "paymentID": order.payment.intent_id,
                "trxID": order.payment.charge_id,
                "amount": f"{amount:.2f}",
                "sku": order.order_number,
                "reason": reason or "Refund",
            },
        )
        refund_id = data.get("refundTrxID")
        if not refund_id:
            logger.error("payments.bkash.refund rejected order_id=%s message=%s", order.id, data.get("statusMessage"))
            raise ProviderUnavailable(data.get("statusMessage") or "Remboursement bKash refusé")
        return RefundReceipt(refund_id=refund_id, amount=amount, status=data.get("transactionStatus") or "Completed")
