"""
Client Nagad (checkout marchand).
- Initialisation: POST /api/dfs/check-out/initialize/{merchantId}/{orderId}
  données sensibles chiffrées (RSA-OAEP, clé publique Nagad) + signature SHA256 (clé privée marchand).
- Vérification: POST /api/dfs/verify/payment/{merchantId}/{paymentRefId}, statut autoritatif.
- Pas d'API de remboursement exposée: refund hérite de PaymentGateway et lève RefundNotSupported.
"""
import base64
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from storefront import config
from storefront.errors import ProviderUnavailable
from storefront.orders.models import Order, Provider
from storefront.payments.gateway import REDIRECT, IntentSession, PaymentGateway

logger = logging.getLogger(__name__)

BDT_CURRENCY_CODE = "050"


class NagadGateway(PaymentGateway):
    name = Provider.NAGAD
    label = "Nagad"
    mode = REDIRECT
    supported_currencies = frozenset({"BDT"})

    def __init__(
        self,
        *,
        merchant_id: str = config.NAGAD_MERCHANT_ID,
        merchant_number: str = config.NAGAD_MERCHANT_NUMBER,
        public_key_pem: str = config.NAGAD_PUBLIC_KEY,
        private_key_pem: str = config.NAGAD_PRIVATE_KEY,
        base_url: str = config.NAGAD_BASE_URL,
        callback_url: Optional[str] = None,
        client_ip: str = "127.0.0.1",
        http_client: Optional[httpx.Client] = None,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.merchant_id = merchant_id
        self.merchant_number = merchant_number
        self.public_key_pem = public_key_pem
        self.private_key_pem = private_key_pem
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url or f"{config.BASE_URL}/api/v1/payments/nagad/callback"
        self.client_ip = client_ip
        self._http = http_client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._public_key = None
        self._private_key = None

    # --- Crypto ---

    def _keys(self):
        if self._public_key is None or self._private_key is None:
            try:
                self._public_key = serialization.load_pem_public_key(self.public_key_pem.encode())
                self._private_key = serialization.load_pem_private_key(self.private_key_pem.encode(), password=None)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                logger.exception("payments.nagad invalid key material")
                raise ProviderUnavailable("Clés Nagad invalides") from e
        return self._public_key, self._private_key

    def encrypt(self, data: str) -> str:
        public_key, _ = self._keys()
        cipher = public_key.encrypt(
            data.encode("utf-8"),
            padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None),
        )
        return base64.b64encode(cipher).decode("ascii")

    def sign(self, data: str) -> str:
        _, private_key = self._keys()
        signature = private_key.sign(data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    # --- HTTP ---

    def _datetime(self) -> str:
        return self._clock().strftime("%Y%m%d%H%M%S")

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._http.post(
                f"{self.base_url}{path}",
                json=body,
                headers={
                    "Content-Type": "application/json",
                    "X-KM-IP-V4": self.client_ip,
                    "X-KM-Client-Type": "PC_WEB",
                    "X-KM-Api-Version": "v-0.2.0",
                },
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            logger.exception("payments.nagad POST %s failed", path)
            raise ProviderUnavailable("Nagad injoignable") from e
        except ValueError as e:
            logger.exception("payments.nagad POST %s invalid json", path)
            raise ProviderUnavailable("Réponse Nagad invalide") from e

    def create_intent(self, order: Order, *, idempotency_key: str) -> IntentSession:
        stamp = self._datetime()
        invoice = order.order_number
        challenge = secrets.token_hex(32)
        sensitive = json.dumps(
            {"merchantId": self.merchant_id, "datetime": stamp, "orderId": invoice, "challenge": challenge},
            separators=(",", ":"),
        )
        body = {
            "merchantId": self.merchant_id,
            "datetime": stamp,
            "orderId": invoice,
            "challenge": challenge,
            "sensitiveData": self.encrypt(sensitive),
            "signature": self.sign(f"{self.merchant_id}{stamp}{invoice}"),
            "amount": f"{order.payment.amount:.2f}",
            "currencyCode": BDT_CURRENCY_CODE,
            "merchantCallbackURL": self.callback_url,
            "additionalMerchantInfo": {"merchantNumber": self.merchant_number, "service": "Order Payment"},
        }
        data = self._post(f"/api/dfs/check-out/initialize/{self.merchant_id}/{invoice}", body)
        reference = data.get("paymentReferenceId")
        if data.get("status") != "Success" or not reference:
            logger.error("payments.nagad.create_intent rejected order_id=%s reason=%s", order.id, data.get("reason"))
            raise ProviderUnavailable(data.get("reason") or "Initialisation Nagad refusée")
        return IntentSession(
            provider=self.name,
            intent_id=reference,
            artifact={"payment_reference_id": reference, "redirect_url": data.get("callBackUrl")},
        )

    def verify_payment(self, payment_ref_id: str) -> Dict[str, Any]:
        stamp = self._datetime()
        body = {
            "merchantId": self.merchant_id,
            "orderId": payment_ref_id,
            "datetime": stamp,
            "signature": self.sign(f"{self.merchant_id}{stamp}{payment_ref_id}"),
        }
        return self._post(f"/api/dfs/verify/payment/{self.merchant_id}/{payment_ref_id}", body)
