import asyncio
import functools
import logging
from typing import Any, Dict, Mapping
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.status import HTTP_303_SEE_OTHER

from storefront import config
from storefront.container import Services, get_services
from storefront.errors import StorefrontError, UnknownProvider
from storefront.orders.models import PAID, Provider
from storefront.orders.views import load_visible_order
from storefront.payments.reconciliation import ApplyResult, ApplyStatus
from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])
webhook_router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


class IntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    order_id: str = Field(alias="orderId", min_length=1)


# module storefront.payments.views
@router.get("/methods")
def payment_methods(services: Services = Depends(get_services)):
    """Moyens de paiement actifs (identifiants configurés)."""
    return {"methods": [gateway.describe() for gateway in services.gateways.values()]}


@router.post("/{provider}/intent", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_payment_intent(
    provider: str,
    payload: IntentRequest,
    user: Dict[str, Any] = Depends(require_user),
    services: Services = Depends(get_services),
):
    """
    Crée l'intention de paiement d'une commande du demandeur.
    - Entrée JSON: {"orderId": "<uuid>"}
    - Réponse: artefact prestataire (Stripe: client_secret; wallets: redirect_url)
    - Erreurs: 404 commande/prestataire inconnus, 409 commande non payable, 503 prestataire indisponible
    """
    session = services.issuer.issue(payload.order_id, provider, user_id=user["id"])
    return {"provider": session.provider.value, "intentId": session.intent_id, **session.artifact}


@router.get("/{provider}/callback", include_in_schema=False)
def payment_callback(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    Retour client des wallets (bKash, Nagad).
    - Les paramètres ne sont pas crus: statut relu côté serveur puis appliqué par le moteur.
    - Redirection 303 vers FRONTEND_URL/checkout/success ou /checkout/failed.
    """
    params: Mapping[str, str] = dict(request.query_params)
    order = None
    try:
        verification = services.verifier.verify_callback(provider, params)
        if verification.outcome is not None:
            order = services.engine.apply(verification.outcome, dispatch=background_tasks.add_task).order
        if order is None:
            order = services.store.find_by_payment_ref(Provider(provider.lower()), intent_id=verification.reference)
    except UnknownProvider:
        raise
    except StorefrontError as e:
        logger.warning("payments.callback provider=%s failed: %s", provider, e.detail)
        return _checkout_redirect(False, None, reason=type(e).__name__)

    success = order is not None and order.joint_state == PAID
    return _checkout_redirect(success, order.order_number if order else None)


def _checkout_redirect(success: bool, order_number: str | None, reason: str | None = None) -> RedirectResponse:
    query = {k: v for k, v in {"order": order_number, "reason": reason}.items() if v}
    path = "/checkout/success" if success else "/checkout/failed"
    url = f"{config.FRONTEND_URL}{path}" + (f"?{urlencode(query)}" if query else "")
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


@router.get("/{order_id}/status")
def payment_status(
    order_id: str,
    user: Dict[str, Any] = Depends(require_user),
    services: Services = Depends(get_services),
):
    order = load_visible_order(services, order_id, user)
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "status": order.status.value,
        "paymentStatus": order.payment.status.value,
        "provider": order.payment.provider.value if order.payment.provider else None,
        "amount": str(order.payment.amount),
        "currency": order.payment.currency,
    }


def _verify_and_apply(services: Services, provider: str, payload: bytes, headers: Mapping[str, str]) -> ApplyResult:
    outcome = services.verifier.verify_webhook(provider, payload, headers)
    if outcome is None:
        return ApplyResult(ApplyStatus.IGNORED)
    # Effets exécutés dans ce thread après le commit: ils survivent à un 503 sur délai dépassé
    return services.engine.apply(outcome)


@webhook_router.post("/{provider}", include_in_schema=False)
async def receive_webhook(
    provider: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """
    Webhook prestataire (Stripe).
    - 400 uniquement si la signature est invalide (aucun état modifié)
    - 200 {"status": applied|duplicate|stale|unmatched|rejected|ignored} une fois traité
    - 503 si l'application dépasse WEBHOOK_APPLY_TIMEOUT_SECONDS (le prestataire relivrera)
    - Les effets post-commit (confirmation, stock) partent du thread de travail, pas de la requête:
      un commit tardif après un 503 les exécute quand même, la relivraison est un « duplicate »
    """
    payload = await request.body()
    headers = dict(request.headers)
    work = functools.partial(_verify_and_apply, services, provider, payload, headers)
    try:
        # Futur d'exécuteur: annulable au délai même si le thread termine son travail
        result = await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, work),
            timeout=config.WEBHOOK_APPLY_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("payments.webhook apply timeout provider=%s", provider)
        raise HTTPException(status_code=503, detail="Traitement en cours, réessayez", headers={"Retry-After": "5"})
    logger.info("payments.webhook provider=%s status=%s", provider, result.status.value)
    return {"status": result.status.value}
