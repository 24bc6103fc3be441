import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from storefront.container import Services, get_services
from storefront.errors import OrderNotFound
from storefront.orders.models import Address, ContactInfo, Order, OrderStatus
from storefront.payments.collaborators import run_safely
from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import require_admin, require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])


class CheckoutRequest(BaseModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    contact_info: ContactInfo
    shipping_method: str = "standard"
    notes: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    status: str
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber", max_length=100)


def serialize_order(order: Order) -> Dict[str, Any]:
    return order.model_dump(mode="json")


def paginated(orders: List[Order], total: int, page: int, limit: int) -> Dict[str, Any]:
    pages = math.ceil(total / limit) if total else 0
    return {
        "orders": [serialize_order(o) for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": pages,
            "hasNextPage": page < pages,
            "hasPrevPage": page > 1,
        },
    }


def load_visible_order(services: Services, order_id: str, user: Dict[str, Any]) -> Order:
    """Commande du demandeur (ou tout ordre pour un admin); 404 sinon pour ne rien divulguer."""
    order = services.store.get(order_id)
    if order is None or (order.user_id != user.get("id") and user.get("role") != "admin"):
        raise OrderNotFound()
    return order


# module storefront.orders.views
@router.post("", status_code=201, dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_order(
    payload: CheckoutRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_user),
    services: Services = Depends(get_services),
):
    """
    Checkout: crée une commande « pending » à partir du panier finalisé de l'utilisateur.
    - Totaux figés côté serveur (taxe, livraison, remise du panier)
    - Réponse 201 avec la commande; réservation de stock et vidage du panier après réponse
    - Erreurs: 400 panier/adresse invalides, 503 numéros de commande épuisés (réessayable)
    """
    cart = services.carts.get_checkout_cart(user["id"])
    order = services.factory.create_order(
        user_id=user["id"],
        cart=cart,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address,
        contact_info=payload.contact_info,
        shipping_method=payload.shipping_method,
        notes=payload.notes,
    )
    background_tasks.add_task(run_safely, services.inventory.reserve, order)
    background_tasks.add_task(services.carts.clear, user["id"])
    return serialize_order(order)


@router.get("/my-orders")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user: Dict[str, Any] = Depends(require_user),
    services: Services = Depends(get_services),
):
    """Commandes du demandeur, les plus récentes d'abord (filtre optionnel par statut)."""
    orders, total = services.store.list_orders(
        user_id=user["id"], status=status, limit=limit, offset=(page - 1) * limit
    )
    return paginated(orders, total, page, limit)


@router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = Query(None, alias="userId"),
    admin: Dict[str, Any] = Depends(require_admin),
    services: Services = Depends(get_services),
):
    orders, total = services.store.list_orders(
        user_id=user_id, status=status, limit=limit, offset=(page - 1) * limit
    )
    return paginated(orders, total, page, limit)


@router.patch("/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """
    Expédition administrateur: processing -> shipped (avec trackingNumber) -> delivered.
    - 400 statut hors expédition, 409 étape impossible depuis l'état courant
    - Redemander l'étape courante renvoie {"status": "stale"} sans rien modifier
    """
    result = services.engine.fulfil(
        order_id, payload.status, tracking_number=payload.tracking_number, dispatch=background_tasks.add_task
    )
    logger.info("orders.status admin_id=%s order_id=%s target=%s result=%s",
                admin.get("id"), order_id, payload.status, result.status.value)
    return {"status": result.status.value, "order": serialize_order(result.order)}


@router.get("/{order_id}")
def get_order(
    order_id: str,
    user: Dict[str, Any] = Depends(require_user),
    services: Services = Depends(get_services),
):
    return serialize_order(load_visible_order(services, order_id, user))


@router.post("/{order_id}/refund")
def refund_order(
    order_id: str,
    payload: RefundRequest,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """
    Remboursement administrateur (total par défaut, partiel si amount est fourni).
    - 409 si aucun débit enregistré ou commande non payée, 400 montant invalide,
      503 prestataire indisponible (commande inchangée).
    """
    result = services.refunds.create_refund(
        order_id, payload.amount, payload.reason, dispatch=background_tasks.add_task
    )
    logger.info("orders.refund admin_id=%s order_id=%s refund_id=%s status=%s",
                admin.get("id"), order_id, result.receipt.refund_id, result.apply.status.value)
    return {
        "status": result.apply.status.value,
        "refund": {
            "id": result.receipt.refund_id,
            "amount": str(result.receipt.amount),
            "status": result.receipt.status,
        },
        "order": serialize_order(result.order) if result.order else None,
    }
