from fastapi import APIRouter, Depends, Request

from storefront.container import Services, get_services
from storefront.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/ready")
def health_ready(request: Request, services: Services = Depends(get_services)):
    return {
        "ok": True,
        "store": services.store.backend,
        "providers": sorted(p.value for p in services.gateways),
        "rate_limit": rate_limit_health_info(request),
    }
