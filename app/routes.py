from fastapi import APIRouter, Depends

from app.egress_proxy.route import get_proxy_service, router as proxy_router
from app.egress_proxy.service import ProxyService

router = APIRouter()


@router.get("/health")
async def health(service: ProxyService = Depends(get_proxy_service)):
    return {"status": "ok", "mappings": service.mappings.prefixes}


router.include_router(proxy_router)
