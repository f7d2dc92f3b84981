from fastapi import APIRouter, Depends

from content_identity.models.response import HealthResponse
from content_identity.routes.dependencies import get_service
from content_identity.service.identity_service import ContentIdentityService

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthResponse)
async def health_check(service: ContentIdentityService = Depends(get_service)):
    gateway_status = "healthy" if await service.resolver.health_check() else "unhealthy"
    rpc_status = "healthy" if await service.registry.health_check() else "unhealthy"

    return HealthResponse(
        status="healthy" if gateway_status == rpc_status == "healthy" else "degraded",
        ipfs_gateway=gateway_status,
        registry_rpc=rpc_status,
    )
