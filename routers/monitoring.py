"""
Monitoring router: health, Prometheus metrics and cache invalidation.
"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.data_layer import DataLayer
from routers.dependencies import get_data_layer

logger = logging.getLogger(__name__)
router = APIRouter(tags=["monitoring"])


class CacheInvalidateRequest(BaseModel):
    """Tag (usually a table name) or exact cache key to drop."""
    tag: str = Field(..., min_length=1, max_length=256)


class CacheInvalidateResponse(BaseModel):
    tag: str
    invalidated: int


@router.get("/health")
async def health(data_layer: DataLayer = Depends(get_data_layer)):
    """Pool and cache health. Returns 503 once the data layer is shut down."""
    report = data_layer.health()
    status_code = 503 if report["status"] == "unavailable" else 200
    return JSONResponse(status_code=status_code, content=report)


@router.get("/metrics",
            summary="Prometheus Metrics Endpoint",
            description="Returns Prometheus-formatted metrics for scraping")
async def get_prometheus_metrics(data_layer: DataLayer = Depends(get_data_layer)):
    data_layer.refresh_gauges()
    return Response(content=data_layer.metrics.render(), media_type=data_layer.metrics.content_type)


@router.post("/api/v1/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    request_data: CacheInvalidateRequest,
    data_layer: DataLayer = Depends(get_data_layer),
):
    """Drop cached queries by tag or key."""
    removed = data_layer.optimizer.invalidate_table(request_data.tag)
    logger.info(f"🧹 [CACHE] Invalidated {removed} entries for '{request_data.tag}'")
    return CacheInvalidateResponse(tag=request_data.tag, invalidated=removed)
