"""Metrics and monitoring endpoints.

Prometheus-compatible metrics and a JSON summary, both admin only.
"""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from studygate.app.core.metrics import get_metrics_collector
from studygate.app.middleware.auth import require_admin

router = APIRouter()


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(admin=Depends(require_admin)) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    collector = get_metrics_collector()
    content = await collector.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def service_stats(admin=Depends(require_admin)) -> dict[str, Any]:
    """Request, rate limit, stream and error statistics (admin only)."""
    collector = get_metrics_collector()
    return await collector.get_summary()
