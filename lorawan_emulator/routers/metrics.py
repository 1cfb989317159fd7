"""
Metrics Router - Prometheus Endpoint

Exposes /metrics endpoint for Prometheus scraping
"""
from fastapi import APIRouter, Response
from ..metrics import get_metrics_text, get_metrics_content_type

router = APIRouter(tags=["Observability"])


@router.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint

    Counts pulls, pushes, TTN steps, uplinks and lock actions. Never
    includes keys or payload contents.
    """
    return Response(
        content=get_metrics_text(),
        media_type=get_metrics_content_type()
    )
