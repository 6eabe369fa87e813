"""
Metrics API

Prometheus scrape endpoint for the pipeline metrics.
"""

from fastapi import APIRouter, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from note_importer.core.logging_config import get_logger

router = APIRouter(prefix="/api/metrics", tags=["metrics"])
logger = get_logger(__name__)


@router.get("/prometheus")
async def prometheus_metrics(request: Request):
    """Returns metrics in Prometheus text format for scraping."""
    metrics = request.app.state.pipeline.metrics
    if metrics is None:
        raise HTTPException(status_code=404, detail="Metrics are disabled")

    try:
        return Response(content=generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)
    except Exception as e:
        logger.error(f"Error generating Prometheus metrics: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to generate metrics: {str(e)}")
