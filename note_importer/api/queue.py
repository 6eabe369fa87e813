"""
Queue API

Operator endpoints for inspecting and maintaining the import queue.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from note_importer.core.logging_config import get_logger
from note_importer.models.queue_item import FileStatus
from note_importer.pipeline import ImportPipeline

router = APIRouter(prefix="/api/queue", tags=["queue"])
logger = get_logger(__name__)


class RequeueRequest(BaseModel):
    key: str = Field(..., min_length=1, description="Key (file path or note guid) of an errored item")


class AdmitRequest(BaseModel):
    keys: List[str] = Field(..., min_length=1)


def get_pipeline(request: Request) -> ImportPipeline:
    return request.app.state.pipeline


@router.get("")
async def list_queue(
    status: Optional[FileStatus] = Query(None, description="Only items in this status"),
    pipeline: ImportPipeline = Depends(get_pipeline)
) -> Dict[str, Any]:
    """List queue items with aggregate stats and the upload worker state"""
    items = pipeline.list_items(status)
    return {
        "success": True,
        "data": {
            "items": [item.to_dict() for item in items],
            "stats": pipeline.get_stats().model_dump(),
            "upload_queue": pipeline.upload_worker.get_queue_status()
        }
    }


@router.get("/stats")
async def queue_stats(pipeline: ImportPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {"success": True, "data": pipeline.get_stats().model_dump()}


@router.post("/items")
async def admit_items(body: AdmitRequest, pipeline: ImportPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Admit new keys into Stage 1"""
    admitted = pipeline.admit(body.keys)
    logger.info(f"Admitted {len(admitted)} of {len(body.keys)} item(s) via API")
    return {"success": True, "data": {"admitted": admitted}}


@router.post("/requeue")
async def requeue_item(body: RequeueRequest, pipeline: ImportPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Reset an errored item to pending"""
    item = pipeline.requeue(body.key)
    return {"success": True, "data": item.to_dict()}


@router.delete("/completed")
async def purge_completed(pipeline: ImportPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    deleted = pipeline.purge_completed()
    return {"success": True, "data": {"deleted": deleted}}


@router.delete("")
async def purge_all(pipeline: ImportPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Delete every queue record"""
    deleted = pipeline.purge_all()
    logger.warning(f"Purged entire queue ({deleted} item(s))")
    return {"success": True, "data": {"deleted": deleted}}
