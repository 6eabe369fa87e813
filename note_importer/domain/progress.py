"""Progress payloads and the pure helpers that build them."""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


ProcessingStage = Literal[
    "pending",
    "extracting",
    "analyzing",
    "saving",
    "ready-to-upload",
    "uploading",
    "rate-limited",
    "retrying",
    "complete",
    "error",
]

AugmentStage = Literal["fetching", "extracting", "analyzing", "building", "uploading", "complete", "error"]
BatchStage = Literal["scanning", "processing", "uploading", "complete"]

SUPPORTED_EXTENSIONS = [
    ".pdf", ".txt", ".md", ".markdown", ".docx",
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".tiff"
]

STAGE_PROGRESS = {
    "pending": 0,
    "extracting": 25,
    "analyzing": 50,
    "saving": 90,
    "ready-to-upload": 100,
    "uploading": 10,
    "rate-limited": 10,
    "retrying": 10,
    "complete": 100,
    "error": 0,
}


class ItemResult(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    note_url: Optional[str] = None


class ItemProgress(BaseModel):
    """Progress event for a single queue item"""
    file_path: str
    status: ProcessingStage
    progress: int = Field(ge=0, le=100)
    message: Optional[str] = None
    error: Optional[str] = None
    result: Optional[ItemResult] = None


class AugmentProgress(BaseModel):
    """Progress event for the augmentation of an existing remote note"""
    note_guid: str
    status: AugmentStage
    progress: int = Field(ge=0, le=100)
    message: Optional[str] = None
    error: Optional[str] = None
    note_url: Optional[str] = None


class BatchProgress(BaseModel):
    """Progress of a folder/batch admission"""
    total_files: int
    processed: int
    current_file: Optional[str] = None
    status: BatchStage


def get_stage_progress(stage: ProcessingStage) -> int:
    return STAGE_PROGRESS[stage]


def get_stage_message(stage: ProcessingStage, rate_limit_duration: Optional[int] = None) -> str:
    """User-facing message for a processing stage"""
    if stage == "rate-limited":
        return f"Rate limited - retry in {rate_limit_duration}s" if rate_limit_duration else "Rate limited"

    messages = {
        "pending": "Waiting to process...",
        "extracting": "Extracting file content...",
        "analyzing": "Analyzing with AI...",
        "saving": "Saving analysis...",
        "ready-to-upload": "Analysis complete, ready to upload",
        "uploading": "Uploading note...",
        "retrying": "Retrying upload...",
        "complete": "Uploaded successfully",
        "error": "Processing failed",
    }
    return messages[stage]


def create_progress_data(
    file_path: str,
    stage: ProcessingStage,
    rate_limit_duration: Optional[int] = None,
    error: Optional[str] = None,
    result: Optional[ItemResult] = None,
    custom_message: Optional[str] = None,
    progress: Optional[int] = None,
) -> ItemProgress:
    """Build an ``ItemProgress`` with the default percent and message for ``stage``"""
    return ItemProgress(
        file_path=file_path,
        status=stage,
        progress=get_stage_progress(stage) if progress is None else progress,
        message=custom_message or get_stage_message(stage, rate_limit_duration),
        error=error,
        result=result,
    )


def extract_error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if message is not None:
        return str(message)
    return "Unknown error"


def format_rate_limit_duration(seconds: int) -> str:
    """Compact duration, e.g. ``2m 30s`` or ``45s``"""
    if seconds < 60:
        return f"{seconds}s"

    minutes, remaining = divmod(seconds, 60)
    if remaining == 0:
        return f"{minutes}m"
    return f"{minutes}m {remaining}s"


def is_supported_file_type(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS
