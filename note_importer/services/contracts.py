"""
Collaborator contracts for the two pipeline stages.

Extraction, analysis and upload are provided by the host application; the
pipeline only depends on these narrow async interfaces.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, runtime_checkable


@dataclass
class ExtractedContent:
    """Raw text pulled from a file or an existing note"""
    text: str
    name: str
    kind: str = "file"  # "file" or "note"


@dataclass
class AnalysisResult:
    title: str
    description: str
    tags: List[str] = field(default_factory=list)
    content_hash: Optional[str] = None


@dataclass
class UploadResult:
    """
    Outcome of one upload attempt.

    ``rate_limit_duration`` (seconds) is set when the remote service asked us
    to back off; ``error`` carries the message of a recoverable failure.
    """
    success: bool
    note_url: Optional[str] = None
    note_guid: Optional[str] = None
    rate_limit_duration: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class ContentExtractor(Protocol):
    async def extract(self, key: str) -> ExtractedContent:
        ...


@runtime_checkable
class ContentAnalyzer(Protocol):
    async def analyze(
        self,
        raw_content: str,
        name: str,
        kind: str,
        tag_hints: Optional[Sequence[str]] = None
    ) -> AnalysisResult:
        ...


@runtime_checkable
class NoteUploader(Protocol):
    """
    May raise ``RateLimitException`` or ``UploadError`` instead of returning
    the equivalent ``UploadResult``; any other exception is a critical
    failure unless its text carries the remote rate-limit code.
    """

    async def upload(self, artifact_ref: str) -> UploadResult:
        ...


@runtime_checkable
class NoteVerifier(Protocol):
    """Optional capability of an uploader, used by the cleanup service"""

    async def note_exists(self, guid: str) -> bool:
        ...
