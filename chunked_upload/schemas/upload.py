"""
Pydantic schemas for API request/response validation
"""
from datetime import datetime
from typing import Optional

from pydantic import Field

from .analysis import AggregateResult, CamelModel, Prediction


class InitSessionRequest(CamelModel):
    """Explicit session init; chunks may also create the session on first arrival"""
    filename: str = Field(..., min_length=1, max_length=512)
    file_size: int = Field(..., ge=1)
    total_chunks: int = Field(..., ge=1)
    session_id: Optional[str] = Field(None, description="Derived from filename/size/chunk count when omitted")


class ChunkUpload(CamelModel):
    """Everything a single chunk upload carries (form fields plus payload)"""
    session_id: Optional[str] = None
    chunk_index: int
    total_chunks: int
    filename: str
    file_size: int
    data: bytes = Field(default=b"", exclude=True, repr=False)


class ChunkResultSummary(CamelModel):
    prediction: Prediction
    confidence: float
    processing_time: float


class UploadChunkResponse(CamelModel):
    """
    Partial progress: completed=False with receivedChunks and chunkResult.
    Final chunk: completed=True with the aggregate result.
    """
    success: bool = True
    completed: bool
    session_id: str
    chunk_index: int
    total_chunks: int
    received_chunks: Optional[int] = None
    chunk_result: Optional[ChunkResultSummary] = None
    result: Optional[AggregateResult] = None


class SessionStatusResponse(CamelModel):
    session_id: str
    filename: str
    file_size: int
    total_chunks: int
    received_chunks: list[int]
    missing_chunks: list[int]
    status: str
    progress_percent: float
    created_at: datetime
    expires_at: datetime
    completed: bool


class SessionSummary(CamelModel):
    session_id: str
    filename: str
    status: str
    progress: str
    created_at: datetime


class SessionListResponse(CamelModel):
    total: int
    sessions: list[SessionSummary]
