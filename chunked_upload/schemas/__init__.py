"""Schemas module exports"""
from .analysis import (
    AggregateResult,
    ChunkBreakdownItem,
    ChunkResult,
    ConsensusMetrics,
    Prediction,
)
from .upload import (
    ChunkResultSummary,
    ChunkUpload,
    InitSessionRequest,
    SessionListResponse,
    SessionStatusResponse,
    SessionSummary,
    UploadChunkResponse,
)

__all__ = [
    "AggregateResult",
    "ChunkBreakdownItem",
    "ChunkResult",
    "ConsensusMetrics",
    "Prediction",
    "ChunkResultSummary",
    "ChunkUpload",
    "InitSessionRequest",
    "SessionListResponse",
    "SessionStatusResponse",
    "SessionSummary",
    "UploadChunkResponse",
]
