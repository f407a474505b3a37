"""
Error taxonomy for the chunked upload pipeline.

Every error names the session and, where known, the chunk index so the client
can retry exactly the piece that failed.
"""
from typing import Optional


class ChunkedUploadError(Exception):
    """Base class for upload pipeline errors"""
    
    status_code = 500
    stage = "upload"
    
    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        stage: Optional[str] = None,
    ):
        self.message = message
        self.session_id = session_id
        self.chunk_index = chunk_index
        if stage:
            self.stage = stage
        super().__init__(self._format())
    
    def _format(self) -> str:
        where = []
        if self.session_id:
            where.append(f"session {self.session_id}")
        if self.chunk_index is not None:
            where.append(f"chunk {self.chunk_index}")
        if not where:
            return f"{self.stage}: {self.message}"
        return f"{self.stage} failed for {', '.join(where)}: {self.message}"
    
    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": str(self),
            "stage": self.stage,
            "sessionId": self.session_id,
            "chunkIndex": self.chunk_index,
        }


class ValidationError(ChunkedUploadError):
    """Malformed request; rejected before any storage write"""
    status_code = 400
    stage = "validation"


class SessionConflict(ChunkedUploadError):
    """Session id re-declared with different shape, or session no longer accepts chunks"""
    status_code = 409
    stage = "session"


class SessionNotFound(ChunkedUploadError):
    status_code = 404
    stage = "session"


class StorageError(ChunkedUploadError):
    """Chunk bytes failed to persist; the chunk counts as not received"""
    status_code = 500
    stage = "storage"


class AnalyzerError(ChunkedUploadError):
    """Analyzer failed or timed out; bytes are stored, result is pending"""
    status_code = 502
    stage = "analysis"


class AggregationError(ChunkedUploadError):
    """Completion was claimed but the chunk results are incomplete"""
    status_code = 500
    stage = "aggregation"


class ChunkSuperseded(ChunkedUploadError):
    """Chunk bytes were replaced by a concurrent upload while being analyzed; retry the index"""
    status_code = 503
    stage = "analysis"
