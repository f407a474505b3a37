"""
Chunk receiver: validate -> persist bytes -> analyze -> record -> detect completion
"""
import hashlib
import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..core.config import settings
from ..core.exceptions import (
    AnalyzerError,
    ChunkedUploadError,
    ChunkSuperseded,
    SessionConflict,
    StorageError,
    ValidationError,
)
from ..models import ChunkRecord, SessionStatus, UploadSession
from ..schemas import (
    AggregateResult,
    ChunkResult,
    ChunkResultSummary,
    ChunkUpload,
    InitSessionRequest,
    UploadChunkResponse,
)
from .aggregator import Aggregator
from .analyzer import Analyzer
from .chunk_store import ChunkStore
from .completion import CompletionDetector
from .session_store import SessionStore

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def derive_session_id(filename: str, file_size: int, total_chunks: int) -> str:
    """Deterministic session id: every chunk of the same upload maps to the same session"""
    return hashlib.md5(f"{filename}-{file_size}-{total_chunks}".encode()).hexdigest()


def compute_hash(content: bytes) -> str:
    """SHA256 of chunk bytes (duplicate detection)"""
    return hashlib.sha256(content).hexdigest()


class ChunkReceiver:
    """
    Handles one chunk upload end to end.
    
    Each call is independent: no state is kept between calls, all
    coordination happens through the SessionStore. A call never waits for
    other chunks; it returns partial progress or, for the call that wins the
    completion claim, the aggregate report.
    """
    
    def __init__(
        self,
        session_store: SessionStore,
        chunk_store: ChunkStore,
        analyzer: Analyzer,
        aggregator: Optional[Aggregator] = None,
        max_chunk_size: int = settings.MAX_CHUNK_SIZE,
        max_file_size: int = settings.MAX_FILE_SIZE,
    ):
        self.session_store = session_store
        self.chunk_store = chunk_store
        self.analyzer = analyzer
        self.aggregator = aggregator or Aggregator(session_store)
        self.completion = CompletionDetector(session_store, self.aggregator)
        self.max_chunk_size = max_chunk_size
        self.max_file_size = max_file_size
    
    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    
    def _validate_declaration(
        self,
        session_id: Optional[str],
        filename: str,
        file_size: int,
        total_chunks: int,
        chunk_index: Optional[int] = None
    ) -> str:
        def reject(message):
            raise ValidationError(message, session_id=session_id, chunk_index=chunk_index)
        
        if not filename or not filename.strip():
            reject("filename is required")
        if file_size < 1:
            reject(f"fileSize must be positive, got {file_size}")
        if file_size > self.max_file_size:
            reject(f"fileSize {file_size} exceeds limit of {self.max_file_size} bytes")
        if total_chunks < 1:
            reject(f"totalChunks must be at least 1, got {total_chunks}")
        if total_chunks > file_size:
            reject(f"totalChunks {total_chunks} exceeds fileSize {file_size}")
        if session_id is not None and not SESSION_ID_PATTERN.match(session_id):
            reject("sessionId must be 1-64 characters of letters, digits, '.', '_' or '-'")
        
        return session_id or derive_session_id(filename, file_size, total_chunks)
    
    def validate(self, chunk: ChunkUpload) -> str:
        """Reject malformed chunks before any write. Returns the session id to use."""
        session_id = chunk.session_id or None
        session_id = self._validate_declaration(
            session_id, chunk.filename, chunk.file_size, chunk.total_chunks, chunk.chunk_index
        )
        
        def reject(message):
            raise ValidationError(message, session_id=session_id, chunk_index=chunk.chunk_index)
        
        if not chunk.data:
            reject("chunk payload is missing")
        if len(chunk.data) > self.max_chunk_size:
            reject(f"chunk is {len(chunk.data)} bytes, limit is {self.max_chunk_size}")
        if len(chunk.data) > chunk.file_size:
            reject(f"chunk is larger than the declared fileSize {chunk.file_size}")
        if chunk.chunk_index < 0 or chunk.chunk_index >= chunk.total_chunks:
            reject(f"chunkIndex must be in [0, {chunk.total_chunks}), got {chunk.chunk_index}")
        
        return session_id
    
    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    
    def init_session(self, request: InitSessionRequest) -> UploadSession:
        """Explicit session creation ahead of the first chunk"""
        session_id = self._validate_declaration(
            request.session_id or None, request.filename, request.file_size, request.total_chunks
        )
        try:
            return self.session_store.get_or_create(
                session_id, request.filename, request.file_size, request.total_chunks
            )
        except SQLAlchemyError as e:
            logger.error(f"Session store failure creating {session_id}: {e}")
            raise StorageError(str(e), session_id=session_id, stage="session_store") from e
    
    def receive(self, chunk: ChunkUpload) -> UploadChunkResponse:
        session_id = self.validate(chunk)
        logger.info(f"Processing chunk {chunk.chunk_index + 1}/{chunk.total_chunks} for session {session_id}")
        
        try:
            return self._receive(session_id, chunk)
        except ChunkedUploadError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Session store failure on chunk {chunk.chunk_index} of {session_id}: {e}")
            raise StorageError(
                str(e), session_id=session_id, chunk_index=chunk.chunk_index, stage="session_store"
            ) from e
    
    def _receive(self, session_id: str, chunk: ChunkUpload) -> UploadChunkResponse:
        upload = self.session_store.get_or_create(
            session_id, chunk.filename, chunk.file_size, chunk.total_chunks
        )
        content_hash = compute_hash(chunk.data)
        existing = self.session_store.get_chunk(upload.upload_id, chunk.chunk_index)
        is_duplicate = (
            existing is not None
            and existing.content_hash == content_hash
            and existing.analysis_result is not None
        )
        
        if upload.status != SessionStatus.RECEIVING:
            return self._receive_closed(upload, chunk, is_duplicate, existing)
        
        if existing is None or existing.content_hash != content_hash:
            self._store(upload, chunk, content_hash)
        elif not self.chunk_store.exists(existing.storage_key):
            logger.warning(
                f"Stored bytes of chunk {chunk.chunk_index} for session {session_id} are missing, rewriting"
            )
            self._put_bytes(upload, chunk, content_hash)
        
        if is_duplicate:
            logger.info(
                f"Duplicate chunk {chunk.chunk_index} for session {session_id} "
                f"(hash {content_hash[:8]}), using cached result"
            )
            result = ChunkResult.model_validate(existing.analysis_result)
        else:
            result = self._analyze(upload, chunk, content_hash)
        
        received_count, is_now_complete = self.session_store.record_chunk(upload.upload_id, chunk.chunk_index)
        logger.info(f"Session {session_id}: {received_count}/{upload.total_chunks} chunks received")
        
        report = self.completion.check(upload, received_count, is_now_complete)
        if report is not None:
            return self._completed_response(upload, chunk, report)
        return self._partial_response(upload, chunk, received_count, result)
    
    def _put_bytes(self, upload: UploadSession, chunk: ChunkUpload, content_hash: str) -> str:
        try:
            return self.chunk_store.put(upload.upload_id, chunk.chunk_index, chunk.data, content_hash)
        except StorageError as e:
            raise StorageError(e.message, session_id=upload.session_id, chunk_index=chunk.chunk_index) from e
    
    def _store(self, upload: UploadSession, chunk: ChunkUpload, content_hash: str) -> None:
        storage_key = self._put_bytes(upload, chunk, content_hash)
        self.session_store.save_chunk(
            upload.upload_id,
            chunk.chunk_index,
            byte_size=len(chunk.data),
            content_hash=content_hash,
            storage_key=storage_key
        )
    
    def _analyze(self, upload: UploadSession, chunk: ChunkUpload, content_hash: str) -> ChunkResult:
        try:
            result = self.analyzer.analyze(chunk.data, chunk.chunk_index, upload.session_id)
        except AnalyzerError as e:
            self.session_store.record_analysis_failure(
                upload.upload_id, chunk.chunk_index, content_hash, e.message
            )
            raise AnalyzerError(e.message, session_id=upload.session_id, chunk_index=chunk.chunk_index) from e
        except Exception as e:
            logger.error(f"Analyzer failed on chunk {chunk.chunk_index} of {upload.session_id}: {e}")
            self.session_store.record_analysis_failure(
                upload.upload_id, chunk.chunk_index, content_hash, str(e)
            )
            raise AnalyzerError(str(e), session_id=upload.session_id, chunk_index=chunk.chunk_index) from e
        
        if result.size_bytes != len(chunk.data):
            result = result.model_copy(update={"size_bytes": len(chunk.data)})
        
        if not self.session_store.save_analysis(upload.upload_id, chunk.chunk_index, content_hash, result):
            raise ChunkSuperseded(
                "chunk bytes were replaced while being analyzed, retry this chunk",
                session_id=upload.session_id,
                chunk_index=chunk.chunk_index
            )
        return result
    
    def _receive_closed(
        self,
        upload: UploadSession,
        chunk: ChunkUpload,
        is_duplicate: bool,
        existing: Optional[ChunkRecord]
    ) -> UploadChunkResponse:
        """Chunk for a session that no longer accepts new data"""
        if upload.status == SessionStatus.COMPLETE and is_duplicate:
            report = self.session_store.get_aggregate(upload.upload_id)
            if report is not None:
                logger.info(f"Duplicate chunk {chunk.chunk_index} for completed session {upload.session_id}")
                return self._completed_response(upload, chunk, report)
        
        if upload.status == SessionStatus.AGGREGATING and is_duplicate:
            result = ChunkResult.model_validate(existing.analysis_result)
            return self._partial_response(upload, chunk, upload.received_count, result)
        
        if upload.status == SessionStatus.FAILED:
            message = f"session failed ({upload.error_message}); start a new session"
        else:
            message = f"session is {upload.status} and no longer accepts new chunk data"
        raise SessionConflict(message, session_id=upload.session_id, chunk_index=chunk.chunk_index)
    
    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------
    
    @staticmethod
    def _partial_response(
        upload: UploadSession,
        chunk: ChunkUpload,
        received_count: int,
        result: ChunkResult
    ) -> UploadChunkResponse:
        return UploadChunkResponse(
            completed=False,
            session_id=upload.session_id,
            chunk_index=chunk.chunk_index,
            total_chunks=upload.total_chunks,
            received_chunks=received_count,
            chunk_result=ChunkResultSummary(
                prediction=result.prediction,
                confidence=result.confidence,
                processing_time=result.processing_time_seconds,
            ),
        )
    
    @staticmethod
    def _completed_response(upload: UploadSession, chunk: ChunkUpload, report: AggregateResult) -> UploadChunkResponse:
        return UploadChunkResponse(
            completed=True,
            session_id=upload.session_id,
            chunk_index=chunk.chunk_index,
            total_chunks=upload.total_chunks,
            result=report,
        )
