"""
FastAPI endpoints for chunked uploads
"""
import asyncio
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from ..core.config import settings
from ..core.exceptions import ChunkedUploadError, SessionNotFound
from ..models import SessionStatus, UploadSession
from ..schemas import (
    AggregateResult,
    ChunkUpload,
    InitSessionRequest,
    SessionListResponse,
    SessionStatusResponse,
    SessionSummary,
    UploadChunkResponse,
)
from ..services import ChunkReceiver, SessionStore
from .dependencies import get_receiver, get_session_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


def _http_error(error: ChunkedUploadError) -> HTTPException:
    if error.status_code >= 500:
        logger.error(f"❌ {error}")
    else:
        logger.warning(f"⚠️ {error}")
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


def _status_response(store: SessionStore, upload: UploadSession) -> SessionStatusResponse:
    received = store.received_indices(upload.upload_id)
    missing = sorted(set(range(upload.total_chunks)) - set(received))
    progress_percent = len(received) / upload.total_chunks * 100 if upload.total_chunks > 0 else 0
    
    return SessionStatusResponse(
        session_id=upload.session_id,
        filename=upload.filename,
        file_size=upload.total_size,
        total_chunks=upload.total_chunks,
        received_chunks=received,
        missing_chunks=missing,
        status=upload.status,
        progress_percent=round(progress_percent, 2),
        created_at=upload.created_at,
        expires_at=upload.expires_at,
        completed=upload.status == SessionStatus.COMPLETE,
    )


def _get_session_or_404(store: SessionStore, session_id: str) -> UploadSession:
    upload = store.get(session_id)
    if upload is None:
        raise _http_error(SessionNotFound("upload session not found", session_id=session_id))
    return upload


@router.post("/init", response_model=SessionStatusResponse, status_code=status.HTTP_201_CREATED)
async def init_session(
    request: InitSessionRequest,
    receiver: Annotated[ChunkReceiver, Depends(get_receiver)],
):
    """
    Initialize an upload session ahead of the first chunk.
    
    Optional: the first chunk creates the session too. Calling init twice
    with the same declaration returns the same session.
    """
    loop = asyncio.get_running_loop()
    try:
        upload = await loop.run_in_executor(None, receiver.init_session, request)
        return await loop.run_in_executor(None, _status_response, receiver.session_store, upload)
    except ChunkedUploadError as e:
        raise _http_error(e)


@router.post("/chunk", response_model=UploadChunkResponse, response_model_exclude_none=True)
async def upload_chunk(
    chunk: Annotated[UploadFile, File(description="Chunk bytes")],
    chunk_index: Annotated[int, Form(alias="chunkIndex")],
    total_chunks: Annotated[int, Form(alias="totalChunks")],
    filename: Annotated[str, Form()],
    file_size: Annotated[int, Form(alias="fileSize")],
    receiver: Annotated[ChunkReceiver, Depends(get_receiver)],
    session_id: Annotated[Optional[str], Form(alias="sessionId")] = None,
):
    """
    Upload one chunk of a file.
    
    Chunks may arrive in any order, concurrently, and more than once:
    re-sending identical bytes for an index is a no-op that returns the
    cached chunk result. The request that completes the session gets the
    aggregate report; every other request gets partial progress.
    """
    # Read at most one byte past the limit; validation rejects oversize chunks
    data = await chunk.read(receiver.max_chunk_size + 1)
    
    upload = ChunkUpload(
        session_id=session_id,
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        filename=filename,
        file_size=file_size,
        data=data,
    )
    
    try:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, receiver.receive, upload)
    except ChunkedUploadError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception(f"Chunked upload failed for chunk {chunk_index} of session {session_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "success": False,
                "error": f"Chunked upload failed: {e}",
                "stage": "upload",
                "sessionId": session_id,
                "chunkIndex": chunk_index,
            }
        )


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
def get_upload_status(
    session_id: str,
    store: Annotated[SessionStore, Depends(get_session_store)],
):
    """
    Current state of an upload session.
    
    Lists received and missing chunk indices so a client can resume after
    a failure by sending only what is missing.
    """
    upload = _get_session_or_404(store, session_id)
    return _status_response(store, upload)


@router.get("/{session_id}/result", response_model=AggregateResult)
def get_upload_result(
    session_id: str,
    store: Annotated[SessionStore, Depends(get_session_store)],
):
    """Aggregate report of a completed session"""
    upload = _get_session_or_404(store, session_id)
    report = store.get_aggregate(upload.upload_id) if upload.status == SessionStatus.COMPLETE else None
    if report is None:
        raise _http_error(SessionNotFound(
            f"no result yet, session is {upload.status}",
            session_id=session_id
        ))
    return report


@router.get("", response_model=SessionListResponse)
def list_sessions(
    store: Annotated[SessionStore, Depends(get_session_store)],
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
):
    """
    List upload sessions, optionally filtered by status.
    
    Useful for debugging and monitoring.
    """
    sessions = store.list_sessions(status=status_filter)
    return SessionListResponse(
        total=len(sessions),
        sessions=[
            SessionSummary(
                session_id=s.session_id,
                filename=s.filename,
                status=s.status,
                progress=f"{s.received_count}/{s.total_chunks}",
                created_at=s.created_at,
            )
            for s in sessions
        ],
    )


@router.get("/limits")
def get_limits():
    """Upload limits clients should split files by"""
    return {
        "maxChunkSize": settings.MAX_CHUNK_SIZE,
        "maxFileSize": settings.MAX_FILE_SIZE,
        "sessionMaxAgeSeconds": settings.SESSION_MAX_AGE_SECONDS,
    }
