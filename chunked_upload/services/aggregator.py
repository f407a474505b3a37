"""
Size-weighted aggregation of per-chunk results into one session report
"""
import logging
from datetime import datetime
from typing import Optional, Sequence, Tuple

from ..core.exceptions import AggregationError
from ..models import UploadSession, utcnow
from ..schemas import AggregateResult, ChunkBreakdownItem, ChunkResult, ConsensusMetrics
from .session_store import SessionStore

logger = logging.getLogger(__name__)

FAKE_THRESHOLD = 0.5


def aggregate_chunk_results(
    session_id: str,
    filename: str,
    total_size: int,
    total_chunks: int,
    chunk_results: Sequence[Tuple[int, Optional[ChunkResult]]],
    timestamp: Optional[datetime] = None,
) -> AggregateResult:
    """
    Combine every chunk's verdict into a single report.
    
    - weight(chunk) = chunk.size_bytes / total_size
    - confidence = sum(confidence * weight) / sum(weight)
    - prediction = fake if confidence > 0.5 else real
    - models_used = union across chunks, first-seen order by chunk index
    - consistency_score = max(fake_chunks, real_chunks) / total_chunks
    
    Raises AggregationError unless there is exactly one analyzed result
    for every index in [0, total_chunks).
    """
    ordered = sorted(chunk_results, key=lambda item: item[0])
    indices = [index for index, _ in ordered]
    
    if indices != list(range(total_chunks)):
        missing = sorted(set(range(total_chunks)) - set(indices))
        raise AggregationError(
            f"expected chunks 0..{total_chunks - 1}, missing {missing}",
            session_id=session_id,
            chunk_index=missing[0] if missing else None
        )
    
    pending = [index for index, result in ordered if result is None]
    if pending:
        raise AggregationError(
            f"no analysis result for chunks {pending}",
            session_id=session_id,
            chunk_index=pending[0]
        )
    
    if total_size <= 0:
        raise AggregationError(f"invalid total size {total_size}", session_id=session_id)
    
    weighted_confidence = 0.0
    total_weight = 0.0
    fake_chunks = 0
    models_used: list[str] = []
    total_processing_time = 0.0
    frames_analyzed = 0
    breakdown = []
    
    for index, result in ordered:
        weight = result.size_bytes / total_size
        weighted_confidence += result.confidence * weight
        total_weight += weight
        
        if result.prediction == "fake":
            fake_chunks += 1
        
        for model in result.models_used:
            if model not in models_used:
                models_used.append(model)
        
        total_processing_time += result.processing_time_seconds
        frames_analyzed += result.estimated_frames
        
        breakdown.append(ChunkBreakdownItem(
            chunk_index=index,
            prediction=result.prediction,
            confidence=result.confidence,
            size_bytes=result.size_bytes,
            models_used=list(result.models_used),
            estimated_frames=result.estimated_frames,
        ))
    
    if total_weight <= 0:
        raise AggregationError("all chunks are empty, nothing to weight", session_id=session_id)
    
    # Normalizing by the summed weight absorbs rounding and any mismatch
    # between declared file size and the bytes actually received
    final_confidence = weighted_confidence / total_weight
    real_chunks = total_chunks - fake_chunks
    
    return AggregateResult(
        session_id=session_id,
        filename=filename,
        file_size=total_size,
        file_size_mb=round(total_size / (1024 * 1024), 2),
        prediction="fake" if final_confidence > FAKE_THRESHOLD else "real",
        confidence=round(final_confidence, 4),
        models_used=models_used,
        total_processing_time=round(total_processing_time, 2),
        total_chunks=total_chunks,
        chunks_processed=len(ordered),
        chunks_fake=fake_chunks,
        chunks_real=real_chunks,
        frames_analyzed=frames_analyzed,
        chunk_breakdown=breakdown,
        consensus=ConsensusMetrics(
            chunk_consensus="fake_majority" if fake_chunks > real_chunks else "real_majority",
            consistency_score=max(fake_chunks, real_chunks) / total_chunks,
            raw_confidence=final_confidence,
        ),
        timestamp=timestamp or utcnow(),
    )


class Aggregator:
    """Runs once per session, after the completion claim has been won"""
    
    def __init__(self, session_store: SessionStore):
        self.session_store = session_store
    
    def aggregate(self, upload: UploadSession) -> AggregateResult:
        logger.info(f"Aggregating {upload.total_chunks} chunks for session {upload.session_id}")
        
        chunk_results = self.session_store.chunk_results(upload.upload_id)
        try:
            report = aggregate_chunk_results(
                session_id=upload.session_id,
                filename=upload.filename,
                total_size=upload.total_size,
                total_chunks=upload.total_chunks,
                chunk_results=chunk_results,
                timestamp=self.session_store.clock(),
            )
        except AggregationError as e:
            self.session_store.mark_failed(upload.upload_id, str(e))
            raise
        
        self.session_store.mark_complete(upload.upload_id, report)
        return report
