"""
Durable session state with atomic per-session transitions

All coordination between concurrent chunk requests goes through this store:
request handlers share no process memory. Every state change is a
conditional UPDATE whose rowcount says whether this caller won (optimistic
concurrency), so the guarantees hold across independent workers.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..core.database import SessionLocal, session_scope
from ..core.exceptions import AggregationError, SessionConflict, StorageError
from ..models import AggregateRecord, ChunkRecord, SessionStatus, UploadSession, utcnow
from ..schemas import AggregateResult, ChunkResult

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 50
MAX_CREATE_ATTEMPTS = 5


class SessionStore:
    """Keyed map from session id to session metadata, chunk records and the final report"""
    
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        max_age_seconds: int = settings.SESSION_MAX_AGE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock = clock
    
    def _scope(self):
        return session_scope(self.session_factory)
    
    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    
    def get(self, session_id: str) -> Optional[UploadSession]:
        """Current (non-expired) session for a client-facing id"""
        with self._scope() as db:
            return db.execute(
                select(UploadSession).where(
                    UploadSession.session_id == session_id,
                    UploadSession.status != SessionStatus.EXPIRED
                )
            ).scalar_one_or_none()
    
    def get_by_upload_id(self, upload_id: str) -> Optional[UploadSession]:
        with self._scope() as db:
            return db.get(UploadSession, upload_id)
    
    def get_or_create(
        self,
        session_id: str,
        filename: str,
        total_size: int,
        total_chunks: int
    ) -> UploadSession:
        """
        Idempotent session lookup/creation.
        
        - Existing live session with the same shape is returned as-is.
        - Mismatched total_size/total_chunks raises SessionConflict.
        - A receiving session whose lease ran out is expired on access and a
          brand-new session is created in its place.
        - Two first-chunks racing to create the same session: the unique
          index lets one insert win, the other re-reads.
        """
        for _ in range(MAX_CREATE_ATTEMPTS):
            now = self.clock()
            existing = self.get(session_id)
            
            if existing is not None:
                if existing.status == SessionStatus.RECEIVING and existing.expires_at <= now:
                    logger.info(f"Session {session_id} lease expired on access, starting a new session")
                    self.mark_expired(existing.upload_id, reason="lease expired")
                    continue
                
                if existing.total_size != total_size or existing.total_chunks != total_chunks:
                    raise SessionConflict(
                        f"session declared with fileSize={existing.total_size}, "
                        f"totalChunks={existing.total_chunks}; got fileSize={total_size}, "
                        f"totalChunks={total_chunks}. Use a new sessionId",
                        session_id=session_id
                    )
                return existing
            
            upload = UploadSession(
                session_id=session_id,
                filename=filename,
                total_size=total_size,
                total_chunks=total_chunks,
                received_count=0,
                status=SessionStatus.RECEIVING,
                created_at=now,
                updated_at=now,
                expires_at=now + self.max_age,
            )
            try:
                with self._scope() as db:
                    db.add(upload)
            except IntegrityError:
                logger.debug(f"Lost creation race for session {session_id}, re-reading")
                continue
            
            logger.info(
                f"Created session {session_id} (upload {upload.upload_id}) for {filename}: "
                f"{total_chunks} chunks, {total_size} bytes"
            )
            return upload
        
        raise SessionConflict("could not create or load session", session_id=session_id)
    
    def list_sessions(self, status: Optional[str] = None, limit: int = 100) -> list[UploadSession]:
        with self._scope() as db:
            query = select(UploadSession)
            if status:
                query = query.where(UploadSession.status == status)
            query = query.order_by(UploadSession.created_at.desc()).limit(limit)
            return list(db.execute(query).scalars().all())
    
    # ------------------------------------------------------------------
    # Chunk records
    # ------------------------------------------------------------------
    
    def get_chunk(self, upload_id: str, chunk_index: int) -> Optional[ChunkRecord]:
        with self._scope() as db:
            return db.execute(
                select(ChunkRecord).where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index
                )
            ).scalar_one_or_none()
    
    def _hold_receiving(self, db, upload_id: str, chunk_index: int, **values) -> None:
        """
        Touch the session row, only while it is receiving.
        
        The row stays locked until the transaction ends, so a chunk write
        cannot interleave with the completion claim of the same session.
        """
        res = db.execute(
            update(UploadSession)
            .where(
                UploadSession.upload_id == upload_id,
                UploadSession.status == SessionStatus.RECEIVING
            )
            .values(updated_at=self.clock(), **values)
        )
        if res.rowcount == 1:
            return
        
        upload = db.get(UploadSession, upload_id)
        if upload is None:
            raise SessionConflict("session no longer exists", chunk_index=chunk_index)
        raise SessionConflict(
            f"session is {upload.status} and no longer accepts chunk data",
            session_id=upload.session_id,
            chunk_index=chunk_index
        )
    
    def save_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        byte_size: int,
        content_hash: str,
        storage_key: str
    ) -> ChunkRecord:
        """
        Upsert the record for a chunk whose bytes were just stored.
        
        Same hash: record is kept (analysis result preserved).
        Different hash: bytes were replaced, so the old result no longer
        applies. A chunk that was already counted is un-counted in the same
        transaction; it counts again once the new bytes are analyzed.
        
        Raises SessionConflict unless the session is receiving.
        """
        for _ in range(MAX_CREATE_ATTEMPTS):
            now = self.clock()
            try:
                with self._scope() as db:
                    record = db.execute(
                        select(ChunkRecord)
                        .where(
                            ChunkRecord.upload_id == upload_id,
                            ChunkRecord.chunk_index == chunk_index
                        )
                        .with_for_update()
                    ).scalar_one_or_none()
                    
                    uncount = False
                    if record is None:
                        record = ChunkRecord(
                            upload_id=upload_id,
                            chunk_index=chunk_index,
                            byte_size=byte_size,
                            content_hash=content_hash,
                            storage_key=storage_key,
                            received_at=now,
                        )
                        db.add(record)
                    elif record.content_hash != content_hash:
                        logger.info(
                            f"Chunk {chunk_index} of upload {upload_id} replaced "
                            f"({record.content_hash[:8]} -> {content_hash[:8]})"
                        )
                        uncount = record.recorded_at is not None
                        record.content_hash = content_hash
                        record.byte_size = byte_size
                        record.storage_key = storage_key
                        record.analysis_result = None
                        record.analysis_error = None
                        record.received_at = now
                        record.recorded_at = None
                    db.flush()
                    
                    if uncount:
                        self._hold_receiving(
                            db, upload_id, chunk_index,
                            received_count=UploadSession.received_count - 1
                        )
                    else:
                        self._hold_receiving(db, upload_id, chunk_index)
                return record
            except IntegrityError:
                logger.debug(f"Lost insert race for chunk {chunk_index} of upload {upload_id}, retrying")
        
        raise StorageError("could not save chunk record", chunk_index=chunk_index)
    
    def save_analysis(self, upload_id: str, chunk_index: int, content_hash: str, result: ChunkResult) -> bool:
        """
        Attach an analysis result, only if the analyzed bytes are still the current ones.
        
        Returns False when the bytes were replaced meanwhile. Raises
        SessionConflict unless the session is receiving.
        """
        with self._scope() as db:
            res = db.execute(
                update(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index,
                    ChunkRecord.content_hash == content_hash
                )
                .values(analysis_result=result.model_dump(mode="json"), analysis_error=None)
            )
            if res.rowcount != 1:
                return False
            self._hold_receiving(db, upload_id, chunk_index)
            return True
    
    def record_analysis_failure(self, upload_id: str, chunk_index: int, content_hash: str, message: str) -> None:
        with self._scope() as db:
            db.execute(
                update(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index,
                    ChunkRecord.content_hash == content_hash
                )
                .values(analysis_error=message[:2000])
            )
    
    def received_indices(self, upload_id: str) -> list[int]:
        with self._scope() as db:
            rows = db.execute(
                select(ChunkRecord.chunk_index)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.recorded_at.is_not(None)
                )
                .order_by(ChunkRecord.chunk_index)
            ).scalars().all()
            return list(rows)
    
    def chunk_results(self, upload_id: str) -> list[Tuple[int, Optional[ChunkResult]]]:
        """(index, result-or-None) for every recorded chunk, ascending by index"""
        with self._scope() as db:
            records = db.execute(
                select(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.recorded_at.is_not(None)
                )
                .order_by(ChunkRecord.chunk_index)
            ).scalars().all()
            return [
                (
                    r.chunk_index,
                    ChunkResult.model_validate(r.analysis_result) if r.analysis_result else None
                )
                for r in records
            ]
    
    # ------------------------------------------------------------------
    # Atomic transitions
    # ------------------------------------------------------------------
    
    def record_chunk(self, upload_id: str, chunk_index: int) -> Tuple[int, bool]:
        """
        Count an analyzed chunk towards the session.
        
        Returns (received_count, is_now_complete). is_now_complete is True
        for exactly one caller per session: the one whose compare-and-swap
        moved received_count to total_chunks. Recording an index twice is a
        no-op that reports the current count.
        
        Flow (single transaction):
        1. Flip the chunk's recorded_at from NULL (conditional update)
        2. If that did not happen: already counted, report current count
        3. Otherwise CAS received_count n -> n+1, retrying on lost races
        """
        with self._scope() as db:
            now = self.clock()
            marked = db.execute(
                update(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index,
                    ChunkRecord.recorded_at.is_(None),
                    ChunkRecord.analysis_result.is_not(None)
                )
                .values(recorded_at=now)
            )
            
            if marked.rowcount == 0:
                upload = db.get(UploadSession, upload_id)
                if upload is None:
                    raise SessionConflict("session no longer exists", chunk_index=chunk_index)
                logger.debug(f"Chunk {chunk_index} of upload {upload_id} already recorded")
                return upload.received_count, False
            
            for _ in range(MAX_CAS_ATTEMPTS):
                current = db.execute(
                    select(
                        UploadSession.session_id,
                        UploadSession.received_count,
                        UploadSession.total_chunks,
                        UploadSession.status
                    ).where(UploadSession.upload_id == upload_id)
                ).one()
                
                if current.status != SessionStatus.RECEIVING:
                    # Rolls back the recorded_at flip as well
                    raise SessionConflict(
                        f"session is {current.status}, chunk not counted",
                        session_id=current.session_id,
                        chunk_index=chunk_index
                    )
                
                n = current.received_count
                res = db.execute(
                    update(UploadSession)
                    .where(
                        UploadSession.upload_id == upload_id,
                        UploadSession.received_count == n,
                        UploadSession.status == SessionStatus.RECEIVING
                    )
                    .values(
                        received_count=n + 1,
                        updated_at=now,
                        expires_at=now + self.max_age
                    )
                )
                if res.rowcount == 1:
                    return n + 1, n + 1 == current.total_chunks
                
                logger.debug(f"CAS on received_count lost for upload {upload_id} at {n}, retrying")
        
        raise StorageError(f"received_count contention on upload {upload_id}", chunk_index=chunk_index)
    
    def claim_aggregation(self, upload_id: str) -> bool:
        """
        Atomically flip receiving -> aggregating.
        
        Only one caller can ever get True: the row leaves the receiving state
        in the same statement that checks it.
        """
        with self._scope() as db:
            res = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status == SessionStatus.RECEIVING,
                    UploadSession.received_count == UploadSession.total_chunks
                )
                .values(status=SessionStatus.AGGREGATING, updated_at=self.clock())
            )
            claimed = res.rowcount == 1
        
        if claimed:
            logger.info(f"Aggregation claimed for upload {upload_id}")
        return claimed
    
    def mark_complete(self, upload_id: str, result: AggregateResult) -> None:
        """Persist the final report and flip aggregating -> complete together"""
        with self._scope() as db:
            now = self.clock()
            res = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status == SessionStatus.AGGREGATING
                )
                .values(status=SessionStatus.COMPLETE, updated_at=now, terminal_at=now)
            )
            if res.rowcount != 1:
                raise AggregationError(
                    "session is no longer aggregating, result discarded",
                    session_id=result.session_id
                )
            db.add(AggregateRecord(
                upload_id=upload_id,
                session_id=result.session_id,
                result=result.model_dump(mode="json"),
                created_at=now,
            ))
        logger.info(f"Session {result.session_id} complete: {result.prediction} ({result.confidence})")
    
    def mark_failed(self, upload_id: str, reason: str) -> bool:
        with self._scope() as db:
            now = self.clock()
            res = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status.in_([SessionStatus.RECEIVING, SessionStatus.AGGREGATING])
                )
                .values(
                    status=SessionStatus.FAILED,
                    error_message=reason[:2000],
                    updated_at=now,
                    terminal_at=now
                )
            )
            failed = res.rowcount == 1
        if failed:
            logger.warning(f"Upload {upload_id} marked failed: {reason}")
        return failed
    
    def mark_expired(self, upload_id: str, reason: str = "inactive") -> bool:
        """receiving -> expired, only while the lease is actually past due"""
        with self._scope() as db:
            now = self.clock()
            res = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status == SessionStatus.RECEIVING,
                    UploadSession.expires_at <= now
                )
                .values(
                    status=SessionStatus.EXPIRED,
                    error_message=reason,
                    updated_at=now,
                    terminal_at=now
                )
            )
            expired = res.rowcount == 1
        if expired:
            logger.info(f"Upload {upload_id} expired ({reason})")
        return expired
    
    def get_aggregate(self, upload_id: str) -> Optional[AggregateResult]:
        with self._scope() as db:
            record = db.get(AggregateRecord, upload_id)
            if record is None:
                return None
            return AggregateResult.model_validate(record.result)
    
    # ------------------------------------------------------------------
    # Reaper support
    # ------------------------------------------------------------------
    
    def stale_receiving(self, now: datetime) -> list[UploadSession]:
        with self._scope() as db:
            return list(db.execute(
                select(UploadSession).where(
                    UploadSession.status == SessionStatus.RECEIVING,
                    UploadSession.expires_at <= now
                )
            ).scalars().all())
    
    def stuck_aggregating(self, cutoff: datetime) -> list[UploadSession]:
        with self._scope() as db:
            return list(db.execute(
                select(UploadSession).where(
                    UploadSession.status == SessionStatus.AGGREGATING,
                    UploadSession.updated_at <= cutoff
                )
            ).scalars().all())
    
    def fail_if_stuck(self, upload_id: str, cutoff: datetime) -> bool:
        """aggregating -> failed, only if nothing touched the session since cutoff"""
        with self._scope() as db:
            now = self.clock()
            res = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status == SessionStatus.AGGREGATING,
                    UploadSession.updated_at <= cutoff
                )
                .values(
                    status=SessionStatus.FAILED,
                    error_message="aggregation did not finish",
                    updated_at=now,
                    terminal_at=now
                )
            )
            return res.rowcount == 1
    
    def purgeable(self, cutoff: datetime) -> list[UploadSession]:
        """Terminal sessions whose terminal transition is older than cutoff"""
        with self._scope() as db:
            return list(db.execute(
                select(UploadSession).where(
                    UploadSession.status.in_(SessionStatus.TERMINAL),
                    UploadSession.terminal_at <= cutoff
                )
            ).scalars().all())
    
    def delete(self, upload_id: str) -> bool:
        """Remove a terminal session with its chunk records and report"""
        with self._scope() as db:
            upload = db.execute(
                select(UploadSession)
                .where(
                    UploadSession.upload_id == upload_id,
                    UploadSession.status.in_(SessionStatus.TERMINAL)
                )
                .with_for_update()
            ).scalar_one_or_none()
            if upload is None:
                return False
            
            db.execute(delete(ChunkRecord).where(ChunkRecord.upload_id == upload_id))
            db.execute(delete(AggregateRecord).where(AggregateRecord.upload_id == upload_id))
            db.execute(delete(UploadSession).where(UploadSession.upload_id == upload_id))
            return True
