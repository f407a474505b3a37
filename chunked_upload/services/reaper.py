"""
Bounded-lifetime cleanup of session and chunk storage

Runs outside the request path (background task in the API process, or the
standalone worker). Correctness rests on the TTL fields stored on each
session, not on any in-process timer, so a restart loses nothing.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..core.config import settings
from ..core.exceptions import StorageError
from .chunk_store import ChunkStore
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    failed: int = 0
    purged: int = 0


class Reaper:
    """
    One sweep:
    1. receiving sessions past their lease -> expired
    2. aggregating sessions untouched for longer than the aggregation
       timeout (worker died mid-aggregation) -> failed
    3. complete/failed/expired sessions older than the retention window
       -> chunk bytes deleted, then rows deleted
    
    Purge only ever selects terminal sessions, so it cannot overlap an
    in-flight claim/aggregation of the same session.
    """
    
    def __init__(
        self,
        session_store: SessionStore,
        chunk_store: ChunkStore,
        retention_seconds: int = settings.RETENTION_SECONDS,
        aggregation_timeout_seconds: int = settings.AGGREGATION_TIMEOUT_SECONDS,
    ):
        self.session_store = session_store
        self.chunk_store = chunk_store
        self.retention = timedelta(seconds=retention_seconds)
        self.aggregation_timeout = timedelta(seconds=aggregation_timeout_seconds)
    
    def expire_stale(self, now: datetime) -> int:
        expired = 0
        for upload in self.session_store.stale_receiving(now):
            if self.session_store.mark_expired(upload.upload_id, reason="no chunk activity"):
                logger.info(
                    f"Expired session {upload.session_id} "
                    f"({upload.received_count}/{upload.total_chunks} chunks received)"
                )
                expired += 1
        return expired
    
    def fail_stuck(self, now: datetime) -> int:
        cutoff = now - self.aggregation_timeout
        failed = 0
        for upload in self.session_store.stuck_aggregating(cutoff):
            if self.session_store.fail_if_stuck(upload.upload_id, cutoff):
                logger.warning(f"Session {upload.session_id} stuck in aggregation, marked failed")
                failed += 1
        return failed
    
    def purge(self, now: datetime) -> int:
        purged = 0
        for upload in self.session_store.purgeable(now - self.retention):
            try:
                self.chunk_store.delete_upload(upload.upload_id)
            except StorageError as e:
                logger.error(f"Could not delete chunks of session {upload.session_id}, will retry: {e}")
                continue
            
            if self.session_store.delete(upload.upload_id):
                logger.info(f"Purged {upload.status} session {upload.session_id} (upload {upload.upload_id})")
                purged += 1
        return purged
    
    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.session_store.clock()
        report = SweepReport(
            expired=self.expire_stale(now),
            failed=self.fail_stuck(now),
            purged=self.purge(now),
        )
        if report.expired or report.failed or report.purged:
            logger.info(
                f"Reaper sweep: {report.expired} expired, {report.failed} failed, {report.purged} purged"
            )
        return report
    
    def run_forever(self, interval_seconds: float, stop_event: Optional[threading.Event] = None) -> None:
        """Blocking loop for the standalone worker"""
        stop_event = stop_event or threading.Event()
        logger.info(f"Reaper started (interval {interval_seconds}s)")
        while not stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Reaper sweep failed, retrying next interval")
            stop_event.wait(interval_seconds)
        logger.info("Reaper stopped")
    
    async def run_periodically(self, interval_seconds: float) -> None:
        """Background task for the API process; sweeps run in the default executor"""
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.sweep)
            except Exception:
                logger.exception("Reaper sweep failed, retrying next interval")
            await asyncio.sleep(interval_seconds)
