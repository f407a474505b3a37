"""
Completion detection: decides, after each recorded chunk, who aggregates
"""
import logging
from typing import Optional

from ..models import UploadSession
from ..schemas import AggregateResult
from .aggregator import Aggregator
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class CompletionDetector:
    """
    Runs inline after SessionStore.record_chunk.
    
    The claim (receiving -> aggregating) is the single serialization point:
    when the last two missing chunks land concurrently, both may see a full
    count but only the claim winner runs the Aggregator. The loser reports
    partial progress.
    
    Claiming on a full count (not only on is_now_complete) lets a retried
    chunk finish a session whose worker died between recording and claiming.
    """
    
    def __init__(self, session_store: SessionStore, aggregator: Aggregator):
        self.session_store = session_store
        self.aggregator = aggregator
    
    def check(self, upload: UploadSession, received_count: int, is_now_complete: bool) -> Optional[AggregateResult]:
        if not is_now_complete and received_count < upload.total_chunks:
            return None
        
        if not self.session_store.claim_aggregation(upload.upload_id):
            logger.info(f"Session {upload.session_id} complete but aggregation already claimed elsewhere")
            return None
        
        return self.aggregator.aggregate(upload)
