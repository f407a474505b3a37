"""
Per-chunk analyzer collaborators

The aggregation pipeline only depends on the Analyzer contract:
    analyze(data, chunk_index, session_id) -> ChunkResult
It must return a result or raise; it never touches session state.
"""
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from ..core.config import settings
from ..core.exceptions import AnalyzerError
from ..schemas import ChunkResult

logger = logging.getLogger(__name__)

BASELINE_MODEL = "BG-Model-N"
COMPRESSION_MODEL = "CM-Model-N"
TEMPORAL_MODEL = "TM-Model-N"

BYTES_PER_FRAME_ESTIMATE = 50 * 1024
SMALL_CHUNK_BYTES = 2 * 1024 * 1024


class Analyzer(ABC):
    """Classifies one chunk of an upload"""
    
    @abstractmethod
    def analyze(self, data: bytes, chunk_index: int, session_id: str) -> ChunkResult:
        ...


class HashAnalyzer(Analyzer):
    """
    Deterministic content-hash heuristic.
    
    Stand-in for the real model ensemble: identical bytes always produce the
    same verdict, which keeps the pipeline reproducible end to end.
    
    - confidence: first 8 hex digits of MD5 mod 1000 / 1000, clamped to [0.1, 0.9]
    - models: baseline always; compression model for small chunks;
      temporal model when the hash prefix is divisible by 3
    """
    
    def analyze(self, data: bytes, chunk_index: int, session_id: str) -> ChunkResult:
        started = time.perf_counter()
        
        digest = hashlib.md5(data).hexdigest()
        hash_int = int(digest[:8], 16)
        size = len(data)
        
        confidence = (hash_int % 1000) / 1000
        confidence = max(0.1, min(0.9, confidence))
        
        models_used = [BASELINE_MODEL]
        if size < SMALL_CHUNK_BYTES:
            models_used.append(COMPRESSION_MODEL)
        if hash_int % 3 == 0:
            models_used.append(TEMPORAL_MODEL)
        
        return ChunkResult(
            prediction="fake" if confidence > 0.5 else "real",
            confidence=round(confidence, 4),
            models_used=models_used,
            processing_time_seconds=time.perf_counter() - started,
            size_bytes=size,
            estimated_frames=size // BYTES_PER_FRAME_ESTIMATE,
        )


class TimeoutAnalyzer(Analyzer):
    """
    Bounds a wrapped analyzer's wall-clock time.
    
    Timeouts and analyzer exceptions both surface as AnalyzerError; the
    chunk bytes stay stored and a retry of the same index re-runs analysis.
    A timed-out call keeps running in its worker thread until it returns;
    its result is discarded.
    """
    
    def __init__(
        self,
        inner: Analyzer,
        timeout_seconds: float = settings.ANALYZER_TIMEOUT_SECONDS,
        max_workers: int = 8,
    ):
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analyzer")
    
    def analyze(self, data: bytes, chunk_index: int, session_id: str) -> ChunkResult:
        future = self._executor.submit(self.inner.analyze, data, chunk_index, session_id)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as e:
            logger.error(f"Analyzer timed out after {self.timeout_seconds}s on chunk {chunk_index} of {session_id}")
            raise AnalyzerError(
                f"analyzer timed out after {self.timeout_seconds}s, retry this chunk",
                session_id=session_id,
                chunk_index=chunk_index
            ) from e
        except AnalyzerError:
            raise
        except Exception as e:
            logger.error(f"Analyzer failed on chunk {chunk_index} of {session_id}: {e}")
            raise AnalyzerError(str(e), session_id=session_id, chunk_index=chunk_index) from e
        
        if not isinstance(result, ChunkResult):
            raise AnalyzerError(
                f"analyzer returned {type(result).__name__}, expected ChunkResult",
                session_id=session_id,
                chunk_index=chunk_index
            )
        return result
    
    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
