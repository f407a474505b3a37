"""Shared fixtures: isolated SQLite database, local chunk store, fake analyzer and clock"""
import os
import tempfile
import threading
from collections import Counter
from datetime import datetime, timedelta

# Module-level engine/settings must not point at a real deployment
_TMP_ROOT = tempfile.mkdtemp(prefix="chunked-upload-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_ROOT}/default.db")
os.environ.setdefault("CHUNK_STORE_DIR", os.path.join(_TMP_ROOT, "chunks"))
os.environ["CHUNK_STORE_BACKEND"] = "local"
os.environ["REAPER_ENABLED"] = "false"

import pytest  # noqa: E402

from chunked_upload.core import build_engine, build_session_factory, init_db  # noqa: E402
from chunked_upload.schemas import ChunkResult, ChunkUpload  # noqa: E402
from chunked_upload.services import (  # noqa: E402
    Analyzer,
    ChunkReceiver,
    LocalChunkStore,
    Reaper,
    SessionStore,
)

MAX_AGE_SECONDS = 3600
RETENTION_SECONDS = 300
AGGREGATION_TIMEOUT_SECONDS = 600


class FakeClock:
    """Naive-UTC clock that only moves when told to"""
    
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start
        self._lock = threading.Lock()
    
    def __call__(self) -> datetime:
        with self._lock:
            return self.now
    
    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class CountingAnalyzer(Analyzer):
    """
    Returns configured confidences per chunk index (0.2 by default) and
    counts how often each (session, index) was analyzed.
    """
    
    def __init__(self, confidences=None, fail_times=None, barrier=None):
        self.confidences = confidences or {}
        self.fail_times = dict(fail_times or {})  # index -> number of calls that should fail
        self.barrier = barrier
        self.calls = Counter()
        self._lock = threading.Lock()
    
    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())
    
    def analyze(self, data: bytes, chunk_index: int, session_id: str) -> ChunkResult:
        with self._lock:
            self.calls[(session_id, chunk_index)] += 1
            should_fail = self.fail_times.get(chunk_index, 0) > 0
            if should_fail:
                self.fail_times[chunk_index] -= 1
        
        if should_fail:
            raise RuntimeError("model backend unavailable")
        
        if self.barrier is not None:
            self.barrier.wait()
        
        confidence = self.confidences.get(chunk_index, 0.2)
        return ChunkResult(
            prediction="fake" if confidence > 0.5 else "real",
            confidence=confidence,
            models_used=["BG-Model-N", f"X-Model-{chunk_index % 2}"],
            processing_time_seconds=0.5,
            size_bytes=len(data),
            estimated_frames=1,
        )


def make_chunk(index, data, total_chunks, file_size=None, session_id="session-1", filename="video.mp4"):
    return ChunkUpload(
        session_id=session_id,
        chunk_index=index,
        total_chunks=total_chunks,
        filename=filename,
        file_size=file_size if file_size is not None else len(data) * total_chunks,
        data=data,
    )


def chunk_bytes(index: int, size: int = 64) -> bytes:
    return bytes([index % 256]) * size


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'uploads.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session_store(session_factory, clock):
    return SessionStore(session_factory, max_age_seconds=MAX_AGE_SECONDS, clock=clock)


@pytest.fixture
def chunk_store(tmp_path):
    store = LocalChunkStore(str(tmp_path / "chunks"))
    store.ensure_ready()
    return store


@pytest.fixture
def analyzer():
    return CountingAnalyzer()


@pytest.fixture
def receiver(session_store, chunk_store, analyzer):
    return ChunkReceiver(
        session_store,
        chunk_store,
        analyzer,
        max_chunk_size=5 * 1024 * 1024,
        max_file_size=100 * 1024 * 1024,
    )


@pytest.fixture
def reaper(session_store, chunk_store):
    return Reaper(
        session_store,
        chunk_store,
        retention_seconds=RETENTION_SECONDS,
        aggregation_timeout_seconds=AGGREGATION_TIMEOUT_SECONDS,
    )
