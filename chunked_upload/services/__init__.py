"""Services module exports"""
from .aggregator import Aggregator, aggregate_chunk_results
from .analyzer import Analyzer, HashAnalyzer, TimeoutAnalyzer
from .chunk_store import ChunkPaths, ChunkStore, LocalChunkStore, MinioChunkStore, create_chunk_store
from .completion import CompletionDetector
from .reaper import Reaper, SweepReport
from .receiver import ChunkReceiver, compute_hash, derive_session_id
from .session_store import SessionStore

__all__ = [
    "Aggregator",
    "aggregate_chunk_results",
    "Analyzer",
    "HashAnalyzer",
    "TimeoutAnalyzer",
    "ChunkPaths",
    "ChunkStore",
    "LocalChunkStore",
    "MinioChunkStore",
    "create_chunk_store",
    "CompletionDetector",
    "Reaper",
    "SweepReport",
    "ChunkReceiver",
    "compute_hash",
    "derive_session_id",
    "SessionStore",
]
