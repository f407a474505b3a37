"""
Service wiring for the API layer

Providers are cached so every request shares one store/analyzer instance
per process; tests replace them through app.dependency_overrides.
"""
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from ..core.config import settings
from ..services import (
    Analyzer,
    ChunkReceiver,
    ChunkStore,
    HashAnalyzer,
    Reaper,
    SessionStore,
    TimeoutAnalyzer,
    create_chunk_store,
)


@lru_cache
def get_session_store() -> SessionStore:
    return SessionStore()


@lru_cache
def get_chunk_store() -> ChunkStore:
    return create_chunk_store(settings.CHUNK_STORE_BACKEND)


@lru_cache
def get_analyzer() -> Analyzer:
    return TimeoutAnalyzer(HashAnalyzer(), timeout_seconds=settings.ANALYZER_TIMEOUT_SECONDS)


def get_receiver(
    session_store: Annotated[SessionStore, Depends(get_session_store)],
    chunk_store: Annotated[ChunkStore, Depends(get_chunk_store)],
    analyzer: Annotated[Analyzer, Depends(get_analyzer)],
) -> ChunkReceiver:
    return ChunkReceiver(session_store, chunk_store, analyzer)


def get_reaper() -> Reaper:
    return Reaper(get_session_store(), get_chunk_store())
