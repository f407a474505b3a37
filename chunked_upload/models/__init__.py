"""Models module exports"""
from .upload import UploadSession, ChunkRecord, AggregateRecord, SessionStatus, utcnow

__all__ = ["UploadSession", "ChunkRecord", "AggregateRecord", "SessionStatus", "utcnow"]
