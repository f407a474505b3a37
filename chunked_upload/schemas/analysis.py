"""
Value objects produced by the analyzer and the aggregator
"""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Prediction = Literal["fake", "real"]


class CamelModel(BaseModel):
    """Serialized with camelCase keys, constructed with snake_case names"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChunkResult(CamelModel):
    """Analyzer output for a single chunk"""
    prediction: Prediction
    confidence: float = Field(..., ge=0.0, le=1.0)
    models_used: list[str] = Field(default_factory=list)
    processing_time_seconds: float = Field(0.0, ge=0.0)
    size_bytes: int = Field(..., ge=0)
    estimated_frames: int = Field(0, ge=0)


class ChunkBreakdownItem(CamelModel):
    chunk_index: int
    prediction: Prediction
    confidence: float
    size_bytes: int
    models_used: list[str]
    estimated_frames: int = 0


class ConsensusMetrics(CamelModel):
    chunk_consensus: Literal["fake_majority", "real_majority"]
    consistency_score: float  # max(fake, real) / total chunks
    raw_confidence: float  # weighted confidence before rounding


class AggregateResult(CamelModel):
    """Size-weighted verdict over every chunk of a session; immutable once stored"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
    
    session_id: str
    filename: str
    file_size: int
    file_size_mb: float
    prediction: Prediction
    confidence: float
    models_used: list[str]
    total_processing_time: float
    total_chunks: int
    chunks_processed: int
    chunks_fake: int
    chunks_real: int
    frames_analyzed: int
    aggregation_method: str = "weighted_by_size"
    chunk_breakdown: list[ChunkBreakdownItem]
    consensus: ConsensusMetrics
    timestamp: datetime  # naive UTC, when the report was produced
