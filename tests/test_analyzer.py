"""Shipped analyzer and the timeout wrapper"""
import hashlib

import pytest

from chunked_upload.core.exceptions import AnalyzerError
from chunked_upload.services import Analyzer, HashAnalyzer, TimeoutAnalyzer
from chunked_upload.services.analyzer import BASELINE_MODEL, COMPRESSION_MODEL, TEMPORAL_MODEL


def test_hash_analyzer_is_deterministic():
    analyzer = HashAnalyzer()
    data = b"frame data" * 100
    
    first = analyzer.analyze(data, 0, "s1")
    second = analyzer.analyze(data, 5, "other")
    
    assert first.confidence == second.confidence
    assert first.prediction == second.prediction
    assert first.models_used == second.models_used


@pytest.mark.parametrize("payload", [b"a", b"b" * 4096, bytes(range(256)) * 40])
def test_hash_analyzer_heuristic(payload):
    result = HashAnalyzer().analyze(payload, 0, "s1")
    hash_int = int(hashlib.md5(payload).hexdigest()[:8], 16)
    expected = max(0.1, min(0.9, (hash_int % 1000) / 1000))
    
    assert result.confidence == pytest.approx(expected)
    assert 0.1 <= result.confidence <= 0.9
    assert result.prediction == ("fake" if result.confidence > 0.5 else "real")
    assert result.models_used[0] == BASELINE_MODEL
    assert COMPRESSION_MODEL in result.models_used
    assert (TEMPORAL_MODEL in result.models_used) == (hash_int % 3 == 0)
    assert result.size_bytes == len(payload)


def test_large_chunks_skip_compression_model():
    result = HashAnalyzer().analyze(b"z" * (2 * 1024 * 1024), 0, "s1")
    
    assert COMPRESSION_MODEL not in result.models_used
    assert result.estimated_frames == 40


def test_timeout_wrapper_converts_exceptions():
    class Broken(Analyzer):
        def analyze(self, data, chunk_index, session_id):
            raise ValueError("weights missing")
    
    analyzer = TimeoutAnalyzer(Broken(), timeout_seconds=1)
    try:
        with pytest.raises(AnalyzerError) as exc_info:
            analyzer.analyze(b"x", 3, "s1")
    finally:
        analyzer.shutdown()
    
    assert exc_info.value.chunk_index == 3
    assert exc_info.value.session_id == "s1"
    assert "weights missing" in str(exc_info.value)


def test_timeout_wrapper_rejects_wrong_result_type():
    class Sloppy(Analyzer):
        def analyze(self, data, chunk_index, session_id):
            return {"prediction": "fake"}
    
    analyzer = TimeoutAnalyzer(Sloppy(), timeout_seconds=1)
    try:
        with pytest.raises(AnalyzerError):
            analyzer.analyze(b"x", 0, "s1")
    finally:
        analyzer.shutdown()
