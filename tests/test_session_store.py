"""Atomic session operations: get-or-create, record, claim, terminal transitions"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from chunked_upload.core.exceptions import AggregationError, SessionConflict
from chunked_upload.models import SessionStatus
from chunked_upload.services import aggregate_chunk_results, compute_hash
from chunked_upload.schemas import ChunkResult
from tests.conftest import MAX_AGE_SECONDS


def analyzed_chunk(store, upload, index, size=10, confidence=0.3):
    """Store a chunk record with an analysis result, as the receiver would"""
    data = bytes([index % 256]) * size
    content_hash = compute_hash(data)
    store.save_chunk(upload.upload_id, index, size, content_hash, f"{upload.upload_id}/chunks/chunk_{index:04d}")
    store.save_analysis(
        upload.upload_id,
        index,
        content_hash,
        ChunkResult(
            prediction="fake" if confidence > 0.5 else "real",
            confidence=confidence,
            models_used=["BG-Model-N"],
            processing_time_seconds=0.1,
            size_bytes=size,
        ),
    )


def test_get_or_create_is_idempotent(session_store):
    first = session_store.get_or_create("abc", "video.mp4", 100, 4)
    second = session_store.get_or_create("abc", "video.mp4", 100, 4)
    
    assert first.upload_id == second.upload_id
    assert second.status == SessionStatus.RECEIVING
    assert second.received_count == 0


def test_get_or_create_rejects_mismatched_declaration(session_store):
    session_store.get_or_create("abc", "video.mp4", 100, 4)
    
    with pytest.raises(SessionConflict) as exc_info:
        session_store.get_or_create("abc", "video.mp4", 100, 5)
    assert "abc" in str(exc_info.value)
    
    with pytest.raises(SessionConflict):
        session_store.get_or_create("abc", "video.mp4", 200, 4)


def test_concurrent_get_or_create_yields_one_session(session_store):
    with ThreadPoolExecutor(max_workers=8) as executor:
        uploads = list(executor.map(
            lambda _: session_store.get_or_create("race", "video.mp4", 100, 4),
            range(8)
        ))
    
    assert len({u.upload_id for u in uploads}) == 1
    assert len(session_store.list_sessions()) == 1


def test_record_chunk_counts_once_per_index(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 30, 3)
    analyzed_chunk(session_store, upload, 0)
    
    assert session_store.record_chunk(upload.upload_id, 0) == (1, False)
    assert session_store.record_chunk(upload.upload_id, 0) == (1, False)
    assert session_store.received_indices(upload.upload_id) == [0]


def test_record_chunk_requires_analysis_result(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 30, 3)
    session_store.save_chunk(upload.upload_id, 0, 10, "f" * 64, "key")
    
    assert session_store.record_chunk(upload.upload_id, 0) == (0, False)
    assert session_store.received_indices(upload.upload_id) == []


def test_only_last_record_reports_complete(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 30, 3)
    outcomes = []
    for index in (2, 0, 1):
        analyzed_chunk(session_store, upload, index)
        outcomes.append(session_store.record_chunk(upload.upload_id, index))
    
    assert outcomes == [(1, False), (2, False), (3, True)]


def test_concurrent_record_chunk_has_single_completer(session_store):
    total = 12
    upload = session_store.get_or_create("abc", "video.mp4", total * 10, total)
    for index in range(total):
        analyzed_chunk(session_store, upload, index)
    
    with ThreadPoolExecutor(max_workers=total) as executor:
        outcomes = list(executor.map(lambda i: session_store.record_chunk(upload.upload_id, i), range(total)))
    
    assert sum(1 for _, complete in outcomes if complete) == 1
    assert sorted(count for count, _ in outcomes) == list(range(1, total + 1))
    assert session_store.get("abc").received_count == total


def test_claim_requires_full_count(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    analyzed_chunk(session_store, upload, 0)
    session_store.record_chunk(upload.upload_id, 0)
    
    assert session_store.claim_aggregation(upload.upload_id) is False
    assert session_store.get("abc").status == SessionStatus.RECEIVING


def test_claim_has_exactly_one_winner(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    for index in range(2):
        analyzed_chunk(session_store, upload, index)
        session_store.record_chunk(upload.upload_id, index)
    
    with ThreadPoolExecutor(max_workers=8) as executor:
        claims = list(executor.map(lambda _: session_store.claim_aggregation(upload.upload_id), range(8)))
    
    assert claims.count(True) == 1
    assert session_store.get("abc").status == SessionStatus.AGGREGATING


def test_sessions_do_not_share_counts(session_store):
    a = session_store.get_or_create("session-a", "a.mp4", 20, 2)
    b = session_store.get_or_create("session-b", "b.mp4", 20, 2)
    analyzed_chunk(session_store, a, 0)
    analyzed_chunk(session_store, a, 1)
    
    session_store.record_chunk(a.upload_id, 0)
    session_store.record_chunk(a.upload_id, 1)
    
    assert session_store.get("session-a").received_count == 2
    assert session_store.get("session-b").received_count == 0
    assert session_store.received_indices(b.upload_id) == []


def test_mark_complete_stores_report_once(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 10, 1)
    analyzed_chunk(session_store, upload, 0)
    session_store.record_chunk(upload.upload_id, 0)
    assert session_store.claim_aggregation(upload.upload_id)
    
    report = aggregate_chunk_results(
        "abc", "video.mp4", 10, 1, session_store.chunk_results(upload.upload_id)
    )
    session_store.mark_complete(upload.upload_id, report)
    
    stored = session_store.get_aggregate(upload.upload_id)
    assert stored == report
    assert session_store.get("abc").status == SessionStatus.COMPLETE
    
    with pytest.raises(AggregationError):
        session_store.mark_complete(upload.upload_id, report)


def test_expired_lease_starts_new_session_on_access(session_store, clock):
    old = session_store.get_or_create("abc", "video.mp4", 20, 2)
    analyzed_chunk(session_store, old, 0)
    session_store.record_chunk(old.upload_id, 0)
    
    clock.advance(MAX_AGE_SECONDS + 1)
    fresh = session_store.get_or_create("abc", "video.mp4", 20, 2)
    
    assert fresh.upload_id != old.upload_id
    assert fresh.received_count == 0
    assert session_store.get_by_upload_id(old.upload_id).status == SessionStatus.EXPIRED
    assert session_store.received_indices(fresh.upload_id) == []


def test_recording_renews_lease(session_store, clock):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    clock.advance(MAX_AGE_SECONDS - 60)
    analyzed_chunk(session_store, upload, 0)
    session_store.record_chunk(upload.upload_id, 0)
    
    clock.advance(120)
    again = session_store.get_or_create("abc", "video.mp4", 20, 2)
    
    assert again.upload_id == upload.upload_id
    assert again.received_count == 1


def test_mark_failed_is_terminal(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    
    assert session_store.mark_failed(upload.upload_id, "boom")
    assert session_store.mark_failed(upload.upload_id, "again") is False
    
    failed = session_store.get("abc")
    assert failed.status == SessionStatus.FAILED
    assert failed.error_message == "boom"
    assert failed.terminal_at is not None


def test_replacing_counted_chunk_uncounts_it(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    analyzed_chunk(session_store, upload, 0)
    session_store.record_chunk(upload.upload_id, 0)
    
    session_store.save_chunk(upload.upload_id, 0, 10, "e" * 64, "other-key")
    
    assert session_store.get("abc").received_count == 0
    assert session_store.received_indices(upload.upload_id) == []
    record = session_store.get_chunk(upload.upload_id, 0)
    assert record.content_hash == "e" * 64
    assert record.analysis_result is None


def test_chunk_writes_rejected_once_session_left_receiving(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    for index in range(2):
        analyzed_chunk(session_store, upload, index)
        session_store.record_chunk(upload.upload_id, index)
    assert session_store.claim_aggregation(upload.upload_id)
    before = session_store.get_chunk(upload.upload_id, 0)
    
    with pytest.raises(SessionConflict) as exc_info:
        session_store.save_chunk(upload.upload_id, 0, 10, "e" * 64, "other-key")
    assert exc_info.value.chunk_index == 0
    assert "aggregating" in exc_info.value.message
    
    with pytest.raises(SessionConflict):
        session_store.save_analysis(
            upload.upload_id, 1, before.content_hash,
            ChunkResult(prediction="fake", confidence=0.9, size_bytes=10)
        )
    
    after = session_store.get_chunk(upload.upload_id, 0)
    assert after.content_hash == before.content_hash
    assert after.analysis_result == before.analysis_result
    assert session_store.get("abc").received_count == 2
    assert [i for i, r in session_store.chunk_results(upload.upload_id) if r is None] == []


def test_save_analysis_reports_replaced_bytes(session_store):
    upload = session_store.get_or_create("abc", "video.mp4", 20, 2)
    session_store.save_chunk(upload.upload_id, 0, 10, "e" * 64, "key")
    
    saved = session_store.save_analysis(
        upload.upload_id, 0, "f" * 64,
        ChunkResult(prediction="real", confidence=0.1, size_bytes=10)
    )
    
    assert saved is False
    assert session_store.get_chunk(upload.upload_id, 0).analysis_result is None
