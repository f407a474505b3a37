"""Lease expiry, stuck aggregations and retention purge"""
from chunked_upload.core.exceptions import StorageError
from chunked_upload.models import SessionStatus
from tests.conftest import (
    AGGREGATION_TIMEOUT_SECONDS,
    MAX_AGE_SECONDS,
    RETENTION_SECONDS,
    chunk_bytes,
    make_chunk,
)


def test_idle_session_expires_and_new_chunk_starts_fresh(receiver, reaper, session_store, analyzer, clock):
    receiver.receive(make_chunk(0, chunk_bytes(0), 3))
    receiver.receive(make_chunk(1, chunk_bytes(1), 3))
    old = session_store.get("session-1")
    
    clock.advance(MAX_AGE_SECONDS + 1)
    report = reaper.sweep()
    
    assert report.expired == 1
    assert session_store.get("session-1") is None
    assert session_store.get_by_upload_id(old.upload_id).status == SessionStatus.EXPIRED
    
    response = receiver.receive(make_chunk(2, chunk_bytes(2), 3))
    
    assert response.completed is False
    assert response.received_chunks == 1
    fresh = session_store.get("session-1")
    assert fresh.upload_id != old.upload_id
    assert session_store.received_indices(fresh.upload_id) == [2]
    assert analyzer.calls[("session-1", 2)] == 1


def test_activity_renews_lease(receiver, reaper, session_store, clock):
    receiver.receive(make_chunk(0, chunk_bytes(0), 3))
    clock.advance(MAX_AGE_SECONDS - 10)
    receiver.receive(make_chunk(1, chunk_bytes(1), 3))
    clock.advance(20)
    
    report = reaper.sweep()
    
    assert report.expired == 0
    assert session_store.get("session-1").status == SessionStatus.RECEIVING


def test_complete_session_purged_after_retention(receiver, reaper, session_store, chunk_store, clock):
    receiver.receive(make_chunk(0, chunk_bytes(0), 2))
    receiver.receive(make_chunk(1, chunk_bytes(1), 2))
    upload = session_store.get("session-1")
    
    clock.advance(RETENTION_SECONDS - 1)
    assert reaper.sweep().purged == 0
    assert session_store.get_aggregate(upload.upload_id) is not None
    
    clock.advance(2)
    assert reaper.sweep().purged == 1
    
    assert session_store.get_by_upload_id(upload.upload_id) is None
    assert session_store.get_aggregate(upload.upload_id) is None
    assert session_store.get_chunk(upload.upload_id, 0) is None
    assert not (chunk_store.root / upload.upload_id).exists()


def test_receiving_session_is_never_purged(receiver, reaper, session_store, clock):
    receiver.receive(make_chunk(0, chunk_bytes(0), 2))
    clock.advance(MAX_AGE_SECONDS - 1)
    
    report = reaper.sweep()
    
    assert report.purged == 0
    assert session_store.get("session-1").received_count == 1


def test_aggregating_session_failed_only_after_timeout(receiver, reaper, session_store, clock, monkeypatch):
    receiver.receive(make_chunk(0, chunk_bytes(0), 2))
    # Worker claims, then dies before aggregating
    monkeypatch.setattr(receiver.completion.aggregator, "aggregate", lambda upload: None)
    receiver.receive(make_chunk(1, chunk_bytes(1), 2))
    upload = session_store.get("session-1")
    assert upload.status == SessionStatus.AGGREGATING
    
    clock.advance(RETENTION_SECONDS + 1)
    report = reaper.sweep()
    assert report.failed == 0
    assert report.purged == 0
    assert session_store.get("session-1").status == SessionStatus.AGGREGATING
    
    clock.advance(AGGREGATION_TIMEOUT_SECONDS)
    report = reaper.sweep()
    assert report.failed == 1
    failed = session_store.get("session-1")
    assert failed.status == SessionStatus.FAILED
    assert failed.error_message == "aggregation did not finish"
    
    clock.advance(RETENTION_SECONDS + 1)
    assert reaper.sweep().purged == 1
    assert session_store.get_by_upload_id(upload.upload_id) is None


def test_expired_session_purged_after_retention(receiver, reaper, session_store, chunk_store, clock):
    receiver.receive(make_chunk(0, chunk_bytes(0), 2))
    upload = session_store.get("session-1")
    
    clock.advance(MAX_AGE_SECONDS + 1)
    first = reaper.sweep()
    assert first.expired == 1
    assert first.purged == 0
    
    clock.advance(RETENTION_SECONDS + 1)
    assert reaper.sweep().purged == 1
    assert session_store.get_by_upload_id(upload.upload_id) is None
    assert not (chunk_store.root / upload.upload_id).exists()


def test_rows_kept_when_chunk_bytes_cannot_be_deleted(receiver, reaper, session_store, clock, monkeypatch):
    receiver.receive(make_chunk(0, chunk_bytes(0), 1))
    upload = session_store.get("session-1")
    
    def broken_delete(upload_id):
        raise StorageError("bucket unreachable")
    
    monkeypatch.setattr(reaper.chunk_store, "delete_upload", broken_delete)
    clock.advance(RETENTION_SECONDS + 1)
    
    assert reaper.sweep().purged == 0
    assert session_store.get_by_upload_id(upload.upload_id).status == SessionStatus.COMPLETE


def test_sweep_on_empty_store(reaper):
    report = reaper.sweep()
    
    assert (report.expired, report.failed, report.purged) == (0, 0, 0)
