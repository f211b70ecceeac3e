"""
Progress Sync Tests

Merge policy, delta accounting and full sync runs against the in-process
FastAPI backend.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone

import httpx
import pytest
from conftest import envelope, make_token
from test_storage import make_record

from novelsync.client import AuthenticatedClient
from novelsync.errors import (
    EncodingError,
    InvalidResponseError,
    NetworkFailureError,
    NotAuthenticatedError,
    SyncInProgressError,
    SyncNetworkError,
)
from novelsync.models import ProgressRecord, SyncState
from novelsync.repository import ProgressRepository
from novelsync.schemas import RemoteProgress
from novelsync.sync import ProgressSyncEngine, merge_remote
from novelsync.tokens import MemoryCredentialStore


def at_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def remote(novel_id: str = "n1", last_read_ms: int = 500, **fields) -> RemoteProgress:
    data = dict(
        novel_id=novel_id,
        current_chapter=9,
        current_chapter_id="remote-ch-9",
        current_position=77,
        total_chapters_read=9,
        last_read_time=at_millis(last_read_ms),
        total_reading_time=0,
    )
    data.update(fields)
    return RemoteProgress(**data)


def local(last_read_ms: int = 1000, **fields) -> ProgressRecord:
    data = dict(
        novel_id="n1",
        current_chapter_id="local-ch-3",
        current_chapter_order=3,
        current_position=10,
        total_chapters_read=3,
        last_read_date=at_millis(last_read_ms),
    )
    data.update(fields)
    return ProgressRecord(**data)


# =============================================================================
# Merge
# =============================================================================

class TestMergeRemote:
    """Tests for the per-record merge policy."""

    def test_local_newer_keeps_position_takes_server_time(self):
        """Local is newer: position stays, total comes from the server, delta absorbed."""
        record = local(total_reading_time=5000, unsynced_delta=3000)

        merged = merge_remote(record, remote(total_reading_time=8000))

        assert merged.current_chapter_id == "local-ch-3"
        assert merged.current_chapter_order == 3
        assert merged.current_position == 10
        assert merged.last_read_time == 1000
        assert merged.total_reading_time == 8000
        assert merged.unsynced_delta == 0

    def test_remote_newer_takes_position(self):
        record = local(last_read_ms=1000)

        merged = merge_remote(record, remote(last_read_ms=2000, scroll_percentage=0.3))

        assert merged.current_chapter_id == "remote-ch-9"
        assert merged.current_chapter_order == 9
        assert merged.current_position == 77
        assert merged.scroll_percentage == 0.3
        assert merged.total_chapters_read == 9
        assert merged.last_read_time == 2000

    def test_equal_timestamps_keep_local(self):
        merged = merge_remote(local(last_read_ms=1000), remote(last_read_ms=1000))
        assert merged.current_chapter_id == "local-ch-3"

    def test_server_total_replaces_even_when_smaller(self):
        merged = merge_remote(local(total_reading_time=9000), remote(total_reading_time=4000))
        assert merged.total_reading_time == 4000

    def test_merge_always_clears_delta(self):
        """The server total absorbs the delta whatever its size."""
        merged = merge_remote(local(unsynced_delta=5000), remote(total_reading_time=3000))

        assert merged.total_reading_time == 3000
        assert merged.unsynced_delta == 0

    @pytest.mark.parametrize("scroll,expected", [(42.0, 1.0), (-2.0, 0.0), (None, None)])
    def test_remote_scroll_percentage_bounded(self, scroll, expected):
        merged = merge_remote(local(last_read_ms=1000), remote(last_read_ms=2000, scroll_percentage=scroll))

        assert merged.scroll_percentage == expected
        assert merged.to_delta().scroll_percentage == expected

    def test_new_record_from_remote(self):
        merged = merge_remote(None, remote(
            total_reading_time=4200,
            novel_title="Remote Novel",
            author_name="Someone",
            novel_chapters_count=40,
            current_chapter_title="Nine",
        ))

        assert merged.novel_id == "n1"
        assert merged.current_chapter_id == "remote-ch-9"
        assert merged.current_chapter_title == "Nine"
        assert merged.novel_title == "Remote Novel"
        assert merged.author_name == "Someone"
        assert merged.total_chapters == 40
        assert merged.total_reading_time == 4200
        assert merged.unsynced_delta == 0
        assert merged.progress_percentage == pytest.approx(9 / 40)

    def test_metadata_applied_when_local_newer(self):
        merged = merge_remote(local(), remote(novel_title="Fresh Title"))
        assert merged.novel_title == "Fresh Title"

    def test_remote_total_parsed_from_string(self):
        parsed = RemoteProgress.model_validate({
            "novelId": "n1",
            "lastReadTime": "2024-05-01T12:00:00Z",
            "totalReadingTime": "123456",
            "currentChapterId": "c1",
        })

        assert parsed.total_reading_time == 123456
        assert parsed.last_read_millis == 1714564800000

    def test_naive_remote_timestamp_is_utc(self):
        parsed = RemoteProgress.model_validate({
            "novelId": "n1",
            "lastReadTime": "2024-05-01T12:00:00",
            "currentChapterId": "c1",
        })

        assert parsed.last_read_time.tzinfo is not None
        assert parsed.last_read_millis == 1714564800000


# =============================================================================
# Full sync (in-process backend)
# =============================================================================

@pytest.fixture
def credentials(library):
    return MemoryCredentialStore(library.access_token, library.refresh_token)


@pytest.fixture
def client(credentials, settings, backend_transport):
    return AuthenticatedClient(credentials, settings=settings, transport=backend_transport)


@pytest.fixture
def engine(client, store, settings):
    return ProgressSyncEngine(client, store, settings=settings)


@pytest.mark.asyncio
async def test_full_sync_never_double_counts(engine, store, library):
    """Uploaded delta lands on the server once; local total follows the server."""
    library.add_remote("n1", last_read_ms=500, total_reading_time=5000)
    store.upsert(local(total_reading_time=5000, unsynced_delta=3000))

    result = await engine.full_sync()

    assert result.uploaded == 1
    assert result.downloaded == 1
    assert result.merged == 1
    assert result.is_success
    assert library.history["n1"]["totalReadingTime"] == 8000

    record = store.get("n1")
    assert record.total_reading_time == 8000
    assert record.unsynced_delta == 0
    assert engine.state is SyncState.SUCCESS

    await engine.full_sync()
    assert library.history["n1"]["totalReadingTime"] == 8000
    assert store.get("n1").total_reading_time == 8000


@pytest.mark.asyncio
async def test_full_sync_pulls_remote_only_records(engine, store, library):
    library.add_remote("r1", chapter=4, chapter_id="r1-ch-4", total_reading_time=60000,
                       novelTitle="Remote One", novelChaptersCount=8)

    result = await engine.full_sync()

    assert result.uploaded == 0
    assert library.count("sync") == 0
    record = store.get("r1")
    assert record.current_chapter_id == "r1-ch-4"
    assert record.novel_title == "Remote One"
    assert record.progress_percentage == 0.5
    assert record.total_reading_time == 60000


@pytest.mark.asyncio
async def test_full_sync_remote_newer_position_wins(engine, store, library):
    store.upsert(local(last_read_ms=1000))
    library.add_remote("n1", chapter=12, chapter_id="ch-12", last_read_ms=10_000_000)

    await engine.full_sync()

    record = store.get("n1")
    assert record.current_chapter_id == "ch-12"
    assert record.current_chapter_order == 12


@pytest.mark.asyncio
async def test_out_of_range_remote_scroll_does_not_block_later_syncs(engine, store, library):
    """A bad scroll fraction from the server must not stall other novels' deltas."""
    library.add_remote("n1", chapter_id="c1", scrollPercentage=42.0)
    await engine.full_sync()
    assert store.get("n1").scroll_percentage == 1.0

    store.upsert(make_record("n2", unsynced_delta=60000))
    result = await engine.full_sync()

    assert result.is_success
    assert engine.state is SyncState.SUCCESS
    assert library.history["n2"]["totalReadingTime"] == 60000
    assert store.get("n2").total_reading_time == 60000
    assert store.get("n2").unsynced_delta == 0


@pytest.mark.asyncio
async def test_out_of_range_local_scroll_uploads_bounded(engine, store, library):
    repository = ProgressRepository(store)
    repository.save_progress(make_record(unsynced_delta=2000))
    repository.update_progress("n1", "n1-ch-4", 4, "Four", scroll_percentage=1.2)

    result = await engine.full_sync()

    assert result.uploaded == 1
    assert library.history["n1"]["scrollPercentage"] == 1.0
    assert library.history["n1"]["totalReadingTime"] == 2000


@pytest.mark.asyncio
async def test_download_pages_until_short_page(engine, store, library, settings):
    engine.settings = settings.model_copy(update={"history_page_limit": 2})
    for i in range(5):
        library.add_remote(f"r{i}", chapter_id=f"c{i}")

    result = await engine.full_sync()

    assert result.downloaded == 5
    assert library.page_requests == [(2, 0), (2, 2), (2, 4)]
    assert len(store.all()) == 5


@pytest.mark.asyncio
async def test_records_without_chapter_are_skipped(engine, store, library):
    library.add_remote("good", chapter_id="c1")
    library.add_remote("blank", chapter_id="  ")
    library.add_remote("none", chapter_id=None)

    result = await engine.full_sync()

    assert result.downloaded == 1
    assert [r.novel_id for r in store.all()] == ["good"]


@pytest.mark.asyncio
async def test_sync_without_token_is_not_authenticated(engine, credentials, library):
    credentials.clear_tokens()

    with pytest.raises(NotAuthenticatedError):
        await engine.full_sync()

    assert library.calls == {}
    assert engine.state is SyncState.ERROR


@pytest.mark.asyncio
async def test_sync_with_expired_token_is_not_authenticated(engine, credentials, library):
    credentials.save_tokens(make_token(expires_in=-10))

    with pytest.raises(NotAuthenticatedError):
        await engine.full_sync()

    assert library.calls == {}


@pytest.mark.asyncio
async def test_rotated_server_token_refreshes_mid_sync(engine, store, library, credentials):
    """A 401 during upload refreshes once and the sync completes."""
    store.upsert(local(unsynced_delta=1000))
    old_refresh = library.refresh_token
    library.access_token = make_token()

    result = await engine.full_sync()

    assert result.is_success
    assert library.count("refresh") == 1
    assert credentials.get_refresh_token() != old_refresh
    assert credentials.get_access_token() == library.access_token


@pytest.mark.asyncio
async def test_acknowledge_returns_to_idle(engine):
    await engine.full_sync()
    assert engine.state is SyncState.SUCCESS

    engine.acknowledge()
    assert engine.state is SyncState.IDLE


# =============================================================================
# Failure paths (MockTransport)
# =============================================================================

def mock_engine(store, settings, handler) -> ProgressSyncEngine:
    client = AuthenticatedClient(
        MemoryCredentialStore(make_token(), make_token(expires_in=86400)),
        settings=settings,
        transport=httpx.MockTransport(handler),
    )
    return ProgressSyncEngine(client, store, settings=settings)


@pytest.mark.asyncio
async def test_network_failure_becomes_sync_network_error(store, settings):
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    engine = mock_engine(store, settings, handler)
    store.upsert(local(unsynced_delta=1000))

    with pytest.raises(SyncNetworkError) as exc_info:
        await engine.full_sync()

    assert isinstance(exc_info.value.__cause__, NetworkFailureError)
    assert engine.state is SyncState.ERROR
    assert store.get("n1").unsynced_delta == 1000


@pytest.mark.asyncio
async def test_rejected_upload_is_invalid_response(store, settings):
    def handler(request):
        return httpx.Response(200, json=envelope(
            {"synced": 0, "failed": 1, "details": []}, ok=False, message="nope",
        ))

    engine = mock_engine(store, settings, handler)
    store.upsert(local(unsynced_delta=1000))

    with pytest.raises(InvalidResponseError):
        await engine.full_sync()

    assert engine.status.message == "nope"
    assert store.get("n1").unsynced_delta == 1000


@pytest.mark.asyncio
async def test_partial_upload_failure_reported(store, settings):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json=envelope({"synced": 1, "failed": 1, "details": []}))
        return httpx.Response(200, json=envelope([]))

    engine = mock_engine(store, settings, handler)
    store.upsert(local())
    store.upsert(make_record("n2"))

    result = await engine.full_sync()

    assert result.failed == 1
    assert result.has_partial_success
    assert not result.is_success
    assert engine.status.failed == 1


@pytest.mark.asyncio
async def test_delta_flushed_during_sync_is_absorbed(store, settings):
    """Once merged, the local delta is 0 even if time was flushed mid-sync."""
    store.upsert(local(total_reading_time=5000, unsynced_delta=3000))

    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json=envelope({"synced": 1, "failed": 0, "details": []}))
        store.increment_unsynced_delta("n1", 1500)
        return httpx.Response(200, json=envelope([{
            "novelId": "n1",
            "currentChapter": 3,
            "currentChapterId": "local-ch-3",
            "lastReadTime": "1970-01-01T00:00:00.500Z",
            "totalReadingTime": "8000",
        }]))

    engine = mock_engine(store, settings, handler)
    await engine.full_sync()

    record = store.get("n1")
    assert record.total_reading_time == 8000
    assert record.unsynced_delta == 0


@pytest.mark.asyncio
async def test_unencodable_record_fails_before_network(store, settings, monkeypatch):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json=envelope([]))

    engine = mock_engine(store, settings, handler)
    monkeypatch.setattr(store, "all", lambda: [local(scroll_percentage=1.5)])

    with pytest.raises(EncodingError):
        await engine.full_sync()

    assert engine.state is SyncState.ERROR
    assert calls == []


@pytest.mark.asyncio
async def test_unexpected_error_ends_in_error_state(store, settings, monkeypatch):
    def handler(request):
        return httpx.Response(200, json=envelope([{
            "novelId": "r1",
            "currentChapterId": "c1",
            "lastReadTime": "2024-05-01T12:00:00Z",
            "totalReadingTime": "100",
        }]))

    def broken_save_all(records):
        raise sqlite3.OperationalError("disk I/O error")

    engine = mock_engine(store, settings, handler)
    monkeypatch.setattr(store, "save_all", broken_save_all)

    with pytest.raises(sqlite3.OperationalError):
        await engine.full_sync()

    assert engine.state is SyncState.ERROR
    assert "disk I/O error" in engine.status.message

    monkeypatch.undo()
    result = await engine.full_sync()
    assert result.merged == 1
    assert engine.state is SyncState.SUCCESS


@pytest.mark.asyncio
async def test_overlapping_sync_rejected(store, settings):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request):
        entered.set()
        await release.wait()
        return httpx.Response(200, json=envelope([]))

    engine = mock_engine(store, settings, handler)
    first = asyncio.create_task(engine.full_sync())
    await entered.wait()

    with pytest.raises(SyncInProgressError):
        await engine.full_sync()
    assert engine.state is SyncState.SYNCING

    release.set()
    result = await first
    assert result.downloaded == 0
    assert engine.state is SyncState.SUCCESS


@pytest.mark.asyncio
async def test_background_sync_runs_periodically(store, settings):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json=envelope([]))

    engine = mock_engine(store, settings, handler)
    await engine.start_background_sync(interval=0.01)
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await engine.stop_background_sync()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_background_sync_survives_failures(store, settings):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(500)

    engine = mock_engine(store, settings, handler)
    await engine.start_background_sync(interval=0.01)
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await engine.stop_background_sync()

    assert len(calls) >= 2
    assert engine.state in (SyncState.ERROR, SyncState.IDLE)
