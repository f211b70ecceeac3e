"""
Offline-first reconciliation of local reading progress with the server.

A full sync runs three phases in order:

1. Upload every local record as a delta entry (the unsynced milliseconds,
   never the cumulative total; the server does the summation).
2. Download the complete remote history, enriched with novel metadata.
3. Merge each remote record into the local store and persist the result in
   one transaction.

Conflict resolution splits by field kind. Navigation fields (chapter,
scroll position, segment, chapters read, last-read timestamp) follow
last-write-wins on ``lastReadTime``. Reading time follows the server: the
remote ``totalReadingTime`` always replaces the local total and
``unsyncedDelta`` goes back to 0, since the server has folded the uploaded
delta into that total.
"""

import asyncio
import logging
import time
from typing import Optional

from pydantic import ValidationError

from . import endpoints
from .client import AuthenticatedClient
from .config import ClientSettings
from .errors import (
    ClientError,
    EncodingError,
    InvalidResponseError,
    NetworkFailureError,
    NotAuthenticatedError,
    SyncError,
    SyncInProgressError,
    SyncNetworkError,
)
from .models import ProgressRecord, SyncResult, SyncState, SyncStatus
from .schemas import ApiResponse, RemoteProgress, SyncHistoryRequest, SyncHistoryResponse
from .storage import ProgressStore
from .tokens import is_token_valid

logger = logging.getLogger(__name__)


def merge_remote(local: Optional[ProgressRecord], remote: RemoteProgress) -> ProgressRecord:
    """
    Merge one downloaded record into its local counterpart.

    Args:
        local: The local record, or None if the novel is unknown locally
        remote: The server's record

    Returns:
        The merged record (``local`` mutated in place when given).
    """
    if local is None:
        return ProgressRecord.from_remote(remote)

    if remote.last_read_millis > local.last_read_time:
        local.apply_remote_position(remote)
    local.apply_remote_metadata(remote)

    local.update_total_reading_time_from_backend(remote.total_reading_time)
    local.unsynced_delta = 0
    return local


class ProgressSyncEngine:
    """Bidirectional sync of progress records through the authenticated client."""

    def __init__(
        self,
        client: AuthenticatedClient,
        store: ProgressStore,
        settings: Optional[ClientSettings] = None,
    ):
        self.client = client
        self.store = store
        self.settings = settings or client.settings
        self._status = SyncStatus()
        self._running = False
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def state(self) -> SyncState:
        return self._status.state

    def acknowledge(self) -> None:
        """Return a finished (success/error) engine to idle."""
        if self._status.state in (SyncState.SUCCESS, SyncState.ERROR):
            self._status = SyncStatus()

    def _fail(self, error: Exception) -> None:
        self._status = SyncStatus(state=SyncState.ERROR, message=str(error))
        logger.error(f"Sync failed: {error}")

    # === Full Sync ===

    async def full_sync(self) -> SyncResult:
        """
        Upload deltas, download the remote history and merge it locally.

        Raises:
            SyncInProgressError: Another full_sync is running
            NotAuthenticatedError: No valid access token (network untouched)
            SyncNetworkError: Transport failure in any phase
            InvalidResponseError: The server envelope reported failure
            EncodingError: A local record cannot be encoded for upload
            ClientError: Any other request failure, unchanged
        """
        if self._running:
            raise SyncInProgressError()

        if not is_token_valid(self.client.credentials.get_access_token()):
            error = NotAuthenticatedError()
            self._fail(error)
            raise error

        self._running = True
        self._status = SyncStatus(state=SyncState.SYNCING)
        start_time = time.time()
        logger.info("Starting full sync...")

        try:
            synced, failed = await self._upload()
            remote_records = await self._download()
            merged = self._merge(remote_records)
        except NetworkFailureError as e:
            error = SyncNetworkError(e)
            self._fail(error)
            raise error from e
        except asyncio.CancelledError:
            self._status = SyncStatus()
            raise
        except Exception as e:
            self._fail(e)
            raise
        finally:
            self._running = False

        result = SyncResult(
            uploaded=synced,
            downloaded=len(remote_records),
            merged=merged,
            failed=failed,
            duration_seconds=time.time() - start_time,
        )
        self._status = SyncStatus(state=SyncState.SUCCESS, synced=synced, failed=failed)
        logger.info(
            f"Full sync completed in {result.duration_seconds:.2f}s: "
            f"{result.uploaded} uploaded, {result.downloaded} downloaded, "
            f"{result.merged} merged, {result.failed} failed"
        )
        return result

    async def _upload(self) -> tuple[int, int]:
        """Send every local record's delta in one batch."""
        records = self.store.all()
        if not records:
            logger.debug("No local progress to upload")
            return 0, 0

        try:
            body = SyncHistoryRequest(history=[record.to_delta() for record in records])
        except ValidationError as e:
            raise EncodingError(f"Cannot build upload body: {e}") from e

        envelope = await self.client.request(
            endpoints.library_sync_history(body),
            ApiResponse[SyncHistoryResponse],
        )
        if not envelope.ok or envelope.data is None:
            raise InvalidResponseError(envelope.message or "Upload rejected by server")

        response = envelope.data
        if response.failed:
            logger.warning(f"Server rejected {response.failed} of {len(records)} progress entries")
        logger.info(f"Uploaded {len(records)} progress entries ({response.synced} synced)")
        return response.synced, response.failed

    async def _download(self) -> list[RemoteProgress]:
        """Fetch every remote record, page by page."""
        limit = self.settings.history_page_limit
        offset = 0
        records: list[RemoteProgress] = []

        while True:
            envelope = await self.client.request(
                endpoints.library_history(limit=limit, offset=offset),
                ApiResponse[list[RemoteProgress]],
            )
            if not envelope.ok or envelope.data is None:
                raise InvalidResponseError(envelope.message or "History download rejected by server")
            page = envelope.data
            records.extend(page)
            if len(page) < limit:
                break
            offset += limit

        usable = [record for record in records if record.has_chapter]
        skipped = len(records) - len(usable)
        if skipped:
            logger.warning(f"Skipped {skipped} remote records without a chapter id")
        logger.info(f"Downloaded {len(usable)} remote progress records")
        return usable

    def _merge(self, remote_records: list[RemoteProgress]) -> int:
        """Merge and persist under the store lock so flushes cannot interleave."""
        if not remote_records:
            return 0

        with self.store.locked():
            local = {record.novel_id: record for record in self.store.all()}
            merged = [merge_remote(local.get(remote.novel_id), remote) for remote in remote_records]
            return self.store.save_all(merged)

    # === Background Sync ===

    async def start_background_sync(self, interval: Optional[float] = None) -> None:
        """Run full_sync periodically until stopped."""
        if self._sync_task and not self._sync_task.done():
            logger.warning("Background sync already running")
            return
        period = interval if interval is not None else self.settings.sync_interval_seconds
        self._sync_task = asyncio.create_task(self._background_sync_loop(period))
        logger.info("Background sync started")

    async def stop_background_sync(self) -> None:
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        logger.info("Background sync stopped")

    async def _background_sync_loop(self, interval: float) -> None:
        while True:
            try:
                await self.full_sync()
            except NotAuthenticatedError:
                logger.debug("Skipping background sync: not authenticated")
            except (SyncError, ClientError) as e:
                logger.warning(f"Background sync failed: {e}")
            await asyncio.sleep(interval)
