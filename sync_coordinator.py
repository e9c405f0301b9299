"""
Sync coordinator: reconciles the local mark set with the server's.

Conflict policy is remote-wins: the merged map is the local map updated
with every key the server returns. Keys only known locally survive. The
merge and the new last-sync instant are written together; a failed sync
leaves the local store untouched.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Optional

from connectivity import Connectivity
from errors import InvalidResponseError, SyncInProgressError
from local_store import LocalStore
from models import ApiResponse, SyncResult, isoformat

if TYPE_CHECKING:
    from offline_queue import OfflineQueueManager
    from remote_client import RemoteClient


class SyncState:
    """In-progress flag owned by one coordinator: Idle -> Syncing -> Idle."""

    def __init__(self) -> None:
        self._syncing = False
        self._lock = threading.Lock()

    @property
    def syncing(self) -> bool:
        return self._syncing

    def begin(self, force: bool) -> bool:
        with self._lock:
            if self._syncing and not force:
                return False
            self._syncing = True
            return True

    def end(self) -> None:
        with self._lock:
            self._syncing = False


def merge_marks(local: dict[str, int], server: dict[str, int]) -> dict[str, int]:
    """Remote-wins merge: server values override local ones key by key."""
    return {**local, **server}


class SyncCoordinator:
    def __init__(
        self,
        store: LocalStore,
        client: RemoteClient,
        offline_queue: OfflineQueueManager,
        connectivity: Connectivity,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.offline_queue = offline_queue
        self.connectivity = connectivity
        self.logger = logger or logging.getLogger(__name__)
        self.state = SyncState()

    @property
    def in_progress(self) -> bool:
        return self.state.syncing

    def sync_data(self, user_id: str, force: bool = False) -> ApiResponse:
        """Push local marks to /api/sync and merge the server's answer.

        A second call while one is running fails with SYNC_IN_PROGRESS
        unless ``force`` is set; it is rejected, not deferred.
        """
        if not self.state.begin(force):
            return ApiResponse.fail(SyncInProgressError().to_api_error())

        try:
            local_marks = self.store.get_user_marks()
            last_sync = self.store.get_last_sync_time()
            payload = {
                "userId": user_id,
                "localMarks": local_marks,
                "lastSync": isoformat(last_sync) if last_sync else None,
                "timestamp": isoformat(self.store.clock()),
            }

            result = self.client.make_request("/api/sync", "POST", payload)
            if not result.success:
                self.logger.warning("Sync for %s failed: %s", user_id, result.code)
                return result

            try:
                server_marks, conflicts, synced = self._read_sync_response(result.data)
            except InvalidResponseError as e:
                self.logger.warning("Sync for %s rejected: %s", user_id, e.message)
                return ApiResponse.fail(e.to_api_error())

            completed_at = self.store.clock()
            self.store.apply_sync(merge_marks(local_marks, server_marks), completed_at)
            self.client.invalidate_user_cache(user_id)
            self.logger.info("Synced %s: %d synced, %d conflicts", user_id, synced, len(conflicts))

            if self.connectivity():
                try:
                    self.offline_queue.process_offline_queue(user_id, self.client)
                except Exception:
                    self.logger.exception("Offline queue drain after sync failed")

            return ApiResponse.ok(SyncResult(
                synced=synced,
                conflicts=len(conflicts),
                errors=0,
                last_sync=isoformat(completed_at),
            ))
        finally:
            self.state.end()

    @staticmethod
    def _read_sync_response(data: Any) -> tuple[dict[str, int], list, int]:
        if not isinstance(data, dict):
            raise InvalidResponseError("Sync response is not an object")
        server_marks = data.get("serverMarks")
        if not isinstance(server_marks, dict):
            raise InvalidResponseError("Sync response has no serverMarks map")
        conflicts = data.get("conflicts") or []
        if not isinstance(conflicts, list):
            raise InvalidResponseError("Sync response conflicts is not a list")
        synced = data.get("synced", 0)
        if isinstance(synced, bool) or not isinstance(synced, int):
            raise InvalidResponseError("Sync response synced is not an integer")
        return server_marks, conflicts, synced
