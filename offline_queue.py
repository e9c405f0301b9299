"""
Offline queue: "write now, deliver later" for score mutations.

A write that cannot reach the scores API is applied to the local marks
immediately and appended to a FIFO queue in the local store. Draining
replays the queue in order through the client's raw send operations and
removes only the entries the server accepted; everything else stays, in
its original order, for the next drain.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Optional

from connectivity import Connectivity
from local_store import LocalStore
from models import (
    OP_BULK_SAVE,
    OP_SAVE_SCORE,
    ApiResponse,
    DrainReport,
    QueuedOperation,
    isoformat,
    mark_key,
)

if TYPE_CHECKING:
    from remote_client import RemoteClient


class OfflineQueueManager:
    """Records pending writes and replays them once the API is reachable."""

    def __init__(
        self,
        store: LocalStore,
        connectivity: Connectivity,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.connectivity = connectivity
        self.logger = logger or logging.getLogger(__name__)
        self._drain_lock = threading.Lock()

    # ── Recording ─────────────────────────────────────────

    def save_score_offline(
        self,
        user_id: str,
        paper_id: str,
        question_id: str | int,
        score: int,
        max_score: int,
    ) -> QueuedOperation:
        """Update the local mark and queue a save_score, in a single write."""
        operation = QueuedOperation(
            type=OP_SAVE_SCORE,
            payload={
                "userId": user_id,
                "paperId": paper_id,
                "questionId": question_id,
                "score": score,
                "maxScore": max_score,
            },
            timestamp=isoformat(self.store.clock()),
        )
        self.store.record_offline_operation({mark_key(paper_id, question_id): score}, operation)
        self.logger.info("Queued save_score %s for %s", mark_key(paper_id, question_id), user_id)
        return operation

    def save_bulk_offline(self, user_id: str, scores: list[dict[str, Any]]) -> QueuedOperation:
        """Update every local mark of a batch and queue it as one bulk_save."""
        operation = QueuedOperation(
            type=OP_BULK_SAVE,
            payload={"userId": user_id, "scores": scores},
            timestamp=isoformat(self.store.clock()),
        )
        updates = {mark_key(s["paperId"], s["questionId"]): s["score"] for s in scores}
        self.store.record_offline_operation(updates, operation)
        self.logger.info("Queued bulk_save of %d scores for %s", len(scores), user_id)
        return operation

    # ── Inspection ────────────────────────────────────────

    def pending(self, user_id: Optional[str] = None) -> list[QueuedOperation]:
        queue = self.store.get_offline_queue()
        if user_id is None:
            return queue
        return [op for op in queue if op.user_id == user_id]

    def size(self) -> int:
        return len(self.store.get_offline_queue())

    def clear(self) -> None:
        self.store.set_offline_queue([])

    # ── Draining ──────────────────────────────────────────

    def _replay(self, operation: QueuedOperation, client: RemoteClient) -> ApiResponse:
        payload = operation.payload
        if operation.type == OP_SAVE_SCORE:
            return client.send_score({**payload, "timestamp": operation.timestamp})
        return client.send_bulk_scores(payload["userId"], payload["scores"])

    def process_offline_queue(self, user_id: str, client: RemoteClient) -> DrainReport:
        """Replay this user's queued writes in FIFO order.

        A failed entry does not stop later entries from being attempted.
        Entries appended while the pass runs are kept untouched. Returns a
        report of what was delivered and what is still pending.
        """
        report = DrainReport()
        if not self.connectivity():
            report.remaining = len(self.pending(user_id))
            return report

        if not self._drain_lock.acquire(blocking=False):
            self.logger.debug("Offline queue drain already running; skipping")
            report.remaining = len(self.pending(user_id))
            return report

        try:
            delivered: set[str] = set()
            for operation in self.pending(user_id):
                report.attempted += 1
                try:
                    result = self._replay(operation, client)
                except Exception as e:
                    self.logger.warning("Failed to process offline action %s: %s", operation.id, e)
                    report.failures.append((operation.id, str(e)))
                    continue
                if result.success:
                    delivered.add(operation.id)
                else:
                    reason = result.error.message if result.error else "unknown error"
                    self.logger.warning("Failed to process offline action %s: %s", operation.id, reason)
                    report.failures.append((operation.id, reason))

            if delivered:
                # re-read so writes queued during the pass survive
                remaining = [op for op in self.store.get_offline_queue() if op.id not in delivered]
                self.store.set_offline_queue(remaining)
                client.invalidate_user_cache(user_id)

            report.delivered = len(delivered)
            report.remaining = len(self.pending(user_id))
            if report.attempted:
                self.logger.info(
                    "Offline queue drained for %s: %d delivered, %d remaining",
                    user_id, report.delivered, report.remaining,
                )
            return report
        finally:
            self._drain_lock.release()
