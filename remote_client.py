"""Scores API client: bounded timeouts, retry with backoff, offline fallback.

Every public operation returns an ApiResponse; transport, HTTP and timeout
failures never escape as exceptions. Writes made while offline (or that
fail) are recorded through the OfflineQueueManager and delivered later.

Usage:
    from remote_client import initialize_api_client
    client = initialize_api_client(ClientConfig(base_url="https://scores.example.com"))
    client.save_score("user-1", "paper1", "q1", 8, 10)
    client.sync_data("user-1")
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import ClientConfig
from connectivity import Connectivity, always_online
from errors import (
    CANCELLED,
    TIMEOUT,
    HttpError,
    InvalidResponseError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
    ScoreSyncError,
)
from local_store import LocalStore
from models import ApiResponse, DrainReport, ScoreEntry, isoformat
from offline_queue import OfflineQueueManager
from sync_coordinator import SyncCoordinator
from validation import validate_bulk_scores, validate_score_entry, validate_user_id

logger = logging.getLogger(__name__)

SCORES_CACHE_TTL_MS = 5 * 60 * 1000
STATS_CACHE_TTL_MS = 10 * 60 * 1000


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ScoreSyncError) and exc.retryable


class RequestToken:
    """Cancellation handle for one in-flight request.

    cancel() marks the token, wakes the caller waiting on the current
    exchange and closes the attached response. The first reason recorded
    wins.
    """

    def __init__(self) -> None:
        self.reason: Optional[str] = None
        self._response: Optional[httpx.Response] = None
        self._waiter: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = CANCELLED) -> None:
        with self._lock:
            if self.reason is not None:
                return
            self.reason = reason
            response, waiter = self._response, self._waiter
        if waiter is not None:
            waiter.set()
        if response is not None:
            response.close()

    def watch(self, waiter: threading.Event) -> None:
        with self._lock:
            self._waiter = waiter
            cancelled = self.reason is not None
        if cancelled:
            waiter.set()

    def attach(self, response: httpx.Response) -> bool:
        """Register the live response; False if the token is already cancelled."""
        with self._lock:
            if self.reason is not None:
                return False
            self._response = response
            return True

    def detach(self) -> None:
        with self._lock:
            self._response = None
            self._waiter = None

    def error(self) -> ScoreSyncError:
        if self.reason == TIMEOUT:
            return RequestTimeoutError("Request timeout")
        return RequestCancelledError("Request cancelled")


class _Exchange(threading.Thread):
    """One HTTP round trip run off the caller's thread.

    The caller waits on ``done``, which the token also sets on cancel, so a
    cancelled or timed-out request returns without waiting for the server.
    An abandoned exchange finishes on its own and closes its response.
    """

    def __init__(self, http: httpx.Client, request: httpx.Request, token: RequestToken) -> None:
        super().__init__(name="score-sync-http", daemon=True)
        self.http = http
        self.request = request
        self.token = token
        self.done = threading.Event()
        self.response: Optional[httpx.Response] = None
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            response = self.http.send(self.request, stream=True)
            try:
                if self.token.attach(response):
                    response.read()
            finally:
                response.close()
            self.response = response
        except Exception as e:
            self.error = e
        finally:
            self.done.set()


class RemoteClient:
    """Client for the scores API with an offline queue and sync coordinator."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        store: Optional[LocalStore] = None,
        connectivity: Optional[Connectivity] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config.validate()
        self.store = store if store is not None else LocalStore()
        self.connectivity = connectivity or always_online
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._active_token: Optional[RequestToken] = None
        self._http = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout / 1000),
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self.offline_queue = OfflineQueueManager(self.store, self.connectivity, logger=self.logger)
        self.sync = SyncCoordinator(self.store, self, self.offline_queue, self.connectivity, logger=self.logger)

    # ── Transport ─────────────────────────────────────────

    def make_request(
        self,
        endpoint: str,
        method: str = "GET",
        payload: Any = None,
        retry_count: int = 0,
    ) -> ApiResponse:
        """Send one API request, retrying transient failures.

        Network failures and 5xx responses are retried up to
        ``config.retries`` times, waiting ``retry_delay * 2**n`` ms before
        retry n. ``retry_count`` starts the sequence part-way through.
        Timeouts and other HTTP errors are returned without retrying.
        """
        token = RequestToken()
        self._active_token = token

        remaining = max(self.config.retries - retry_count, 0)
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_exponential(multiplier=self.config.retry_delay / 1000 * 2 ** retry_count, exp_base=2),
            stop=stop_after_attempt(remaining + 1),
            sleep=self._sleep,
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        )
        try:
            data = retrying(self._send_once, method, endpoint, payload, token)
        except ScoreSyncError as e:
            self.logger.debug("%s %s failed: %s (%s)", method, endpoint, e.message, e.code)
            return ApiResponse.fail(e.to_api_error())
        return ApiResponse.ok(data)

    def _send_once(self, method: str, endpoint: str, payload: Any, token: RequestToken) -> Any:
        if token.cancelled:
            raise token.error()

        exchange = _Exchange(self._http, self._http.build_request(method, endpoint, json=payload), token)
        token.watch(exchange.done)
        deadline = threading.Timer(self.config.timeout / 1000, token.cancel, args=(TIMEOUT,))
        deadline.daemon = True
        deadline.start()
        try:
            exchange.start()
            exchange.done.wait()
        finally:
            deadline.cancel()
            token.detach()

        if token.cancelled:
            raise token.error()
        error = exchange.error
        if isinstance(error, httpx.TimeoutException):
            raise RequestTimeoutError("Request timeout", details=str(error)) from error
        if isinstance(error, (httpx.HTTPError, httpx.StreamError)):
            raise NetworkError(str(error) or "Network error", details=repr(error)) from error
        if error is not None:
            raise error

        response = exchange.response
        if not response.is_success:
            body = self._parse_error_body(response)
            raise HttpError(
                body.get("message") or f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
                code=body.get("code"),
                details=body.get("details"),
            )
        return self._parse_body(response)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError("Response body is not valid JSON", status=response.status_code) from e

    @staticmethod
    def _parse_error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            return body
        return {"message": response.reason_phrase, "code": f"HTTP_{response.status_code}"}

    def cancel_request(self) -> None:
        """Abort the most recently issued request, if it is still running."""
        token = self._active_token
        if token is not None:
            token.cancel(CANCELLED)

    # ── Cache helpers ─────────────────────────────────────

    def _cached_get(self, cache_key: str, endpoint: str, ttl_ms: int, use_cache: bool) -> ApiResponse:
        if use_cache:
            cached = self.store.get_cache(cache_key)
            if cached is not None:
                return ApiResponse.ok(cached, from_cache=True)

        result = self.make_request(endpoint)
        if result.success and result.data is not None:
            self.store.set_cache(cache_key, result.data, ttl_ms)
        return result

    def invalidate_user_cache(self, user_id: str, paper_ids: Optional[list[str]] = None) -> None:
        """Evict cached score lists and stats for a user.

        With ``paper_ids`` only those papers' lists go; otherwise all of them.
        """
        keys = [f"user-scores-{user_id}", f"user-stats-{user_id}"]
        if paper_ids is None:
            prefix = f"paper-scores-{user_id}-"
            keys.extend(k for k in self.store.cache_keys() if k.startswith(prefix))
        else:
            keys.extend(f"paper-scores-{user_id}-{p}" for p in paper_ids)
        self.store.remove_from_cache(*keys)

    @staticmethod
    def _user_path(user_id: str) -> str:
        return f"/api/users/{quote(user_id, safe='')}"

    # ── Scores ────────────────────────────────────────────

    def send_score(self, payload: dict[str, Any]) -> ApiResponse:
        """POST one score record with no offline fallback."""
        return self.make_request("/api/scores", "POST", payload)

    def send_bulk_scores(self, user_id: str, scores: list[dict[str, Any]]) -> ApiResponse:
        """POST a batch of scores with no offline fallback."""
        return self.make_request("/api/scores/bulk", "POST", {"userId": user_id, "scores": scores})

    def save_score(
        self,
        user_id: str,
        paper_id: str,
        question_id: str | int,
        score: int,
        max_score: int,
    ) -> ApiResponse:
        validate_score_entry(user_id, paper_id, question_id, score, max_score)
        payload = ScoreEntry(
            user_id, paper_id, question_id, score, max_score, timestamp=isoformat(self.store.clock()),
        ).to_dict()

        if self.config.enable_offline_queue and not self.connectivity():
            return self._queue_score(user_id, paper_id, question_id, score, max_score, payload)

        result = self.send_score(payload)
        if result.success:
            self.invalidate_user_cache(user_id, [paper_id])
            return result

        if self.config.enable_offline_queue:
            self.logger.warning(
                "Saving %s for %s failed (%s); queued for later delivery",
                payload["paperId"], user_id, result.code,
            )
            return self._queue_score(user_id, paper_id, question_id, score, max_score, payload)
        return result

    def _queue_score(
        self,
        user_id: str,
        paper_id: str,
        question_id: str | int,
        score: int,
        max_score: int,
        payload: dict[str, Any],
    ) -> ApiResponse:
        self.offline_queue.save_score_offline(user_id, paper_id, question_id, score, max_score)
        self.invalidate_user_cache(user_id, [paper_id])
        return ApiResponse.ok({**payload, "id": "offline"}, queued=True)

    def save_bulk_scores(self, user_id: str, scores: list[dict[str, Any]]) -> ApiResponse:
        validate_user_id(user_id)
        validate_bulk_scores(scores)
        now = isoformat(self.store.clock())
        items = [
            {
                "paperId": s["paperId"],
                "questionId": s["questionId"],
                "score": s["score"],
                "maxScore": s["maxScore"],
                "timestamp": s.get("timestamp") or now,
            }
            for s in scores
        ]
        paper_ids = sorted({s["paperId"] for s in items})

        if self.config.enable_offline_queue and not self.connectivity():
            return self._queue_bulk(user_id, items, paper_ids)

        result = self.send_bulk_scores(user_id, items)
        if result.success:
            self.invalidate_user_cache(user_id, paper_ids)
            return result

        if self.config.enable_offline_queue:
            self.logger.warning("Bulk save for %s failed (%s); queued for later delivery", user_id, result.code)
            return self._queue_bulk(user_id, items, paper_ids)
        return result

    def _queue_bulk(self, user_id: str, items: list[dict[str, Any]], paper_ids: list[str]) -> ApiResponse:
        self.offline_queue.save_bulk_offline(user_id, items)
        self.invalidate_user_cache(user_id, paper_ids)
        return ApiResponse.ok({"saved": len(items), "errors": []}, queued=True)

    def load_user_scores(self, user_id: str, use_cache: bool = True) -> ApiResponse:
        validate_user_id(user_id)
        return self._cached_get(
            f"user-scores-{user_id}", f"{self._user_path(user_id)}/scores", SCORES_CACHE_TTL_MS, use_cache,
        )

    def load_paper_scores(self, user_id: str, paper_id: str, use_cache: bool = True) -> ApiResponse:
        validate_user_id(user_id)
        return self._cached_get(
            f"paper-scores-{user_id}-{paper_id}",
            f"{self._user_path(user_id)}/papers/{quote(paper_id, safe='')}/scores",
            SCORES_CACHE_TTL_MS,
            use_cache,
        )

    def get_user_stats(self, user_id: str, use_cache: bool = True) -> ApiResponse:
        validate_user_id(user_id)
        return self._cached_get(
            f"user-stats-{user_id}", f"{self._user_path(user_id)}/stats", STATS_CACHE_TTL_MS, use_cache,
        )

    # ── Sync & queue ──────────────────────────────────────

    def sync_data(self, user_id: str, force: bool = False) -> ApiResponse:
        validate_user_id(user_id)
        return self.sync.sync_data(user_id, force=force)

    def process_offline_queue(self, user_id: str) -> DrainReport:
        return self.offline_queue.process_offline_queue(user_id, self)

    # ── Account data ──────────────────────────────────────

    def delete_user_data(self, user_id: str) -> ApiResponse:
        validate_user_id(user_id)
        result = self.make_request(self._user_path(user_id), "DELETE")
        if result.success:
            self.store.clear_all_data()
        return result

    def export_user_data(self, user_id: str) -> ApiResponse:
        validate_user_id(user_id)
        return self.make_request(f"{self._user_path(user_id)}/export")

    def import_user_data(self, user_id: str, scores: list[dict[str, Any]]) -> ApiResponse:
        validate_user_id(user_id)
        result = self.make_request(f"{self._user_path(user_id)}/import", "POST", {"scores": scores})
        if result.success:
            self.invalidate_user_cache(user_id)
        return result

    # ── Health ────────────────────────────────────────────

    def health_check(self) -> ApiResponse:
        return self.make_request("/api/health")

    def is_available(self) -> bool:
        try:
            return self.health_check().success
        except Exception:
            return False

    # ── Configuration & lifecycle ─────────────────────────

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.replace(**changes)
        self._http.base_url = self.config.base_url
        self._http.timeout = httpx.Timeout(self.config.timeout / 1000)

    def get_config(self) -> dict[str, Any]:
        return self.config.to_dict()

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> RemoteClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ── Module-level default client ───────────────────────────

_default_client: Optional[RemoteClient] = None


def create_api_client(config: ClientConfig, **kwargs: Any) -> RemoteClient:
    return RemoteClient(config, **kwargs)


def initialize_api_client(config: ClientConfig, **kwargs: Any) -> RemoteClient:
    """Create the process-wide default client, replacing any previous one."""
    global _default_client
    if _default_client is not None:
        _default_client.close()
    _default_client = RemoteClient(config, **kwargs)
    return _default_client


def get_default_api_client() -> RemoteClient:
    if _default_client is None:
        raise RuntimeError("API client not initialized. Call initialize_api_client first.")
    return _default_client
