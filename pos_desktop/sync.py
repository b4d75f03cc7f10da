"""
Sync Orchestrator: drains the Pending Operation Queue to the server.

Each stream is a strict FIFO. Its head is sent, and the outcome goes through
`transition`, a pure function that decides what happens to the queue:

    IDLE -> SENDING -> SUCCESS            (2xx: remove, continue)
                    -> RETRYABLE_FAILURE  (network/5xx: keep, back off, stop stream)
                    -> TERMINAL_FAILURE   (4xx: move to rejected, continue)

Independent streams drain concurrently on a small thread pool.
"""

import hashlib
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .jsonlog import json_log
from .local_store import LocalEntityStore
from .outbox import PendingOperationQueue
from .transport import ApiClient, HttpResponse, TransportError

MAX_BACKOFF_SECONDS = 300
WARN_AFTER_RETRIES = 5
MAX_PARALLEL_STREAMS = 4

TRANSIENT_STATUS_CODES = {401, 403, 408, 425, 429}


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


class Outcome(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT = "transient"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: Outcome
    status_code: Optional[int] = None
    body: Optional[dict] = None
    error: Optional[str] = None
    replayed: bool = False


@dataclass(frozen=True)
class QueueAction:
    state: StreamState
    remove: bool = False
    reject: bool = False
    next_attempt_at: Optional[float] = None
    warn: bool = False
    continue_stream: bool = False


def classify_status(status_code: int) -> Outcome:
    if 200 <= status_code < 300:
        return Outcome.DELIVERED
    if status_code >= 500 or status_code in TRANSIENT_STATUS_CODES:
        return Outcome.TRANSIENT
    if 400 <= status_code < 500:
        return Outcome.REJECTED
    # 1xx/3xx are not expected from the API; try again later rather than drop data.
    return Outcome.TRANSIENT


def classify_response(resp: HttpResponse) -> DeliveryResult:
    outcome = classify_status(resp.status)
    error = None
    if outcome != Outcome.DELIVERED:
        detail = (resp.body or {}).get("detail") if isinstance(resp.body, dict) else None
        error = f"HTTP {resp.status}: {detail}" if detail else f"HTTP {resp.status}"
    return DeliveryResult(outcome, resp.status, resp.body, error, resp.replayed)


def retry_delay_seconds(retry_count: int, key: Optional[str] = None) -> int:
    delay_seconds = min(MAX_BACKOFF_SECONDS, 2 ** max(retry_count - 1, 0))
    if key:
        # Deterministic per-key jitter so terminals coming back online together spread out.
        digest = hashlib.sha1(f"{key}:{retry_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(MAX_BACKOFF_SECONDS, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return delay_seconds


def transition(op: dict, result: DeliveryResult, now: float, warn_after: int = WARN_AFTER_RETRIES) -> QueueAction:
    if result.outcome == Outcome.DELIVERED:
        return QueueAction(StreamState.SUCCESS, remove=True, continue_stream=True)
    if result.outcome == Outcome.REJECTED:
        return QueueAction(StreamState.TERMINAL_FAILURE, reject=True, continue_stream=True)
    retry_count = int(op.get("retry_count") or 0) + 1
    return QueueAction(
        StreamState.RETRYABLE_FAILURE,
        next_attempt_at=now + retry_delay_seconds(retry_count, op.get("idempotency_key")),
        warn=retry_count >= warn_after and not op.get("warned"),
    )


class SyncOrchestrator:
    def __init__(
        self,
        queue: PendingOperationQueue,
        client: ApiClient,
        store: Optional[LocalEntityStore] = None,
        *,
        max_parallel_streams: int = MAX_PARALLEL_STREAMS,
        warn_after: int = WARN_AFTER_RETRIES,
        on_warning: Optional[Callable[[dict], None]] = None,
        on_rejected: Optional[Callable[[dict, DeliveryResult], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.client = client
        self.store = store
        self.max_parallel_streams = max(1, max_parallel_streams)
        self.warn_after = warn_after
        self.on_warning = on_warning
        self.on_rejected = on_rejected
        self.clock = clock
        self._drain_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._states: dict = {}

    def stream_state(self, stream: str) -> StreamState:
        with self._state_lock:
            return self._states.get(stream, StreamState.IDLE)

    def _set_state(self, stream: str, state: StreamState) -> None:
        with self._state_lock:
            self._states[stream] = state

    def submit(self, op_type: str, payload: dict) -> dict:
        """Persist first; the immediate drain is best effort and never raises to the caller."""
        op = self.queue.enqueue(op_type, payload)
        try:
            self.drain()
        except Exception as ex:
            # Queued already; the next drain picks it up.
            json_log("error", "sync.drain_failed", op_id=op["id"], error=str(ex))
        return op

    def drain(self) -> Optional[dict]:
        """
        Deliver every due head-of-line operation. Returns per-stream counts, or
        None when another drain is already running for this device.
        """
        if not self._drain_lock.acquire(blocking=False):
            return None
        summary = {"delivered": 0, "rejected": 0, "retrying": 0}
        try:
            while True:
                heads = self.queue.due_heads(self.clock())
                if not heads:
                    break
                streams = [op["stream"] for op in heads]
                if len(streams) == 1:
                    results = [self._drain_stream(streams[0])]
                else:
                    with ThreadPoolExecutor(max_workers=min(self.max_parallel_streams, len(streams))) as pool:
                        results = list(pool.map(self._drain_stream, streams))
                for counts in results:
                    for k, v in counts.items():
                        summary[k] += v
        finally:
            self._drain_lock.release()
        if any(summary.values()):
            json_log("info", "sync.drain", **summary, pending=self.queue.count())
        return summary

    def _drain_stream(self, stream: str) -> dict:
        counts = {"delivered": 0, "rejected": 0, "retrying": 0}
        while True:
            op = self.queue.head(stream)
            if not op or op["status"] != "pending" or float(op["next_attempt_at"] or 0) > self.clock():
                self._set_state(stream, StreamState.IDLE)
                return counts
            action = self.deliver(op)
            if action.state == StreamState.SUCCESS:
                counts["delivered"] += 1
            elif action.state == StreamState.TERMINAL_FAILURE:
                counts["rejected"] += 1
            else:
                counts["retrying"] += 1
            if not action.continue_stream:
                return counts

    def deliver(self, op: dict) -> QueueAction:
        stream = op["stream"]
        self._set_state(stream, StreamState.SENDING)
        self.queue.mark_sending(op["id"])
        try:
            result = classify_response(self.client.send_operation(op))
        except TransportError as ex:
            result = DeliveryResult(Outcome.TRANSIENT, error=str(ex))
        except Exception as ex:
            # Already marked sending: the outcome is unknown, so it goes back to pending and is retried.
            json_log("error", "sync.send_failed", op_id=op["id"], key=op["idempotency_key"], error=repr(ex))
            result = DeliveryResult(Outcome.TRANSIENT, error=f"{type(ex).__name__}: {ex}")

        action = transition(op, result, self.clock(), self.warn_after)
        self._set_state(stream, action.state)
        if action.remove:
            self.queue.remove(op["id"])
            json_log(
                "info",
                "sync.delivered",
                op_id=op["id"],
                key=op["idempotency_key"],
                op_type=op["op_type"],
                stream=stream,
                replayed=result.replayed,
            )
            self._apply_server_result(op, result.body)
        elif action.reject:
            self.queue.reject(op["id"], result.status_code, result.error or "")
            json_log(
                "warning",
                "sync.rejected",
                op_id=op["id"],
                key=op["idempotency_key"],
                op_type=op["op_type"],
                stream=stream,
                status_code=result.status_code,
                error=result.error,
            )
            if self.on_rejected:
                self.on_rejected(op, result)
        else:
            updated = self.queue.record_failure(op["id"], result.error or "", action.next_attempt_at, warned=action.warn)
            json_log(
                "info",
                "sync.retry_scheduled",
                op_id=op["id"],
                stream=stream,
                retry_count=updated["retry_count"] if updated else None,
                next_attempt_at=action.next_attempt_at,
                error=result.error,
            )
            if action.warn:
                json_log("warning", "sync.still_retrying", op_id=op["id"], stream=stream, retry_count=updated["retry_count"])
                if self.on_warning:
                    self.on_warning(updated)
        return action

    def _apply_server_result(self, op: dict, body: Optional[dict]) -> None:
        """The server's answer to our own write is authoritative; cache it without waiting for a broadcast."""
        if not self.store or not isinstance(body, dict):
            return
        op_type = op["op_type"]
        if op_type == "order.create" and body.get("order"):
            self.store.save_item("orders", body["order"])
            for level in body.get("stock") or []:
                self.store.patch_item("products", level["product_id"], {"stock": level["stock"]})
        elif op_type in {"session.open", "session.close"} and body.get("session"):
            self.store.save_item("coworking-sessions", body["session"])
        elif op_type == "cut.create" and body.get("cut"):
            self.store.save_item("cash-cuts", body["cut"])
            # The cut claimed orders we cannot name here; let the next refresh pick up their cut_id.
            self.store.invalidate("orders")
