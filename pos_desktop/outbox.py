"""
Pending Operation Queue: the terminal's durable outbox of mutating operations.

A row is written before any network attempt and is removed only when the
server acknowledged its idempotency key (2xx) or rejected it for good (4xx).
Transient failures leave it in place with a later `next_attempt_at`.
"""

import json
import time
import uuid
from typing import Callable, Optional

from .jsonlog import json_log
from .local_store import connect

# Mutating operations the terminal can queue, and where they go.
OPERATION_ROUTES = {
    "order.create": "/orders",
    "session.open": "/coworking-sessions",
    "session.close": "/coworking-sessions/{session_id}/close",
    "cut.create": "/cash-cuts",
}


class OperationAlreadySent(Exception):
    def __init__(self, op_id: int):
        super().__init__(f"operation {op_id} has already been sent and cannot be cancelled")
        self.op_id = op_id


def stream_for(op_type: str, payload: dict) -> str:
    """Ordering scope: cash drawer ops share one stream; each coworking session has its own."""
    if op_type in {"session.open", "session.close"}:
        return f"session:{payload['session_id']}"
    return "cash"


def target_for(op_type: str, payload: dict) -> str:
    route = OPERATION_ROUTES.get(op_type)
    if not route:
        raise ValueError(f"unsupported operation type: {op_type}")
    return route.format(**payload) if "{" in route else route


def _row_to_op(r) -> dict:
    return {
        "id": r["id"],
        "idempotency_key": r["idempotency_key"],
        "op_type": r["op_type"],
        "stream": r["stream"],
        "target_endpoint": r["target_endpoint"],
        "method": r["method"],
        "payload": json.loads(r["payload_json"]),
        "enqueued_at": r["enqueued_at"],
        "retry_count": r["retry_count"],
        "status": r["status"],
        "next_attempt_at": r["next_attempt_at"],
        "first_sent_at": r["first_sent_at"],
        "last_error": r["last_error"],
        "warned": bool(r["warned"]),
    }


class PendingOperationQueue:
    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock

    def enqueue(self, op_type: str, payload: dict, stream: Optional[str] = None) -> dict:
        # Same key for every retry of this intent; the server dedupes on it.
        key = str(uuid.uuid4())
        stream = stream or stream_for(op_type, payload)
        target = target_for(op_type, payload)
        now = self.clock()
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO pending_operations
                  (idempotency_key, op_type, stream, target_endpoint, method, payload_json,
                   enqueued_at, retry_count, status, next_attempt_at)
                VALUES (?, ?, ?, ?, 'POST', ?, ?, 0, 'pending', 0)
                """,
                (key, op_type, stream, target, json.dumps(payload, default=str), now),
            )
            op_id = cur.lastrowid
            conn.commit()
        json_log("info", "outbox.enqueued", op_id=op_id, key=key, op_type=op_type, stream=stream)
        return self.get(op_id)

    def get(self, op_id: int) -> Optional[dict]:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM pending_operations WHERE id = ?", (op_id,))
            row = cur.fetchone()
            return _row_to_op(row) if row else None

    def list(self, stream: Optional[str] = None) -> list:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            if stream:
                cur.execute("SELECT * FROM pending_operations WHERE stream = ? ORDER BY id", (stream,))
            else:
                cur.execute("SELECT * FROM pending_operations ORDER BY id")
            return [_row_to_op(r) for r in cur.fetchall()]

    def count(self) -> int:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(1) AS n FROM pending_operations")
            return int(cur.fetchone()["n"])

    def streams(self) -> list:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("SELECT DISTINCT stream FROM pending_operations ORDER BY stream")
            return [r["stream"] for r in cur.fetchall()]

    def head(self, stream: str) -> Optional[dict]:
        """Oldest operation of the stream; later ones wait behind it even when it is backing off."""
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM pending_operations WHERE stream = ? ORDER BY id LIMIT 1",
                (stream,),
            )
            row = cur.fetchone()
            return _row_to_op(row) if row else None

    def due_heads(self, now: Optional[float] = None) -> list:
        now = self.clock() if now is None else now
        out = []
        for stream in self.streams():
            op = self.head(stream)
            if op and op["status"] == "pending" and float(op["next_attempt_at"] or 0) <= now:
                out.append(op)
        return out

    def mark_sending(self, op_id: int) -> None:
        now = self.clock()
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE pending_operations
                SET status = 'sending',
                    first_sent_at = COALESCE(first_sent_at, ?)
                WHERE id = ?
                """,
                (now, op_id),
            )
            conn.commit()

    def remove(self, op_id: int) -> None:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM pending_operations WHERE id = ?", (op_id,))
            conn.commit()

    def record_failure(self, op_id: int, error: str, next_attempt_at: float, warned: bool = False) -> dict:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE pending_operations
                SET status = 'pending',
                    retry_count = retry_count + 1,
                    next_attempt_at = ?,
                    last_error = ?,
                    warned = CASE WHEN ? THEN 1 ELSE warned END
                WHERE id = ?
                """,
                (next_attempt_at, (error or "")[:500], 1 if warned else 0, op_id),
            )
            conn.commit()
        return self.get(op_id)

    def reject(self, op_id: int, status_code: Optional[int], error: str) -> None:
        """Move a permanently refused operation out of the queue so the stream can continue."""
        now = self.clock()
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO rejected_operations
                  (id, idempotency_key, op_type, stream, payload_json, status_code, error, rejected_at)
                SELECT id, idempotency_key, op_type, stream, payload_json, ?, ?, ?
                FROM pending_operations
                WHERE id = ?
                """,
                (status_code, (error or "")[:2000], now, op_id),
            )
            cur.execute("DELETE FROM pending_operations WHERE id = ?", (op_id,))
            conn.commit()

    def rejected(self) -> list:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, idempotency_key, op_type, stream, payload_json, status_code, error, rejected_at
                FROM rejected_operations
                ORDER BY rejected_at DESC, id DESC
                """
            )
            out = []
            for r in cur.fetchall():
                item = dict(r)
                item["payload"] = json.loads(item.pop("payload_json"))
                out.append(item)
            return out

    def cancel(self, op_id: int) -> bool:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("SELECT status, first_sent_at FROM pending_operations WHERE id = ?", (op_id,))
            row = cur.fetchone()
            if not row:
                return False
            # The server may already hold its effect; only a never-sent operation is safe to drop.
            if row["first_sent_at"] is not None or row["status"] != "pending":
                raise OperationAlreadySent(op_id)
            cur.execute(
                "DELETE FROM pending_operations WHERE id = ? AND first_sent_at IS NULL AND status = 'pending'",
                (op_id,),
            )
            conn.commit()
        json_log("info", "outbox.cancelled", op_id=op_id)
        return True

    def recover_inflight(self) -> int:
        """Rows left in `sending` by a crash have an unknown outcome; resend them with the same key."""
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("UPDATE pending_operations SET status = 'pending' WHERE status = 'sending'")
            n = cur.rowcount
            conn.commit()
        if n:
            json_log("warning", "outbox.recovered_inflight", count=n)
        return n
