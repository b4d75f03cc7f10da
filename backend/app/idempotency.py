"""
Idempotency guard for mutating POS operations.

Every state-changing request carries a client-generated key. The guard makes
sure the side effects behind a key are applied at most once:

- `lock_key` serializes requests sharing a key with a transaction-scoped
  advisory lock, so a concurrent duplicate waits for the first one to commit
  (or roll back) and then sees its record.
- `load_record` / `check_replay` decide between "replay the stored snapshot"
  and "run the operation".
- `store_record` must run on the same cursor/transaction as the operation's
  side effects; the record and the effects commit together or not at all.

Expired records are treated as absent: reusing a key after its TTL is a new
intent.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional


class IdempotencyKeyMismatch(Exception):
    """A live key was presented with a different operation or payload."""

    def __init__(self, key: str, detail: str):
        super().__init__(detail)
        self.key = key
        self.detail = detail


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def to_snapshot(result: dict) -> dict:
    # The fresh response and every replay must be byte-for-byte the same body, so the
    # fresh one goes through the same JSON round trip the stored copy does.
    return json.loads(json.dumps(result, default=_json_default, sort_keys=True))


def request_fingerprint(operation_type: str, payload: dict) -> str:
    canonical = json.dumps(
        {"operation_type": operation_type, "payload": payload},
        default=_json_default,
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def set_lock_timeout(cur, timeout_ms: int) -> None:
    # `SET LOCAL ... = %s` is not valid with the extended query protocol; use set_config().
    cur.execute("SELECT set_config('lock_timeout', %s::text, true)", (f"{int(timeout_ms)}ms",))


def lock_key(cur, key: str) -> None:
    # Released automatically at commit/rollback.
    cur.execute("SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))", (key,))


def load_record(cur, key: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT key, operation_type, request_hash, result_snapshot,
               created_at, expires_at, (expires_at <= now()) AS expired
        FROM idempotency_records
        WHERE key = %s
        """,
        (key,),
    )
    row = cur.fetchone()
    return dict(row) if row else None


def check_replay(record: dict, key: str, operation_type: str, request_hash: str) -> dict:
    if str(record.get("operation_type") or "") != operation_type:
        raise IdempotencyKeyMismatch(
            key,
            f"idempotency key already used for {record.get('operation_type')}",
        )
    if str(record.get("request_hash") or "") != request_hash:
        raise IdempotencyKeyMismatch(key, "idempotency key already used with a different payload")
    snapshot = record.get("result_snapshot")
    if isinstance(snapshot, str):
        snapshot = json.loads(snapshot)
    return snapshot or {}


def delete_record(cur, key: str) -> None:
    cur.execute("DELETE FROM idempotency_records WHERE key = %s", (key,))


def store_record(
    cur,
    key: str,
    operation_type: str,
    request_hash: str,
    snapshot: dict,
    actor_device_id: Optional[str],
    ttl_hours: int,
) -> None:
    # No ON CONFLICT: the advisory lock guarantees we are the only writer for this key.
    # A unique violation here means the lock was bypassed and must abort the transaction.
    cur.execute(
        """
        INSERT INTO idempotency_records
          (key, operation_type, request_hash, result_snapshot, actor_device_id, created_at, expires_at)
        VALUES
          (%s, %s, %s, %s::jsonb, %s, now(), now() + make_interval(hours => %s))
        """,
        (
            key,
            operation_type,
            request_hash,
            json.dumps(snapshot, sort_keys=True),
            actor_device_id,
            int(ttl_hours),
        ),
    )


def purge_expired(cur, limit: int = 5000) -> int:
    cur.execute(
        """
        DELETE FROM idempotency_records
        WHERE key IN (
          SELECT key
          FROM idempotency_records
          WHERE expires_at <= now()
          ORDER BY expires_at ASC
          LIMIT %s
        )
        """,
        (int(limit),),
    )
    return int(cur.rowcount or 0)
