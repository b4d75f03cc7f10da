from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .broadcast import ChangeBroadcaster, ChangeNotice, hub
from .config import settings
from .idempotency import (
    check_replay,
    delete_record,
    load_record,
    lock_key,
    request_fingerprint,
    set_lock_timeout,
    store_record,
    to_snapshot,
)
from .jsonlog import json_log
from .operations import HANDLERS


@dataclass
class ExecutionResult:
    key: str
    operation_type: str
    result: dict
    replayed: bool
    changes: List[ChangeNotice] = field(default_factory=list)


def execute_idempotent(
    conn,
    key: str,
    operation,
    device_id: Optional[str],
    *,
    broadcaster: Optional[ChangeBroadcaster] = None,
    ttl_hours: Optional[int] = None,
    lock_timeout_ms: Optional[int] = None,
) -> ExecutionResult:
    """
    Run one mutating operation at most once per idempotency key.

    The operation's side effects and its idempotency record are written in a
    single transaction. Any exception (business rejection, constraint
    violation, lost connection) rolls both back, so the key stays free for a
    corrected retry. Change notices are published only after commit.
    """
    op_type = operation.operation_type
    handler = HANDLERS[op_type]
    request_hash = request_fingerprint(op_type, operation.model_dump(mode="json"))
    broadcaster = broadcaster or hub
    ttl = ttl_hours or settings.idempotency_ttl_hours

    with conn.transaction():
        with conn.cursor() as cur:
            set_lock_timeout(cur, lock_timeout_ms or settings.idempotency_lock_timeout_ms)
            lock_key(cur, key)
            record = load_record(cur, key)
            if record and not record.get("expired"):
                snapshot = check_replay(record, key, op_type, request_hash)
                json_log("info", "idempotency.replayed", key=key, operation_type=op_type, device_id=device_id)
                return ExecutionResult(key=key, operation_type=op_type, result=snapshot, replayed=True)
            if record:
                # Past its retention window the original effect is durable; treat as a new intent.
                json_log("info", "idempotency.expired_key_reused", key=key, operation_type=op_type)
                delete_record(cur, key)

            result, changes = handler(cur, operation, device_id)
            snapshot = to_snapshot(result)
            store_record(cur, key, op_type, request_hash, snapshot, device_id, ttl)

    json_log(
        "info",
        "idempotency.executed",
        key=key,
        operation_type=op_type,
        device_id=device_id,
        changes=len(changes),
    )
    broadcaster.publish(changes)
    return ExecutionResult(key=key, operation_type=op_type, result=snapshot, replayed=False, changes=list(changes))
