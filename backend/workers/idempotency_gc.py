#!/usr/bin/env python3
"""
Long-running worker that purges expired idempotency records.

Expired keys are already ignored by the guard; this only keeps the table
small. Deletes in bounded batches so it never holds long locks.
"""

import argparse
import json
import os
import sys
import time
from datetime import datetime

import psycopg
from psycopg.rows import dict_row

try:
    from ..app.idempotency import purge_expired
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 backend/workers/idempotency_gc.py`
    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
    from backend.app.idempotency import purge_expired

DB_URL_DEFAULT = os.getenv("DATABASE_URL") or "postgresql://localhost/conejo_pos"
BATCH_SIZE_DEFAULT = 5000
MAX_BATCHES_PER_RUN = 50


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.utcnow().isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def run_purge(db_url: str, batch_size: int = BATCH_SIZE_DEFAULT) -> int:
    total = 0
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        for _ in range(MAX_BATCHES_PER_RUN):
            with conn.transaction():
                with conn.cursor() as cur:
                    deleted = purge_expired(cur, limit=batch_size)
            total += deleted
            if deleted < batch_size:
                break
    return total


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--interval", type=int, default=int(os.getenv("IDEMPOTENCY_GC_INTERVAL_SECONDS") or 600))
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE_DEFAULT)
    parser.add_argument("--once", action="store_true", help="Run a single purge pass and exit")
    args = parser.parse_args()

    while True:
        started = time.time()
        try:
            deleted = run_purge(args.db, batch_size=max(1, args.batch_size))
            _json_log("info", "idempotency_gc.run", deleted=deleted, duration_ms=int((time.time() - started) * 1000))
        except Exception as ex:
            _json_log("error", "idempotency_gc.failed", error=str(ex))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(max(10, args.interval))


if __name__ == "__main__":
    main()
