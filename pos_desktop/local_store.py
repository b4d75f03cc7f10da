import json
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Optional

ROOT = os.path.dirname(os.path.abspath(__file__))
SCHEMA_PATH = os.path.join(ROOT, "sqlite_schema.sql")

# Collections mirrored on the terminal; names match the server's /sync/{collection}.
COLLECTIONS = ("products", "orders", "coworking-sessions", "cash-cuts", "customers")
STALE_AFTER_SECONDS_DEFAULT = 120


def init_db(db_path: str) -> None:
    if not os.path.exists(SCHEMA_PATH):
        raise RuntimeError(f"Missing schema file: {SCHEMA_PATH}")
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        schema = f.read()
    with connect(db_path) as conn:
        conn.executescript(schema)
        conn.commit()


@contextmanager
def connect(db_path: str):
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


class LocalEntityStore:
    """
    Per-collection cache of server entities. Survives restarts; never the
    source of truth. Reads never block on staleness.
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock

    def save_all(self, collection: str, items: Iterable[dict], cursor: Optional[dict] = None) -> int:
        """Replace a whole collection with a fresh server snapshot."""
        now = self.clock()
        rows = [(collection, str(it["id"]), json.dumps(it, default=str), now) for it in items]
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM local_entities WHERE collection = ?", (collection,))
            cur.executemany(
                "INSERT INTO local_entities (collection, entity_id, data_json, last_updated, stale) VALUES (?, ?, ?, ?, 0)",
                rows,
            )
            self._touch_meta(cur, collection, now, cursor)
            conn.commit()
        return len(rows)

    def upsert_many(self, collection: str, items: Iterable[dict], cursor: Optional[dict] = None) -> int:
        """Merge an incremental pull into the collection."""
        now = self.clock()
        rows = [(collection, str(it["id"]), json.dumps(it, default=str), now) for it in items]
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.executemany(
                """
                INSERT INTO local_entities (collection, entity_id, data_json, last_updated, stale)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(collection, entity_id) DO UPDATE SET
                  data_json=excluded.data_json,
                  last_updated=excluded.last_updated,
                  stale=0
                """,
                rows,
            )
            self._touch_meta(cur, collection, now, cursor)
            conn.commit()
        return len(rows)

    def save_item(self, collection: str, item: dict) -> None:
        now = self.clock()
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO local_entities (collection, entity_id, data_json, last_updated, stale)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(collection, entity_id) DO UPDATE SET
                  data_json=excluded.data_json,
                  last_updated=excluded.last_updated,
                  stale=0
                """,
                (collection, str(item["id"]), json.dumps(item, default=str), now),
            )
            self._refresh_count(cur, collection)
            conn.commit()

    def patch_item(self, collection: str, entity_id: str, fields: dict) -> bool:
        """Merge fields into a cached entity (e.g. new stock level from our own write)."""
        current = self.get_by_id(collection, entity_id)
        if current is None:
            return False
        current.update(fields)
        self.save_item(collection, current)
        return True

    def delete_item(self, collection: str, entity_id: str) -> None:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM local_entities WHERE collection = ? AND entity_id = ?",
                (collection, str(entity_id)),
            )
            self._refresh_count(cur, collection)
            conn.commit()

    def invalidate(self, collection: str, entity_id: Optional[str] = None) -> None:
        """Mark one entity (or the whole collection) as needing a refetch."""
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            if entity_id is None:
                cur.execute("UPDATE local_entities SET stale = 1 WHERE collection = ?", (collection,))
                cur.execute("UPDATE collection_meta SET last_updated = 0 WHERE collection = ?", (collection,))
            else:
                cur.execute(
                    "UPDATE local_entities SET stale = 1 WHERE collection = ? AND entity_id = ?",
                    (collection, str(entity_id)),
                )
            conn.commit()

    def get_all(self, collection: str) -> list:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT data_json FROM local_entities WHERE collection = ? ORDER BY entity_id",
                (collection,),
            )
            return [json.loads(r["data_json"]) for r in cur.fetchall()]

    def get_by_id(self, collection: str, entity_id: str) -> Optional[dict]:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT data_json FROM local_entities WHERE collection = ? AND entity_id = ?",
                (collection, str(entity_id)),
            )
            row = cur.fetchone()
            return json.loads(row["data_json"]) if row else None

    def stale_entities(self, collection: str) -> list:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT entity_id FROM local_entities WHERE collection = ? AND stale = 1 ORDER BY entity_id",
                (collection,),
            )
            return [r["entity_id"] for r in cur.fetchall()]

    def get_meta(self, collection: str) -> Optional[dict]:
        with connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT last_updated, item_count, cursor_json FROM collection_meta WHERE collection = ?",
                (collection,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return {
                "last_updated": row["last_updated"],
                "count": row["item_count"],
                "cursor": json.loads(row["cursor_json"]) if row["cursor_json"] else None,
            }

    def is_stale(self, collection: str, max_age_seconds: float = STALE_AFTER_SECONDS_DEFAULT) -> bool:
        meta = self.get_meta(collection)
        if not meta:
            return True
        return self.clock() - float(meta["last_updated"]) > max_age_seconds

    def stale_collections(self, collections: Iterable[str] = COLLECTIONS, max_age_seconds: float = STALE_AFTER_SECONDS_DEFAULT) -> list:
        return [c for c in collections if self.is_stale(c, max_age_seconds)]

    def _touch_meta(self, cur, collection: str, now: float, cursor: Optional[dict]) -> None:
        cur.execute("SELECT COUNT(1) AS n FROM local_entities WHERE collection = ?", (collection,))
        count = int(cur.fetchone()["n"])
        cur.execute(
            """
            INSERT INTO collection_meta (collection, last_updated, item_count, cursor_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(collection) DO UPDATE SET
              last_updated=excluded.last_updated,
              item_count=excluded.item_count,
              cursor_json=COALESCE(excluded.cursor_json, collection_meta.cursor_json)
            """,
            (collection, now, count, json.dumps(cursor, default=str) if cursor else None),
        )

    def _refresh_count(self, cur, collection: str) -> None:
        cur.execute("SELECT COUNT(1) AS n FROM local_entities WHERE collection = ?", (collection,))
        count = int(cur.fetchone()["n"])
        cur.execute(
            "UPDATE collection_meta SET item_count = ? WHERE collection = ?",
            (count, collection),
        )
