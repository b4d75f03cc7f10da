from fastapi import APIRouter, HTTPException, Depends
from typing import Optional
from datetime import datetime, timezone

from ..broadcast import hub
from ..config import settings
from ..db import get_conn
from ..deps import require_device

router = APIRouter(prefix="/sync", tags=["sync"])

# Column lists are fixed here; the collection name never reaches SQL as user input.
COLLECTIONS = {
    "products": {
        "table": "products",
        "select": "t.id::text AS id, t.name, t.price, t.stock, t.is_active, t.updated_at",
    },
    "customers": {
        "table": "customers",
        "select": "t.id::text AS id, t.name, t.credit_limit, t.current_credit, t.updated_at",
    },
    "orders": {
        "table": "orders",
        "select": """
            t.id::text AS id, t.client_name, t.service_type, t.payment_method, t.customer_id,
            t.subtotal, t.discount, t.tip, t.total, t.cut_id, t.created_at, t.updated_at,
            COALESCE((
              SELECT jsonb_agg(jsonb_build_object(
                       'product_id', i.product_id,
                       'quantity', i.quantity,
                       'unit_price', i.unit_price,
                       'line_total', i.line_total
                     ) ORDER BY i.created_at, i.id)
              FROM order_items i
              WHERE i.order_id = t.id
            ), '[]'::jsonb) AS items
        """,
    },
    "coworking-sessions": {
        "table": "coworking_sessions",
        "select": """
            t.id::text AS id, t.client_name, t.hourly_rate, t.status, t.started_at, t.ended_at,
            t.billed_hours, t.total, t.updated_at
        """,
    },
    "cash-cuts": {
        "table": "cash_cuts",
        "select": """
            t.id::text AS id, t.opening_cash, t.counted_cash, t.expected_cash, t.difference,
            t.order_count, t.totals_by_method, t.total_sales, t.notes, t.created_at, t.updated_at
        """,
    },
}


def _collection_spec(collection: str) -> dict:
    spec = COLLECTIONS.get((collection or "").strip().lower())
    if not spec:
        raise HTTPException(status_code=404, detail=f"unknown collection {collection}")
    return spec


def _stream_position() -> dict:
    # Lets a terminal resume the polling fallback from exactly where this snapshot was taken.
    return {"seq": hub.current_seq, "instance_id": hub.instance_id, "poll_interval_seconds": settings.poll_interval_seconds}


@router.get("/{collection}")
def pull_collection(
    collection: str,
    since: Optional[datetime] = None,
    since_id: Optional[str] = None,
    limit: int = 500,
    device=Depends(require_device),
):
    """
    Snapshot (no cursor) or incremental pull (`since`/`since_id` keyset cursor)
    of one collection, ordered by (updated_at, id).
    """
    if limit <= 0 or limit > 5000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 5000")
    if since_id and not since:
        raise HTTPException(status_code=400, detail="since_id requires since")
    spec = _collection_spec(collection)
    # Read the position before the rows: events raced in between are re-delivered, never lost.
    position = _stream_position()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {spec['select']}
                FROM {spec['table']} t
                WHERE (
                  %s::timestamptz IS NULL
                  OR t.updated_at > %s::timestamptz
                  OR (t.updated_at = %s::timestamptz AND t.id::text > COALESCE(%s, ''))
                )
                ORDER BY t.updated_at ASC, t.id::text ASC
                LIMIT %s
                """,
                (since, since, since, since_id, limit),
            )
            rows = cur.fetchall()
    cursor = None
    if rows:
        last = rows[-1]
        cursor = {"since": last["updated_at"], "since_id": last["id"]}
    elif since:
        cursor = {"since": since, "since_id": since_id}
    return {
        "collection": collection,
        "items": rows,
        "cursor": cursor,
        "has_more": len(rows) == limit,
        "server_time": datetime.now(timezone.utc),
        **position,
    }


@router.get("/{collection}/{entity_id}")
def pull_entity(collection: str, entity_id: str, device=Depends(require_device)):
    spec = _collection_spec(collection)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {spec['select']}
                FROM {spec['table']} t
                WHERE t.id::text = %s
                """,
                (entity_id,),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="not found")
    return {"collection": collection, "item": row}
