from fastapi import Header, HTTPException
from pydantic import TypeAdapter, ValidationError
from .db import get_conn
from .security import verify_device_token
from .validation import IdempotencyKey
from typing import Optional
import uuid


IDEMPOTENCY_HEADER = "Idempotency-Key"
_idempotency_key_adapter = TypeAdapter(IdempotencyKey)


def require_device(
    device_id: uuid.UUID = Header(..., alias="X-Device-Id"),
    device_token: str = Header(..., alias="X-Device-Token"),
):
    # Identity attached to every operation. Authorization beyond "is this a known,
    # active terminal" lives elsewhere.
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, device_token_hash, is_active
                FROM pos_devices
                WHERE id = %s
                """,
                (device_id,),
            )
            row = cur.fetchone()
            if not row or not row["is_active"] or not verify_device_token(device_token, row["device_token_hash"]):
                raise HTTPException(status_code=401, detail="invalid device token")
            return {"device_id": device_id}


def require_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
) -> str:
    if not (idempotency_key or "").strip():
        raise HTTPException(status_code=400, detail=f"{IDEMPOTENCY_HEADER} header is required")
    try:
        return _idempotency_key_adapter.validate_python(idempotency_key)
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"invalid {IDEMPOTENCY_HEADER}")
