from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
import uuid

from ..db import get_conn
from ..deps import IDEMPOTENCY_HEADER, require_device, require_idempotency_key
from ..operations import CashCutCreate, Operation, OrderCreate, SessionClose, SessionOpen, UtcDatetime
from ..transactions import ExecutionResult, execute_idempotent

router = APIRouter(tags=["operations"])

REPLAYED_HEADER = "Idempotent-Replayed"


class OperationEnvelope(BaseModel):
    operation: Operation


class SessionCloseIn(BaseModel):
    ended_at: UtcDatetime


def _run(key: str, operation, device: dict, response: Response) -> dict:
    with get_conn() as conn:
        outcome: ExecutionResult = execute_idempotent(conn, key, operation, str(device["device_id"]))
    response.headers[REPLAYED_HEADER] = "true" if outcome.replayed else "false"
    response.headers[IDEMPOTENCY_HEADER] = outcome.key
    return outcome.result


@router.post("/operations", status_code=201)
def submit_operation(
    data: OperationEnvelope,
    response: Response,
    key: str = Depends(require_idempotency_key),
    device=Depends(require_device),
):
    """
    Generic entry point for every mutating operation, keyed by `operation_type`.
    The resource endpoints below are thin aliases over the same executor.
    """
    return _run(key, data.operation, device, response)


@router.post("/orders", status_code=201)
def create_order(
    data: OrderCreate,
    response: Response,
    key: str = Depends(require_idempotency_key),
    device=Depends(require_device),
):
    return _run(key, data, device, response)


@router.post("/coworking-sessions", status_code=201)
def open_coworking_session(
    data: SessionOpen,
    response: Response,
    key: str = Depends(require_idempotency_key),
    device=Depends(require_device),
):
    return _run(key, data, device, response)


@router.post("/coworking-sessions/{session_id}/close", status_code=201)
def close_coworking_session(
    session_id: uuid.UUID,
    data: SessionCloseIn,
    response: Response,
    key: str = Depends(require_idempotency_key),
    device=Depends(require_device),
):
    return _run(key, SessionClose(session_id=session_id, ended_at=data.ended_at), device, response)


@router.post("/cash-cuts", status_code=201)
def create_cash_cut(
    data: CashCutCreate,
    response: Response,
    key: str = Depends(require_idempotency_key),
    device=Depends(require_device),
):
    return _run(key, data, device, response)
