from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import AfterValidator, BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Largest value a NUMERIC(12,2) column holds.
MAX_MONEY = Decimal("9999999999.99")


def _non_negative_money(v: Decimal) -> Decimal:
    if not v.is_finite():
        raise ValueError("amount must be a finite number")
    if v < 0:
        raise ValueError("amount must be >= 0")
    if v > MAX_MONEY:
        raise ValueError(f"amount must be <= {MAX_MONEY}")
    return v.quantize(Decimal("0.01"))


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
OperationType = Annotated[
    Literal["order.create", "session.open", "session.close", "cut.create"],
    BeforeValidator(_to_lower_str),
]
PaymentMethod = Annotated[Literal["cash", "card", "transfer", "credit"], BeforeValidator(_to_lower_str)]
EntityAction = Annotated[Literal["create", "update", "delete"], BeforeValidator(_to_lower_str)]

# Collection names as terminals see them (URL segment and broadcast data_type).
DataType = Annotated[
    Literal["products", "orders", "coworking-sessions", "cash-cuts", "customers"],
    BeforeValidator(_to_lower_str),
]

# Client-generated; uuid4 in practice, but any stable opaque token is accepted.
IdempotencyKey = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=8, max_length=255, pattern=r"^[A-Za-z0-9_.:-]+$"),
]

Money = Annotated[Decimal, AfterValidator(_non_negative_money)]
