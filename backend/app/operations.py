from __future__ import annotations

import json
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal, DecimalException, localcontext
from typing import Annotated, Callable, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field

from .broadcast import ChangeNotice
from .validation import MAX_MONEY, Money, PaymentMethod

# Cart lines that are services rather than shelf products; they never touch stock.
SERVICE_ITEM_PREFIXES = ("COWORK_", "TIP_", "SERVICE_")
TOTAL_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")


class BusinessRuleError(ValueError):
    """Rejected by a business rule. Terminal: retrying the same request cannot succeed."""

    def __init__(self, detail: str, status_code: int = 422):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def _money(value: Decimal, what: str) -> Decimal:
    # Amounts the NUMERIC(12,2) columns cannot hold fail the same way on every retry.
    try:
        with localcontext() as ctx:
            ctx.prec = 40
            out = value.quantize(CENT)
    except DecimalException:
        raise BusinessRuleError(f"{what} is out of range")
    if not out.is_finite() or abs(out) > MAX_MONEY:
        raise BusinessRuleError(f"{what} is out of range")
    return out


def _as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class OrderItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=128)
    quantity: int = Field(gt=0, le=10000)
    unit_price: Money


class OrderCreate(BaseModel):
    operation_type: Literal["order.create"] = "order.create"
    order_id: uuid.UUID
    client_name: Optional[str] = Field(default=None, max_length=200)
    service_type: Optional[str] = Field(default=None, max_length=50)
    payment_method: PaymentMethod
    customer_id: Optional[str] = Field(default=None, max_length=128)
    items: List[OrderItemIn] = Field(min_length=1, max_length=500)
    discount: Money = Decimal("0")
    tip: Money = Decimal("0")
    total: Money


class SessionOpen(BaseModel):
    operation_type: Literal["session.open"] = "session.open"
    session_id: uuid.UUID
    client_name: str = Field(min_length=1, max_length=200)
    hourly_rate: Money
    started_at: UtcDatetime


class SessionClose(BaseModel):
    operation_type: Literal["session.close"] = "session.close"
    session_id: uuid.UUID
    ended_at: UtcDatetime


class CashCutCreate(BaseModel):
    operation_type: Literal["cut.create"] = "cut.create"
    cut_id: uuid.UUID
    opening_cash: Money = Decimal("0")
    counted_cash: Money
    notes: Optional[str] = Field(default=None, max_length=1000)


Operation = Annotated[
    Union[OrderCreate, SessionOpen, SessionClose, CashCutCreate],
    Field(discriminator="operation_type"),
]

HandlerResult = tuple[dict, List[ChangeNotice]]


def is_stock_item(product_id: str) -> bool:
    return not str(product_id or "").upper().startswith(SERVICE_ITEM_PREFIXES)


def order_totals(op: OrderCreate) -> tuple[Decimal, Decimal]:
    subtotal = _money(sum((item.unit_price * item.quantity for item in op.items), Decimal("0")), "order subtotal")
    total = _money(subtotal - op.discount + op.tip, "order total")
    return subtotal, total


def create_order(cur, op: OrderCreate, device_id: Optional[str]) -> HandlerResult:
    subtotal, total = order_totals(op)
    if total < 0:
        raise BusinessRuleError("discount exceeds order subtotal")
    if abs(total - op.total) > TOTAL_TOLERANCE:
        raise BusinessRuleError(f"order total mismatch: expected {total}, got {op.total}")

    changes: List[ChangeNotice] = []

    qty_by_product: dict[str, int] = {}
    for item in op.items:
        if is_stock_item(item.product_id):
            qty_by_product[item.product_id] = qty_by_product.get(item.product_id, 0) + item.quantity

    # Sorted so two concurrent orders lock product rows in the same order (no deadlock).
    stock_levels = []
    for product_id in sorted(qty_by_product):
        qty = qty_by_product[product_id]
        cur.execute(
            """
            UPDATE products
            SET stock = stock - %s,
                updated_at = now()
            WHERE id = %s AND is_active = true AND stock >= %s
            RETURNING id, stock
            """,
            (qty, product_id, qty),
        )
        row = cur.fetchone()
        if not row:
            cur.execute("SELECT stock FROM products WHERE id = %s AND is_active = true", (product_id,))
            existing = cur.fetchone()
            if not existing:
                raise BusinessRuleError(f"unknown product {product_id}")
            raise BusinessRuleError(
                f"insufficient stock for product {product_id} (available {existing['stock']}, requested {qty})"
            )
        stock_levels.append({"product_id": row["id"], "stock": row["stock"]})
        changes.append(ChangeNotice("products", "update", product_id))

    customer = None
    if op.payment_method == "credit":
        if not op.customer_id:
            raise BusinessRuleError("credit orders require customer_id")
        cur.execute(
            """
            SELECT id, credit_limit, current_credit
            FROM customers
            WHERE id = %s
            FOR UPDATE
            """,
            (op.customer_id,),
        )
        customer = cur.fetchone()
        if not customer:
            raise BusinessRuleError(f"unknown customer {op.customer_id}")
        if Decimal(customer["current_credit"]) + total > Decimal(customer["credit_limit"]):
            raise BusinessRuleError("credit limit exceeded")

    cur.execute(
        """
        INSERT INTO orders
          (id, device_id, client_name, service_type, payment_method, customer_id,
           subtotal, discount, tip, total)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, created_at
        """,
        (
            op.order_id,
            device_id,
            op.client_name,
            op.service_type,
            op.payment_method,
            op.customer_id,
            subtotal,
            op.discount,
            op.tip,
            total,
        ),
    )
    order_row = cur.fetchone()

    items_out = []
    for item in op.items:
        line_total = _money(item.unit_price * item.quantity, "line total")
        cur.execute(
            """
            INSERT INTO order_items (order_id, product_id, quantity, unit_price, line_total)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (op.order_id, item.product_id, item.quantity, item.unit_price, line_total),
        )
        items_out.append(
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "line_total": line_total,
            }
        )
    changes.append(ChangeNotice("orders", "create", str(op.order_id)))

    if customer is not None:
        cur.execute(
            """
            INSERT INTO customer_credits (customer_id, order_id, amount, kind, status)
            VALUES (%s, %s, %s, 'charge', 'pending')
            """,
            (op.customer_id, op.order_id, total),
        )
        cur.execute(
            """
            UPDATE customers
            SET current_credit = current_credit + %s,
                updated_at = now()
            WHERE id = %s
            """,
            (total, op.customer_id),
        )
        changes.append(ChangeNotice("customers", "update", op.customer_id))

    result = {
        "order": {
            "id": str(order_row["id"]),
            "client_name": op.client_name,
            "service_type": op.service_type,
            "payment_method": op.payment_method,
            "customer_id": op.customer_id,
            "subtotal": subtotal,
            "discount": op.discount,
            "tip": op.tip,
            "total": total,
            "created_at": order_row["created_at"],
            "items": items_out,
        },
        "stock": stock_levels,
    }
    return result, changes


def open_session(cur, op: SessionOpen, device_id: Optional[str]) -> HandlerResult:
    cur.execute(
        """
        INSERT INTO coworking_sessions (id, device_id, client_name, hourly_rate, status, started_at)
        VALUES (%s, %s, %s, %s, 'active', %s)
        ON CONFLICT (id) DO NOTHING
        RETURNING id, client_name, hourly_rate, status, started_at
        """,
        (op.session_id, device_id, op.client_name, op.hourly_rate, op.started_at),
    )
    row = cur.fetchone()
    if not row:
        raise BusinessRuleError(f"session {op.session_id} already exists", status_code=409)
    session = dict(row)
    session["id"] = str(session["id"])
    return {"session": session}, [ChangeNotice("coworking-sessions", "create", session["id"])]


def billed_hours(started_at: datetime, ended_at: datetime) -> int:
    # Every started hour is billed, with a one hour minimum.
    minutes = (ended_at - started_at).total_seconds() / 60
    return max(1, math.ceil(minutes / 60))


def close_session(cur, op: SessionClose, device_id: Optional[str]) -> HandlerResult:
    cur.execute(
        """
        SELECT id, hourly_rate, status, started_at
        FROM coworking_sessions
        WHERE id = %s
        FOR UPDATE
        """,
        (op.session_id,),
    )
    row = cur.fetchone()
    if not row:
        raise BusinessRuleError(f"unknown session {op.session_id}", status_code=404)
    if row["status"] != "active":
        raise BusinessRuleError(f"session {op.session_id} is already closed", status_code=409)
    started_at = _as_utc(row["started_at"])
    if op.ended_at < started_at:
        raise BusinessRuleError("ended_at is before started_at")

    hours = billed_hours(started_at, op.ended_at)
    total = _money(Decimal(row["hourly_rate"]) * hours, "session total")
    cur.execute(
        """
        UPDATE coworking_sessions
        SET status = 'closed',
            ended_at = %s,
            billed_hours = %s,
            total = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING id, client_name, hourly_rate, status, started_at, ended_at, billed_hours, total
        """,
        (op.ended_at, hours, total, op.session_id),
    )
    session = dict(cur.fetchone())
    session["id"] = str(session["id"])
    return {"session": session}, [ChangeNotice("coworking-sessions", "update", session["id"])]


def create_cash_cut(cur, op: CashCutCreate, device_id: Optional[str]) -> HandlerResult:
    cur.execute(
        """
        INSERT INTO cash_cuts (id, device_id, opening_cash, counted_cash, notes)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """,
        (op.cut_id, device_id, op.opening_cash, op.counted_cash, op.notes),
    )
    if not cur.fetchone():
        raise BusinessRuleError(f"cash cut {op.cut_id} already exists", status_code=409)

    # Claiming rows with a single UPDATE keeps two concurrent cuts from counting the same order.
    cur.execute(
        """
        UPDATE orders
        SET cut_id = %s,
            updated_at = now()
        WHERE cut_id IS NULL
        RETURNING id, payment_method, total
        """,
        (op.cut_id,),
    )
    claimed = cur.fetchall()

    totals_by_method: dict[str, Decimal] = {}
    for r in claimed:
        method = str(r["payment_method"])
        totals_by_method[method] = totals_by_method.get(method, Decimal("0")) + Decimal(r["total"])
    total_sales = _money(sum(totals_by_method.values(), Decimal("0")), "cut total sales")
    expected_cash = _money(op.opening_cash + totals_by_method.get("cash", Decimal("0")), "cut expected cash")
    difference = _money(op.counted_cash - expected_cash, "cut difference")
    totals_json = {k: str(v.quantize(CENT)) for k, v in sorted(totals_by_method.items())}

    cur.execute(
        """
        UPDATE cash_cuts
        SET expected_cash = %s,
            difference = %s,
            order_count = %s,
            totals_by_method = %s::jsonb,
            total_sales = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING id, opening_cash, counted_cash, expected_cash, difference,
                  order_count, totals_by_method, total_sales, notes, created_at
        """,
        (
            expected_cash,
            difference,
            len(claimed),
            json.dumps(totals_json, sort_keys=True),
            total_sales,
            op.cut_id,
        ),
    )
    cut = dict(cur.fetchone())
    cut["id"] = str(cut["id"])

    changes = [ChangeNotice("cash-cuts", "create", cut["id"])]
    changes.extend(ChangeNotice("orders", "update", str(r["id"])) for r in claimed)
    return {"cut": cut}, changes


HANDLERS: dict[str, Callable[..., HandlerResult]] = {
    "order.create": create_order,
    "session.open": open_session,
    "session.close": close_session,
    "cut.create": create_cash_cut,
}
