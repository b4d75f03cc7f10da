import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import TypeAdapter, ValidationError

from backend.app.operations import (
    BusinessRuleError,
    Operation,
    OrderCreate,
    SessionClose,
    SessionOpen,
    billed_hours,
    close_session,
    create_order,
    is_stock_item,
    open_session,
    order_totals,
)
from backend.tests.pg_fakes import FakeDatabase


def _cursor(db):
    return db.connection().cursor()


def _order(**kw):
    data = {
        "order_id": str(uuid.uuid4()),
        "payment_method": "cash",
        "items": [{"product_id": "COFFEE", "quantity": 1, "unit_price": "10.00"}],
        "total": "10.00",
    }
    data.update(kw)
    return OrderCreate(**data)


def test_operation_union_dispatches_on_operation_type():
    adapter = TypeAdapter(Operation)
    op = adapter.validate_python(
        {
            "operation_type": "session.open",
            "session_id": str(uuid.uuid4()),
            "client_name": "Ana",
            "hourly_rate": "5",
            "started_at": "2026-01-01T10:00:00",
        }
    )
    assert isinstance(op, SessionOpen)
    # Naive timestamps are taken as UTC.
    assert op.started_at.tzinfo is not None
    assert op.hourly_rate == Decimal("5.00")

    with pytest.raises(ValidationError):
        adapter.validate_python({"operation_type": "order.refund"})


def test_order_rejects_negative_money_and_empty_cart():
    with pytest.raises(ValidationError):
        _order(total="-1")
    with pytest.raises(ValidationError):
        _order(items=[])
    with pytest.raises(ValidationError):
        _order(items=[{"product_id": "COFFEE", "quantity": 0, "unit_price": "1"}])


def test_order_totals_apply_discount_and_tip():
    op = _order(
        items=[
            {"product_id": "COFFEE", "quantity": 2, "unit_price": "3.25"},
            {"product_id": "TIP_STAFF", "quantity": 1, "unit_price": "1.00"},
        ],
        discount="0.50",
        tip="2.00",
        total="9.00",
    )
    subtotal, total = order_totals(op)
    assert subtotal == Decimal("7.50")
    assert total == Decimal("9.00")


def test_service_items_do_not_touch_stock():
    assert is_stock_item("COFFEE") is True
    assert is_stock_item("cowork_day") is False
    assert is_stock_item("TIP_BARISTA") is False
    assert is_stock_item("SERVICE_PRINT") is False

    db = FakeDatabase()
    op = _order(items=[{"product_id": "COWORK_HOUR", "quantity": 2, "unit_price": "5.00"}])
    result, changes = create_order(_cursor(db), op, None)
    assert result["stock"] == []
    assert [(c.data_type, c.action) for c in changes] == [("orders", "create")]


def test_order_total_mismatch_is_rejected():
    db = FakeDatabase()
    db.add_product("COFFEE", 5)
    with pytest.raises(BusinessRuleError) as ex:
        create_order(_cursor(db), _order(total="12.00"), None)
    assert "total mismatch" in ex.value.detail
    assert ex.value.status_code == 422


def test_unknown_product_is_rejected():
    db = FakeDatabase()
    with pytest.raises(BusinessRuleError) as ex:
        create_order(_cursor(db), _order(), None)
    assert "unknown product" in ex.value.detail


def test_credit_orders_require_customer_within_limit():
    db = FakeDatabase()
    db.add_product("COFFEE", 5)
    db.add_customer("C-1", credit_limit="15.00", current_credit="10.00")

    with pytest.raises(BusinessRuleError) as ex:
        create_order(_cursor(db), _order(payment_method="credit"), None)
    assert "customer_id" in ex.value.detail

    with pytest.raises(BusinessRuleError) as ex:
        create_order(_cursor(db), _order(payment_method="credit", customer_id="C-1"), None)
    assert ex.value.detail == "credit limit exceeded"

    db.customers["C-1"]["credit_limit"] = Decimal("20.00")
    result, changes = create_order(_cursor(db), _order(payment_method="credit", customer_id="C-1"), None)
    assert db.customers["C-1"]["current_credit"] == Decimal("20.00")
    assert db.customer_credits[0]["amount"] == Decimal("10.00")
    assert ("customers", "update", "C-1") in [(c.data_type, c.action, c.entity_id) for c in changes]


def test_billed_hours_rounds_up_with_one_hour_minimum():
    start = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert billed_hours(start, start) == 1
    assert billed_hours(start, datetime(2026, 1, 1, 10, 59, tzinfo=timezone.utc)) == 1
    assert billed_hours(start, datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc)) == 1
    assert billed_hours(start, datetime(2026, 1, 1, 11, 1, tzinfo=timezone.utc)) == 2


def test_session_lifecycle_rules():
    db = FakeDatabase()
    session_id = uuid.uuid4()
    op = SessionOpen(session_id=session_id, client_name="Ana", hourly_rate="5.00", started_at="2026-01-01T10:00:00Z")
    open_session(_cursor(db), op, None)

    with pytest.raises(BusinessRuleError) as ex:
        open_session(_cursor(db), op, None)
    assert ex.value.status_code == 409

    with pytest.raises(BusinessRuleError) as ex:
        close_session(_cursor(db), SessionClose(session_id=session_id, ended_at="2026-01-01T09:00:00Z"), None)
    assert "before" in ex.value.detail

    result, _changes = close_session(
        _cursor(db), SessionClose(session_id=session_id, ended_at="2026-01-01T11:30:00Z"), None
    )
    assert result["session"]["billed_hours"] == 2
    assert result["session"]["total"] == Decimal("10.00")

    with pytest.raises(BusinessRuleError) as ex:
        close_session(_cursor(db), SessionClose(session_id=session_id, ended_at="2026-01-01T12:00:00Z"), None)
    assert ex.value.status_code == 409

    with pytest.raises(BusinessRuleError) as ex:
        close_session(_cursor(db), SessionClose(session_id=uuid.uuid4(), ended_at="2026-01-01T12:00:00Z"), None)
    assert ex.value.status_code == 404


def test_order_amounts_beyond_the_money_columns_are_rejected():
    with pytest.raises(ValidationError):
        _order(items=[{"product_id": "COFFEE", "quantity": 1, "unit_price": "1e30"}], total="1e30")

    db = FakeDatabase()
    db.add_product("COFFEE", 50)
    op = _order(
        items=[{"product_id": "COFFEE", "quantity": 2, "unit_price": "9999999999.99"}],
        total="9999999999.99",
    )
    with pytest.raises(BusinessRuleError) as ex:
        create_order(_cursor(db), op, None)
    assert ex.value.status_code == 422
    assert "out of range" in ex.value.detail
    assert db.products["COFFEE"]["stock"] == 50
    assert db.orders == {}


def test_session_total_beyond_the_money_columns_is_rejected():
    db = FakeDatabase()
    session_id = uuid.uuid4()
    open_session(
        _cursor(db),
        SessionOpen(session_id=session_id, client_name="Ana", hourly_rate="1000000.00", started_at="2026-01-01T10:00:00Z"),
        None,
    )

    with pytest.raises(BusinessRuleError) as ex:
        close_session(_cursor(db), SessionClose(session_id=session_id, ended_at="3026-01-01T10:00:00Z"), None)
    assert ex.value.status_code == 422
    assert "session total" in ex.value.detail

    # Still active: a corrected close goes through.
    result, _changes = close_session(
        _cursor(db), SessionClose(session_id=session_id, ended_at="2026-01-01T11:00:00Z"), None
    )
    assert result["session"]["total"] == Decimal("1000000.00")
