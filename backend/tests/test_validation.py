from decimal import Decimal

import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import MAX_MONEY, DataType, EntityAction, IdempotencyKey, Money, OperationType, PaymentMethod


class _M(BaseModel):
    op: OperationType
    method: PaymentMethod
    action: EntityAction
    data_type: DataType


class _K(BaseModel):
    key: IdempotencyKey
    amount: Money = Decimal("0")


def test_validation_types_normalize_case():
    m = _M(op="Order.Create", method=" Cash ", action="UPDATE", data_type="Coworking-Sessions")
    assert m.op == "order.create"
    assert m.method == "cash"
    assert m.action == "update"
    assert m.data_type == "coworking-sessions"


def test_payment_method_rejects_unknown_values():
    with pytest.raises(ValidationError):
        _M(op="order.create", method="bitcoin", action="create", data_type="orders")


def test_idempotency_key_shape():
    assert _K(key=" 3f1c2b9e-0d7a-4c55-9c1e-6a2f0b1d2e3f ").key == "3f1c2b9e-0d7a-4c55-9c1e-6a2f0b1d2e3f"
    for bad in ["short", "has space inside", "x" * 256, "semi;colon-key"]:
        with pytest.raises(ValidationError):
            _K(key=bad)


def test_money_is_non_negative_and_quantized():
    assert _K(key="key-12345", amount="1.005").amount == Decimal("1.00")
    assert _K(key="key-12345", amount=3).amount == Decimal("3.00")
    with pytest.raises(ValidationError):
        _K(key="key-12345", amount="-0.01")


def test_money_fits_the_numeric_column():
    assert _K(key="key-12345", amount="9999999999.99").amount == MAX_MONEY
    for bad in ["10000000000", "1e30", "NaN", "Infinity"]:
        with pytest.raises(ValidationError):
            _K(key="key-12345", amount=bad)
