import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pos_terminal.app.errors import CheckoutValidationError
from pos_terminal.app.models import (
    AuthResult,
    ChangeEvent,
    PendingAction,
    Product,
    SystemUser,
    Transaction,
    parse_record,
    record_payload,
    scope_of,
)


def test_product_defaults_and_category_alias():
    p = Product.model_validate({"id": 7, "category_id": "Drinks", "price": 12.1})
    assert p.id == "7"
    assert p.category == "Drinks"
    assert p.price == Decimal("12.10")
    assert p.stock == 0
    assert p.sku == ""


def test_product_rejects_negative_stock():
    with pytest.raises(ValidationError):
        Product.model_validate({"id": "p-1", "stock": -1})


def test_uuid_ids_become_text():
    rid = uuid.uuid4()
    p = Product.model_validate({"id": rid})
    assert p.id == str(rid)


@pytest.mark.parametrize("raw,expected", [("cash", "Cash"), (" gcash ", "GCash"), ("QRPH", "QRPH"), ("card", "Card")])
def test_payment_method_is_canonicalized(raw, expected):
    tx = Transaction.model_validate({"id": "t1", "product_id": "p1", "quantity": 1, "amount": 5, "payment_method": raw})
    assert tx.payment_method == expected


def test_unknown_payment_method_rejected():
    with pytest.raises(ValidationError):
        Transaction.model_validate({"id": "t1", "product_id": "p1", "quantity": 1, "amount": 5, "payment_method": "cheque"})


def test_transaction_accepts_total_amount_alias():
    tx = Transaction.model_validate(
        {"id": "t1", "product_id": "p1", "quantity": 2, "total_amount": "224", "status": "completed"}
    )
    assert tx.amount == Decimal("224.00")
    assert tx.status == "Completed"


def test_transaction_is_frozen_and_refund_makes_a_copy():
    tx = Transaction(id="t1", product_id="p1", quantity=1, amount=Decimal("10"))
    with pytest.raises(ValidationError):
        tx.status = "Refunded"
    r = tx.refunded()
    assert r.status == "Refunded"
    assert tx.status == "Completed"
    assert r.id == tx.id


def test_refunding_twice_is_rejected():
    tx = Transaction(id="t1", product_id="p1", quantity=1, amount=Decimal("10")).refunded()
    with pytest.raises(CheckoutValidationError):
        tx.refunded()


def test_transaction_quantity_must_be_positive():
    with pytest.raises(ValidationError):
        Transaction(id="t1", product_id="p1", quantity=0, amount=Decimal("1"))


def test_user_drops_password_columns():
    u = SystemUser.model_validate({"id": "u1", "email": "a@b.c", "password": "secret", "password_hash": "$2b$x"})
    dumped = record_payload(u)
    assert "password" not in dumped
    assert "password_hash" not in dumped


def test_change_event_accepts_adapter_shape():
    ev = ChangeEvent.model_validate({"table": "Products", "event": "update", "data": {"id": 3}})
    assert ev.table == "products"
    assert ev.operation == "Update"
    assert ev.record_id == "3"


@pytest.mark.parametrize(
    "raw",
    [
        {"table": "products", "event": "Upsert", "data": {"id": "1"}},
        {"table": "products", "event": "Insert", "data": {}},
        {"table": "products; drop", "event": "Insert", "data": {"id": "1"}},
        {"event": "Insert", "data": {"id": "1"}},
    ],
)
def test_change_event_rejects_malformed(raw):
    with pytest.raises(ValidationError):
        ChangeEvent.model_validate(raw)


def test_pending_action_record_id():
    a = PendingAction(table="products", op="delete", payload={"id": "p-9"})
    assert a.op == "Delete"
    assert a.record_id == "p-9"


def test_parse_record_unknown_table():
    with pytest.raises(ValueError):
        parse_record("invoices", {"id": "1"})


def test_scope_of_businesses_is_own_id():
    b = parse_record("businesses", {"id": "biz-1", "name": "Shop"})
    p = parse_record("products", {"id": "p", "business_id": "biz-2"})
    assert scope_of("businesses", b) == "biz-1"
    assert scope_of("products", p) == "biz-2"


def test_auth_result_failure_shape():
    res = AuthResult.model_validate({"success": False, "error": "Identity not verified", "code": "INVALID_CREDENTIALS"})
    assert res.success is False
    assert res.data is None
