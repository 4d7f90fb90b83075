import asyncio
from decimal import Decimal

import pytest

from pos_terminal.app.checkout import TRANSITIONS, ErrorKind, State, TransitionTable
from pos_terminal.app.errors import CheckoutValidationError, IllegalTransitionError
from pos_terminal.tests.fakes import BIZ, product, settle


def _edges(**overrides):
    edges = {
        State.METHOD_SELECT: {State.METHOD_DETAILS, State.CONFIRM_PAYMENT},
        State.METHOD_DETAILS: {State.REVIEW, State.METHOD_SELECT},
        State.CONFIRM_PAYMENT: {State.REVIEW, State.METHOD_SELECT},
        State.REVIEW: {State.PROCESSING, State.METHOD_SELECT},
        State.PROCESSING: {State.SUCCESS, State.ERROR},
        State.SUCCESS: {State.METHOD_SELECT},
        State.ERROR: {State.METHOD_SELECT},
    }
    for name, targets in overrides.items():
        edges[State[name]] = targets
    return edges


def test_transition_table_accepts_well_formed_edges():
    t = TransitionTable(_edges())
    assert t.allows(State.REVIEW, State.PROCESSING)
    assert not t.allows(State.METHOD_SELECT, State.PROCESSING)


def test_transition_table_rejects_missing_state():
    edges = _edges()
    del edges[State.SUCCESS]
    with pytest.raises(ValueError):
        TransitionTable(edges)


def test_transition_table_rejects_processing_escape():
    with pytest.raises(ValueError):
        TransitionTable(_edges(PROCESSING={State.SUCCESS, State.ERROR, State.METHOD_SELECT}))


def test_transition_table_rejects_error_retry():
    with pytest.raises(ValueError):
        TransitionTable(_edges(ERROR={State.METHOD_SELECT, State.PROCESSING}))


def test_transition_table_rejects_unknown_target():
    with pytest.raises(ValueError):
        TransitionTable(_edges(REVIEW={State.PROCESSING, "DONE"}))


def test_default_table_forbids_retry_from_error():
    with pytest.raises(IllegalTransitionError):
        TRANSITIONS.check(State.ERROR, State.PROCESSING)


def _ready(co, pid="p-1", qty=1, method="Cash", tendered="10000"):
    co.add_item(pid, qty)
    co.select_method(method)
    if co.state == State.METHOD_DETAILS:
        co.tender(tendered)
        co.review()
    else:
        co.confirm_payment()
    assert co.state == State.REVIEW


def test_cash_sale_commits_one_transaction_per_line(remote, make_engine):
    remote.seed("products", product("p-1", stock=10, price="100"), product("p-2", stock=5, price="50"))

    async def main():
        engine = make_engine(tax_rate=Decimal("0.12"))
        async with engine.session(BIZ):
            co = engine.checkout
            co.add_item("p-1", 2)
            co.add_item("p-2")
            assert co.select_method("cash") == State.METHOD_DETAILS
            assert co.tender("300") == Decimal("20.00")
            co.review()
            receipt = await co.commit()

            assert receipt is not None
            assert co.state == State.SUCCESS
            assert co.cart == []
            assert receipt.total == Decimal("280.00")
            assert receipt.change == Decimal("20.00")
            assert [ln.quantity for ln in receipt.lines] == [2, 1]

            txs = list(remote.rows["transactions"].values())
            assert len(txs) == 2
            assert {t["sale_id"] for t in txs} == {receipt.sale_id}
            assert len({t["id"] for t in txs}) == 2
            assert remote.get("products", "p-1")["stock"] == 8
            assert remote.get("products", "p-2")["stock"] == 4
            assert engine.collections["products"].get("p-1").stock == 8

            co.reset()
            assert co.state == State.METHOD_SELECT

    asyncio.run(main())


def test_stale_stock_aborts_without_writing(remote, make_engine):
    remote.seed("products", product("p-1", stock=3))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co, qty=5)
            before = len(remote.calls)

            assert await co.commit() is None
            assert co.state == State.ERROR
            assert co.error_kind == ErrorKind.STOCK_SYNC_ERROR
            assert engine.collections["products"].get("p-1").stock == 3
            assert remote.get("products", "p-1")["stock"] == 3
            assert "transactions" not in remote.rows
            assert len(remote.calls) == before

            with pytest.raises(IllegalTransitionError):
                await co.commit()
            co.reset()
            assert co.state == State.METHOD_SELECT

    asyncio.run(main())


def test_stock_drop_from_another_terminal_is_caught_at_commit(remote, make_engine):
    remote.seed("products", product("p-1", stock=4))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co, qty=3)
            remote.emit("products", "Update", product("p-1", stock=1))
            await settle()
            assert await co.commit() is None
            assert co.error_kind == ErrorKind.STOCK_SYNC_ERROR

    asyncio.run(main())


def test_second_commit_while_processing_is_rejected(remote, make_engine):
    remote.seed("products", product("p-1", stock=2))

    async def main():
        engine = make_engine(timeout_s=0.05)
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co)
            remote.hang = True
            first = asyncio.create_task(co.commit())
            await settle()
            assert co.state == State.PROCESSING
            with pytest.raises(IllegalTransitionError):
                await co.commit()
            receipt = await first
            remote.hang = False
            # Hung remote means the sale is queued, not lost.
            assert receipt is not None
            assert co.state == State.SUCCESS
            assert engine.outbox.pending_count("transactions") == 1

    asyncio.run(main())


def test_offline_sale_is_queued_and_stock_decremented_locally(remote, make_engine):
    remote.seed("products", product("p-1", stock=10))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            remote.online = False
            co = engine.checkout
            _ready(co, qty=3, method="GCash")
            receipt = await co.commit()
            assert receipt is not None
            assert receipt.payment_method == "GCash"
            assert engine.collections["products"].get("p-1").stock == 7
            assert engine.outbox.pending_count("transactions") == 1
            assert engine.outbox.pending_count("products") == 1
            assert remote.get("products", "p-1")["stock"] == 10

    asyncio.run(main())


def test_discard_makes_no_remote_calls(remote, make_engine):
    remote.seed("products", product("p-1", stock=10))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co, qty=2)
            before = len(remote.calls)
            co.discard()
            assert co.state == State.METHOD_SELECT
            assert co.cart == []
            assert co.payment_method is None
            assert len(remote.calls) == before
            assert engine.collections["products"].get("p-1").stock == 10

    asyncio.run(main())


def test_discard_not_allowed_after_commit(remote, make_engine):
    remote.seed("products", product("p-1", stock=1))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co, qty=2)
            await co.commit()
            assert co.state == State.ERROR
            with pytest.raises(IllegalTransitionError):
                co.discard()

    asyncio.run(main())


def test_flow_guards(remote, make_engine):
    remote.seed("products", product("p-1", stock=5, price="100"), product("p-0", stock=0))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            with pytest.raises(CheckoutValidationError):
                co.select_method("Cash")
            with pytest.raises(CheckoutValidationError):
                co.add_item("p-0")
            with pytest.raises(CheckoutValidationError):
                co.add_item("missing")
            with pytest.raises(CheckoutValidationError):
                co.add_item("p-1", 0)

            co.add_item("p-1")
            with pytest.raises(CheckoutValidationError):
                co.select_method("cheque")
            with pytest.raises(IllegalTransitionError):
                await co.commit()

            co.select_method("Cash")
            with pytest.raises(IllegalTransitionError):
                co.add_item("p-1")
            co.tender("100")
            with pytest.raises(CheckoutValidationError):
                co.review()
            assert co.state == State.METHOD_DETAILS

            co.back()
            assert co.tendered is None
            co.select_method("Card")
            with pytest.raises(IllegalTransitionError):
                co.tender("500")
            assert co.confirm_payment() == State.REVIEW
            with pytest.raises(IllegalTransitionError):
                co.reset()

    asyncio.run(main())


def test_cart_edits(remote, make_engine):
    remote.seed("products", product("p-1", stock=5, price="10"), product("p-2", stock=5, price="1"))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            co.add_item("p-1")
            co.add_item("p-1", 2)
            co.add_item("p-2")
            assert [(ln.product_id, ln.quantity) for ln in co.cart] == [("p-1", 3), ("p-2", 1)]
            co.set_quantity("p-2", 0)
            assert [ln.product_id for ln in co.cart] == ["p-1"]
            co.set_discount(200)
            assert co.discount_percent == Decimal("100")
            assert co.total_due == Decimal("0.00")
            with pytest.raises(CheckoutValidationError):
                co.set_quantity("p-2", 1)

    asyncio.run(main())


def test_product_deleted_mid_commit_does_not_split_the_sale(remote, make_engine):
    remote.seed("products", product("p-1", stock=10), product("p-2", stock=5))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            co.add_item("p-1")
            co.add_item("p-2")
            co.select_method("Card")
            co.confirm_payment()

            def delete_p2(op, table, record_id):
                if op == "upsert_many" and table == "transactions":
                    remote.on_call = None
                    remote.rows["products"].pop("p-2", None)
                    remote.emit("products", "Delete", {"id": "p-2"})

            remote.on_call = delete_p2
            receipt = await co.commit()

            assert receipt is not None
            assert co.state == State.SUCCESS
            assert co.error_kind is None
            assert co.cart == []
            assert len(remote.rows["transactions"]) == 2
            assert remote.get("products", "p-1")["stock"] == 9

    asyncio.run(main())


def test_failure_after_transactions_are_written_still_succeeds(remote, make_engine, monkeypatch):
    remote.seed("products", product("p-1", stock=10))

    async def main():
        engine = make_engine()
        async with engine.session(BIZ):
            co = engine.checkout
            _ready(co, qty=2)

            async def broken_write(p):
                raise RuntimeError("disk full")

            monkeypatch.setattr(engine.ledger, "write", broken_write)
            receipt = await co.commit()
            assert receipt is not None
            assert co.state == State.SUCCESS
            assert co.cart == []
            assert len(remote.rows["transactions"]) == 1

    asyncio.run(main())
