"""Transfer dispatch/receipt reconciliation."""

from datetime import date
from decimal import Decimal

import pytest

from app.core.errors import (
    DuplicateOperation,
    InsufficientStock,
    InvalidDispatchQuantity,
    InvalidRequest,
    InvalidState,
    OverReceipt,
)
from app.db.models.inventory import StockTxn, TxnType
from app.db.models.transfer import TransferStatus
from services.transfers import service
from tests.conftest import ACTOR, COMPANY, balance_of, lots_of


@pytest.fixture
def transfer(db_session):
    t = service.create_transfer(
        db_session,
        company_id=COMPANY,
        actor=ACTOR,
        transfer_no="TR-1",
        from_warehouse_id="WH1",
        to_warehouse_id="WH2",
        items=[{"sku_id": "SKU1", "qty_planned": Decimal("100")}],
    )
    return t


def _dispatch(db, t, qty, **kw):
    return service.dispatch(
        db, company_id=COMPANY, actor=ACTOR, transfer_id=t.id,
        lines=[{"item_id": t.items[0].id, "qty": Decimal(str(qty)), **kw}],
    )


def _receive(db, t, qty, key):
    return service.receive(
        db, company_id=COMPANY, actor=ACTOR, transfer_id=t.id,
        lines=[{"item_id": t.items[0].id, "qty": Decimal(str(qty))}], idempotency_key=key,
    )


def test_create_requires_distinct_warehouses(db_session):
    with pytest.raises(InvalidRequest):
        service.create_transfer(
            db_session, company_id=COMPANY, actor=ACTOR, transfer_no="TR-X",
            from_warehouse_id="WH1", to_warehouse_id="WH1",
            items=[{"sku_id": "SKU1", "qty_planned": 1}],
        )


def test_dispatch_then_receive_60_and_40_closes(db_session, stock_in, transfer):
    stock_in(100, batch_no="B-7", expiry_date=date(2027, 6, 30), unit_cost=Decimal("3"))

    t = _dispatch(db_session, transfer, 100)
    assert t.status == TransferStatus.DISPATCHED.value
    assert balance_of(db_session, "WH1").qty_on_hand == Decimal("0")

    t = _receive(db_session, t, 60, "rcpt-1")
    assert t.status == TransferStatus.PARTIALLY_RECEIVED.value

    t = _receive(db_session, t, 40, "rcpt-2")
    assert t.status == TransferStatus.CLOSED.value
    item = t.items[0]
    assert item.qty_dispatched_total == Decimal("100")
    assert item.qty_received_total == Decimal("100")
    assert t.received_at is not None

    dest = lots_of(db_session, "WH2")
    assert [lot.qty_received for lot in dest] == [Decimal("60"), Decimal("40")]
    # destination lots keep the source batch metadata
    assert {lot.batch_no for lot in dest} == {"B-7"}
    assert {lot.expiry_date for lot in dest} == {date(2027, 6, 30)}
    assert balance_of(db_session, "WH2").qty_on_hand == Decimal("100")

    with pytest.raises(OverReceipt):
        _receive(db_session, t, 1, "rcpt-3")


def test_over_receipt_rejected(db_session, stock_in, transfer):
    stock_in(100)
    t = _dispatch(db_session, transfer, 100)
    _receive(db_session, t, 60, "rcpt-1")

    with pytest.raises(OverReceipt) as err:
        _receive(db_session, t, 41, "rcpt-2")
    assert err.value.data["outstanding"] == Decimal("40")
    assert lots_of(db_session, "WH2")[0].qty_received == Decimal("60")


def test_replayed_receipt_key_posts_once(db_session, stock_in, transfer):
    stock_in(100)
    t = _dispatch(db_session, transfer, 100)
    _receive(db_session, t, 30, "same-key")

    with pytest.raises(DuplicateOperation):
        _receive(db_session, t, 30, "same-key")

    db_session.expire_all()
    ins = db_session.query(StockTxn).filter(StockTxn.txn_type == TxnType.TRANSFER_IN.value).all()
    assert len(ins) == 1
    assert len(lots_of(db_session, "WH2")) == 1
    assert service.get_transfer(db_session, company_id=COMPANY, transfer_id=t.id).items[0].qty_received_total == Decimal("30")


def test_receipt_requires_key(db_session, stock_in, transfer):
    stock_in(10)
    t = _dispatch(db_session, transfer, 10)
    with pytest.raises(InvalidRequest):
        _receive(db_session, t, 10, None)


def test_failed_receipt_leaves_key_free(db_session, stock_in, transfer):
    stock_in(10)
    t = _dispatch(db_session, transfer, 10)
    with pytest.raises(OverReceipt):
        _receive(db_session, t, 11, "k1")
    t = _receive(db_session, t, 10, "k1")
    assert t.status == TransferStatus.CLOSED.value


def test_dispatch_validations(db_session, stock_in, transfer):
    stock_in(5)
    with pytest.raises(InvalidDispatchQuantity):
        _dispatch(db_session, transfer, 0)
    with pytest.raises(InsufficientStock):
        _dispatch(db_session, transfer, 6)
    db_session.expire_all()
    assert transfer.status == TransferStatus.OPEN.value
    assert lots_of(db_session)[0].qty_available == Decimal("5")


def test_over_dispatch_against_plan_is_allowed(db_session, stock_in, transfer):
    stock_in(120)
    t = _dispatch(db_session, transfer, 120)
    assert t.items[0].qty_dispatched_total == Decimal("120")


def test_in_transit_split_by_source_batch(db_session, stock_in, transfer):
    stock_in(30, minutes=1, batch_no="A")
    stock_in(30, minutes=2, batch_no="B")
    t = _dispatch(db_session, transfer, 50)

    rows = t.items[0].in_transit
    assert [(r.batch_no, r.qty_dispatched) for r in rows] == [("A", Decimal("30")), ("B", Decimal("20"))]

    _receive(db_session, t, 40, "k")
    dest = lots_of(db_session, "WH2")
    assert [(lot.batch_no, lot.qty_received) for lot in dest] == [("A", Decimal("30")), ("B", Decimal("10"))]


def test_cancel_dispatched_transfer_restores_source(db_session, stock_in, transfer):
    stock_in(50)
    t = _dispatch(db_session, transfer, 20)

    t = service.cancel(db_session, company_id=COMPANY, actor=ACTOR, transfer_id=t.id)

    assert t.status == TransferStatus.CANCELLED.value
    assert lots_of(db_session)[0].qty_available == Decimal("50")
    assert balance_of(db_session).qty_on_hand == Decimal("50")
    assert t.items[0].qty_dispatched_total == Decimal("0")


def test_cancel_after_receipt_refused(db_session, stock_in, transfer):
    stock_in(50)
    t = _dispatch(db_session, transfer, 20)
    _receive(db_session, t, 5, "k")
    with pytest.raises(InvalidState):
        service.cancel(db_session, company_id=COMPANY, actor=ACTOR, transfer_id=t.id)
