"""Stock ledger: conservation, FIFO, atomicity and reversal."""

from decimal import Decimal

import pytest

from app.core.errors import (
    InsufficientLotQuantity,
    InsufficientStock,
    InvalidRequest,
    InvalidState,
    OverReplenishment,
)
from app.db.models.inventory import Direction, RefDocType, StockTxn, TxnType
from app.db.models.master import MdSku
from app.events.outbox import OutboxEvent
from services.inventory import ledger
from services.inventory.lots import credit, debit
from tests.conftest import ACTOR, COMPANY, balance_of, lots_of


def _out(db, qty, *, lots=None, warehouse_id="WH1", sku_id="SKU1"):
    return ledger.post(
        db,
        company_id=COMPANY,
        actor=ACTOR,
        txn_type=TxnType.ADJUSTMENT_OUT,
        direction=Direction.OUT,
        warehouse_id=warehouse_id,
        sku_id=sku_id,
        qty=Decimal(str(qty)),
        ref_doc_type=RefDocType.ADJUSTMENT,
        ref_doc_id=None,
        lot_selection=lots,
    )


def _conserved(db, warehouse_id="WH1", sku_id="SKU1"):
    txns = db.query(StockTxn).filter(StockTxn.warehouse_id == warehouse_id, StockTxn.sku_id == sku_id).all()
    net = sum((t.qty_in - t.qty_out for t in txns), Decimal("0"))
    available = sum((lot.qty_available for lot in lots_of(db, warehouse_id, sku_id)), Decimal("0"))
    return net == available


class TestPosting:
    def test_inbound_creates_lot_and_balance(self, db_session, stock_in):
        txn = stock_in(10, batch_no="B1", unit_cost=Decimal("2.5"))

        lots = lots_of(db_session)
        assert len(lots) == 1
        assert lots[0].qty_received == Decimal("10")
        assert lots[0].qty_available == Decimal("10")
        assert lots[0].batch_no == "B1"

        db_session.refresh(txn)
        assert txn.qty_in == Decimal("10") and txn.qty_out == Decimal("0")
        assert [(line.lot_id, line.qty) for line in txn.lot_lines] == [(lots[0].id, Decimal("10"))]

        bal = balance_of(db_session)
        assert bal.qty_on_hand == Decimal("10")
        assert bal.qty_reserved == Decimal("0")

    def test_fifo_consumes_oldest_first(self, db_session, stock_in):
        stock_in(5, minutes=1)
        stock_in(5, minutes=2)
        stock_in(5, minutes=3)

        txn = _out(db_session, 7)

        lots = lots_of(db_session)
        assert [lot.qty_available for lot in lots] == [Decimal("0"), Decimal("3"), Decimal("5")]
        db_session.refresh(txn)
        assert [(line.lot_id, line.qty) for line in txn.lot_lines] == [
            (lots[0].id, Decimal("5")),
            (lots[1].id, Decimal("2")),
        ]
        assert balance_of(db_session).qty_on_hand == Decimal("8")

    def test_fifo_orders_by_received_at_not_id(self, db_session, stock_in):
        late = stock_in(5, minutes=30)
        early = stock_in(5, minutes=10)
        db_session.refresh(late)
        db_session.refresh(early)
        late_lot = late.lot_lines[0].lot_id
        early_lot = early.lot_lines[0].lot_id

        txn = _out(db_session, 4)

        db_session.refresh(txn)
        assert [line.lot_id for line in txn.lot_lines] == [early_lot]
        assert late_lot != early_lot

    def test_failed_debit_leaves_lots_untouched(self, db_session, stock_in):
        stock_in(5, minutes=1)
        stock_in(5, minutes=2)

        with pytest.raises(InsufficientStock) as err:
            _out(db_session, 11)

        assert err.value.data["requested"] == Decimal("11")
        assert err.value.data["available"] == Decimal("10")
        assert [lot.qty_available for lot in lots_of(db_session)] == [Decimal("5"), Decimal("5")]
        assert balance_of(db_session).qty_on_hand == Decimal("10")
        assert db_session.query(StockTxn).count() == 2

    def test_explicit_lot_selection(self, db_session, stock_in):
        stock_in(5, minutes=1)
        stock_in(5, minutes=2)
        second = lots_of(db_session)[1]

        _out(db_session, 3, lots=[(second.id, Decimal("3"))])

        assert [lot.qty_available for lot in lots_of(db_session)] == [Decimal("5"), Decimal("2")]

    def test_explicit_selection_must_cover_quantity(self, db_session, stock_in):
        stock_in(5)
        lot = lots_of(db_session)[0]
        with pytest.raises(InvalidRequest):
            _out(db_session, 3, lots=[(lot.id, Decimal("2"))])

    def test_explicit_selection_rejects_foreign_lot(self, db_session, stock_in):
        stock_in(5, sku_id="OTHER")
        foreign = lots_of(db_session, sku_id="OTHER")[0]
        stock_in(5)
        with pytest.raises(InvalidRequest):
            _out(db_session, 2, lots=[(foreign.id, Decimal("2"))])

    def test_explicit_lot_debit_beyond_available(self, db_session, stock_in):
        stock_in(5)
        lot = lots_of(db_session)[0]
        with pytest.raises(InsufficientLotQuantity):
            _out(db_session, 6, lots=[(lot.id, Decimal("6"))])
        assert lots_of(db_session)[0].qty_available == Decimal("5")

    def test_non_positive_quantity_rejected(self, db_session, stock_in):
        with pytest.raises(InvalidRequest):
            stock_in(0)

    def test_conservation_over_mixed_sequence(self, db_session, stock_in):
        stock_in(10, minutes=1)
        stock_in(4, minutes=2)
        _out(db_session, 6)
        stock_in(3, minutes=3)
        _out(db_session, 9)
        assert _conserved(db_session)
        assert balance_of(db_session).qty_on_hand == Decimal("2")

    def test_posting_writes_outbox_event(self, db_session, stock_in):
        stock_in(5)
        events = db_session.query(OutboxEvent).filter(OutboxEvent.topic == "inventory.posted").all()
        assert len(events) == 1
        assert events[0].payload["qty"] in ("5", "5.0000")


class TestReversal:
    def test_reverse_outbound_credits_lots(self, db_session, stock_in):
        stock_in(5, minutes=1)
        stock_in(5, minutes=2)
        out = _out(db_session, 7)

        rev = ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=out.id)

        db_session.refresh(rev)
        assert rev.reversal_of_txn_id == out.id
        assert rev.qty_in == Decimal("7")
        assert rev.txn_type == TxnType.REVERSAL.value
        assert [lot.qty_available for lot in lots_of(db_session)] == [Decimal("5"), Decimal("5")]
        assert balance_of(db_session).qty_on_hand == Decimal("10")
        assert _conserved(db_session)

    def test_reverse_inbound_removes_lot_quantity(self, db_session, stock_in):
        txn = stock_in(5)
        ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=txn.id)
        assert lots_of(db_session)[0].qty_available == Decimal("0")
        assert balance_of(db_session).qty_on_hand == Decimal("0")

    def test_reverse_inbound_after_consumption_fails(self, db_session, stock_in):
        txn = stock_in(5)
        _out(db_session, 2)
        with pytest.raises(InsufficientLotQuantity):
            ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=txn.id)

    def test_reverse_twice_fails(self, db_session, stock_in):
        txn = stock_in(5)
        rev = ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=txn.id)
        with pytest.raises(InvalidState):
            ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=txn.id)
        with pytest.raises(InvalidState):
            ledger.reverse(db_session, company_id=COMPANY, actor=ACTOR, txn_id=rev.id)


class TestLotStore:
    def test_debit_and_credit_bounds(self, db_session, stock_in):
        stock_in(5)
        lot = lots_of(db_session)[0]
        debit(lot, Decimal("5"))
        assert lot.qty_available == Decimal("0")
        with pytest.raises(InsufficientLotQuantity):
            debit(lot, Decimal("1"))
        credit(lot, Decimal("5"))
        with pytest.raises(OverReplenishment):
            credit(lot, Decimal("1"))
        db_session.rollback()

    def test_batch_tracked_sku_requires_batch(self, db_session, stock_in):
        db_session.add(MdSku(company_id=COMPANY, code="SKU1", is_batch_tracked=True, is_expiry_tracked=True))
        db_session.commit()
        with pytest.raises(InvalidRequest):
            stock_in(5)
        with pytest.raises(InvalidRequest):
            stock_in(5, batch_no="B1")
        from datetime import date
        stock_in(5, batch_no="B1", expiry_date=date(2027, 1, 1))
        assert lots_of(db_session)[0].expiry_date == date(2027, 1, 1)


class TestBalanceRebuild:
    def test_rebuild_repairs_drift(self, db_session, stock_in):
        stock_in(5)
        bal = balance_of(db_session)
        bal.qty_on_hand = Decimal("99")
        db_session.commit()

        report = ledger.check_balance(db_session, company_id=COMPANY, warehouse_id="WH1", sku_id="SKU1")
        assert report["in_sync"] is False
        assert report["computed"]["qty_on_hand"] == Decimal("5")

        ledger.rebuild_balance(db_session, company_id=COMPANY, warehouse_id="WH1", sku_id="SKU1")
        assert balance_of(db_session).qty_on_hand == Decimal("5")
        assert ledger.check_balance(db_session, company_id=COMPANY, warehouse_id="WH1", sku_id="SKU1")["in_sync"]
