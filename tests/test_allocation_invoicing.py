"""Order workflow, allocation and invoicing chain."""

from datetime import date
from decimal import Decimal

import pytest

from app.core.errors import (
    AlreadyAllocated,
    InsufficientStock,
    InvalidRequest,
    InvalidState,
    NothingToInvoice,
    PartiallyConsumed,
)
from app.db.models.billing import InvoiceStatus
from app.db.models.inventory import RefDocType, StockTxn, TxnType
from app.db.models.sales import AllocationStatus, OrderStatus
from services.billing import invoicing
from services.sales import allocation, orders
from tests.conftest import ACTOR, COMPANY, balance_of, lots_of


def _approved_order(db, order_no="SO-1", lines=None, distributor_id="D1"):
    o = orders.create_order(
        db,
        company_id=COMPANY,
        actor=ACTOR,
        order_no=order_no,
        distributor_id=distributor_id,
        order_date=date(2026, 3, 1),
        lines=lines or [{"sku_id": "SKU1", "qty": Decimal("20"), "unit_price": Decimal("1.5")}],
        submit=True,
    )
    return orders.approve_order(db, company_id=COMPANY, actor=ACTOR, order_id=o.id)


def _allocate(db, o, warehouse_id="WH1"):
    return allocation.allocate(db, company_id=COMPANY, actor=ACTOR, order_id=o.id, warehouse_id=warehouse_id)


def _invoice(db, *order_list, warehouse_id="WH1"):
    return invoicing.invoice_orders(
        db,
        company_id=COMPANY,
        actor=ACTOR,
        order_ids=[o.id for o in order_list],
        warehouse_id=warehouse_id,
        invoice_date=date(2026, 3, 2),
    )


class TestOrderWorkflow:
    def test_transitions(self, db_session):
        o = orders.create_order(
            db_session, company_id=COMPANY, actor=ACTOR, order_no="SO-9", distributor_id="D1",
            order_date=date(2026, 3, 1), lines=[{"sku_id": "SKU1", "qty": 2, "unit_price": 3}],
        )
        assert o.status == OrderStatus.DRAFT.value
        assert o.total_amount == Decimal("6")

        with pytest.raises(InvalidState):
            orders.approve_order(db_session, company_id=COMPANY, actor=ACTOR, order_id=o.id)

        orders.submit_order(db_session, company_id=COMPANY, actor=ACTOR, order_id=o.id)
        o = orders.reject_order(db_session, company_id=COMPANY, actor=ACTOR, order_id=o.id, reason="credit hold")
        assert o.status == OrderStatus.REJECTED.value
        assert o.reject_reason == "credit hold"

        with pytest.raises(InvalidState):
            orders.cancel_order(db_session, company_id=COMPANY, actor=ACTOR, order_id=o.id)

    def test_allocation_requires_approval(self, db_session, stock_in):
        stock_in(20)
        o = orders.create_order(
            db_session, company_id=COMPANY, actor=ACTOR, order_no="SO-2", distributor_id="D1",
            order_date=date(2026, 3, 1), lines=[{"sku_id": "SKU1", "qty": 5}],
        )
        with pytest.raises(InvalidState):
            _allocate(db_session, o)


class TestAllocation:
    def test_allocate_reserves_fifo(self, db_session, stock_in):
        stock_in(15, minutes=1)
        stock_in(15, minutes=2)
        o = _approved_order(db_session)

        a = _allocate(db_session, o)

        assert a.status == AllocationStatus.ACTIVE.value
        item = a.items[0]
        assert item.qty_allocated == Decimal("20")
        assert [al.qty_reserved for al in item.lots] == [Decimal("15"), Decimal("5")]
        assert [lot.qty_available for lot in lots_of(db_session)] == [Decimal("0"), Decimal("10")]
        bal = balance_of(db_session)
        assert bal.qty_on_hand == Decimal("30")
        assert bal.qty_reserved == Decimal("20")
        assert bal.qty_available_to_promise == Decimal("10")
        # reservation is not a movement
        assert db_session.query(StockTxn).count() == 2

    def test_allocation_is_all_or_nothing(self, db_session, stock_in):
        stock_in(20)
        o = _approved_order(db_session, lines=[
            {"sku_id": "SKU1", "qty": Decimal("10")},
            {"sku_id": "SKU2", "qty": Decimal("1")},
        ])
        with pytest.raises(InsufficientStock):
            _allocate(db_session, o)
        assert lots_of(db_session)[0].qty_available == Decimal("20")
        assert balance_of(db_session).qty_reserved == Decimal("0")

    def test_second_allocation_rejected(self, db_session, stock_in):
        stock_in(50)
        o = _approved_order(db_session)
        a = _allocate(db_session, o)
        with pytest.raises(AlreadyAllocated) as err:
            _allocate(db_session, o)
        assert err.value.data["allocation_id"] == a.id

    def test_cancel_restores_exact_state(self, db_session, stock_in):
        stock_in(12, minutes=1)
        stock_in(12, minutes=2)
        before_lots = [lot.qty_available for lot in lots_of(db_session)]
        before_reserved = balance_of(db_session).qty_reserved

        o = _approved_order(db_session)
        a = _allocate(db_session, o)
        a = allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)

        assert a.status == AllocationStatus.CANCELLED.value
        assert [lot.qty_available for lot in lots_of(db_session)] == before_lots
        assert balance_of(db_session).qty_reserved == before_reserved

        # the order can be allocated again
        again = _allocate(db_session, o)
        assert again.id != a.id


class TestInvoicing:
    def test_allocation_invoice_chain(self, db_session, stock_in):
        stock_in(30)
        o = _approved_order(db_session)
        a = _allocate(db_session, o)
        assert balance_of(db_session).qty_reserved == Decimal("20")

        inv = _invoice(db_session, o)

        assert inv.status == InvoiceStatus.POSTED.value
        assert inv.invoice_no.startswith("INV-")
        db_session.expire_all()
        a = allocation.get_allocation(db_session, company_id=COMPANY, allocation_id=a.id)
        assert a.status == AllocationStatus.INVOICED.value
        assert a.items[0].qty_invoiced == Decimal("20")
        assert sum(al.qty_consumed for al in a.items[0].lots) == Decimal("20")

        bal = balance_of(db_session)
        assert bal.qty_reserved == Decimal("0")
        assert bal.qty_on_hand == Decimal("10")

        issues = (
            db_session.query(StockTxn)
            .filter(StockTxn.txn_type == TxnType.ISSUE_BY_INVOICE.value, StockTxn.ref_doc_id == inv.id)
            .all()
        )
        assert len(issues) == 1
        assert issues[0].qty_out == Decimal("20")
        assert issues[0].ref_doc_type == RefDocType.INVOICE.value

        o = orders.get_order(db_session, company_id=COMPANY, order_id=o.id)
        assert o.status == OrderStatus.INVOICED.value
        assert inv.total_amount == Decimal("30")

    def test_consolidated_invoice_aggregates_by_sku(self, db_session, stock_in):
        stock_in(100)
        o1 = _approved_order(db_session, "SO-1", [{"sku_id": "SKU1", "qty": Decimal("10"), "unit_price": Decimal("2")}])
        o2 = _approved_order(db_session, "SO-2", [{"sku_id": "SKU1", "qty": Decimal("5"), "unit_price": Decimal("3")}])
        _allocate(db_session, o1)
        _allocate(db_session, o2)

        inv = _invoice(db_session, o1, o2)

        assert len(inv.items) == 1
        line = inv.items[0]
        assert line.qty == Decimal("15")
        assert line.line_total == Decimal("35")
        assert line.unit_price == Decimal("2.3333")
        assert sorted(link.order_id for link in inv.order_links) == sorted([o1.id, o2.id])

    def test_mixed_distributors_rejected(self, db_session, stock_in):
        stock_in(100)
        o1 = _approved_order(db_session, "SO-1", distributor_id="D1")
        o2 = _approved_order(db_session, "SO-2", distributor_id="D2")
        _allocate(db_session, o1)
        _allocate(db_session, o2)
        with pytest.raises(InvalidRequest):
            _invoice(db_session, o1, o2)

    def test_invoice_requires_allocation_at_warehouse(self, db_session, stock_in):
        stock_in(50)
        o = _approved_order(db_session)
        with pytest.raises(InvalidState):
            _invoice(db_session, o)
        _allocate(db_session, o)
        with pytest.raises(InvalidState):
            _invoice(db_session, o, warehouse_id="WH9")

    def test_invoiced_order_cannot_be_invoiced_again(self, db_session, stock_in):
        stock_in(50)
        o = _approved_order(db_session)
        _allocate(db_session, o)
        _invoice(db_session, o)
        with pytest.raises(NothingToInvoice) as err:
            _invoice(db_session, o)
        assert err.value.data["order_ids"] == [o.id]

    def test_cancel_consumed_allocation_refused(self, db_session, stock_in):
        stock_in(50)
        o = _approved_order(db_session)
        a = _allocate(db_session, o)
        _invoice(db_session, o)
        with pytest.raises(PartiallyConsumed):
            allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)

    def test_void_returns_stock_to_reservation(self, db_session, stock_in):
        stock_in(50)
        o = _approved_order(db_session)
        a = _allocate(db_session, o)
        inv = _invoice(db_session, o)

        inv = invoicing.void_invoice(db_session, company_id=COMPANY, actor=ACTOR, invoice_id=inv.id)

        assert inv.status == InvoiceStatus.VOIDED.value
        bal = balance_of(db_session)
        assert bal.qty_on_hand == Decimal("50")
        assert bal.qty_reserved == Decimal("20")
        assert lots_of(db_session)[0].qty_available == Decimal("30")
        a = allocation.get_allocation(db_session, company_id=COMPANY, allocation_id=a.id)
        assert a.status == AllocationStatus.ACTIVE.value
        assert a.items[0].qty_invoiced == Decimal("0")
        assert orders.get_order(db_session, company_id=COMPANY, order_id=o.id).status == OrderStatus.APPROVED.value

        with pytest.raises(InvalidState):
            invoicing.void_invoice(db_session, company_id=COMPANY, actor=ACTOR, invoice_id=inv.id)

        # nothing is consumed any more, so the reservation can be released
        allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)
        assert balance_of(db_session).qty_reserved == Decimal("0")
        assert lots_of(db_session)[0].qty_available == Decimal("50")



def test_consumed_allocation_keeps_its_reservation(db_session, stock_in):
    stock_in(50)
    o = _approved_order(db_session)
    a = _allocate(db_session, o)
    _invoice(db_session, o)

    with pytest.raises(PartiallyConsumed):
        allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)

    a = allocation.get_allocation(db_session, company_id=COMPANY, allocation_id=a.id)
    assert a.status == AllocationStatus.INVOICED.value
    assert lots_of(db_session)[0].qty_available == Decimal("30")
    assert balance_of(db_session).qty_reserved == Decimal("0")


def test_cancelled_allocation_cannot_be_cancelled_again(db_session, stock_in):
    stock_in(50)
    o = _approved_order(db_session)
    a = _allocate(db_session, o)
    allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)
    with pytest.raises(InvalidState):
        allocation.cancel_allocation(db_session, company_id=COMPANY, actor=ACTOR, allocation_id=a.id)


def test_second_invoice_posts_nothing(db_session, stock_in):
    stock_in(50)
    o1 = _approved_order(db_session, "SO-1")
    o2 = _approved_order(db_session, "SO-2")
    _allocate(db_session, o1)
    _allocate(db_session, o2)
    _invoice(db_session, o1)
    issued = db_session.query(StockTxn).filter(StockTxn.txn_type == TxnType.ISSUE_BY_INVOICE.value).count()

    with pytest.raises(NothingToInvoice):
        _invoice(db_session, o1, o2)

    assert db_session.query(StockTxn).filter(StockTxn.txn_type == TxnType.ISSUE_BY_INVOICE.value).count() == issued
    assert orders.get_order(db_session, company_id=COMPANY, order_id=o2.id).status == OrderStatus.APPROVED.value
    assert balance_of(db_session).qty_reserved == Decimal("20")
