"""Invoicing: ship reserved lots through the ledger and bill them.

One invoice may consolidate several orders of the same distributor. Each
allocation is invoiced in full in one pass; the lots are consumed in the
order they were reserved.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import InsufficientStock, InvalidRequest, InvalidState, NothingToInvoice, NotFound
from app.db.models.billing import Invoice, InvoiceConsumption, InvoiceItem, InvoiceOrderLink, InvoiceStatus
from app.db.models.common import ZERO, utcnow
from app.db.models.inventory import Direction, RefDocType, TxnType
from app.db.models.sales import Allocation, AllocationLot, AllocationStatus, OrderStatus
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.sales.allocation import live_allocation
from services.sales.orders import get_order

logger = logging.getLogger(__name__)

PRICE_QUANT = Decimal("0.0001")


def get_invoice(db: Session, *, company_id: str, invoice_id: int, for_update: bool = False) -> Invoice:
    q = db.query(Invoice).filter(Invoice.company_id == company_id, Invoice.id == invoice_id)
    if for_update:
        q = q.with_for_update().populate_existing()
    inv = q.first()
    if not inv:
        raise NotFound("Invoice", invoice_id)
    return inv


def _outstanding(alloc: Allocation) -> Decimal:
    return sum((it.qty_allocated - it.qty_invoiced for it in alloc.items), ZERO)


def invoice_orders(
    db: Session,
    *,
    company_id: str,
    actor: str,
    order_ids: list[int],
    warehouse_id: str,
    invoice_date: date,
    invoice_no: str | None = None,
) -> Invoice:
    order_ids = list(dict.fromkeys(int(i) for i in order_ids))
    if not order_ids:
        raise InvalidRequest("At least one order is required")

    with atomic(db):
        orders = [get_order(db, company_id=company_id, order_id=oid, for_update=True) for oid in sorted(order_ids)]
        distributors = {o.distributor_id for o in orders}
        if len(distributors) > 1:
            raise InvalidRequest(
                "Orders on one invoice must share a distributor", distributor_ids=sorted(distributors)
            )

        allocations: list[tuple] = []
        for o in orders:
            alloc = live_allocation(db, company_id=company_id, order_id=o.id, for_update=True)
            if not alloc or alloc.warehouse_id != warehouse_id:
                raise InvalidState("SalesOrder", o.id, f"not allocated at {warehouse_id}", "invoice")
            if o.status == OrderStatus.INVOICED.value or alloc.status == AllocationStatus.INVOICED.value:
                # an earlier invoice already shipped the whole allocation
                if _outstanding(alloc) <= 0:
                    raise NothingToInvoice([o.id])
                raise InvalidState("SalesOrder", o.id, o.status, "invoice")
            if o.status != OrderStatus.APPROVED.value or alloc.status != AllocationStatus.ACTIVE.value:
                raise InvalidState("SalesOrder", o.id, o.status, "invoice")
            allocations.append((o, alloc))

        outstanding = sum((_outstanding(alloc) for _, alloc in allocations), ZERO)
        if outstanding <= 0:
            raise NothingToInvoice(order_ids)

        inv = Invoice(
            company_id=company_id,
            invoice_no=invoice_no,
            distributor_id=orders[0].distributor_id,
            warehouse_id=warehouse_id,
            invoice_date=invoice_date,
            status=InvoiceStatus.POSTED.value,
            created_by=actor,
        )
        db.add(inv)
        db.flush()
        if not inv.invoice_no:
            inv.invoice_no = f"INV-{inv.id:08d}"

        # sku -> [qty, amount]
        lines: dict[str, list[Decimal]] = {}
        txn_ids: list[int] = []
        for order, alloc in allocations:
            for item in sorted(alloc.items, key=lambda it: (it.sku_id, it.id)):
                qty_to_invoice = item.qty_allocated - item.qty_invoiced
                if qty_to_invoice <= 0:
                    continue

                remaining = qty_to_invoice
                consumed: list[tuple[AllocationLot, Decimal]] = []
                for al in item.lots:
                    if remaining <= 0:
                        break
                    take = min(al.qty_outstanding, remaining)
                    if take <= 0:
                        continue
                    consumed.append((al, take))
                    remaining -= take
                if remaining > 0:
                    raise InsufficientStock(warehouse_id, item.sku_id, qty_to_invoice, qty_to_invoice - remaining)

                txn = ledger.post(
                    db,
                    company_id=company_id,
                    actor=actor,
                    txn_type=TxnType.ISSUE_BY_INVOICE,
                    direction=Direction.OUT,
                    warehouse_id=warehouse_id,
                    sku_id=item.sku_id,
                    qty=qty_to_invoice,
                    ref_doc_type=RefDocType.INVOICE,
                    ref_doc_id=inv.id,
                    lot_selection=[(al.lot_id, take) for al, take in consumed],
                    from_reservation=True,
                )
                for al, take in consumed:
                    al.qty_consumed = al.qty_consumed + take
                    db.add(InvoiceConsumption(invoice_id=inv.id, allocation_lot_id=al.id, txn_id=txn.id, qty=take))
                item.qty_invoiced = item.qty_invoiced + qty_to_invoice
                txn_ids.append(txn.id)

                acc = lines.setdefault(item.sku_id, [ZERO, ZERO])
                acc[0] += qty_to_invoice
                acc[1] += qty_to_invoice * item.order_item.unit_price

            alloc.status = AllocationStatus.INVOICED.value
            order.status = OrderStatus.INVOICED.value
            order.invoiced_at = utcnow()
            order.updated_by = actor
            inv.order_links.append(InvoiceOrderLink(order_id=order.id, allocation_id=alloc.id))

        total = ZERO
        for sku_id in sorted(lines):
            qty, amount = lines[sku_id]
            inv.items.append(
                InvoiceItem(
                    sku_id=sku_id,
                    qty=qty,
                    # weighted average across orders; line_total stays exact
                    unit_price=(amount / qty).quantize(PRICE_QUANT),
                    line_total=amount,
                )
            )
            total += amount
        inv.total_amount = total
        db.flush()

        publish(db, company_id, "invoice.created", {
            "invoice_id": inv.id,
            "invoice_no": inv.invoice_no,
            "order_ids": [o.id for o in orders],
            "txn_ids": txn_ids,
            "total_amount": str(total),
        })
        audit(db, company_id=company_id, actor=actor, action="invoice.create", entity_type="Invoice",
              entity_id=inv.id, payload={"order_ids": [o.id for o in orders], "txn_ids": txn_ids})

    logger.info("invoice %s created for orders %s at %s", inv.id, order_ids, warehouse_id)
    return inv


def void_invoice(db: Session, *, company_id: str, actor: str, invoice_id: int) -> Invoice:
    """Put the shipped quantity back under its allocations and reopen the orders."""
    with atomic(db):
        inv = get_invoice(db, company_id=company_id, invoice_id=invoice_id, for_update=True)
        if inv.status != InvoiceStatus.POSTED.value:
            raise InvalidState("Invoice", invoice_id, inv.status, "void")

        links = list(inv.order_links)
        orders = [get_order(db, company_id=company_id, order_id=link.order_id, for_update=True)
                  for link in sorted(links, key=lambda ln: ln.order_id)]

        consumptions = (
            db.query(InvoiceConsumption)
            .filter(InvoiceConsumption.invoice_id == inv.id)
            .order_by(InvoiceConsumption.id.asc())
            .all()
        )
        reversal_ids: list[int] = []
        for txn_id in dict.fromkeys(c.txn_id for c in consumptions):
            rev = ledger.reverse(
                db, company_id=company_id, actor=actor, txn_id=txn_id, into_reservation=True,
                note=f"invoice {inv.invoice_no} voided",
            )
            reversal_ids.append(rev.id)

        for c in consumptions:
            al = db.get(AllocationLot, c.allocation_lot_id)
            al.qty_consumed = al.qty_consumed - c.qty
            item = al.allocation_item
            item.qty_invoiced = item.qty_invoiced - c.qty

        for link in links:
            alloc = db.get(Allocation, link.allocation_id)
            alloc.status = AllocationStatus.ACTIVE.value
        for order in orders:
            order.status = OrderStatus.APPROVED.value
            order.invoiced_at = None
            order.updated_by = actor

        inv.status = InvoiceStatus.VOIDED.value
        inv.voided_at = utcnow()
        inv.voided_by = actor
        inv.updated_by = actor
        db.flush()

        publish(db, company_id, "invoice.voided", {"invoice_id": inv.id, "reversal_txn_ids": reversal_ids})
        audit(db, company_id=company_id, actor=actor, action="invoice.void", entity_type="Invoice",
              entity_id=inv.id, payload={"reversal_txn_ids": reversal_ids})

    logger.info("invoice %s voided, %d txn(s) reversed into reservation", invoice_id, len(reversal_ids))
    return inv


def invoice_to_dict(inv: Invoice) -> dict:
    return {
        "id": inv.id,
        "invoice_no": inv.invoice_no,
        "distributor_id": inv.distributor_id,
        "warehouse_id": inv.warehouse_id,
        "invoice_date": inv.invoice_date.isoformat(),
        "status": inv.status,
        "total_amount": str(inv.total_amount),
        "order_ids": [link.order_id for link in inv.order_links],
        "items": [
            {
                "id": it.id,
                "sku_id": it.sku_id,
                "qty": str(it.qty),
                "unit_price": str(it.unit_price),
                "line_total": str(it.line_total),
            }
            for it in inv.items
        ],
    }
