"""Order allocation: FIFO lot reservations held against an approved order.

An allocation is all-or-nothing per order. Reserved lots stay out of
available stock until the invoice ships them or the allocation is cancelled.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import AlreadyAllocated, InvalidState, NotFound, PartiallyConsumed
from app.db.models.common import ZERO, utcnow
from app.db.models.sales import (
    Allocation,
    AllocationItem,
    AllocationLot,
    AllocationStatus,
    OrderStatus,
)
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.sales.orders import get_order

logger = logging.getLogger(__name__)


def get_allocation(db: Session, *, company_id: str, allocation_id: int, for_update: bool = False) -> Allocation:
    q = db.query(Allocation).filter(Allocation.company_id == company_id, Allocation.id == allocation_id)
    if for_update:
        q = q.with_for_update().populate_existing()
    a = q.first()
    if not a:
        raise NotFound("Allocation", allocation_id)
    return a


def live_allocation(db: Session, *, company_id: str, order_id: int, for_update: bool = False) -> Allocation | None:
    """The order's allocation that is not cancelled, if any."""
    q = db.query(Allocation).filter(
        Allocation.company_id == company_id,
        Allocation.order_id == order_id,
        Allocation.status != AllocationStatus.CANCELLED.value,
    )
    if for_update:
        q = q.with_for_update().populate_existing()
    return q.first()


def allocate(db: Session, *, company_id: str, actor: str, order_id: int, warehouse_id: str) -> Allocation:
    with atomic(db):
        order = get_order(db, company_id=company_id, order_id=order_id, for_update=True)
        if order.status != OrderStatus.APPROVED.value:
            raise InvalidState("SalesOrder", order_id, order.status, "allocate")
        existing = live_allocation(db, company_id=company_id, order_id=order_id)
        if existing:
            raise AlreadyAllocated(order_id, existing.id)

        alloc = Allocation(
            company_id=company_id,
            order_id=order.id,
            warehouse_id=warehouse_id,
            status=AllocationStatus.ACTIVE.value,
            allocated_at=utcnow(),
            created_by=actor,
        )
        # sku order keeps the lock sequence stable across concurrent allocations
        for item in sorted(order.items, key=lambda it: (it.sku_id, it.id)):
            picks = ledger.reserve_fifo(
                db, company_id=company_id, warehouse_id=warehouse_id, sku_id=item.sku_id, qty=item.qty
            )
            alloc.items.append(
                AllocationItem(
                    order_item_id=item.id,
                    sku_id=item.sku_id,
                    qty_allocated=item.qty,
                    qty_invoiced=ZERO,
                    lots=[AllocationLot(lot_id=lot.id, qty_reserved=take, qty_consumed=ZERO) for lot, take in picks],
                )
            )
        db.add(alloc)
        db.flush()

        payload = allocation_to_dict(alloc)
        publish(db, company_id, "order.allocated", payload)
        audit(db, company_id=company_id, actor=actor, action="order.allocate", entity_type="Allocation",
              entity_id=alloc.id, payload={"order_id": order.id, "warehouse_id": warehouse_id})

    logger.info("order %s allocated at %s as allocation %s", order_id, warehouse_id, alloc.id)
    return alloc


def cancel_allocation(db: Session, *, company_id: str, actor: str, allocation_id: int) -> Allocation:
    """Hand every reserved lot quantity back; refused once anything was invoiced."""
    with atomic(db):
        alloc = get_allocation(db, company_id=company_id, allocation_id=allocation_id, for_update=True)
        # any consumed quantity blocks cancellation, INVOICED allocations included
        if any(al.qty_consumed > 0 for it in alloc.items for al in it.lots):
            raise PartiallyConsumed(allocation_id)
        if alloc.status != AllocationStatus.ACTIVE.value:
            raise InvalidState("Allocation", allocation_id, alloc.status, "cancel")

        for item in sorted(alloc.items, key=lambda it: (it.sku_id, it.id)):
            ledger.release_reservation(
                db,
                company_id=company_id,
                warehouse_id=alloc.warehouse_id,
                sku_id=item.sku_id,
                lots=[(al.lot_id, al.qty_reserved) for al in item.lots],
            )

        alloc.status = AllocationStatus.CANCELLED.value
        alloc.cancelled_at = utcnow()
        alloc.cancelled_by = actor
        db.flush()

        publish(db, company_id, "order.allocation_cancelled", {"allocation_id": alloc.id, "order_id": alloc.order_id})
        audit(db, company_id=company_id, actor=actor, action="order.allocation_cancel", entity_type="Allocation",
              entity_id=alloc.id, payload={"order_id": alloc.order_id})

    logger.info("allocation %s cancelled", allocation_id)
    return alloc


def allocation_to_dict(a: Allocation) -> dict:
    return {
        "id": a.id,
        "order_id": a.order_id,
        "warehouse_id": a.warehouse_id,
        "status": a.status,
        "items": [
            {
                "id": it.id,
                "order_item_id": it.order_item_id,
                "sku_id": it.sku_id,
                "qty_allocated": str(it.qty_allocated),
                "qty_invoiced": str(it.qty_invoiced),
                "lots": [
                    {
                        "id": al.id,
                        "lot_id": al.lot_id,
                        "qty_reserved": str(al.qty_reserved),
                        "qty_consumed": str(al.qty_consumed),
                    }
                    for al in it.lots
                ],
            }
            for it in a.items
        ],
    }
