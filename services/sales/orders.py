from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import DuplicateOperation, InvalidRequest, InvalidState, NotFound
from app.db.models.common import ZERO, to_decimal, utcnow
from app.db.models.sales import OrderStatus, SalesOrder, SalesOrderItem
from app.db.session import atomic

logger = logging.getLogger(__name__)

# action -> (statuses it may start from, resulting status)
_TRANSITIONS = {
    "submit": ({OrderStatus.DRAFT.value}, OrderStatus.SUBMITTED),
    "approve": ({OrderStatus.SUBMITTED.value}, OrderStatus.APPROVED),
    "reject": ({OrderStatus.SUBMITTED.value}, OrderStatus.REJECTED),
    "cancel": ({OrderStatus.DRAFT.value, OrderStatus.SUBMITTED.value}, OrderStatus.CANCELLED),
}


def get_order(db: Session, *, company_id: str, order_id: int, for_update: bool = False) -> SalesOrder:
    q = db.query(SalesOrder).filter(
        SalesOrder.company_id == company_id,
        SalesOrder.id == order_id,
        SalesOrder.deleted_at.is_(None),
    )
    if for_update:
        q = q.with_for_update().populate_existing()
    o = q.first()
    if not o:
        raise NotFound("SalesOrder", order_id)
    return o


def create_order(
    db: Session,
    *,
    company_id: str,
    actor: str,
    order_no: str,
    distributor_id: str,
    order_date: date,
    lines: list[dict],
    outlet_id: str | None = None,
    remarks: str | None = None,
    submit: bool = False,
) -> SalesOrder:
    if not lines:
        raise InvalidRequest("An order needs at least one line")
    with atomic(db):
        dup = (
            db.query(SalesOrder.id)
            .filter(SalesOrder.company_id == company_id, SalesOrder.order_no == order_no)
            .first()
        )
        if dup:
            raise DuplicateOperation("create_order", order_no)

        o = SalesOrder(
            company_id=company_id,
            order_no=order_no,
            distributor_id=distributor_id,
            outlet_id=outlet_id,
            order_date=order_date,
            status=OrderStatus.DRAFT.value,
            remarks=remarks,
            created_by=actor,
        )
        total = ZERO
        for i, ln in enumerate(lines, start=1):
            qty = to_decimal(ln["qty"])
            unit_price = to_decimal(ln.get("unit_price") or 0)
            if qty <= 0:
                raise InvalidRequest(f"Order quantity must be > 0 (line {i})", line_no=i, qty=qty)
            if unit_price < 0:
                raise InvalidRequest(f"Unit price must be >= 0 (line {i})", line_no=i)
            line_total = qty * unit_price
            o.items.append(
                SalesOrderItem(
                    line_no=int(ln.get("line_no") or i),
                    sku_id=ln["sku_id"],
                    qty=qty,
                    unit_price=unit_price,
                    line_total=line_total,
                )
            )
            total += line_total
        o.total_amount = total
        if submit:
            o.status = OrderStatus.SUBMITTED.value
            o.submitted_at = utcnow()
            o.submitted_by = actor

        db.add(o)
        db.flush()
        audit(db, company_id=company_id, actor=actor, action="order.create", entity_type="SalesOrder",
              entity_id=o.id, payload={"order_no": order_no, "status": o.status})
    return o


def transition(
    db: Session, *, company_id: str, actor: str, order_id: int, action: str, reason: str | None = None
) -> SalesOrder:
    if action not in _TRANSITIONS:
        raise InvalidRequest(f"Unknown order action {action}", action=action)
    allowed, target = _TRANSITIONS[action]

    with atomic(db):
        o = get_order(db, company_id=company_id, order_id=order_id, for_update=True)
        if o.status not in allowed:
            raise InvalidState("SalesOrder", order_id, o.status, action)

        now = utcnow()
        o.status = target.value
        o.updated_by = actor
        if target == OrderStatus.SUBMITTED:
            o.submitted_at, o.submitted_by = now, actor
        elif target == OrderStatus.APPROVED:
            o.approved_at, o.approved_by = now, actor
        elif target == OrderStatus.REJECTED:
            o.rejected_at, o.rejected_by, o.reject_reason = now, actor, reason
        elif target == OrderStatus.CANCELLED:
            o.cancelled_at, o.cancelled_by = now, actor
        db.flush()
        audit(db, company_id=company_id, actor=actor, action=f"order.{action}", entity_type="SalesOrder",
              entity_id=o.id, payload={"status": o.status, "reason": reason})

    logger.info("order %s %s -> %s", order_id, action, target.value)
    return o


def submit_order(db: Session, *, company_id: str, actor: str, order_id: int) -> SalesOrder:
    return transition(db, company_id=company_id, actor=actor, order_id=order_id, action="submit")


def approve_order(db: Session, *, company_id: str, actor: str, order_id: int) -> SalesOrder:
    return transition(db, company_id=company_id, actor=actor, order_id=order_id, action="approve")


def reject_order(db: Session, *, company_id: str, actor: str, order_id: int, reason: str | None = None) -> SalesOrder:
    return transition(db, company_id=company_id, actor=actor, order_id=order_id, action="reject", reason=reason)


def cancel_order(db: Session, *, company_id: str, actor: str, order_id: int) -> SalesOrder:
    return transition(db, company_id=company_id, actor=actor, order_id=order_id, action="cancel")


def order_to_dict(o: SalesOrder) -> dict:
    return {
        "id": o.id,
        "order_no": o.order_no,
        "distributor_id": o.distributor_id,
        "outlet_id": o.outlet_id,
        "order_date": o.order_date.isoformat(),
        "status": o.status,
        "total_amount": str(o.total_amount),
        "reject_reason": o.reject_reason,
        "items": [
            {
                "id": it.id,
                "line_no": it.line_no,
                "sku_id": it.sku_id,
                "qty": str(it.qty),
                "unit_price": str(it.unit_price),
                "line_total": str(it.line_total),
            }
            for it in o.items
        ],
    }
