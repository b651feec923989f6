from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, get_principal
from app.db.models.sales import Allocation
from app.db.session import get_db, run_with_retry
from services.sales import allocation as allocation_service
from services.sales import orders

router = APIRouter(prefix="/sales", tags=["sales"])


# ---- Schemas ----
class OrderLineIn(BaseModel):
    line_no: int | None = Field(default=None, ge=1)
    sku_id: str = Field(..., max_length=64)
    qty: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


class OrderIn(BaseModel):
    order_no: str = Field(..., max_length=64)
    distributor_id: str = Field(..., max_length=64)
    outlet_id: str | None = Field(default=None, max_length=64)
    order_date: date
    remarks: str | None = None
    submit: bool = False
    lines: list[OrderLineIn] = Field(..., min_length=1)


class RejectIn(BaseModel):
    reason: str | None = None


class AllocateIn(BaseModel):
    warehouse_id: str = Field(..., max_length=64)


def _order_view(db: Session, principal: Principal, order) -> dict:
    body = orders.order_to_dict(order)
    live = allocation_service.live_allocation(db, company_id=principal.company_id, order_id=order.id)
    body["allocation"] = allocation_service.allocation_to_dict(live) if live else None
    return body


# ---- Orders ----
@router.post("/orders")
def create_order(payload: OrderIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    o = orders.create_order(
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        order_no=payload.order_no,
        distributor_id=payload.distributor_id,
        outlet_id=payload.outlet_id,
        order_date=payload.order_date,
        remarks=payload.remarks,
        submit=payload.submit,
        lines=[ln.model_dump() for ln in payload.lines],
    )
    return orders.order_to_dict(o)


@router.get("/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    o = orders.get_order(db, company_id=principal.company_id, order_id=order_id)
    return _order_view(db, principal, o)


@router.post("/orders/{order_id}/submit")
def submit_order(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    o = orders.submit_order(db, company_id=principal.company_id, actor=principal.actor, order_id=order_id)
    return orders.order_to_dict(o)


@router.post("/orders/{order_id}/approve")
def approve_order(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    o = orders.approve_order(db, company_id=principal.company_id, actor=principal.actor, order_id=order_id)
    return orders.order_to_dict(o)


@router.post("/orders/{order_id}/reject")
def reject_order(
    order_id: int,
    payload: RejectIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    o = orders.reject_order(
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        order_id=order_id,
        reason=payload.reason if payload else None,
    )
    return orders.order_to_dict(o)


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    o = orders.cancel_order(db, company_id=principal.company_id, actor=principal.actor, order_id=order_id)
    return orders.order_to_dict(o)


# ---- Allocation ----
@router.post("/orders/{order_id}/allocate")
def allocate_order(
    order_id: int, payload: AllocateIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)
):
    a = run_with_retry(
        allocation_service.allocate,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        order_id=order_id,
        warehouse_id=payload.warehouse_id,
    )
    return allocation_service.allocation_to_dict(a)


@router.get("/allocations/{allocation_id}")
def get_allocation(allocation_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    a: Allocation = allocation_service.get_allocation(db, company_id=principal.company_id, allocation_id=allocation_id)
    return allocation_service.allocation_to_dict(a)


@router.post("/allocations/{allocation_id}/cancel")
def cancel_allocation(
    allocation_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)
):
    a = run_with_retry(
        allocation_service.cancel_allocation,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        allocation_id=allocation_id,
    )
    return allocation_service.allocation_to_dict(a)
