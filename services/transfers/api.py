from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, get_principal
from app.db.session import get_db, run_with_retry
from services.transfers import service

router = APIRouter(prefix="/transfers", tags=["transfers"])


# ---- Schemas ----
class TransferItemIn(BaseModel):
    line_no: int | None = Field(default=None, ge=1)
    sku_id: str = Field(..., max_length=64)
    qty_planned: Decimal = Field(..., gt=0)


class TransferIn(BaseModel):
    transfer_no: str = Field(..., max_length=64)
    from_warehouse_id: str = Field(..., max_length=64)
    to_warehouse_id: str = Field(..., max_length=64)
    note: str | None = None
    items: list[TransferItemIn] = Field(..., min_length=1)


class LotQtyIn(BaseModel):
    lot_id: int
    qty: Decimal = Field(..., gt=0)


class DispatchLineIn(BaseModel):
    item_id: int
    # validated by the service so a zero line surfaces as INVALID_DISPATCH_QUANTITY
    qty: Decimal
    lots: list[LotQtyIn] | None = None


class DispatchIn(BaseModel):
    lines: list[DispatchLineIn] = Field(..., min_length=1)
    dispatched_at: datetime | None = None


class ReceiveLineIn(BaseModel):
    item_id: int
    qty: Decimal = Field(..., gt=0)


class ReceiveIn(BaseModel):
    lines: list[ReceiveLineIn] = Field(..., min_length=1)
    received_at: datetime | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


@router.post("")
def create_transfer(payload: TransferIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    t = service.create_transfer(
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        transfer_no=payload.transfer_no,
        from_warehouse_id=payload.from_warehouse_id,
        to_warehouse_id=payload.to_warehouse_id,
        note=payload.note,
        items=[it.model_dump() for it in payload.items],
    )
    return service.transfer_to_dict(t)


@router.get("/{transfer_id}")
def get_transfer(transfer_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return service.transfer_to_dict(
        service.get_transfer(db, company_id=principal.company_id, transfer_id=transfer_id)
    )


@router.post("/{transfer_id}/dispatch")
def dispatch_transfer(
    transfer_id: int, payload: DispatchIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)
):
    lines = [
        {
            "item_id": ln.item_id,
            "qty": ln.qty,
            "lots": [(lq.lot_id, lq.qty) for lq in ln.lots] if ln.lots else None,
        }
        for ln in payload.lines
    ]
    t = run_with_retry(
        service.dispatch,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        transfer_id=transfer_id,
        lines=lines,
        dispatched_at=payload.dispatched_at,
    )
    return service.transfer_to_dict(t)


@router.post("/{transfer_id}/receive")
def receive_transfer(
    transfer_id: int,
    payload: ReceiveIn,
    idempotency_key: str | None = Header(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    t = run_with_retry(
        service.receive,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        transfer_id=transfer_id,
        lines=[ln.model_dump() for ln in payload.lines],
        idempotency_key=idempotency_key or payload.idempotency_key,
        received_at=payload.received_at,
    )
    return service.transfer_to_dict(t)


@router.post("/{transfer_id}/cancel")
def cancel_transfer(transfer_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    t = run_with_retry(
        service.cancel, db, company_id=principal.company_id, actor=principal.actor, transfer_id=transfer_id
    )
    return service.transfer_to_dict(t)
