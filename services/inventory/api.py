from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query as Q
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import InvalidRequest, NotFound
from app.core.security import Principal, get_principal
from app.db.models.inventory import Direction, Lot, RefDocType, StockBalance, StockTxn, TxnType
from app.db.session import atomic, get_db, run_with_retry
from services._crud import paginate
from services.inventory import grn as grn_service
from services.inventory import ledger

router = APIRouter(prefix="/inventory", tags=["inventory"])


# ---- Schemas ----
class LotQtyIn(BaseModel):
    lot_id: int
    qty: Decimal = Field(..., gt=0)


class LedgerPostIn(BaseModel):
    direction: Direction
    warehouse_id: str = Field(..., max_length=64)
    sku_id: str = Field(..., max_length=64)
    qty: Decimal = Field(..., gt=0)
    ref_doc_id: int | None = None
    lots: list[LotQtyIn] | None = None
    txn_time: datetime | None = None
    batch_no: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None
    unit_cost: Decimal | None = Field(default=None, ge=0)
    note: str | None = None


class ReverseIn(BaseModel):
    note: str | None = None


class RebuildIn(BaseModel):
    warehouse_id: str = Field(..., max_length=64)
    sku_id: str = Field(..., max_length=64)
    dry_run: bool = False


class GrnItemIn(BaseModel):
    line_no: int = Field(..., ge=1)
    sku_id: str = Field(..., max_length=64)
    qty_expected: Decimal = Field(..., gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)


class GrnIn(BaseModel):
    grn_no: str = Field(..., max_length=64)
    warehouse_id: str = Field(..., max_length=64)
    grn_date: date
    supplier_name: str | None = Field(default=None, max_length=256)
    reference_no: str | None = Field(default=None, max_length=64)
    items: list[GrnItemIn] = Field(..., min_length=1)


class GrnReceiveLineIn(BaseModel):
    line_no: int
    qty: Decimal = Field(..., gt=0)
    batch_no: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None
    unit_cost: Decimal | None = Field(default=None, ge=0)


class GrnReceiveIn(BaseModel):
    lines: list[GrnReceiveLineIn] = Field(..., min_length=1)
    received_at: datetime | None = None


def txn_to_dict(t: StockTxn) -> dict:
    return {
        "id": t.id,
        **ledger.txn_payload(t),
        "txn_time": t.txn_time.isoformat(),
        "reversal_of_txn_id": t.reversal_of_txn_id,
        "note": t.note,
        "created_by": t.created_by,
    }


def lot_to_dict(lot: Lot) -> dict:
    return {
        "id": lot.id,
        "warehouse_id": lot.warehouse_id,
        "sku_id": lot.sku_id,
        "source_doc_type": lot.source_doc_type,
        "source_doc_id": lot.source_doc_id,
        "received_at": lot.received_at.isoformat(),
        "batch_no": lot.batch_no,
        "expiry_date": lot.expiry_date.isoformat() if lot.expiry_date else None,
        "unit_cost": str(lot.unit_cost) if lot.unit_cost is not None else None,
        "qty_received": str(lot.qty_received),
        "qty_available": str(lot.qty_available),
    }


def balance_to_dict(b: StockBalance) -> dict:
    return {
        "warehouse_id": b.warehouse_id,
        "sku_id": b.sku_id,
        "qty_on_hand": str(b.qty_on_hand),
        "qty_reserved": str(b.qty_reserved),
        "qty_available_to_promise": str(b.qty_available_to_promise),
    }


# ---- Ledger ----
def _post_adjustment(db: Session, principal: Principal, payload: LedgerPostIn) -> StockTxn:
    with atomic(db):
        txn = ledger.post(
            db,
            company_id=principal.company_id,
            actor=principal.actor,
            txn_type=TxnType.ADJUSTMENT_IN if payload.direction == Direction.IN else TxnType.ADJUSTMENT_OUT,
            direction=payload.direction,
            warehouse_id=payload.warehouse_id,
            sku_id=payload.sku_id,
            qty=payload.qty,
            ref_doc_type=RefDocType.ADJUSTMENT,
            ref_doc_id=payload.ref_doc_id,
            lot_selection=[(ln.lot_id, ln.qty) for ln in payload.lots] if payload.lots else None,
            txn_time=payload.txn_time,
            batch_no=payload.batch_no,
            expiry_date=payload.expiry_date,
            unit_cost=payload.unit_cost,
            note=payload.note,
        )
        audit(db, company_id=principal.company_id, actor=principal.actor, action="inventory.post",
              entity_type="StockTxn", entity_id=txn.id, payload=ledger.txn_payload(txn))
    return txn


def _reverse_adjustment(db: Session, principal: Principal, txn_id: int, note: str | None) -> StockTxn:
    with atomic(db):
        orig = db.query(StockTxn).filter(StockTxn.company_id == principal.company_id, StockTxn.id == txn_id).first()
        if not orig:
            raise NotFound("StockTxn", txn_id)
        # document-driven movements are undone through their document (cancel/void)
        if orig.ref_doc_type != RefDocType.ADJUSTMENT.value:
            raise InvalidRequest(
                f"Txn {txn_id} belongs to {orig.ref_doc_type} {orig.ref_doc_id}; reverse it through that document",
                ref_doc_type=orig.ref_doc_type,
            )
        rev = ledger.reverse(db, company_id=principal.company_id, actor=principal.actor, txn_id=txn_id, note=note)
        audit(db, company_id=principal.company_id, actor=principal.actor, action="inventory.reverse",
              entity_type="StockTxn", entity_id=txn_id, payload={"reversal_txn_id": rev.id})
    return rev


@router.post("/ledger/post")
def post_txn(payload: LedgerPostIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    txn = run_with_retry(_post_adjustment, db, principal, payload)
    return txn_to_dict(txn)


@router.post("/ledger/{txn_id}/reverse")
def reverse_txn(
    txn_id: int,
    payload: ReverseIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    rev = run_with_retry(_reverse_adjustment, db, principal, txn_id, payload.note if payload else None)
    return txn_to_dict(rev)


@router.get("/txns")
def list_txns(
    ref_doc_type: RefDocType | None = None,
    ref_doc_id: int | None = None,
    warehouse_id: str | None = None,
    sku_id: str | None = None,
    page: int = Q(1, ge=1),
    limit: int = Q(50, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    q = db.query(StockTxn).filter(StockTxn.company_id == principal.company_id)
    if ref_doc_type:
        q = q.filter(StockTxn.ref_doc_type == ref_doc_type.value)
    if ref_doc_id is not None:
        q = q.filter(StockTxn.ref_doc_id == ref_doc_id)
    if warehouse_id:
        q = q.filter(StockTxn.warehouse_id == warehouse_id)
    if sku_id:
        q = q.filter(StockTxn.sku_id == sku_id)
    rows, meta = paginate(q.order_by(StockTxn.id.asc()), page=page, limit=limit)
    return {**meta, "rows": [txn_to_dict(t) for t in rows]}


# ---- Balances & lots ----
@router.get("/balances")
def list_balances(
    warehouse_id: str | None = None,
    sku_id: str | None = None,
    page: int = Q(1, ge=1),
    limit: int = Q(50, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    q = db.query(StockBalance).filter(StockBalance.company_id == principal.company_id)
    if warehouse_id:
        q = q.filter(StockBalance.warehouse_id == warehouse_id)
    if sku_id:
        q = q.filter(StockBalance.sku_id == sku_id)
    rows, meta = paginate(q.order_by(StockBalance.warehouse_id, StockBalance.sku_id), page=page, limit=limit)
    return {**meta, "rows": [balance_to_dict(b) for b in rows]}


@router.post("/balances/rebuild")
def rebuild_balance(payload: RebuildIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    kwargs = {"company_id": principal.company_id, "warehouse_id": payload.warehouse_id, "sku_id": payload.sku_id}
    if payload.dry_run:
        report = ledger.check_balance(db, **kwargs)
        return {
            **report,
            "cached": {k: str(v) for k, v in report["cached"].items()},
            "computed": {k: str(v) for k, v in report["computed"].items()},
        }
    bal = run_with_retry(ledger.rebuild_balance, db, **kwargs)
    return balance_to_dict(bal)


@router.get("/lots")
def list_lots(
    warehouse_id: str | None = None,
    sku_id: str | None = None,
    only_available: bool = False,
    expiry_before: date | None = None,
    page: int = Q(1, ge=1),
    limit: int = Q(50, ge=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    q = db.query(Lot).filter(Lot.company_id == principal.company_id)
    if warehouse_id:
        q = q.filter(Lot.warehouse_id == warehouse_id)
    if sku_id:
        q = q.filter(Lot.sku_id == sku_id)
    if only_available:
        q = q.filter(Lot.qty_available > 0)
    if expiry_before:
        q = q.filter(Lot.expiry_date.is_not(None), Lot.expiry_date < expiry_before)
    rows, meta = paginate(q.order_by(Lot.received_at.asc(), Lot.id.asc()), page=page, limit=limit)
    return {**meta, "rows": [lot_to_dict(lot) for lot in rows]}


# ---- GRN ----
@router.post("/grns")
def create_grn(payload: GrnIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    grn = grn_service.create_grn(
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        warehouse_id=payload.warehouse_id,
        grn_no=payload.grn_no,
        grn_date=payload.grn_date,
        supplier_name=payload.supplier_name,
        reference_no=payload.reference_no,
        items=[it.model_dump() for it in payload.items],
    )
    return grn_service.grn_to_dict(grn)


@router.get("/grns/{grn_id}")
def get_grn(grn_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return grn_service.grn_to_dict(grn_service.get_grn(db, company_id=principal.company_id, grn_id=grn_id))


@router.post("/grns/{grn_id}/receive")
def receive_grn(
    grn_id: int, payload: GrnReceiveIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)
):
    grn = run_with_retry(
        grn_service.receive_grn,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        grn_id=grn_id,
        lines=[ln.model_dump() for ln in payload.lines],
        received_at=payload.received_at,
    )
    return grn_service.grn_to_dict(grn)


@router.post("/grns/{grn_id}/post")
def post_grn(grn_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    grn = grn_service.post_grn(db, company_id=principal.company_id, actor=principal.actor, grn_id=grn_id)
    return grn_service.grn_to_dict(grn)


@router.delete("/grns/{grn_id}")
def delete_grn(grn_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    grn = grn_service.delete_grn(db, company_id=principal.company_id, actor=principal.actor, grn_id=grn_id)
    return {"id": grn.id, "deleted": True}
