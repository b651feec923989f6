"""Lot store: per-receipt stock with its own remaining quantity.

Callers hold the enclosing transaction; nothing here commits.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from app.core.errors import InsufficientLotQuantity, InvalidRequest, NotFound, OverReplenishment
from app.db.models.common import to_decimal, utcnow
from app.db.models.inventory import Lot
from app.db.models.master import MdSku


def sku_tracking(db: Session, company_id: str, sku_id: str) -> tuple[bool, bool]:
    """(is_batch_tracked, is_expiry_tracked); unknown SKUs are untracked."""
    sku = db.query(MdSku).filter(MdSku.company_id == company_id, MdSku.code == sku_id).first()
    if not sku:
        return False, False
    return bool(sku.is_batch_tracked), bool(sku.is_expiry_tracked)


def receive_lot(
    db: Session,
    *,
    company_id: str,
    actor: str,
    warehouse_id: str,
    sku_id: str,
    source_doc_type: str,
    source_doc_id: int | None,
    qty: Decimal,
    received_at: datetime | None = None,
    batch_no: str | None = None,
    expiry_date: date | None = None,
    unit_cost: Decimal | None = None,
) -> Lot:
    qty = to_decimal(qty)
    if qty <= 0:
        raise InvalidRequest(f"Lot quantity must be > 0, got {qty}", qty=qty)

    batch_tracked, expiry_tracked = sku_tracking(db, company_id, sku_id)
    if batch_tracked and not batch_no:
        raise InvalidRequest(f"SKU {sku_id} is batch tracked; batch_no is required", sku_id=sku_id)
    if expiry_tracked and not expiry_date:
        raise InvalidRequest(f"SKU {sku_id} is expiry tracked; expiry_date is required", sku_id=sku_id)

    lot = Lot(
        company_id=company_id,
        warehouse_id=warehouse_id,
        sku_id=sku_id,
        source_doc_type=source_doc_type,
        source_doc_id=source_doc_id,
        received_at=received_at or utcnow(),
        batch_no=batch_no,
        expiry_date=expiry_date,
        unit_cost=to_decimal(unit_cost) if unit_cost is not None else None,
        qty_received=qty,
        qty_available=qty,
        created_by=actor,
    )
    db.add(lot)
    return lot


def lock_lots(db: Session, company_id: str, lot_ids: Iterable[int]) -> dict[int, Lot]:
    """SELECT ... FOR UPDATE in ascending id order (the global lock order for lots)."""
    ids = sorted(set(lot_ids))
    if not ids:
        return {}
    rows = (
        db.query(Lot)
        .filter(Lot.company_id == company_id, Lot.id.in_(ids))
        .order_by(Lot.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    found = {lot.id: lot for lot in rows}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFound("Lot", missing[0])
    return found


def debit(lot: Lot, qty: Decimal) -> Lot:
    """Take ``qty`` out of a locked lot."""
    qty = to_decimal(qty)
    if qty <= 0:
        raise InvalidRequest(f"Debit quantity must be > 0, got {qty}", lot_id=lot.id, qty=qty)
    if qty > lot.qty_available:
        raise InsufficientLotQuantity(lot.id, qty, lot.qty_available)
    lot.qty_available = lot.qty_available - qty
    return lot


def credit(lot: Lot, qty: Decimal) -> Lot:
    """Give back a previous debit; a lot never holds more than it received."""
    qty = to_decimal(qty)
    if qty <= 0:
        raise InvalidRequest(f"Credit quantity must be > 0, got {qty}", lot_id=lot.id, qty=qty)
    if lot.qty_available + qty > lot.qty_received:
        raise OverReplenishment(lot.id, qty, lot.qty_available, lot.qty_received)
    lot.qty_available = lot.qty_available + qty
    return lot
