from __future__ import annotations

import logging
from datetime import date, datetime
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import DuplicateOperation, InvalidRequest, InvalidState, NotFound, OverReceipt
from app.db.models.common import ZERO, to_decimal, utcnow
from app.db.models.inventory import Direction, Grn, GrnItem, GrnStatus, RefDocType, TxnType
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger

logger = logging.getLogger(__name__)


def get_grn(db: Session, *, company_id: str, grn_id: int, for_update: bool = False) -> Grn:
    q = db.query(Grn).filter(Grn.company_id == company_id, Grn.id == grn_id, Grn.deleted_at.is_(None))
    if for_update:
        q = q.with_for_update().populate_existing()
    grn = q.first()
    if not grn:
        raise NotFound("Grn", grn_id)
    return grn


def create_grn(
    db: Session,
    *,
    company_id: str,
    actor: str,
    warehouse_id: str,
    grn_no: str,
    grn_date: date,
    items: list[dict],
    supplier_name: str | None = None,
    reference_no: str | None = None,
) -> Grn:
    if not items:
        raise InvalidRequest("A GRN needs at least one item")
    with atomic(db):
        dup = db.query(Grn.id).filter(Grn.company_id == company_id, Grn.grn_no == grn_no).first()
        if dup:
            raise DuplicateOperation("create_grn", grn_no)

        grn = Grn(
            company_id=company_id,
            grn_no=grn_no,
            warehouse_id=warehouse_id,
            grn_date=grn_date,
            supplier_name=supplier_name,
            reference_no=reference_no,
            status=GrnStatus.DRAFT.value,
            created_by=actor,
        )
        seen: set[int] = set()
        for it in items:
            line_no = int(it["line_no"])
            if line_no in seen:
                raise InvalidRequest(f"Duplicate GRN line {line_no}", line_no=line_no)
            seen.add(line_no)
            qty_expected = to_decimal(it["qty_expected"])
            if qty_expected <= 0:
                raise InvalidRequest(f"qty_expected must be > 0 (line {line_no})", line_no=line_no)
            unit_cost = it.get("unit_cost")
            grn.items.append(
                GrnItem(
                    line_no=line_no,
                    sku_id=it["sku_id"],
                    qty_expected=qty_expected,
                    qty_received=ZERO,
                    unit_cost=to_decimal(unit_cost) if unit_cost is not None else None,
                )
            )
        db.add(grn)
        db.flush()
        audit(db, company_id=company_id, actor=actor, action="grn.create", entity_type="Grn", entity_id=grn.id,
              payload={"grn_no": grn_no, "lines": len(items)})
    return grn


def receive_grn(
    db: Session,
    *,
    company_id: str,
    actor: str,
    grn_id: int,
    lines: list[dict],
    received_at: datetime | None = None,
) -> Grn:
    """Receive stock against a draft GRN; each line becomes a new lot."""
    if not lines:
        raise InvalidRequest("Nothing to receive")
    received_at = received_at or utcnow()
    with atomic(db):
        grn = get_grn(db, company_id=company_id, grn_id=grn_id, for_update=True)
        if grn.status != GrnStatus.DRAFT.value:
            raise InvalidState("Grn", grn_id, grn.status, "receive")
        by_line = {it.line_no: it for it in grn.items}

        txn_ids: list[int] = []
        for ln in lines:
            item = by_line.get(int(ln["line_no"]))
            if not item:
                raise NotFound("GrnItem", ln["line_no"])
            qty = to_decimal(ln["qty"])
            if qty <= 0:
                raise InvalidRequest(f"Receipt quantity must be > 0 (line {item.line_no})", line_no=item.line_no)
            outstanding = item.qty_expected - item.qty_received
            if qty > outstanding:
                raise OverReceipt(item.id, qty, outstanding)

            unit_cost = ln.get("unit_cost")
            txn = ledger.post(
                db,
                company_id=company_id,
                actor=actor,
                txn_type=TxnType.GRN_IN,
                direction=Direction.IN,
                warehouse_id=grn.warehouse_id,
                sku_id=item.sku_id,
                qty=qty,
                ref_doc_type=RefDocType.GRN,
                ref_doc_id=grn.id,
                txn_time=received_at,
                batch_no=ln.get("batch_no"),
                expiry_date=ln.get("expiry_date"),
                unit_cost=to_decimal(unit_cost) if unit_cost is not None else item.unit_cost,
            )
            item.qty_received = item.qty_received + qty
            txn_ids.append(txn.id)

        grn.updated_by = actor
        db.flush()
        publish(db, company_id, "grn.received", {"grn_id": grn.id, "txn_ids": txn_ids})
        audit(db, company_id=company_id, actor=actor, action="grn.receive", entity_type="Grn", entity_id=grn.id,
              payload={"txn_ids": txn_ids})

    logger.info("grn %s received %d line(s)", grn_id, len(lines))
    return grn


def post_grn(db: Session, *, company_id: str, actor: str, grn_id: int) -> Grn:
    with atomic(db):
        grn = get_grn(db, company_id=company_id, grn_id=grn_id, for_update=True)
        if grn.status != GrnStatus.DRAFT.value:
            raise InvalidState("Grn", grn_id, grn.status, "post")
        short = [it.line_no for it in grn.items if it.qty_received < it.qty_expected]
        if short:
            raise InvalidState("Grn", grn_id, f"{grn.status} with unreceived lines {short}", "post")

        grn.status = GrnStatus.POSTED.value
        grn.posted_at = utcnow()
        grn.posted_by = actor
        grn.updated_by = actor
        db.flush()
        publish(db, company_id, "grn.posted", {"grn_id": grn.id, "grn_no": grn.grn_no})
        audit(db, company_id=company_id, actor=actor, action="grn.post", entity_type="Grn", entity_id=grn.id)

    logger.info("grn %s posted", grn_id)
    return grn


def delete_grn(db: Session, *, company_id: str, actor: str, grn_id: int) -> Grn:
    with atomic(db):
        grn = get_grn(db, company_id=company_id, grn_id=grn_id, for_update=True)
        if grn.status != GrnStatus.DRAFT.value:
            raise InvalidState("Grn", grn_id, grn.status, "delete")
        if any(it.qty_received > 0 for it in grn.items):
            raise InvalidState("Grn", grn_id, "partially received", "delete")
        grn.deleted_at = utcnow()
        grn.deleted_by = actor
        db.flush()
        audit(db, company_id=company_id, actor=actor, action="grn.delete", entity_type="Grn", entity_id=grn.id)
    return grn


def grn_to_dict(grn: Grn) -> dict:
    return {
        "id": grn.id,
        "grn_no": grn.grn_no,
        "warehouse_id": grn.warehouse_id,
        "grn_date": grn.grn_date.isoformat(),
        "supplier_name": grn.supplier_name,
        "reference_no": grn.reference_no,
        "status": grn.status,
        "posted_at": grn.posted_at.isoformat() if grn.posted_at else None,
        "items": [
            {
                "id": it.id,
                "line_no": it.line_no,
                "sku_id": it.sku_id,
                "qty_expected": str(it.qty_expected),
                "qty_received": str(it.qty_received),
                "unit_cost": str(it.unit_cost) if it.unit_cost is not None else None,
            }
            for it in grn.items
        ],
    }
