"""Transfer reconciliation: goods leaving one warehouse and arriving at another.

OPEN -> DISPATCHED -> PARTIALLY_RECEIVED -> CLOSED, and CANCELLED from OPEN or
from DISPATCHED while nothing has been received.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import (
    DuplicateOperation,
    InvalidDispatchQuantity,
    InvalidRequest,
    InvalidState,
    NotFound,
    OverReceipt,
)
from app.db.models.common import ZERO, to_decimal, utcnow
from app.db.models.inventory import Direction, RefDocType, StockTxn, TxnType
from app.db.models.transfer import Transfer, TransferInTransit, TransferItem, TransferStatus
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.inventory.idempotency import claim_operation_key

logger = logging.getLogger(__name__)

RECEIVE_OPERATION = "transfer.receive"

_DISPATCHABLE = {TransferStatus.OPEN.value, TransferStatus.DISPATCHED.value, TransferStatus.PARTIALLY_RECEIVED.value}


def get_transfer(db: Session, *, company_id: str, transfer_id: int, for_update: bool = False) -> Transfer:
    q = db.query(Transfer).filter(Transfer.company_id == company_id, Transfer.id == transfer_id)
    if for_update:
        q = q.with_for_update().populate_existing()
    t = q.first()
    if not t:
        raise NotFound("Transfer", transfer_id)
    return t


def create_transfer(
    db: Session,
    *,
    company_id: str,
    actor: str,
    transfer_no: str,
    from_warehouse_id: str,
    to_warehouse_id: str,
    items: list[dict],
    note: str | None = None,
) -> Transfer:
    if from_warehouse_id == to_warehouse_id:
        raise InvalidRequest("Source and destination warehouse must differ", warehouse_id=from_warehouse_id)
    if not items:
        raise InvalidRequest("A transfer needs at least one item")

    with atomic(db):
        dup = (
            db.query(Transfer.id)
            .filter(Transfer.company_id == company_id, Transfer.transfer_no == transfer_no)
            .first()
        )
        if dup:
            raise DuplicateOperation("create_transfer", transfer_no)

        t = Transfer(
            company_id=company_id,
            transfer_no=transfer_no,
            from_warehouse_id=from_warehouse_id,
            to_warehouse_id=to_warehouse_id,
            status=TransferStatus.OPEN.value,
            note=note,
            created_by=actor,
        )
        for i, it in enumerate(items, start=1):
            qty_planned = to_decimal(it["qty_planned"])
            if qty_planned <= 0:
                raise InvalidRequest(f"qty_planned must be > 0 (sku {it['sku_id']})", sku_id=it["sku_id"])
            t.items.append(
                TransferItem(
                    line_no=int(it.get("line_no") or i),
                    sku_id=it["sku_id"],
                    qty_planned=qty_planned,
                    qty_dispatched_total=ZERO,
                    qty_received_total=ZERO,
                )
            )
        db.add(t)
        db.flush()
        audit(db, company_id=company_id, actor=actor, action="transfer.create", entity_type="Transfer",
              entity_id=t.id, payload={"transfer_no": transfer_no})
    return t


def _item(t: Transfer, item_id: int) -> TransferItem:
    for it in t.items:
        if it.id == int(item_id):
            return it
    raise NotFound("TransferItem", item_id)


def _in_transit_row(db: Session, item: TransferItem, t: Transfer, lot_meta: tuple) -> TransferInTransit:
    batch_no, expiry_date, unit_cost = lot_meta
    for row in item.in_transit:
        if (row.batch_no, row.expiry_date, row.unit_cost) == (batch_no, expiry_date, unit_cost):
            return row
    row = TransferInTransit(
        company_id=t.company_id,
        from_warehouse_id=t.from_warehouse_id,
        to_warehouse_id=t.to_warehouse_id,
        sku_id=item.sku_id,
        batch_no=batch_no,
        expiry_date=expiry_date,
        unit_cost=unit_cost,
        qty_dispatched=ZERO,
        qty_received=ZERO,
    )
    item.in_transit.append(row)
    db.add(row)
    return row


def dispatch(
    db: Session,
    *,
    company_id: str,
    actor: str,
    transfer_id: int,
    lines: list[dict],
    dispatched_at: datetime | None = None,
) -> Transfer:
    """Ship lines out of the source warehouse; each line is one OUT posting.

    A line is ``{"item_id", "qty", "lots"?}`` where ``lots`` is an explicit
    ``[(lot_id, qty)]`` selection; without it the ledger picks FIFO.
    """
    if not lines:
        raise InvalidRequest("Nothing to dispatch")
    dispatched_at = dispatched_at or utcnow()

    with atomic(db):
        t = get_transfer(db, company_id=company_id, transfer_id=transfer_id, for_update=True)
        if t.status not in _DISPATCHABLE:
            raise InvalidState("Transfer", transfer_id, t.status, "dispatch")

        txn_ids: list[int] = []
        for ln in lines:
            item = _item(t, ln["item_id"])
            qty = to_decimal(ln["qty"])
            if qty <= 0:
                raise InvalidDispatchQuantity(item.id, qty)

            txn = ledger.post(
                db,
                company_id=company_id,
                actor=actor,
                txn_type=TxnType.TRANSFER_OUT,
                direction=Direction.OUT,
                warehouse_id=t.from_warehouse_id,
                sku_id=item.sku_id,
                qty=qty,
                ref_doc_type=RefDocType.TRANSFER,
                ref_doc_id=t.id,
                lot_selection=ln.get("lots") or None,
                txn_time=dispatched_at,
            )
            # in transit per source batch/expiry/cost so the receipt can restamp it
            for line in txn.lot_lines:
                lot = line.lot
                row = _in_transit_row(db, item, t, (lot.batch_no, lot.expiry_date, lot.unit_cost))
                row.qty_dispatched = row.qty_dispatched + line.qty
            item.qty_dispatched_total = item.qty_dispatched_total + qty
            txn_ids.append(txn.id)

        if t.status == TransferStatus.OPEN.value:
            t.status = TransferStatus.DISPATCHED.value
        elif t.status == TransferStatus.PARTIALLY_RECEIVED.value:
            # new quantity on the road; CLOSED can only follow a receipt
            t.status = _receipt_status(t)
        t.dispatched_at = t.dispatched_at or dispatched_at
        t.updated_by = actor
        db.flush()

        publish(db, company_id, "transfer.dispatched", {"transfer_id": t.id, "txn_ids": txn_ids})
        audit(db, company_id=company_id, actor=actor, action="transfer.dispatch", entity_type="Transfer",
              entity_id=t.id, payload={"txn_ids": txn_ids, "lines": _lines_payload(lines)})

    logger.info("transfer %s dispatched %d line(s), status=%s", transfer_id, len(lines), t.status)
    return t


def _receipt_status(t: Transfer) -> str:
    received = sum((it.qty_received_total for it in t.items), ZERO)
    if all(it.qty_received_total == it.qty_dispatched_total for it in t.items) and received > 0:
        return TransferStatus.CLOSED.value
    if received > 0:
        return TransferStatus.PARTIALLY_RECEIVED.value
    return TransferStatus.DISPATCHED.value


def receive(
    db: Session,
    *,
    company_id: str,
    actor: str,
    transfer_id: int,
    lines: list[dict],
    idempotency_key: str | None,
    received_at: datetime | None = None,
) -> Transfer:
    """Book arrivals at the destination warehouse.

    Every receipt carries a caller key; replaying a key raises
    DuplicateOperation and posts nothing. Destination lots keep the source
    batch/expiry/cost of the in-transit rows they drain (oldest row first).
    """
    if not lines:
        raise InvalidRequest("Nothing to receive")
    received_at = received_at or utcnow()

    with atomic(db):
        t = get_transfer(db, company_id=company_id, transfer_id=transfer_id, for_update=True)
        claim_operation_key(
            db, company_id=company_id, operation=RECEIVE_OPERATION, key=idempotency_key, actor=actor, ref_doc_id=t.id
        )
        # a closed or never-dispatched transfer has nothing outstanding, which surfaces as OverReceipt
        if t.status == TransferStatus.CANCELLED.value:
            raise InvalidState("Transfer", transfer_id, t.status, "receive")

        txn_ids: list[int] = []
        for ln in lines:
            item = _item(t, ln["item_id"])
            qty = to_decimal(ln["qty"])
            if qty <= 0:
                raise InvalidRequest(f"Receipt quantity must be > 0 (item {item.id})", item_id=item.id, qty=qty)
            outstanding = item.qty_dispatched_total - item.qty_received_total
            if qty > outstanding:
                raise OverReceipt(item.id, qty, outstanding)

            remaining = qty
            for row in item.in_transit:
                if remaining <= 0:
                    break
                if row.qty_outstanding <= 0:
                    continue
                take = min(row.qty_outstanding, remaining)
                txn = ledger.post(
                    db,
                    company_id=company_id,
                    actor=actor,
                    txn_type=TxnType.TRANSFER_IN,
                    direction=Direction.IN,
                    warehouse_id=t.to_warehouse_id,
                    sku_id=item.sku_id,
                    qty=take,
                    ref_doc_type=RefDocType.TRANSFER,
                    ref_doc_id=t.id,
                    txn_time=received_at,
                    batch_no=row.batch_no,
                    expiry_date=row.expiry_date,
                    unit_cost=row.unit_cost,
                )
                row.qty_received = row.qty_received + take
                remaining -= take
                txn_ids.append(txn.id)
            if remaining > 0:
                # item totals and in-transit rows disagree
                raise OverReceipt(item.id, qty, qty - remaining)
            item.qty_received_total = item.qty_received_total + qty

        t.status = _receipt_status(t)
        if t.status == TransferStatus.CLOSED.value:
            t.received_at = received_at
        t.updated_by = actor
        db.flush()

        publish(db, company_id, "transfer.received", {"transfer_id": t.id, "txn_ids": txn_ids, "status": t.status})
        audit(db, company_id=company_id, actor=actor, action="transfer.receive", entity_type="Transfer",
              entity_id=t.id, payload={"idempotency_key": idempotency_key, "txn_ids": txn_ids,
                                       "lines": _lines_payload(lines)})

    logger.info("transfer %s received %d line(s), status=%s", transfer_id, len(lines), t.status)
    return t


def cancel(db: Session, *, company_id: str, actor: str, transfer_id: int) -> Transfer:
    """Cancel before anything arrives; dispatched stock goes back to its source lots."""
    with atomic(db):
        t = get_transfer(db, company_id=company_id, transfer_id=transfer_id, for_update=True)
        if t.status not in (TransferStatus.OPEN.value, TransferStatus.DISPATCHED.value):
            raise InvalidState("Transfer", transfer_id, t.status, "cancel")
        if any(it.qty_received_total > 0 for it in t.items):
            raise InvalidState("Transfer", transfer_id, "partially received", "cancel")

        dispatch_txns = (
            db.query(StockTxn)
            .filter(
                StockTxn.company_id == company_id,
                StockTxn.ref_doc_type == RefDocType.TRANSFER.value,
                StockTxn.ref_doc_id == t.id,
                StockTxn.txn_type == TxnType.TRANSFER_OUT.value,
            )
            .order_by(StockTxn.id.asc())
            .all()
        )
        reversal_ids: list[int] = []
        for txn in dispatch_txns:
            rev = ledger.reverse(db, company_id=company_id, actor=actor, txn_id=txn.id, note="transfer cancelled")
            reversal_ids.append(rev.id)

        for it in t.items:
            it.qty_dispatched_total = ZERO
            for row in it.in_transit:
                row.qty_dispatched = ZERO
                row.qty_received = ZERO

        t.status = TransferStatus.CANCELLED.value
        t.cancelled_at = utcnow()
        t.updated_by = actor
        db.flush()

        publish(db, company_id, "transfer.cancelled", {"transfer_id": t.id, "reversal_txn_ids": reversal_ids})
        audit(db, company_id=company_id, actor=actor, action="transfer.cancel", entity_type="Transfer",
              entity_id=t.id, payload={"reversal_txn_ids": reversal_ids})

    logger.info("transfer %s cancelled, %d dispatch txn(s) reversed", transfer_id, len(reversal_ids))
    return t


def _lines_payload(lines: list[dict]) -> list[dict]:
    return [{"item_id": ln["item_id"], "qty": str(ln["qty"])} for ln in lines]


def transfer_to_dict(t: Transfer) -> dict:
    return {
        "id": t.id,
        "transfer_no": t.transfer_no,
        "from_warehouse_id": t.from_warehouse_id,
        "to_warehouse_id": t.to_warehouse_id,
        "status": t.status,
        "dispatched_at": t.dispatched_at.isoformat() if t.dispatched_at else None,
        "received_at": t.received_at.isoformat() if t.received_at else None,
        "cancelled_at": t.cancelled_at.isoformat() if t.cancelled_at else None,
        "items": [
            {
                "id": it.id,
                "line_no": it.line_no,
                "sku_id": it.sku_id,
                "qty_planned": str(it.qty_planned),
                "qty_dispatched_total": str(it.qty_dispatched_total),
                "qty_received_total": str(it.qty_received_total),
                "in_transit": [
                    {
                        "id": row.id,
                        "batch_no": row.batch_no,
                        "expiry_date": row.expiry_date.isoformat() if row.expiry_date else None,
                        "unit_cost": str(row.unit_cost) if row.unit_cost is not None else None,
                        "qty_dispatched": str(row.qty_dispatched),
                        "qty_received": str(row.qty_received),
                    }
                    for row in it.in_transit
                ],
            }
            for it in t.items
        ],
    }
