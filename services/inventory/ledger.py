"""Stock ledger: append-only movements, FIFO lot selection and the balance cache.

Every public function runs inside ``atomic(db)``; when called from another
service it joins that service's transaction. Lock order is lots (ascending
id) first, then the (warehouse, sku) balance row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import InsufficientStock, InvalidRequest, InvalidState, NotFound
from app.db.models.common import ZERO, to_decimal, utcnow
from app.db.models.inventory import Direction, Lot, StockBalance, StockTxn, StockTxnLot, TxnType
from app.db.models.sales import Allocation, AllocationItem, AllocationLot, AllocationStatus
from app.db.session import atomic
from app.events.bus import publish
from services.inventory.lots import credit, debit, lock_lots, receive_lot

logger = logging.getLogger(__name__)

LotSelection = Sequence[tuple[int, Decimal]]


# ============= BALANCE CACHE =============

def _balance_for_update(db: Session, company_id: str, warehouse_id: str, sku_id: str) -> StockBalance:
    q = db.query(StockBalance).filter(
        StockBalance.company_id == company_id,
        StockBalance.warehouse_id == warehouse_id,
        StockBalance.sku_id == sku_id,
    )
    bal = q.with_for_update().populate_existing().first()
    if bal:
        return bal
    bal = StockBalance(
        company_id=company_id, warehouse_id=warehouse_id, sku_id=sku_id, qty_on_hand=ZERO, qty_reserved=ZERO
    )
    try:
        with db.begin_nested():
            db.add(bal)
            db.flush()
    except IntegrityError:
        # another transaction created the row first
        bal = q.with_for_update().populate_existing().one()
    return bal


def _apply_balance_delta(bal: StockBalance, *, on_hand: Decimal = ZERO, reserved: Decimal = ZERO) -> StockBalance:
    new_on_hand = bal.qty_on_hand + on_hand
    new_reserved = bal.qty_reserved + reserved
    if new_reserved < 0 or new_on_hand < new_reserved:
        raise InsufficientStock(
            bal.warehouse_id,
            bal.sku_id,
            requested=abs(on_hand) if on_hand else abs(reserved),
            available=bal.qty_on_hand - bal.qty_reserved,
        )
    bal.qty_on_hand = new_on_hand
    bal.qty_reserved = new_reserved
    return bal


def get_balance(db: Session, *, company_id: str, warehouse_id: str, sku_id: str) -> StockBalance | None:
    return (
        db.query(StockBalance)
        .filter(
            StockBalance.company_id == company_id,
            StockBalance.warehouse_id == warehouse_id,
            StockBalance.sku_id == sku_id,
        )
        .first()
    )


# ============= FIFO =============

def _lock_candidates(db: Session, company_id: str, warehouse_id: str, sku_id: str) -> list[Lot]:
    """Lock every lot with free quantity, then order them oldest-first."""
    rows = (
        db.query(Lot)
        .filter(
            Lot.company_id == company_id,
            Lot.warehouse_id == warehouse_id,
            Lot.sku_id == sku_id,
            Lot.qty_available > 0,
        )
        .order_by(Lot.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    return sorted(rows, key=lambda lot: (lot.received_at, lot.id))


def select_fifo(lots: Iterable[Lot], qty: Decimal) -> list[tuple[Lot, Decimal]]:
    """Split ``qty`` across ``lots`` in the given order.

    Returns (lot, take) pairs without mutating anything; raises
    InsufficientStock when the lots cannot cover the request.
    """
    lots = list(lots)
    remaining = qty
    picks: list[tuple[Lot, Decimal]] = []
    for lot in lots:
        if remaining <= 0:
            break
        if lot.qty_available <= 0:
            continue
        take = lot.qty_available if lot.qty_available <= remaining else remaining
        picks.append((lot, take))
        remaining -= take

    if remaining > 0:
        available = sum((lot.qty_available for lot in lots), ZERO)
        first = lots[0] if lots else None
        raise InsufficientStock(
            first.warehouse_id if first else "",
            first.sku_id if first else "",
            requested=qty,
            available=available,
        )
    return picks


def _fifo_picks(db: Session, company_id: str, warehouse_id: str, sku_id: str, qty: Decimal) -> list[tuple[Lot, Decimal]]:
    candidates = _lock_candidates(db, company_id, warehouse_id, sku_id)
    try:
        return select_fifo(candidates, qty)
    except InsufficientStock as exc:
        raise InsufficientStock(warehouse_id, sku_id, requested=qty, available=exc.data["available"]) from None


def _explicit_picks(
    db: Session, company_id: str, warehouse_id: str, sku_id: str, qty: Decimal, selection: LotSelection
) -> list[tuple[Lot, Decimal]]:
    merged: dict[int, Decimal] = {}
    for lot_id, lot_qty in selection:
        lot_qty = to_decimal(lot_qty)
        if lot_qty <= 0:
            raise InvalidRequest(f"Lot quantity must be > 0 (lot {lot_id})", lot_id=lot_id, qty=lot_qty)
        merged[int(lot_id)] = merged.get(int(lot_id), ZERO) + lot_qty

    total = sum(merged.values(), ZERO)
    if total != qty:
        raise InvalidRequest(f"Lot selection totals {total}, posting is for {qty}", selected=total, qty=qty)

    locked = lock_lots(db, company_id, merged.keys())
    for lot in locked.values():
        if lot.warehouse_id != warehouse_id or lot.sku_id != sku_id:
            raise InvalidRequest(
                f"Lot {lot.id} belongs to {lot.warehouse_id}/{lot.sku_id}, not {warehouse_id}/{sku_id}",
                lot_id=lot.id,
            )
    return [(locked[lot_id], lot_qty) for lot_id, lot_qty in merged.items()]


# ============= POSTING =============

def post(
    db: Session,
    *,
    company_id: str,
    actor: str,
    txn_type: TxnType | str,
    direction: Direction | str,
    warehouse_id: str,
    sku_id: str,
    qty: Decimal,
    ref_doc_type: str,
    ref_doc_id: int | None,
    lot_selection: LotSelection | None = None,
    txn_time: datetime | None = None,
    batch_no: str | None = None,
    expiry_date: date | None = None,
    unit_cost: Decimal | None = None,
    from_reservation: bool = False,
    note: str | None = None,
) -> StockTxn:
    """Record one movement and its lot lines, and update the balance cache.

    IN without a lot selection creates a new lot from the batch/expiry/cost
    arguments. OUT without a selection consumes FIFO. ``from_reservation``
    ships lots already held by an allocation: the lots are not debited again,
    on-hand and reserved both go down.
    """
    qty = to_decimal(qty)
    if qty <= 0:
        raise InvalidRequest(f"Posting quantity must be > 0, got {qty}", qty=qty)
    direction = Direction(direction)
    txn_type = TxnType(txn_type)
    ref_doc_type = getattr(ref_doc_type, "value", ref_doc_type)
    txn_time = txn_time or utcnow()

    with atomic(db):
        if direction == Direction.IN:
            if from_reservation:
                raise InvalidRequest("Only outbound postings can consume a reservation")
            if lot_selection:
                picks = _explicit_picks(db, company_id, warehouse_id, sku_id, qty, lot_selection)
                for lot, take in picks:
                    credit(lot, take)
            else:
                lot = receive_lot(
                    db,
                    company_id=company_id,
                    actor=actor,
                    warehouse_id=warehouse_id,
                    sku_id=sku_id,
                    source_doc_type=ref_doc_type,
                    source_doc_id=ref_doc_id,
                    qty=qty,
                    received_at=txn_time,
                    batch_no=batch_no,
                    expiry_date=expiry_date,
                    unit_cost=unit_cost,
                )
                picks = [(lot, qty)]
        else:
            if lot_selection:
                picks = _explicit_picks(db, company_id, warehouse_id, sku_id, qty, lot_selection)
            elif from_reservation:
                raise InvalidRequest("Reserved stock must be shipped from explicit lots")
            else:
                picks = _fifo_picks(db, company_id, warehouse_id, sku_id, qty)
            if not from_reservation:
                for lot, take in picks:
                    debit(lot, take)

        bal = _balance_for_update(db, company_id, warehouse_id, sku_id)
        if direction == Direction.IN:
            _apply_balance_delta(bal, on_hand=qty)
        else:
            _apply_balance_delta(bal, on_hand=-qty, reserved=-qty if from_reservation else ZERO)

        txn = StockTxn(
            company_id=company_id,
            warehouse_id=warehouse_id,
            sku_id=sku_id,
            txn_time=txn_time,
            txn_type=txn_type.value,
            qty_in=qty if direction == Direction.IN else ZERO,
            qty_out=qty if direction == Direction.OUT else ZERO,
            ref_doc_type=ref_doc_type,
            ref_doc_id=ref_doc_id,
            note=note,
            created_by=actor,
            lot_lines=[StockTxnLot(lot=lot, qty=take) for lot, take in picks],
        )
        db.add(txn)
        db.flush()

        publish(db, company_id, "inventory.posted", txn_payload(txn))

    logger.info(
        "posted txn %s %s %s %s/%s qty=%s ref=%s:%s",
        txn.id, txn_type.value, direction.value, warehouse_id, sku_id, qty, ref_doc_type, ref_doc_id,
    )
    return txn


def reverse(
    db: Session,
    *,
    company_id: str,
    actor: str,
    txn_id: int,
    into_reservation: bool = False,
    note: str | None = None,
) -> StockTxn:
    """Invert a posting with a new opposite txn; the original is never touched.

    ``into_reservation`` puts an outbound quantity back on hand as reserved
    instead of freeing the lots (used when an invoice is voided).
    """
    with atomic(db):
        orig = (
            db.query(StockTxn)
            .filter(StockTxn.company_id == company_id, StockTxn.id == txn_id)
            .with_for_update()
            .first()
        )
        if not orig:
            raise NotFound("StockTxn", txn_id)
        if orig.reversal_of_txn_id is not None:
            raise InvalidState("StockTxn", txn_id, "a reversal", "reverse")
        already = db.query(StockTxn.id).filter(StockTxn.reversal_of_txn_id == orig.id).first()
        if already:
            raise InvalidState("StockTxn", txn_id, "REVERSED", "reverse")

        was_in = orig.direction == Direction.IN
        if was_in and into_reservation:
            raise InvalidRequest("Only outbound postings can be reversed into a reservation")

        qty = orig.qty
        locked = lock_lots(db, company_id, (line.lot_id for line in orig.lot_lines))
        picks = [(locked[line.lot_id], line.qty) for line in orig.lot_lines]
        if was_in:
            for lot, take in picks:
                debit(lot, take)
        elif not into_reservation:
            for lot, take in picks:
                credit(lot, take)

        bal = _balance_for_update(db, company_id, orig.warehouse_id, orig.sku_id)
        if was_in:
            _apply_balance_delta(bal, on_hand=-qty)
        else:
            _apply_balance_delta(bal, on_hand=qty, reserved=qty if into_reservation else ZERO)

        rev = StockTxn(
            company_id=company_id,
            warehouse_id=orig.warehouse_id,
            sku_id=orig.sku_id,
            txn_time=utcnow(),
            txn_type=TxnType.REVERSAL.value,
            qty_in=ZERO if was_in else qty,
            qty_out=qty if was_in else ZERO,
            ref_doc_type=orig.ref_doc_type,
            ref_doc_id=orig.ref_doc_id,
            reversal_of_txn_id=orig.id,
            note=note,
            created_by=actor,
            lot_lines=[StockTxnLot(lot=lot, qty=take) for lot, take in picks],
        )
        db.add(rev)
        db.flush()

        publish(db, company_id, "inventory.reversed", {**txn_payload(rev), "reversal_of_txn_id": orig.id})

    logger.info("reversed txn %s with %s (into_reservation=%s)", orig.id, rev.id, into_reservation)
    return rev


# ============= RESERVATIONS =============

def reserve_fifo(
    db: Session, *, company_id: str, warehouse_id: str, sku_id: str, qty: Decimal
) -> list[tuple[Lot, Decimal]]:
    """Hold ``qty`` on the oldest lots without posting a movement.

    Lot availability goes down and the balance's reserved quantity goes up;
    on-hand is unchanged until the reservation ships.
    """
    qty = to_decimal(qty)
    if qty <= 0:
        raise InvalidRequest(f"Reservation quantity must be > 0, got {qty}", qty=qty)
    with atomic(db):
        picks = _fifo_picks(db, company_id, warehouse_id, sku_id, qty)
        for lot, take in picks:
            debit(lot, take)
        bal = _balance_for_update(db, company_id, warehouse_id, sku_id)
        _apply_balance_delta(bal, reserved=qty)
        db.flush()
    return picks


def release_reservation(
    db: Session, *, company_id: str, warehouse_id: str, sku_id: str, lots: LotSelection
) -> Decimal:
    """Return held quantity to its lots and drop it from the reserved total."""
    with atomic(db):
        merged: dict[int, Decimal] = {}
        for lot_id, lot_qty in lots:
            merged[int(lot_id)] = merged.get(int(lot_id), ZERO) + to_decimal(lot_qty)
        locked = lock_lots(db, company_id, merged.keys())
        for lot_id, lot_qty in merged.items():
            credit(locked[lot_id], lot_qty)
        total = sum(merged.values(), ZERO)
        bal = _balance_for_update(db, company_id, warehouse_id, sku_id)
        _apply_balance_delta(bal, reserved=-total)
        db.flush()
    return total


# ============= REBUILD =============

def compute_balance(db: Session, *, company_id: str, warehouse_id: str, sku_id: str) -> tuple[Decimal, Decimal]:
    """(on_hand, reserved) derived from lots and outstanding allocation lots.

    Reserving takes quantity off ``Lot.qty_available`` while it is still on
    hand, so on_hand is the free lot quantity plus the unconsumed reservations.
    """
    free = (
        db.query(Lot.qty_available)
        .filter(Lot.company_id == company_id, Lot.warehouse_id == warehouse_id, Lot.sku_id == sku_id)
        .all()
    )
    held = (
        db.query(AllocationLot.qty_reserved, AllocationLot.qty_consumed)
        .join(AllocationItem, AllocationItem.id == AllocationLot.allocation_item_id)
        .join(Allocation, Allocation.id == AllocationItem.allocation_id)
        .join(Lot, Lot.id == AllocationLot.lot_id)
        .filter(
            Allocation.company_id == company_id,
            Allocation.status != AllocationStatus.CANCELLED.value,
            Lot.warehouse_id == warehouse_id,
            Lot.sku_id == sku_id,
        )
        .all()
    )
    reserved = sum((r - c for r, c in held), ZERO)
    on_hand = sum((q for (q,) in free), ZERO) + reserved
    return on_hand, reserved


def check_balance(db: Session, *, company_id: str, warehouse_id: str, sku_id: str) -> dict:
    on_hand, reserved = compute_balance(db, company_id=company_id, warehouse_id=warehouse_id, sku_id=sku_id)
    bal = get_balance(db, company_id=company_id, warehouse_id=warehouse_id, sku_id=sku_id)
    cached_on_hand = bal.qty_on_hand if bal else ZERO
    cached_reserved = bal.qty_reserved if bal else ZERO
    return {
        "warehouse_id": warehouse_id,
        "sku_id": sku_id,
        "cached": {"qty_on_hand": cached_on_hand, "qty_reserved": cached_reserved},
        "computed": {"qty_on_hand": on_hand, "qty_reserved": reserved},
        "in_sync": cached_on_hand == on_hand and cached_reserved == reserved,
    }


def rebuild_balance(db: Session, *, company_id: str, warehouse_id: str, sku_id: str) -> StockBalance:
    with atomic(db):
        bal = _balance_for_update(db, company_id, warehouse_id, sku_id)
        on_hand, reserved = compute_balance(db, company_id=company_id, warehouse_id=warehouse_id, sku_id=sku_id)
        if bal.qty_on_hand != on_hand or bal.qty_reserved != reserved:
            logger.warning(
                "balance drift %s/%s: cached %s/%s, computed %s/%s",
                warehouse_id, sku_id, bal.qty_on_hand, bal.qty_reserved, on_hand, reserved,
            )
        bal.qty_on_hand = on_hand
        bal.qty_reserved = reserved
        db.flush()
    return bal


def txn_payload(txn: StockTxn) -> dict:
    return {
        "txn_id": txn.id,
        "txn_type": txn.txn_type,
        "direction": txn.direction.value,
        "warehouse_id": txn.warehouse_id,
        "sku_id": txn.sku_id,
        "qty": str(txn.qty),
        "ref_doc_type": txn.ref_doc_type,
        "ref_doc_id": txn.ref_doc_id,
        "lots": [{"lot_id": line.lot_id, "qty": str(line.qty)} for line in txn.lot_lines],
    }
