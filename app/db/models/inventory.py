"""
MODULE: INVENTORY LEDGER
Received lots, the append-only stock transaction log with its lot lines,
the per-(warehouse, sku) balance cache and goods receipt notes.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import (
    HasAuditStamp,
    HasCompany,
    HasCreatedAt,
    HasId,
    HasSoftDelete,
    IdType,
    Qty,
    ZERO,
    utcnow,
)


class Direction(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


class TxnType(str, enum.Enum):
    GRN_IN = "GRN_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ISSUE_BY_INVOICE = "ISSUE_BY_INVOICE"
    ADJUSTMENT_IN = "ADJUSTMENT_IN"
    ADJUSTMENT_OUT = "ADJUSTMENT_OUT"
    REVERSAL = "REVERSAL"


class RefDocType(str, enum.Enum):
    GRN = "GRN"
    TRANSFER = "TRANSFER"
    INVOICE = "INVOICE"
    ADJUSTMENT = "ADJUSTMENT"


class GrnStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    POSTED = "POSTED"


# ============= LOTS =============

class Lot(Base, HasId, HasCreatedAt, HasCompany):
    """One receipt event's worth of stock; never deleted, exhausted lots stay for history."""
    __tablename__ = "inv_lot"
    __table_args__ = (
        CheckConstraint("qty_available >= 0", name="ck_inv_lot_available_nonneg"),
        CheckConstraint("qty_available <= qty_received", name="ck_inv_lot_available_le_received"),
    )

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)

    source_doc_type: Mapped[str] = mapped_column(String(32), nullable=False)  # GRN|TRANSFER|ADJUSTMENT
    source_doc_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    batch_no: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    unit_cost: Mapped[Decimal | None] = mapped_column(Qty, nullable=True)

    qty_received: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    qty_available: Mapped[Decimal] = mapped_column(Qty, nullable=False)

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)


Index("ix_inv_lot_fifo", Lot.company_id, Lot.warehouse_id, Lot.sku_id, Lot.received_at, Lot.id)


# ============= LEDGER =============

class StockTxn(Base, HasId, HasCreatedAt, HasCompany):
    """Immutable movement; exactly one of qty_in / qty_out is non-zero."""
    __tablename__ = "inv_txn"
    __table_args__ = (
        CheckConstraint(
            "(qty_in > 0 AND qty_out = 0) OR (qty_out > 0 AND qty_in = 0)",
            name="ck_inv_txn_one_direction",
        ),
    )

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    txn_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    txn_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    qty_in: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    qty_out: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    ref_doc_type: Mapped[str] = mapped_column(String(32), nullable=False)
    ref_doc_id: Mapped[int | None] = mapped_column(IdType, nullable=True)

    # a txn can be reversed at most once
    reversal_of_txn_id: Mapped[int | None] = mapped_column(ForeignKey("inv_txn.id"), nullable=True, unique=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)

    lot_lines: Mapped[list["StockTxnLot"]] = relationship(
        back_populates="txn", order_by="StockTxnLot.id", cascade="all, delete-orphan"
    )

    @property
    def direction(self) -> Direction:
        return Direction.IN if self.qty_in > 0 else Direction.OUT

    @property
    def qty(self) -> Decimal:
        return self.qty_in if self.qty_in > 0 else self.qty_out


Index("ix_inv_txn_key", StockTxn.company_id, StockTxn.warehouse_id, StockTxn.sku_id, StockTxn.txn_time)
Index("ix_inv_txn_ref", StockTxn.company_id, StockTxn.ref_doc_type, StockTxn.ref_doc_id)


class StockTxnLot(Base, HasId):
    __tablename__ = "inv_txn_lot"
    __table_args__ = (CheckConstraint("qty > 0", name="ck_inv_txn_lot_qty_pos"),)

    txn_id: Mapped[int] = mapped_column(ForeignKey("inv_txn.id"), nullable=False, index=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("inv_lot.id"), nullable=False, index=True)
    qty: Mapped[Decimal] = mapped_column(Qty, nullable=False)

    txn: Mapped[StockTxn] = relationship(back_populates="lot_lines")
    lot: Mapped[Lot] = relationship()


class StockBalance(Base, HasId, HasCompany):
    """Cache over lots and reservations; rebuildable, never the source of truth."""
    __tablename__ = "inv_stock_balance"
    __table_args__ = (
        UniqueConstraint("company_id", "warehouse_id", "sku_id", name="uq_inv_balance_key"),
        CheckConstraint("qty_reserved >= 0", name="ck_inv_balance_reserved_nonneg"),
        CheckConstraint("qty_on_hand >= qty_reserved", name="ck_inv_balance_atp_nonneg"),
    )

    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty_on_hand: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    qty_reserved: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def qty_available_to_promise(self) -> Decimal:
        return self.qty_on_hand - self.qty_reserved


# ============= IDEMPOTENCY =============

class OperationKey(Base, HasId, HasCreatedAt, HasCompany):
    """Caller-supplied keys for operations that must not be replayed."""
    __tablename__ = "inv_operation_key"
    __table_args__ = (UniqueConstraint("company_id", "operation", "key", name="uq_inv_operation_key"),)

    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    ref_doc_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)


# ============= GOODS RECEIPT =============

class Grn(Base, HasId, HasCreatedAt, HasCompany, HasAuditStamp, HasSoftDelete):
    __tablename__ = "inv_grn"
    __table_args__ = (UniqueConstraint("company_id", "grn_no", name="uq_inv_grn_no"),)

    grn_no: Mapped[str] = mapped_column(String(64), nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    grn_date: Mapped[date] = mapped_column(Date, nullable=False)
    supplier_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reference_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=GrnStatus.DRAFT.value, nullable=False, index=True)

    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    items: Mapped[list["GrnItem"]] = relationship(
        back_populates="grn", order_by="GrnItem.line_no", cascade="all, delete-orphan"
    )


class GrnItem(Base, HasId):
    __tablename__ = "inv_grn_item"
    __table_args__ = (UniqueConstraint("grn_id", "line_no", name="uq_inv_grn_item_line"),)

    grn_id: Mapped[int] = mapped_column(ForeignKey("inv_grn.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty_expected: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    qty_received: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Qty, nullable=True)

    grn: Mapped[Grn] = relationship(back_populates="items")
