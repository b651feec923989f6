"""
MODULE: STOCK TRANSFERS
Warehouse-to-warehouse movements and the quantity still in transit.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasAuditStamp, HasCompany, HasCreatedAt, HasId, Qty, ZERO


class TransferStatus(str, enum.Enum):
    OPEN = "OPEN"
    DISPATCHED = "DISPATCHED"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class Transfer(Base, HasId, HasCreatedAt, HasCompany, HasAuditStamp):
    __tablename__ = "inv_transfer"
    __table_args__ = (
        UniqueConstraint("company_id", "transfer_no", name="uq_inv_transfer_no"),
        CheckConstraint("from_warehouse_id <> to_warehouse_id", name="ck_inv_transfer_distinct_wh"),
    )

    transfer_no: Mapped[str] = mapped_column(String(64), nullable=False)
    from_warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    to_warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(24), default=TransferStatus.OPEN.value, nullable=False, index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["TransferItem"]] = relationship(
        back_populates="transfer", order_by="TransferItem.line_no", cascade="all, delete-orphan"
    )


class TransferItem(Base, HasId):
    __tablename__ = "inv_transfer_item"
    __table_args__ = (
        UniqueConstraint("transfer_id", "line_no", name="uq_inv_transfer_item_line"),
        CheckConstraint("qty_received_total <= qty_dispatched_total", name="ck_inv_transfer_item_received"),
    )

    transfer_id: Mapped[int] = mapped_column(ForeignKey("inv_transfer.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty_planned: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    # dispatch beyond plan is allowed
    qty_dispatched_total: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    qty_received_total: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    transfer: Mapped[Transfer] = relationship(back_populates="items")
    in_transit: Mapped[list["TransferInTransit"]] = relationship(
        back_populates="item", order_by="TransferInTransit.id"
    )

    @property
    def qty_outstanding(self) -> Decimal:
        return self.qty_dispatched_total - self.qty_received_total


class TransferInTransit(Base, HasId, HasCreatedAt, HasCompany):
    """Dispatched-not-yet-received quantity, one row per source batch/expiry/cost of an item."""
    __tablename__ = "inv_transfer_in_transit"
    __table_args__ = (CheckConstraint("qty_received <= qty_dispatched", name="ck_inv_in_transit_received"),)

    transfer_item_id: Mapped[int] = mapped_column(ForeignKey("inv_transfer_item.id"), nullable=False, index=True)
    from_warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)

    batch_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    unit_cost: Mapped[Decimal | None] = mapped_column(Qty, nullable=True)

    qty_dispatched: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    qty_received: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    item: Mapped[TransferItem] = relationship(back_populates="in_transit")

    @property
    def qty_outstanding(self) -> Decimal:
        return self.qty_dispatched - self.qty_received
