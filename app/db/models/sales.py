"""
MODULE: SALES ORDERS & ALLOCATION
Distributor orders and the lot reservations held against them until invoicing.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasAuditStamp, HasCompany, HasCreatedAt, HasId, HasSoftDelete, Qty, ZERO, utcnow


class OrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INVOICED = "INVOICED"
    CANCELLED = "CANCELLED"


class AllocationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INVOICED = "INVOICED"
    CANCELLED = "CANCELLED"


# ============= ORDERS =============

class SalesOrder(Base, HasId, HasCreatedAt, HasCompany, HasAuditStamp, HasSoftDelete):
    __tablename__ = "sales_order"
    __table_args__ = (UniqueConstraint("company_id", "order_no", name="uq_sales_order_no"),)

    order_no: Mapped[str] = mapped_column(String(64), nullable=False)
    distributor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    outlet_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.DRAFT.value, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Workflow stamps
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invoiced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["SalesOrderItem"]] = relationship(
        back_populates="order", order_by="SalesOrderItem.line_no", cascade="all, delete-orphan"
    )


class SalesOrderItem(Base, HasId):
    __tablename__ = "sales_order_item"
    __table_args__ = (
        UniqueConstraint("order_id", "line_no", name="uq_sales_order_item_line"),
        CheckConstraint("qty > 0", name="ck_sales_order_item_qty_pos"),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    order: Mapped[SalesOrder] = relationship(back_populates="items")


# ============= ALLOCATION =============

class Allocation(Base, HasId, HasCreatedAt, HasCompany):
    __tablename__ = "sales_allocation"

    order_id: Mapped[int] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default=AllocationStatus.ACTIVE.value, nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    items: Mapped[list["AllocationItem"]] = relationship(
        back_populates="allocation", order_by="AllocationItem.id", cascade="all, delete-orphan"
    )


# at most one non-cancelled allocation per order
Index(
    "uq_sales_allocation_live_order",
    Allocation.company_id,
    Allocation.order_id,
    unique=True,
    postgresql_where=text("status <> 'CANCELLED'"),
    sqlite_where=text("status <> 'CANCELLED'"),
)


class AllocationItem(Base, HasId):
    __tablename__ = "sales_allocation_item"
    __table_args__ = (CheckConstraint("qty_invoiced <= qty_allocated", name="ck_sales_alloc_item_invoiced"),)

    allocation_id: Mapped[int] = mapped_column(ForeignKey("sales_allocation.id"), nullable=False, index=True)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("sales_order_item.id"), nullable=False, index=True)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty_allocated: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    qty_invoiced: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    allocation: Mapped[Allocation] = relationship(back_populates="items")
    order_item: Mapped[SalesOrderItem] = relationship()
    # reservation order (id asc) is the consumption order at invoicing
    lots: Mapped[list["AllocationLot"]] = relationship(
        back_populates="allocation_item", order_by="AllocationLot.id", cascade="all, delete-orphan"
    )


class AllocationLot(Base, HasId):
    __tablename__ = "sales_allocation_lot"
    __table_args__ = (CheckConstraint("qty_consumed <= qty_reserved", name="ck_sales_alloc_lot_consumed"),)

    allocation_item_id: Mapped[int] = mapped_column(ForeignKey("sales_allocation_item.id"), nullable=False, index=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("inv_lot.id"), nullable=False, index=True)
    qty_reserved: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    qty_consumed: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    allocation_item: Mapped[AllocationItem] = relationship(back_populates="lots")

    @property
    def qty_outstanding(self) -> Decimal:
        return self.qty_reserved - self.qty_consumed
