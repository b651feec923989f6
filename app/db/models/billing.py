"""
MODULE: BILLING
Invoices built from allocations, consolidated across orders of one distributor.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasAuditStamp, HasCompany, HasCreatedAt, HasId, Qty, ZERO


class InvoiceStatus(str, enum.Enum):
    POSTED = "POSTED"
    VOIDED = "VOIDED"


class Invoice(Base, HasId, HasCreatedAt, HasCompany, HasAuditStamp):
    __tablename__ = "bill_invoice"
    __table_args__ = (UniqueConstraint("company_id", "invoice_no", name="uq_bill_invoice_no"),)

    invoice_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    distributor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=InvoiceStatus.POSTED.value, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", order_by="InvoiceItem.id", cascade="all, delete-orphan"
    )
    order_links: Mapped[list["InvoiceOrderLink"]] = relationship(
        back_populates="invoice", order_by="InvoiceOrderLink.id", cascade="all, delete-orphan"
    )


class InvoiceItem(Base, HasId):
    """One line per SKU across every contributing order."""
    __tablename__ = "bill_invoice_item"
    __table_args__ = (UniqueConstraint("invoice_id", "sku_id", name="uq_bill_invoice_item_sku"),)

    invoice_id: Mapped[int] = mapped_column(ForeignKey("bill_invoice.id"), nullable=False, index=True)
    sku_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Qty, default=ZERO, nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="items")


class InvoiceOrderLink(Base, HasId):
    __tablename__ = "bill_invoice_order_link"
    __table_args__ = (UniqueConstraint("invoice_id", "order_id", name="uq_bill_invoice_order"),)

    invoice_id: Mapped[int] = mapped_column(ForeignKey("bill_invoice.id"), nullable=False, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    allocation_id: Mapped[int] = mapped_column(ForeignKey("sales_allocation.id"), nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="order_links")


class InvoiceConsumption(Base, HasId):
    """Which reserved lot quantity an invoice consumed, through which ledger txn."""
    __tablename__ = "bill_invoice_consumption"

    invoice_id: Mapped[int] = mapped_column(ForeignKey("bill_invoice.id"), nullable=False, index=True)
    allocation_lot_id: Mapped[int] = mapped_column(ForeignKey("sales_allocation_lot.id"), nullable=False, index=True)
    txn_id: Mapped[int] = mapped_column(ForeignKey("inv_txn.id"), nullable=False, index=True)
    qty: Mapped[Decimal] = mapped_column(Qty, nullable=False)
