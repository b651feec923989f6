from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

# BIGINT identity on PostgreSQL, rowid alias on SQLite (so autoincrement works there too)
IdType = BigInteger().with_variant(Integer(), "sqlite")

# Every stock quantity and money amount in the ledger.
Qty = Numeric(18, 4, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HasId:
    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)


class HasCreatedAt:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class HasCompany:
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)


class HasAuditStamp:
    """created_by / updated_by stamping for mutable documents."""

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)


class HasSoftDelete:
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    """Exact conversion for API and caller input; floats go through str() first."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
