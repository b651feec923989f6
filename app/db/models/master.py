"""
MODULE: MASTER DATA (read-only view)
The master-data service owns SKUs; the ledger only reads the tracking flags.
"""

from __future__ import annotations

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCompany


class MdSku(Base, HasId, HasCompany):
    __tablename__ = "md_sku"
    __table_args__ = (UniqueConstraint("company_id", "code", name="uq_md_sku_company_code"),)

    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_batch_tracked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_expiry_tracked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
