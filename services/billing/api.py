from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, get_principal
from app.db.session import get_db, run_with_retry
from services.billing import invoicing

router = APIRouter(prefix="/billing", tags=["billing"])


class InvoiceIn(BaseModel):
    order_ids: list[int] = Field(..., min_length=1)
    warehouse_id: str = Field(..., max_length=64)
    invoice_date: date
    invoice_no: str | None = Field(default=None, max_length=64)


@router.post("/invoices")
def create_invoice(payload: InvoiceIn, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    inv = run_with_retry(
        invoicing.invoice_orders,
        db,
        company_id=principal.company_id,
        actor=principal.actor,
        order_ids=payload.order_ids,
        warehouse_id=payload.warehouse_id,
        invoice_date=payload.invoice_date,
        invoice_no=payload.invoice_no,
    )
    return invoicing.invoice_to_dict(inv)


@router.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return invoicing.invoice_to_dict(invoicing.get_invoice(db, company_id=principal.company_id, invoice_id=invoice_id))


@router.post("/invoices/{invoice_id}/void")
def void_invoice(invoice_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    inv = run_with_retry(
        invoicing.void_invoice, db, company_id=principal.company_id, actor=principal.actor, invoice_id=invoice_id
    )
    return invoicing.invoice_to_dict(inv)
