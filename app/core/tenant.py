from __future__ import annotations
import contextvars

_company: contextvars.ContextVar[str] = contextvars.ContextVar("company_id", default="default")
_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

def set_company_id(company_id: str) -> None:
    _company.set(company_id or "default")

def get_company_id() -> str:
    return _company.get()

def set_request_id(request_id: str | None) -> None:
    _request_id.set(request_id)

def get_request_id() -> str | None:
    return _request_id.get()
