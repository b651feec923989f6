from __future__ import annotations
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from app.core.tenant import set_company_id, set_request_id

class CompanyMiddleware(BaseHTTPMiddleware):
    """Binds the company (tenant) and request id for the duration of a request."""

    async def dispatch(self, request: Request, call_next):
        company = request.headers.get("X-Company-Id") or request.headers.get("X-Tenant-Id") or "default"
        set_company_id(company)
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        set_request_id(request_id)
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
