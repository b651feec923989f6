from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.security_audit import AuditLog
from app.core.tenant import get_request_id


def audit(
    db: Session,
    *,
    company_id: str,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    payload: dict | None = None,
    success: bool = True,
) -> AuditLog:
    """Add an append-only audit record to the caller's transaction.

    Nothing is committed here: the record lands together with the business
    change it describes, or not at all.
    """
    # Decimals/dates become strings so the JSON column always serializes
    safe_payload: dict = json.loads(json.dumps(payload or {}, default=str))
    row = AuditLog(
        company_id=company_id,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        request_id=get_request_id(),
        success=success,
        payload=safe_payload,
    )
    db.add(row)
    return row
