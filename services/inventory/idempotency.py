from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import DuplicateOperation, InvalidRequest
from app.db.models.inventory import OperationKey


def claim_operation_key(
    db: Session,
    *,
    company_id: str,
    operation: str,
    key: str | None,
    actor: str,
    ref_doc_id: int | None = None,
) -> OperationKey:
    """Record ``key`` for ``operation`` or fail with DuplicateOperation.

    The row commits with the operation it guards, so a rolled-back attempt
    leaves the key free for a retry. Concurrent claims are settled by the
    unique constraint.
    """
    key = (key or "").strip()
    if not key:
        raise InvalidRequest(f"An idempotency key is required for {operation}", operation=operation)

    exists = (
        db.query(OperationKey.id)
        .filter(OperationKey.company_id == company_id, OperationKey.operation == operation, OperationKey.key == key)
        .first()
    )
    if exists:
        raise DuplicateOperation(operation, key)

    row = OperationKey(company_id=company_id, operation=operation, key=key, ref_doc_id=ref_doc_id, created_by=actor)
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        raise DuplicateOperation(operation, key) from None
    return row
