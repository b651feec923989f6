from __future__ import annotations

from sqlalchemy.orm import Query

MAX_LIMIT = 200


def paginate(q: Query, *, page: int = 1, limit: int = 50) -> tuple[list, dict]:
    """Slice a query; ``limit`` is capped at MAX_LIMIT."""
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 1), 1), MAX_LIMIT)
    total = q.order_by(None).count()
    rows = q.offset((page - 1) * limit).limit(limit).all()
    return rows, {"page": page, "limit": limit, "total": total}
