from __future__ import annotations

import json

from sqlalchemy.orm import Session

from app.events.outbox import OutboxEvent


def publish(db: Session, company_id: str, topic: str, payload: dict) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The row is only added to the session; it commits with the caller's unit of work.
    """
    evt = OutboxEvent(
        company_id=company_id,
        topic=topic,
        payload=json.loads(json.dumps(payload or {}, default=str)),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
