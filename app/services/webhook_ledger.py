"""Webhook ledger — the dedup table in front of every side effect.

Write-then-process: a delivery is recorded (unprocessed) before anything
else happens, and only marked processed at the very end. A crash in between
leaves a row the gateway's retry (or `flask replay-webhooks`) can finish.
The unique constraint on event_id is the only serialisation point between
concurrent deliveries of the same event.
"""

import logging

from sqlalchemy.exc import IntegrityError

from app.errors import EventInFlight
from app.extensions import db
from app.models.webhook_event import WebhookEvent
from app.utils import utcnow

logger = logging.getLogger(__name__)

# WebhookEvent.event_type column size; provider names are free-form.
EVENT_TYPE_MAX_LENGTH = 255


def record_if_new(gateway, event_id, event_type, payload):
    """Record a delivery in the ledger.

    Returns (event, is_new, already_processed).
    Raises EventInFlight when a concurrent delivery inserted the same id
    between our lookup and our insert.
    """
    existing = WebhookEvent.query.filter_by(event_id=event_id).first()
    if existing:
        if existing.processed_at is None:
            existing.attempts = (existing.attempts or 0) + 1
            db.session.commit()
            logger.info(
                f"Retrying unprocessed webhook event {event_id} "
                f"(attempt {existing.attempts})"
            )
        return existing, False, existing.processed_at is not None

    event = WebhookEvent(
        gateway=gateway,
        event_id=event_id,
        event_type=(event_type or None) and event_type[:EVENT_TYPE_MAX_LENGTH],
        payload=payload,
        status="received",
        attempts=1,
    )
    db.session.add(event)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Webhook event {event_id} is already being processed")
        raise EventInFlight(f"event {event_id} in flight", event_id=event_id)
    return event, True, False


def mark_processed(event, outcome="processed"):
    """Terminal ledger write. Never regresses an already processed row."""
    if event.processed_at is None:
        event.processed_at = utcnow()
    event.status = outcome
    event.last_error = None
    db.session.commit()


def record_failure(event_id, error):
    """Remember why the last attempt failed. The row stays unprocessed."""
    event = WebhookEvent.query.filter_by(event_id=event_id).first()
    if event is None or event.processed_at is not None:
        return
    event.last_error = str(error)[:2000]
    db.session.commit()


def pending_events(limit=100, event_id=None):
    """Recorded but unprocessed deliveries, oldest first."""
    query = WebhookEvent.query.filter(WebhookEvent.processed_at.is_(None))
    if event_id:
        query = query.filter(WebhookEvent.event_id == event_id)
    return query.order_by(WebhookEvent.received_at.asc()).limit(limit).all()
