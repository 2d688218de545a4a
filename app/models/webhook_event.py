"""Webhook event model (dedup ledger).

Every inbound gateway delivery is recorded by its event id BEFORE any side
effect runs. `processed_at` is only set once every side effect succeeded (or
the event was classified as a no-op), and a row with `processed_at` set
short-circuits all later deliveries of the same id.
"""

import uuid

from app.extensions import db
from app.utils import utcnow


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Terminal statuses recorded alongside processed_at --
    STATUSES = [
        "received",
        "processed",
        "ignored",
        "skipped",
        "duplicate",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    gateway = db.Column(db.String(50), nullable=False, default="cakto")
    event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # provider id, X-Event-Id header, or sha256 of the raw body
    event_type = db.Column(db.String(255), nullable=True)  # e.g. "purchase_approved"
    payload = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="received")
    attempts = db.Column(db.Integer, nullable=False, default=1)
    last_error = db.Column(db.Text, nullable=True)
    received_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_processed(self):
        return self.processed_at is not None

    def __repr__(self):
        return f"<WebhookEvent {self.event_id} ({self.status})>"
