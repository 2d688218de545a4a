"""Audit event model.

Logs significant billing actions (subscription activated, renewed, checkout
created) for the activity feed and debugging.
"""

import uuid

from app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    company_id = db.Column(
        db.String(36), db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True
    )
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.activated"
    # Gateway event that produced this row; one billing audit per event.
    event_id = db.Column(db.String(255), unique=True, nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    company = db.relationship("Company", back_populates="audit_events")

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
