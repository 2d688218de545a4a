"""Subscription model.

One logical "current" row per company. Gateway renewals update the row in
place (matched by gateway_subscription_id, else the company's live row)
instead of accumulating history.
"""

import uuid

from app.extensions import db


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    STATUSES = ["pending", "trial", "active", "canceled", "expired"]
    LIVE_STATUSES = ("active", "trial")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    company_id = db.Column(
        db.String(36), db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    plan_id = db.Column(
        db.String(36), db.ForeignKey("plans.id"), nullable=True
    )
    status = db.Column(db.String(20), nullable=False, default="trial")
    gateway = db.Column(db.String(50), nullable=False, default="cakto")
    gateway_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    gateway_order_id = db.Column(db.String(255), nullable=True)
    gateway_payment_link_id = db.Column(db.String(255), nullable=True)
    payment_link_url = db.Column(db.String(1024), nullable=True)
    last_payment_status = db.Column(db.String(50), nullable=True)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(50), nullable=True)
    customer_document = db.Column(db.String(50), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    company = db.relationship("Company", back_populates="subscriptions")
    plan = db.relationship("Plan")

    @property
    def is_paid(self):
        """True for rows that came from a real gateway payment (not a trial)."""
        return self.gateway != "trial" and self.status not in ("trial", "pending")

    def __repr__(self):
        return f"<Subscription {self.gateway}:{self.gateway_subscription_id} ({self.status})>"
