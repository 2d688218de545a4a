"""Subscription checkout model.

A checkout is the purchase intent created before the customer pays on the
gateway's hosted page. The webhook processor binds it to the resulting user
and company and moves it to `completed`.
"""

import uuid

from app.extensions import db


class SubscriptionCheckout(db.Model):
    __tablename__ = "subscription_checkouts"

    STATUSES = ["created", "pending", "paid", "active", "completed"]
    OPEN_STATUSES = ("created", "pending")
    TERMINAL_STATUSES = ("active", "completed")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    company_name = db.Column(db.String(255), nullable=True)
    plan_id = db.Column(
        db.String(36), db.ForeignKey("plans.id"), nullable=True
    )
    cakto_subscription_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="created")
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    company_id = db.Column(
        db.String(36), db.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    plan = db.relationship("Plan")

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def __repr__(self):
        return f"<SubscriptionCheckout {self.email} ({self.status})>"
