"""Plan model.

Plans map 1:1 to gateway offers through `cakto_plan_id`. Unknown offers are
materialised lazily by the webhook processor.
"""

import uuid

from app.extensions import db


class Plan(db.Model):
    __tablename__ = "plans"

    BILLING_PERIODS = ["monthly", "yearly"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    billing_period = db.Column(
        db.String(20), nullable=False, default="monthly"
    )  # monthly | yearly
    period_days = db.Column(db.Integer, nullable=True)  # null = infer from event
    cakto_plan_id = db.Column(
        db.String(512), unique=True, nullable=True
    )  # offer id or full checkout URL
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<Plan {self.name} ({self.billing_period})>"
