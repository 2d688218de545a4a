"""Company models.

- Company: the paying tenant. May pre-exist from a free-trial signup; the
  webhook processor only ever updates it.
- CompanyUser: join table linking users to companies.
"""

import uuid

from app.extensions import db


class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(120), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    plan_id = db.Column(
        db.String(36), db.ForeignKey("plans.id"), nullable=True
    )
    subscription_status = db.Column(
        db.String(20), nullable=True
    )  # trial | active | expired
    subscription_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    subscription_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_active = db.Column(db.Boolean, nullable=False, default=False)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    owner_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    completed = db.Column(
        db.Boolean, nullable=False, default=False
    )  # onboarding wizard finished
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
    members = db.relationship(
        "CompanyUser", back_populates="company", lazy="dynamic"
    )
    subscriptions = db.relationship(
        "Subscription", back_populates="company", lazy="dynamic"
    )
    audit_events = db.relationship(
        "AuditEvent", back_populates="company", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Company {self.slug}>"


class CompanyUser(db.Model):
    __tablename__ = "company_users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    company_id = db.Column(
        db.String(36), db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "company_id", "user_id", name="uq_company_user"
        ),
    )

    # --- Relationships ---
    company = db.relationship("Company", back_populates="members")
    user = db.relationship("User", back_populates="company_memberships")

    def __repr__(self):
        return f"<CompanyUser user={self.user_id} company={self.company_id}>"
