"""Identity models.

- User: login identity (email + werkzeug password hash). Emails are stored
  lower-cased and are unique.
- Profile: per-user app profile keyed by the user id; carries the tenant
  link and first-login flags.
- UserRole: role grants, unique per (user, role).
"""

import uuid

from app.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    user_metadata = db.Column(db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    profile = db.relationship(
        "Profile", back_populates="user", uselist=False
    )
    roles = db.relationship("UserRole", back_populates="user", lazy="dynamic")
    company_memberships = db.relationship(
        "CompanyUser", back_populates="user", lazy="dynamic"
    )

    def __repr__(self):
        return f"<User {self.email}>"


class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    full_name = db.Column(db.String(255))
    company_id = db.Column(
        db.String(36), db.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True
    )
    force_password_change = db.Column(db.Boolean, nullable=False, default=False)
    must_complete_company = db.Column(db.Boolean, nullable=False, default=False)
    must_complete_onboarding = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="profile")

    def __repr__(self):
        return f"<Profile {self.id} company={self.company_id}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role = db.Column(db.String(50), nullable=False)  # admin | user

    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_role"),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="roles")

    def __repr__(self):
        return f"<UserRole {self.user_id}:{self.role}>"
