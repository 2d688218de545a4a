"""Provisioning writer — applies a resolved event to the tenant's rows.

Writes run in a fixed order (profile, role, membership, subscription,
company) and each one commits on its own. Every write is an upsert or an
insert-if-absent, so a crash between two steps leaves state that the
gateway's retry completes without duplicating anything.

Whether the access email fires is decided from a PriorState snapshot taken
once, before the first write.
"""

import logging
from collections import namedtuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.errors import DependencyFailure
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.company import Company, CompanyUser
from app.models.subscription import Subscription
from app.models.user import Profile, UserRole
from app.services import identity_service
from app.services.period_service import Period
from app.utils import parse_timestamp

logger = logging.getLogger(__name__)

GATEWAY = "cakto"
OWNER_ROLE = "admin"

PriorState = namedtuple(
    "PriorState",
    ["had_paid_subscription", "checkout_status", "company_completed"],
)


def has_paid_subscription(company_id):
    """Has this company ever had a gateway-paid (non-trial) subscription row?"""
    rows = Subscription.query.filter_by(company_id=company_id).all()
    return any(row.is_paid for row in rows)


def snapshot_prior_state(ctx):
    """Invariants the writer needs, computed before anything is written."""
    try:
        had_paid = False if ctx.company_created else has_paid_subscription(ctx.company.id)
    except SQLAlchemyError as e:
        raise DependencyFailure(f"subscription lookup failed: {e}") from e
    return PriorState(
        had_paid_subscription=had_paid,
        checkout_status=ctx.checkout.status if ctx.checkout is not None else None,
        company_completed=bool(ctx.company.completed),
    )


def should_send_access_email(prior):
    """First true activation only: no earlier paid row, checkout not done."""
    if prior.had_paid_subscription:
        return False
    return prior.checkout_status != "completed"


def _commit(step):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"{step} write failed: {e}") from e


def _insert_if_absent(obj, lookup, step):
    """Insert `obj` unless `lookup()` finds a row; a lost race counts as present."""
    existing = lookup()
    if existing is not None:
        return existing
    db.session.add(obj)
    try:
        db.session.commit()
        return obj
    except IntegrityError:
        db.session.rollback()
        existing = lookup()
        if existing is None:
            raise DependencyFailure(f"{step} insert failed")
        return existing
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"{step} insert failed: {e}") from e


# ──────────────────────────────────────────────
# Individual writes
# ──────────────────────────────────────────────

def upsert_profile(ctx, prior):
    """(a) Link the user's profile to the company and set first-run flags."""
    user, company = ctx.user, ctx.company

    profile = _insert_if_absent(
        Profile(id=user.id, full_name=user.full_name or ctx.email),
        lambda: db.session.get(Profile, user.id),
        "profile",
    )
    profile.company_id = company.id
    if not profile.full_name:
        profile.full_name = user.full_name or ctx.email

    metadata = {"company_id": company.id, "has_active_subscription": True}
    if not prior.company_completed:
        profile.must_complete_company = True
        profile.must_complete_onboarding = True
        metadata["must_complete_company"] = True
    if ctx.user_created:
        profile.force_password_change = True
        metadata["force_password_change"] = True

    identity_service.update_user_metadata(user, **metadata)
    _commit("profile")
    return profile


def grant_owner_role(ctx):
    """(b) Idempotent role grant, unique on (user_id, role)."""
    user_id = ctx.user.id
    return _insert_if_absent(
        UserRole(user_id=user_id, role=OWNER_ROLE),
        lambda: UserRole.query.filter_by(user_id=user_id, role=OWNER_ROLE).first(),
        "role",
    )


def link_company_member(ctx):
    """(c) Tenant membership, inserted only if absent."""
    user_id, company_id = ctx.user.id, ctx.company.id
    return _insert_if_absent(
        CompanyUser(company_id=company_id, user_id=user_id),
        lambda: CompanyUser.query.filter_by(company_id=company_id, user_id=user_id).first(),
        "membership",
    )


def _find_subscription(ctx):
    sub = Subscription.query.filter_by(
        gateway_subscription_id=ctx.event.subscription_id
    ).first()
    if sub is not None:
        return sub
    return (
        Subscription.query
        .filter(
            Subscription.company_id == ctx.company.id,
            Subscription.status.in_(Subscription.LIVE_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
        .first()
    )


def _apply_subscription_fields(sub, ctx, period):
    event = ctx.event
    sub.user_id = ctx.user.id
    sub.company_id = ctx.company.id
    sub.plan_id = ctx.plan.id
    sub.status = "active"
    sub.gateway = GATEWAY
    sub.gateway_subscription_id = event.subscription_id
    sub.current_period_ends_at = period.ends_at
    sub.trial_ends_at = None
    sub.last_payment_status = event.payment_status
    if event.order_id:
        sub.gateway_order_id = event.order_id
    if event.payment_link_url:
        sub.payment_link_url = event.payment_link_url
    if event.payment_link_id:
        sub.gateway_payment_link_id = event.payment_link_id
    sub.customer_name = event.customer_name or (
        ctx.checkout.full_name if ctx.checkout is not None else None
    ) or sub.customer_name
    sub.customer_email = ctx.email
    if event.customer_phone:
        sub.customer_phone = event.customer_phone
    if event.customer_document:
        sub.customer_document = event.customer_document


def upsert_subscription(ctx, period):
    """(d) Update the matched row in place, else insert one."""
    sub = _find_subscription(ctx)
    if sub is None:
        sub = Subscription(company_id=ctx.company.id)
        db.session.add(sub)
    _apply_subscription_fields(sub, ctx, period)

    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery inserted this gateway subscription first.
        db.session.rollback()
        sub = Subscription.query.filter_by(
            gateway_subscription_id=ctx.event.subscription_id
        ).first()
        if sub is None:
            raise DependencyFailure("subscription upsert failed")
        _apply_subscription_fields(sub, ctx, period)
        _commit("subscription")
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"subscription write failed: {e}") from e
    return sub


def _email_free_for(company, email):
    other = Company.query.filter(
        func.lower(Company.email) == email.lower(), Company.id != company.id
    ).first()
    return other is None


def update_company(ctx, period, prior):
    """(e) Plan, status and window; start date only for fresh windows."""
    company, event = ctx.company, ctx.event

    company.plan_id = ctx.plan.id
    company.subscription_status = "active"
    company.subscription_end_date = period.ends_at
    company.is_active = True
    if ctx.company_created or not period.extends_active:
        company.subscription_start_date = period.starts_at
    if company.trial_active:
        company.trial_active = False
    if event.customer_phone and not company.phone:
        company.phone = event.customer_phone
    if ctx.email and not company.email and _email_free_for(company, ctx.email):
        company.email = ctx.email

    # Written in the same commit as the window, so a retry can find it.
    if _audit_for_event(event.event_id) is None:
        db.session.add(AuditEvent(
            company_id=company.id,
            actor_user_id=None,
            event_id=event.event_id,
            action="subscription.renewed" if prior.had_paid_subscription else "subscription.activated",
            metadata_={
                "gateway_subscription_id": event.subscription_id,
                "plan_id": ctx.plan.id,
                "period_starts_at": period.starts_at.isoformat(),
                "period_ends_at": period.ends_at.isoformat(),
                "extends_active": period.extends_active,
                "extends_trial": period.extends_trial,
            },
        ))
    _commit("company")
    return company


def _audit_for_event(event_id):
    try:
        return AuditEvent.query.filter_by(event_id=event_id).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"audit lookup failed: {e}") from e


def applied_period(ctx):
    """The window an earlier attempt at this same event already committed.

    A retry reuses it instead of stacking another period on top of the
    window it wrote itself. None when this event has not been applied yet.
    """
    if ctx.company_created:
        return None
    audit = _audit_for_event(ctx.event.event_id)
    if audit is None or audit.company_id != ctx.company.id:
        return None
    meta = audit.metadata_ or {}
    starts_at = parse_timestamp(meta.get("period_starts_at"))
    ends_at = parse_timestamp(meta.get("period_ends_at"))
    if starts_at is None or ends_at is None:
        return None
    logger.info(f"Event {ctx.event.event_id} already applied; reusing its window")
    return Period(
        starts_at, ends_at, bool(meta.get("extends_active")), bool(meta.get("extends_trial"))
    )


def provision(ctx, period, prior):
    """Run writes (a)–(e). Returns True if the access email should fire."""
    upsert_profile(ctx, prior)
    grant_owner_role(ctx)
    link_company_member(ctx)
    upsert_subscription(ctx, period)
    update_company(ctx, period, prior)

    logger.info(
        f"Provisioned company {ctx.company.id}: plan={ctx.plan.id} "
        f"ends_at={period.ends_at.isoformat()} "
        f"(extends_active={period.extends_active}, extends_trial={period.extends_trial})"
    )
    return should_send_access_email(prior)


def complete_checkout(ctx):
    """Bind the checkout to the resolved user/company and close it."""
    checkout = ctx.checkout
    if checkout is None:
        return
    checkout.status = "completed"
    checkout.cakto_subscription_id = ctx.event.subscription_id
    checkout.user_id = ctx.user.id
    checkout.company_id = ctx.company.id
    if checkout.plan_id is None:
        checkout.plan_id = ctx.plan.id
    _commit("checkout")
