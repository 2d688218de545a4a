"""Entity resolver — plan, checkout, user and company for a webhook event.

Every entity is resolved through an ordered list of small rule functions.
Each rule takes the shared Resolution context and returns
(value, found); `first_match` runs them in order and stops at the first
hit. The last rule of the user and company chains creates the entity.

Creates are guarded by unique keys (plan offer id, user email, company
email/slug). When a concurrent delivery wins the insert, the winner's row is
re-read and reused, so racing deliveries converge on one entity.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.errors import DependencyFailure, DuplicateCompletion, MalformedInput
from app.extensions import db
from app.models.checkout import SubscriptionCheckout
from app.models.company import Company, CompanyUser
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import Profile, User
from app.services import identity_service
from app.services.cakto_payload import CaktoEvent
from app.services.cakto_service import offer_id_candidates
from app.services.period_service import infer_billing_period, infer_period_days
from app.utils import as_utc, slugify

logger = logging.getLogger(__name__)

MAX_NUMERIC_SLUG_ATTEMPTS = 25
DEFAULT_COMPANY_NAME = "Empresa"
NOT_FOUND = (None, False)


@dataclass
class Resolution:
    """Everything resolved for one event, threaded through the rule chains."""

    event: CaktoEvent
    now: datetime
    checkout: SubscriptionCheckout = None
    checkout_rule: str = None
    plan: Plan = None
    email: str = None
    user: User = None
    user_created: bool = False
    temp_password: str = None
    company: Company = None
    company_created: bool = False
    company_rule: str = None


def first_match(rules, ctx):
    """Run rules in order; return (value, rule_name) for the first hit."""
    for rule in rules:
        value, found = rule(ctx)
        if found:
            return value, rule.__name__
    return None, None


def _found(value):
    return (value, True) if value is not None else NOT_FOUND


# ──────────────────────────────────────────────
# Plan
# ──────────────────────────────────────────────

def _plan_from_checkout(ctx):
    if ctx.checkout is None or not ctx.checkout.plan_id:
        return NOT_FOUND
    return _found(db.session.get(Plan, ctx.checkout.plan_id))


def _plan_by_offer_id(ctx):
    if not ctx.event.offer_id:
        return NOT_FOUND
    candidates = offer_id_candidates(
        ctx.event.offer_id, current_app.config["CAKTO_CHECKOUT_BASE_URL"]
    )
    plan = Plan.query.filter(Plan.cakto_plan_id.in_(candidates)).first()
    return _found(plan)


def _plan_from_offer_metadata(ctx):
    """Materialise an unknown offer as a Plan."""
    event = ctx.event
    if not event.offer_id:
        return NOT_FOUND

    plan = Plan(
        name=event.offer_name or f"Plano {event.offer_id}",
        price=_price(event.offer_price),
        billing_period=infer_billing_period(event.interval_type),
        period_days=infer_period_days(event.interval_type, event.interval_count),
        cakto_plan_id=event.offer_id,
        active=True,
    )
    db.session.add(plan)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Plan for offer {event.offer_id} created concurrently")
        return _plan_by_offer_id(ctx)

    logger.info(
        f"Created plan {plan.id} for unknown offer {event.offer_id} "
        f"({plan.billing_period}, {plan.period_days}d)"
    )
    return plan, True


def _price(value):
    try:
        return float(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _existing_subscription(ctx):
    sub_id = ctx.event.subscription_id
    if not sub_id:
        return None
    return Subscription.query.filter_by(gateway_subscription_id=sub_id).first()


def _plan_from_subscription(ctx):
    """Renewals may carry no offer at all; keep the plan already on file."""
    sub = _existing_subscription(ctx)
    if sub is None or not sub.plan_id:
        return NOT_FOUND
    return _found(db.session.get(Plan, sub.plan_id))


PLAN_RULES = [_plan_from_checkout, _plan_by_offer_id]

# Run only once the event is known to proceed, so a duplicate or skipped
# event never leaves a new plan behind.
PLAN_FALLBACK_RULES = [_plan_from_offer_metadata, _plan_from_subscription]


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def _checkout_by_token(ctx):
    token = ctx.event.checkout_token
    if not token:
        return NOT_FOUND
    return _found(SubscriptionCheckout.query.filter_by(token=token).first())


def _checkout_by_email_and_plan(ctx):
    if not ctx.email or ctx.plan is None:
        return NOT_FOUND
    checkout = (
        SubscriptionCheckout.query
        .filter(
            func.lower(SubscriptionCheckout.email) == ctx.email,
            SubscriptionCheckout.plan_id == ctx.plan.id,
            SubscriptionCheckout.status.in_(SubscriptionCheckout.OPEN_STATUSES),
        )
        .order_by(SubscriptionCheckout.created_at.desc())
        .first()
    )
    return _found(checkout)


def _checkout_by_email(ctx):
    """Newest checkout for the email that is open, or terminal but recent.

    A recently completed checkout is returned on purpose: the duplicate
    guard then absorbs a second completion sent under another event id.
    """
    if not ctx.email:
        return NOT_FOUND
    window = timedelta(minutes=current_app.config["CAKTO_RECENT_CHECKOUT_MINUTES"])
    candidates = (
        SubscriptionCheckout.query
        .filter(func.lower(SubscriptionCheckout.email) == ctx.email)
        .order_by(SubscriptionCheckout.created_at.desc())
        .limit(10)
        .all()
    )
    for checkout in candidates:
        if checkout.status in SubscriptionCheckout.OPEN_STATUSES:
            return checkout, True
        touched = as_utc(checkout.updated_at or checkout.created_at)
        if checkout.is_terminal and touched and ctx.now - touched <= window:
            return checkout, True
    return NOT_FOUND


CHECKOUT_FALLBACK_RULES = [_checkout_by_email_and_plan, _checkout_by_email]


# ──────────────────────────────────────────────
# User
# ──────────────────────────────────────────────

def _user_from_checkout(ctx):
    if ctx.checkout is None or not ctx.checkout.user_id:
        return NOT_FOUND
    return _found(db.session.get(User, ctx.checkout.user_id))


def _user_by_email(ctx):
    return _found(identity_service.find_user_by_email(ctx.email))


def _create_user(ctx):
    password = identity_service.generate_temp_password(
        current_app.config.get("TEMP_PASSWORD_LENGTH", 12)
    )
    user, created = identity_service.create_user(
        ctx.email,
        password,
        full_name=_customer_name(ctx) or ctx.email,
        metadata={
            "force_password_change": True,
            "must_complete_company": True,
        },
    )
    if created:
        ctx.user_created = True
        ctx.temp_password = password
    return user, True


USER_RULES = [_user_from_checkout, _user_by_email, _create_user]


# ──────────────────────────────────────────────
# Company
# ──────────────────────────────────────────────

def _company_from_checkout(ctx):
    if ctx.checkout is None or not ctx.checkout.company_id:
        return NOT_FOUND
    return _found(db.session.get(Company, ctx.checkout.company_id))


def _company_from_payload(ctx):
    if not ctx.event.company_id:
        return NOT_FOUND
    return _found(db.session.get(Company, ctx.event.company_id))


def _company_from_subscription(ctx):
    sub = _existing_subscription(ctx)
    if sub is None:
        return NOT_FOUND
    return _found(db.session.get(Company, sub.company_id))


def _company_from_profile(ctx):
    if ctx.user is None:
        return NOT_FOUND
    profile = db.session.get(Profile, ctx.user.id)
    if profile is None or not profile.company_id:
        return NOT_FOUND
    return _found(db.session.get(Company, profile.company_id))


def _company_by_email(ctx):
    if not ctx.email:
        return NOT_FOUND
    return _found(_find_company_by_email(ctx.email))


def _company_owned_by_user(ctx):
    if ctx.user is None:
        return NOT_FOUND
    company = (
        Company.query
        .filter_by(owner_user_id=ctx.user.id)
        .order_by(Company.created_at.asc())
        .first()
    )
    return _found(company)


def _company_via_membership(ctx):
    if ctx.user is None:
        return NOT_FOUND
    link = (
        CompanyUser.query
        .filter_by(user_id=ctx.user.id)
        .order_by(CompanyUser.created_at.asc())
        .first()
    )
    if link is None:
        return NOT_FOUND
    return _found(db.session.get(Company, link.company_id))


def _create_company(ctx):
    name = company_name_candidate(ctx)
    company = _insert_company(ctx, name, unique_slug(slugify(name)))
    if company is None:
        # Lost a slug race with an unrelated tenant: one more try, random suffix.
        company = _insert_company(ctx, name, _random_slug(slugify(name)))
    if company is None:
        raise DependencyFailure(f"could not create company for {ctx.email}")
    return company, True


COMPANY_RULES = [
    _company_from_checkout,
    _company_from_payload,
    _company_from_subscription,
    _company_from_profile,
    _company_by_email,
    _company_owned_by_user,
    _company_via_membership,
    _create_company,
]


def _find_company_by_email(email):
    return Company.query.filter(func.lower(Company.email) == email.lower()).first()


def _insert_company(ctx, name, slug):
    company = Company(
        name=name,
        slug=slug,
        email=ctx.email,
        phone=ctx.event.customer_phone,
        is_active=True,
        owner_user_id=ctx.user.id if ctx.user else None,
        completed=False,
    )
    db.session.add(company)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = _find_company_by_email(ctx.email)
        if existing is not None:
            logger.info(f"Company for {ctx.email} created concurrently, reusing it")
            return existing
        return None

    ctx.company_created = True
    logger.info(f"Created company {company.id} ({company.slug}) for {ctx.email}")
    return company


def _customer_name(ctx):
    if ctx.checkout is not None and ctx.checkout.full_name:
        return ctx.checkout.full_name
    return ctx.event.customer_name


def company_name_candidate(ctx):
    candidates = [
        ctx.checkout.company_name if ctx.checkout is not None else None,
        ctx.event.company_name,
        _customer_name(ctx),
        ctx.email.split("@", 1)[0] if ctx.email else None,
    ]
    for candidate in candidates:
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return DEFAULT_COMPANY_NAME


def _slug_taken(slug):
    return db.session.query(Company.id).filter_by(slug=slug).first() is not None


def _random_slug(base):
    return f"{base or 'empresa'}-{uuid.uuid4().hex[:8]}"


def unique_slug(base):
    """First free slug among base, base-1 .. base-25, then a random suffix."""
    base = base or "empresa"
    if not _slug_taken(base):
        return base
    for suffix in range(1, MAX_NUMERIC_SLUG_ATTEMPTS + 1):
        candidate = f"{base}-{suffix}"
        if not _slug_taken(candidate):
            return candidate
    return _random_slug(base)


# ──────────────────────────────────────────────
# Orchestration
# ──────────────────────────────────────────────

def resolve_entities(event, now):
    """Resolve plan, checkout, email, user and company for an active event.

    Raises DuplicateCompletion when the checkout behind the event is already
    terminal, and MalformedInput when email, plan or subscription id cannot
    be determined. Both are raised before any plan, user or company is
    created.
    """
    ctx = Resolution(event=event, now=now, email=event.email)

    try:
        ctx.checkout, ctx.checkout_rule = first_match([_checkout_by_token], ctx)
        ctx.plan, _ = first_match(PLAN_RULES, ctx)

        if ctx.checkout is None:
            ctx.checkout, ctx.checkout_rule = first_match(CHECKOUT_FALLBACK_RULES, ctx)
            if ctx.checkout is not None and ctx.checkout.plan_id:
                adopted = db.session.get(Plan, ctx.checkout.plan_id)
                if adopted is not None:
                    ctx.plan = adopted
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"checkout/plan lookup failed: {e}") from e

    if ctx.checkout is not None and ctx.checkout.is_terminal:
        raise DuplicateCompletion(
            f"checkout {ctx.checkout.id} already {ctx.checkout.status}",
            checkout_id=ctx.checkout.id,
        )

    if ctx.checkout is not None and ctx.checkout.email:
        ctx.email = ctx.checkout.email.strip().lower()
    if not ctx.email:
        try:
            sub = _existing_subscription(ctx)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise DependencyFailure(f"subscription lookup failed: {e}") from e
        if sub is not None and sub.customer_email:
            ctx.email = sub.customer_email.strip().lower()

    if ctx.plan is None and ctx.email and event.subscription_id:
        try:
            ctx.plan, _ = first_match(PLAN_FALLBACK_RULES, ctx)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise DependencyFailure(f"plan resolution failed: {e}") from e

    missing = [
        name for name, value in (
            ("email", ctx.email),
            ("plan", ctx.plan),
            ("subscription_id", event.subscription_id),
        )
        if not value
    ]
    if missing:
        raise MalformedInput(f"missing {', '.join(missing)}", missing=missing)

    try:
        ctx.user, _ = first_match(USER_RULES, ctx)
        ctx.company, ctx.company_rule = first_match(COMPANY_RULES, ctx)
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"user/company resolution failed: {e}") from e

    logger.info(
        f"Resolved event {event.event_id}: plan={ctx.plan.id} user={ctx.user.id} "
        f"company={ctx.company.id} via {ctx.company_rule} "
        f"checkout={ctx.checkout.id if ctx.checkout else None} ({ctx.checkout_rule})"
    )
    return ctx
