"""Period calculator — the subscription validity window after an event.

A renewal never shortens paid time: when the company still has a valid
active window, the new period stacks on top of its end. A trial conversion
extends from where the trial would have ended. Otherwise the period starts
at the event's own start field, or at `now`.

`now` is supplied by the caller (the ledger's received_at), so replaying the
same event against the same prior state yields the same window.
"""

from collections import namedtuple
from datetime import timedelta

from app.utils import as_utc

DEFAULT_MONTH_DAYS = 30
DEFAULT_YEAR_DAYS = 365

Period = namedtuple("Period", ["starts_at", "ends_at", "extends_active", "extends_trial"])


def infer_billing_period(interval_type):
    """'year' anywhere in the interval string means yearly, else monthly."""
    if interval_type and "year" in str(interval_type).lower():
        return "yearly"
    return "monthly"


def infer_period_days(interval_type, interval_count=None):
    count = interval_count if interval_count and interval_count > 0 else 1
    if infer_billing_period(interval_type) == "yearly":
        return DEFAULT_YEAR_DAYS * count
    return DEFAULT_MONTH_DAYS * count


def plan_period_days(plan, event=None):
    """Plan's stored length, else the event's interval, else the cadence."""
    if plan is not None and plan.period_days:
        return plan.period_days
    if event is not None and (event.interval_type or event.interval_count):
        return infer_period_days(event.interval_type, event.interval_count)
    if plan is not None and plan.billing_period == "yearly":
        return DEFAULT_YEAR_DAYS
    return DEFAULT_MONTH_DAYS


def has_valid_active_window(company, now, company_created=False):
    if company is None or company_created:
        return False
    ends_at = as_utc(company.subscription_end_date)
    return (
        company.subscription_status == "active"
        and ends_at is not None
        and ends_at > now
    )


def has_valid_trial_window(company, now, company_created=False):
    if company is None or company_created:
        return False
    trial_ends_at = as_utc(company.trial_ends_at)
    in_trial = company.trial_active or company.subscription_status == "trial"
    return in_trial and trial_ends_at is not None and trial_ends_at > now


def resolve_new_period(company, plan, event, now, company_created=False):
    """Compute the new window. Returns a Period."""
    now = as_utc(now)

    if has_valid_active_window(company, now, company_created):
        starts_at = as_utc(company.subscription_end_date)
        extends_active, extends_trial = True, False
    elif has_valid_trial_window(company, now, company_created):
        starts_at = as_utc(company.trial_ends_at)
        extends_active, extends_trial = False, True
    else:
        starts_at = as_utc(event.period_start) if event.period_start else now
        extends_active, extends_trial = False, False

    ends_at = starts_at + timedelta(days=plan_period_days(plan, event))
    return Period(starts_at, ends_at, extends_active, extends_trial)


def resolve_new_period_end(company, plan, event, now, company_created=False):
    return resolve_new_period(company, plan, event, now, company_created).ends_at
