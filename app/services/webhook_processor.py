"""Webhook processor — runs one verified delivery through the pipeline.

    parse → ledger → classify → resolve → period → provision → notify → done

Every path ends in exactly one of:

- ledger row marked processed (processed/ignored/skipped/duplicate) ⇒ 200
- ledger row left unprocessed with last_error set ⇒ 500 (provider retries)
- another delivery of the same id still inserting ⇒ 409

Returns a WebhookResult the blueprint turns into a JSON response.
"""

import logging
from collections import namedtuple

from sqlalchemy.exc import SQLAlchemyError

from app.errors import (
    DependencyFailure,
    EventInFlight,
    NotificationFailure,
    NotRecognized,
    WebhookError,
)
from app.extensions import db
from app.services import webhook_ledger
from app.services.cakto_payload import parse_event
from app.services.entity_resolver import resolve_entities
from app.services.event_classifier import ACTIVE, classify
from app.services.notification_service import send_access_email
from app.services.period_service import resolve_new_period
from app.services.provisioning_service import (
    applied_period,
    complete_checkout,
    provision,
    snapshot_prior_state,
)
from app.utils import as_utc

logger = logging.getLogger(__name__)

GATEWAY = "cakto"

WebhookResult = namedtuple("WebhookResult", ["status_code", "body"])


def _ok(**flags):
    return WebhookResult(200, {"ok": True, **flags})


def process_event(payload, raw_body, header_event_id=None):
    """Process a decoded, signature-verified payload."""
    event = parse_event(payload, raw_body, header_event_id)
    logger.info(
        f"Cakto webhook received: event_id={event.event_id} "
        f"type={event.event_name} payment_status={event.payment_status} "
        f"subscription_id={event.subscription_id} checkout_token={event.checkout_token}"
    )

    try:
        ledger, is_new, already_processed = webhook_ledger.record_if_new(
            GATEWAY, event.event_id, event.event_name, payload
        )
    except EventInFlight:
        return WebhookResult(409, {"ok": False, "error": "event in flight"})
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Could not record webhook event {event.event_id}: {e}", exc_info=True)
        return WebhookResult(500, {"ok": False, "error": "ledger unavailable"})

    if already_processed:
        logger.info(f"Duplicate webhook event {event.event_id}, skipping")
        return _ok(duplicate=True)

    return run_pipeline(event, ledger)


def run_pipeline(event, ledger):
    """Everything after the ledger write. Also the entry point for replays."""
    try:
        _apply(event, ledger)
        webhook_ledger.mark_processed(ledger)
    except WebhookError as e:
        if e.outcome is None:
            return _fail(event, e)
        logger.info(f"Webhook event {event.event_id} {e.outcome}: {e}")
        try:
            webhook_ledger.mark_processed(ledger, e.outcome)
        except SQLAlchemyError as db_error:
            return _fail(event, db_error)
        return _ok(**{e.outcome: True})
    except Exception as e:
        return _fail(event, e)

    return _ok()


def _fail(event, error):
    logger.error(f"Webhook event {event.event_id} failed: {error}", exc_info=True)
    db.session.rollback()
    try:
        webhook_ledger.record_failure(event.event_id, error)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Could not record failure for webhook event {event.event_id}")
    return WebhookResult(500, {"ok": False, "error": "processing failed"})


def _apply(event, ledger):
    if classify(event.event_name, event.status) != ACTIVE:
        raise NotRecognized(
            f"event {event.event_name!r} with status {event.status!r} not actionable"
        )

    # received_at, not the wall clock: a replay recomputes the same window.
    now = as_utc(ledger.received_at)

    ctx = resolve_entities(event, now)
    prior = snapshot_prior_state(ctx)
    period = applied_period(ctx) or resolve_new_period(
        ctx.company, ctx.plan, event, now, ctx.company_created
    )

    if provision(ctx, period, prior):
        _notify(ctx)
    else:
        logger.info(
            f"Access email suppressed for company {ctx.company.id}: "
            f"had_paid_subscription={prior.had_paid_subscription} "
            f"checkout_status={prior.checkout_status}"
        )

    complete_checkout(ctx)
    logger.info(
        f"Webhook event {event.event_id} activated company {ctx.company.id} "
        f"until {period.ends_at.isoformat()}"
    )


def _notify(ctx):
    """Best-effort; a failed send never blocks the ledger write."""
    try:
        sent = send_access_email(
            ctx.email,
            full_name=ctx.user.full_name,
            password=ctx.temp_password,
            company_name=ctx.company.name,
        )
        if not sent:
            raise NotificationFailure(f"access email to {ctx.email} not sent")
    except NotificationFailure as e:
        logger.warning(str(e))
    except Exception as e:
        logger.error(f"Access email to {ctx.email} failed: {e}", exc_info=True)


def replay_pending(limit=100, event_id=None):
    """Re-run recorded but unprocessed deliveries from their stored payloads.

    Yields (event_id, WebhookResult) per row.
    """
    for ledger in webhook_ledger.pending_events(limit=limit, event_id=event_id):
        payload = ledger.payload if isinstance(ledger.payload, dict) else {}
        event = parse_event(payload, b"")
        # The stored id wins: it may have come from a header or a body hash.
        event.event_id = ledger.event_id
        ledger.attempts = (ledger.attempts or 0) + 1
        db.session.commit()
        yield ledger.event_id, run_pipeline(event, ledger)
