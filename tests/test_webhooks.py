"""Tests for the CAKTO webhook endpoint, end to end.

Covers:
- Transport: invalid JSON, wrong method, signature rejection
- First purchase: plan bootstrapping, user/company creation, access email
- Redelivery: ledger short-circuit, no extra writes or emails
- Renewal: period stacks on the still-valid window
- Trial conversion
- Checkout correlation and the duplicate-completion guard
- Ignored / skipped outcomes
- Dependency failures, retries and in-flight deliveries
"""

import json
import re
from datetime import timedelta
from unittest.mock import patch

from werkzeug.security import check_password_hash

from app.errors import DependencyFailure, EventInFlight
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.checkout import SubscriptionCheckout
from app.models.company import Company, CompanyUser
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import Profile, User, UserRole
from app.models.webhook_event import WebhookEvent
from app.utils import as_utc, utcnow

SPEC_EVENT = {
    "type": "purchase.approved",
    "data": {
        "id": "sub_1",
        "customer": {"email": "a@x.com"},
        "offer": {"id": "off_1", "name": "Pro", "price": 4900, "intervalType": "month"},
    },
}


def _counts():
    return {
        "users": User.query.count(),
        "companies": Company.query.count(),
        "subscriptions": Subscription.query.count(),
        "plans": Plan.query.count(),
        "events": WebhookEvent.query.count(),
    }


class TestWebhookTransport:
    """Tests for request validation before the ledger is touched."""

    def test_invalid_json_returns_400(self, client):
        resp = client.post(
            "/cakto/webhook", data="{not json", content_type="application/json"
        )
        assert resp.status_code == 400
        assert WebhookEvent.query.count() == 0

    def test_non_object_json_returns_400(self, client):
        resp = client.post(
            "/cakto/webhook", data="[1, 2]", content_type="application/json"
        )
        assert resp.status_code == 400

    def test_get_not_allowed(self, client):
        resp = client.get("/cakto/webhook")
        assert resp.status_code == 405

    def test_missing_signature_returns_401(self, post_webhook, mock_send_email):
        resp = post_webhook(SPEC_EVENT, sign=False)
        assert resp.status_code == 401
        assert WebhookEvent.query.count() == 0

    def test_non_ascii_signature_returns_401(self, post_webhook, mock_send_email):
        resp = post_webhook(SPEC_EVENT, sign=False, headers={"X-Cakto-Signature": "café"})
        assert resp.status_code == 401
        assert WebhookEvent.query.count() == 0

    def test_non_ascii_embedded_secret_returns_401(self, post_webhook, mock_send_email):
        resp = post_webhook({**SPEC_EVENT, "secret": "sécret"}, sign=False)
        assert resp.status_code == 401
        assert WebhookEvent.query.count() == 0

    def test_tampered_body_rejected_without_writes(self, post_webhook, mock_send_email):
        """Body changed after signing -> 401, zero ledger or entity writes."""
        tampered = json.loads(json.dumps(SPEC_EVENT))
        tampered["data"]["customer"]["email"] = "attacker@x.com"

        resp = post_webhook(SPEC_EVENT, body=json.dumps(tampered))

        assert resp.status_code == 401
        assert _counts() == {
            "users": 0, "companies": 0, "subscriptions": 0, "plans": 0, "events": 0,
        }
        mock_send_email.assert_not_called()

    def test_sha256_prefixed_signature_accepted(self, app, client, mock_send_email):
        from app.services.cakto_service import compute_signature

        body = json.dumps(SPEC_EVENT)
        sig = compute_signature(app.config["CAKTO_WEBHOOK_SECRET"], body)
        resp = client.post(
            "/cakto/webhook",
            data=body,
            content_type="application/json",
            headers={"X-Signature": f"sha256={sig}"},
        )
        assert resp.status_code == 200

    def test_embedded_secret_accepted(self, post_webhook, mock_send_email):
        payload = dict(SPEC_EVENT, secret="cakto_whsec_test")
        resp = post_webhook(payload, sign=False)
        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True}


class TestFirstPurchase:
    """A purchase for a customer the system has never seen."""

    def test_creates_everything(self, post_webhook, mock_send_email):
        resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True}

        plan = Plan.query.one()
        assert plan.cakto_plan_id == "off_1"
        assert plan.billing_period == "monthly"
        assert plan.period_days == 30

        user = User.query.one()
        assert user.email == "a@x.com"

        company = Company.query.one()
        assert company.slug == "a"
        assert company.subscription_status == "active"
        assert company.plan_id == plan.id
        assert company.owner_user_id == user.id

        event = WebhookEvent.query.one()
        assert event.processed_at is not None
        assert event.status == "processed"

        sub = Subscription.query.one()
        assert sub.status == "active"
        assert sub.gateway == "cakto"
        assert sub.gateway_subscription_id == "sub_1"
        assert as_utc(sub.current_period_ends_at) == (
            as_utc(event.received_at) + timedelta(days=30)
        )
        assert as_utc(company.subscription_end_date) == as_utc(sub.current_period_ends_at)

    def test_links_profile_role_and_membership(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)

        user = User.query.one()
        company = Company.query.one()
        profile = db.session.get(Profile, user.id)
        assert profile.company_id == company.id
        assert profile.force_password_change is True
        assert profile.must_complete_company is True
        assert profile.must_complete_onboarding is True
        assert UserRole.query.filter_by(user_id=user.id, role="admin").count() == 1
        assert CompanyUser.query.filter_by(user_id=user.id, company_id=company.id).count() == 1
        assert user.user_metadata["force_password_change"] is True

    def test_sends_one_access_email_with_working_password(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)

        mock_send_email.assert_called_once()
        kwargs = mock_send_email.call_args.kwargs
        assert kwargs["to"] == "a@x.com"
        assert "http://localhost:8080/auth" in kwargs["text"]

        password = re.search(r"Senha temporária: (\S+)", kwargs["text"]).group(1)
        user = User.query.one()
        assert check_password_hash(user.password_hash, password)

    def test_logs_activation_audit_event(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        audit = AuditEvent.query.one()
        assert audit.action == "subscription.activated"
        assert audit.metadata_["gateway_subscription_id"] == "sub_1"

    def test_yearly_offer_creates_yearly_plan(self, post_webhook, purchase_payload, mock_send_email):
        payload = purchase_payload(offer_id="off_year")
        payload["data"]["offer"]["intervalType"] = "yearly"

        post_webhook(payload)

        plan = Plan.query.one()
        assert plan.billing_period == "yearly"
        assert plan.period_days == 365

    def test_known_offer_reuses_plan(self, post_webhook, purchase_payload, plan, mock_send_email):
        post_webhook(purchase_payload(offer_id="off_pro"))

        assert Plan.query.count() == 1
        assert Subscription.query.one().plan_id == plan.id

    def test_offer_stored_as_checkout_url_matches_bare_id(
        self, post_webhook, purchase_payload, mock_send_email
    ):
        stored = Plan(
            name="Pro", price=49, billing_period="monthly", period_days=30,
            cakto_plan_id="https://pay.cakto.com.br/off_url",
        )
        db.session.add(stored)
        db.session.commit()

        post_webhook(purchase_payload(offer_id="off_url"))

        assert Plan.query.count() == 1
        assert Subscription.query.one().plan_id == stored.id


class TestRedelivery:
    """The same delivery arriving again."""

    def test_identical_payload_short_circuits(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        before = _counts()

        resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True, "duplicate": True}
        assert _counts() == before
        assert mock_send_email.call_count == 1

    def test_replayed_n_times_converges(self, post_webhook, mock_send_email):
        for _ in range(4):
            assert post_webhook(SPEC_EVENT).status_code == 200

        sub = Subscription.query.one()
        event = WebhookEvent.query.one()
        assert as_utc(sub.current_period_ends_at) == (
            as_utc(event.received_at) + timedelta(days=30)
        )
        assert mock_send_email.call_count == 1

    def test_explicit_event_id_header(self, post_webhook, purchase_payload, mock_send_email):
        post_webhook(purchase_payload(), headers={"X-Event-Id": "evt_header_1"})
        assert WebhookEvent.query.one().event_id == "evt_header_1"


class TestRenewal:
    """Renewals stack on the still-valid window."""

    def test_renewal_extends_from_current_end(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        old_end = as_utc(Subscription.query.one().current_period_ends_at)

        resp = post_webhook({
            "type": "subscription.renewed",
            "data": {"id": "sub_1", "current_period_end": "2020-01-01T00:00:00Z"},
        })

        assert resp.get_json() == {"ok": True}
        sub = Subscription.query.one()
        assert as_utc(sub.current_period_ends_at) == old_end + timedelta(days=30)
        assert as_utc(Company.query.one().subscription_end_date) == old_end + timedelta(days=30)

    def test_renewal_ignores_event_period_start(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        old_end = as_utc(Subscription.query.one().current_period_ends_at)

        post_webhook({
            "type": "subscription.renewed",
            "data": {"id": "sub_1", "current_period_start": "2020-01-01T00:00:00Z"},
        })

        assert as_utc(Subscription.query.one().current_period_ends_at) >= old_end

    def test_renewal_keeps_start_date_and_sends_no_email(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        started = as_utc(Company.query.one().subscription_start_date)

        post_webhook({"type": "subscription.renewed", "data": {"id": "sub_1"}})

        assert as_utc(Company.query.one().subscription_start_date) == started
        assert mock_send_email.call_count == 1
        assert Subscription.query.count() == 1
        assert AuditEvent.query.filter_by(action="subscription.renewed").count() == 1

    def test_expired_window_restarts_at_now(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        company = Company.query.one()
        company.subscription_end_date = utcnow() - timedelta(days=3)
        db.session.commit()

        post_webhook({"type": "subscription.renewed", "data": {"id": "sub_1"}})

        renewal = WebhookEvent.query.filter_by(event_type="subscription.renewed").one()
        assert as_utc(Subscription.query.one().current_period_ends_at) == (
            as_utc(renewal.received_at) + timedelta(days=30)
        )


class TestTrialConversion:
    """A company on a running free trial pays."""

    def _trial_company(self):
        user = User(email="t@x.com", password_hash="x", full_name="Tania")
        db.session.add(user)
        db.session.flush()
        company = Company(
            name="Trial Co",
            slug="trial-co",
            email="t@x.com",
            owner_user_id=user.id,
            subscription_status="trial",
            trial_active=True,
            trial_ends_at=utcnow() + timedelta(days=5),
            completed=True,
        )
        db.session.add(company)
        db.session.flush()
        db.session.add(Subscription(
            company_id=company.id, user_id=user.id, status="trial", gateway="trial",
        ))
        db.session.commit()
        return company

    def test_conversion_extends_from_trial_end(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        company = self._trial_company()
        trial_end = as_utc(company.trial_ends_at)

        post_webhook(purchase_payload(email="t@x.com", offer_id="off_pro"))

        company = Company.query.one()
        assert as_utc(company.subscription_end_date) == trial_end + timedelta(days=30)
        assert company.trial_active is False
        assert company.subscription_status == "active"

    def test_conversion_updates_trial_row_in_place(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        self._trial_company()

        post_webhook(purchase_payload(email="t@x.com", offer_id="off_pro"))

        sub = Subscription.query.one()
        assert sub.status == "active"
        assert sub.gateway == "cakto"
        assert sub.trial_ends_at is None

    def test_conversion_emails_existing_user_without_password(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        self._trial_company()

        post_webhook(purchase_payload(email="t@x.com", offer_id="off_pro"))

        mock_send_email.assert_called_once()
        assert "Senha temporária" not in mock_send_email.call_args.kwargs["text"]
        assert User.query.count() == 1

    def test_completed_company_skips_onboarding_flags(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        self._trial_company()

        post_webhook(purchase_payload(email="t@x.com", offer_id="off_pro"))

        profile = Profile.query.one()
        assert profile.must_complete_company is False
        assert profile.force_password_change is False


class TestCheckoutCorrelation:
    """Events tied back to a checkout intent."""

    def _checkout(self, plan, token="tok_1", email="buyer@x.com", status="pending"):
        checkout = SubscriptionCheckout(
            token=token,
            email=email,
            full_name="Bruno Lima",
            company_name="Loja Azul",
            plan_id=plan.id,
            status=status,
        )
        db.session.add(checkout)
        db.session.commit()
        return checkout

    def test_token_binds_checkout(self, post_webhook, purchase_payload, plan, mock_send_email):
        checkout = self._checkout(plan)

        post_webhook(purchase_payload(
            email="other@x.com", offer_id="off_pro", metadata={"checkout_token": "tok_1"},
        ))

        checkout = SubscriptionCheckout.query.one()
        user = User.query.one()
        company = Company.query.one()
        assert checkout.status == "completed"
        assert checkout.user_id == user.id
        assert checkout.company_id == company.id
        assert checkout.cakto_subscription_id == "sub_1"
        # Checkout email wins over the payload's
        assert user.email == "buyer@x.com"
        assert company.slug == "loja-azul"

    def test_email_and_plan_fallback(self, post_webhook, purchase_payload, plan, mock_send_email):
        self._checkout(plan, email="a@x.com")

        post_webhook(purchase_payload(offer_id="off_pro"))

        assert SubscriptionCheckout.query.one().status == "completed"

    def test_second_completion_under_new_id_is_duplicate(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        self._checkout(plan)
        payload = purchase_payload(offer_id="off_pro", metadata={"checkout_token": "tok_1"})
        post_webhook(payload)
        before = _counts()

        resp = post_webhook(payload, headers={"X-Event-Id": "evt_other"})

        assert resp.get_json() == {"ok": True, "duplicate": True}
        assert WebhookEvent.query.filter_by(event_id="evt_other").one().status == "duplicate"
        assert Subscription.query.count() == before["subscriptions"]
        assert mock_send_email.call_count == 1

    def test_recently_completed_checkout_absorbs_email_only_event(
        self, post_webhook, purchase_payload, plan, mock_send_email
    ):
        self._checkout(plan, email="a@x.com", status="completed")

        resp = post_webhook(purchase_payload(offer_id="off_unknown"))

        assert resp.get_json() == {"ok": True, "duplicate": True}
        assert User.query.count() == 0
        assert Plan.query.filter_by(cakto_plan_id="off_unknown").count() == 0
        assert Plan.query.count() == 1


class TestIgnoredAndSkipped:
    """Business no-ops are acknowledged with 200 and settled in the ledger."""

    def test_refused_purchase_ignored(self, post_webhook, purchase_payload, mock_send_email):
        resp = post_webhook(purchase_payload(event="purchase_refused", status="refused"))

        assert resp.get_json() == {"ok": True, "ignored": True}
        event = WebhookEvent.query.one()
        assert event.status == "ignored"
        assert event.processed_at is not None
        assert User.query.count() == 0

    def test_unpaid_status_ignored(self, post_webhook, purchase_payload, mock_send_email):
        resp = post_webhook(purchase_payload(event="subscription_canceled", status="unpaid"))
        assert resp.get_json() == {"ok": True, "ignored": True}

    def test_status_alone_can_activate(self, post_webhook, purchase_payload, mock_send_email):
        resp = post_webhook(purchase_payload(event="webhook", status="paid"))

        assert resp.get_json() == {"ok": True}
        assert Subscription.query.count() == 1

    def test_missing_email_skipped(self, post_webhook, mock_send_email):
        resp = post_webhook({
            "type": "purchase_approved",
            "data": {"id": "sub_9", "offer": {"id": "off_1", "name": "Pro"}},
        })

        assert resp.get_json() == {"ok": True, "skipped": True}
        assert WebhookEvent.query.one().status == "skipped"
        assert User.query.count() == 0
        assert Plan.query.count() == 0

    def test_missing_subscription_id_skipped(self, post_webhook, mock_send_email):
        resp = post_webhook({
            "type": "purchase_approved",
            "data": {"customer": {"email": "a@x.com"}, "offer": {"id": "off_1"}},
        })
        assert resp.get_json() == {"ok": True, "skipped": True}
        assert Plan.query.count() == 0

    def test_ignored_event_not_reevaluated(self, post_webhook, purchase_payload, mock_send_email):
        payload = purchase_payload(event="purchase_refused", status="refused")
        post_webhook(payload)

        resp = post_webhook(payload)

        assert resp.get_json() == {"ok": True, "duplicate": True}


class TestFailures:
    """Dependency failures leave the event retryable."""

    def test_dependency_failure_returns_500_and_stays_unprocessed(
        self, post_webhook, mock_send_email
    ):
        with patch(
            "app.services.webhook_processor.provision",
            side_effect=DependencyFailure("database unavailable"),
        ):
            resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 500
        event = WebhookEvent.query.one()
        assert event.processed_at is None
        assert "database unavailable" in event.last_error
        mock_send_email.assert_not_called()

    def test_retry_after_failure_converges(self, post_webhook, mock_send_email):
        with patch(
            "app.services.webhook_processor.provision",
            side_effect=DependencyFailure("database unavailable"),
        ):
            post_webhook(SPEC_EVENT)

        resp = post_webhook(SPEC_EVENT)

        assert resp.get_json() == {"ok": True}
        event = WebhookEvent.query.one()
        assert event.attempts == 2
        assert event.processed_at is not None
        assert event.last_error is None
        assert User.query.count() == 1
        assert Company.query.count() == 1
        assert Subscription.query.count() == 1

    def test_renewal_retry_after_late_failure_credits_once(self, post_webhook, mock_send_email):
        post_webhook(SPEC_EVENT)
        old_end = as_utc(Company.query.one().subscription_end_date)
        renewal = {"type": "subscription.renewed", "data": {"id": "sub_1"}}

        with patch(
            "app.services.webhook_processor.webhook_ledger.mark_processed",
            side_effect=RuntimeError("commit lost"),
        ):
            assert post_webhook(renewal).status_code == 500

        resp = post_webhook(renewal)

        assert resp.get_json() == {"ok": True}
        expected = old_end + timedelta(days=30)
        assert as_utc(Company.query.one().subscription_end_date) == expected
        assert as_utc(Subscription.query.one().current_period_ends_at) == expected
        assert AuditEvent.query.filter_by(action="subscription.renewed").count() == 1

    def test_first_purchase_retry_after_late_failure_keeps_window(
        self, post_webhook, mock_send_email
    ):
        with patch(
            "app.services.webhook_processor.complete_checkout",
            side_effect=DependencyFailure("checkout write failed"),
        ):
            assert post_webhook(SPEC_EVENT).status_code == 500
        first_end = as_utc(Company.query.one().subscription_end_date)

        post_webhook(SPEC_EVENT)

        assert as_utc(Company.query.one().subscription_end_date) == first_end
        assert AuditEvent.query.count() == 1
        assert WebhookEvent.query.one().processed_at is not None

    def test_unexpected_error_returns_500(self, post_webhook, mock_send_email):
        with patch(
            "app.services.webhook_processor.resolve_new_period",
            side_effect=RuntimeError("boom"),
        ):
            resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 500
        assert WebhookEvent.query.one().processed_at is None

    def test_in_flight_delivery_returns_409(self, post_webhook):
        with patch(
            "app.services.webhook_processor.webhook_ledger.record_if_new",
            side_effect=EventInFlight("in flight"),
        ):
            resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 409

    def test_email_failure_does_not_block(self, post_webhook):
        with patch(
            "app.services.notification_service.send_email", return_value=False
        ):
            resp = post_webhook(SPEC_EVENT)

        assert resp.get_json() == {"ok": True}
        assert WebhookEvent.query.one().processed_at is not None

    def test_email_exception_does_not_block(self, post_webhook):
        with patch(
            "app.services.notification_service.send_email",
            side_effect=RuntimeError("smtp exploded"),
        ):
            resp = post_webhook(SPEC_EVENT)

        assert resp.status_code == 200
        assert Subscription.query.count() == 1


class TestNoDuplicateTenants:
    """Separate deliveries for the same new customer share one tenant."""

    def test_two_events_same_email_one_company(
        self, post_webhook, purchase_payload, mock_send_email
    ):
        post_webhook(purchase_payload(subscription_id="sub_a"))
        post_webhook(purchase_payload(subscription_id="sub_b"))

        assert Company.query.count() == 1
        assert User.query.count() == 1
