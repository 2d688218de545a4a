import os
import logging

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    if not app.config.get("CAKTO_WEBHOOK_SECRET"):
        app.logger.warning(
            "CAKTO_WEBHOOK_SECRET not set — webhook signatures will NOT be verified."
        )

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- CAKTO API client (one token cache per app) ---
    from app.services.cakto_service import CaktoClient, TokenCache
    app.extensions["cakto_client"] = CaktoClient.from_config(app.config, TokenCache())

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.checkout import checkout_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(checkout_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    # --- Error handlers (JSON API only) ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"ok": False, "error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"ok": False, "error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"ok": False, "error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("replay-webhooks")
    @click.option("--event-id", default=None, help="Replay a single ledger event.")
    @click.option("--limit", default=100, show_default=True, help="Max events to replay.")
    def replay_webhooks(event_id, limit):
        """Re-run recorded but unprocessed webhook events.

        Picks up deliveries that were written to the ledger but never marked
        processed (crash, dependency outage) and runs them again from the
        stored payload.

        Usage:
            flask replay-webhooks
            flask replay-webhooks --event-id evt_123
        """
        from app.services.webhook_processor import replay_pending

        count = 0
        failed = 0
        for replayed_id, result in replay_pending(limit=limit, event_id=event_id):
            count += 1
            if result.status_code >= 400:
                failed += 1
            flags = ", ".join(k for k, v in result.body.items() if v is True and k != "ok")
            click.echo(f"  {replayed_id}: {result.status_code} {flags or result.body.get('error', '')}")

        if count == 0:
            click.echo("No unprocessed webhook events.")
            return
        click.echo(f"Replayed {count} event(s), {failed} failed.")

    @app.cli.command("seed-plan")
    @click.option("--offer-id", required=True, help="CAKTO offer id or checkout URL.")
    @click.option("--name", required=True, help="Plan display name.")
    @click.option("--price", required=True, type=float, help="Plan price.")
    @click.option("--yearly", is_flag=True, help="Yearly billing (default monthly).")
    def seed_plan(offer_id, name, price, yearly):
        """Create or update the plan mapped to a CAKTO offer.

        Usage:
            flask seed-plan --offer-id abc123 --name "Pro" --price 49.90
            flask seed-plan --offer-id abc123 --name "Pro anual" --price 499 --yearly
        """
        from app.models.plan import Plan
        from app.services.period_service import DEFAULT_MONTH_DAYS, DEFAULT_YEAR_DAYS

        offer_id = offer_id.strip()
        plan = Plan.query.filter_by(cakto_plan_id=offer_id).first()
        created = plan is None
        if created:
            plan = Plan(cakto_plan_id=offer_id)
            db.session.add(plan)

        plan.name = name
        plan.price = price
        plan.billing_period = "yearly" if yearly else "monthly"
        plan.period_days = DEFAULT_YEAR_DAYS if yearly else DEFAULT_MONTH_DAYS
        plan.active = True
        db.session.commit()

        click.echo(f"{'Created' if created else 'Updated'} plan {plan.name} (id: {plan.id})")
        click.echo(f"  Offer:   {plan.cakto_plan_id}")
        click.echo(f"  Billing: {plan.billing_period} ({plan.period_days} days)")
