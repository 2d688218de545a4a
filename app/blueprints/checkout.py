"""Checkout blueprint — /cakto/checkout, /cakto/offers

Public API used by the pricing page before the customer leaves for the
gateway's hosted checkout.

Route Map:
  POST /cakto/checkout          — Create a checkout intent, return the checkout URL
  GET  /cakto/checkout/<token>  — Poll whether the webhook has provisioned it yet
  GET  /cakto/offers            — Active offers from the CAKTO API
"""

import bleach
import logging
import re
import secrets
from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from app.extensions import db, limiter
from app.models.checkout import SubscriptionCheckout
from app.models.plan import Plan
from app.services.cakto_service import CaktoAPIError, build_checkout_url, get_cakto_client

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/cakto")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CHECKOUT_TOKEN_PARAM = "checkout_token"


def _clean(value):
    """Plain text only; names end up in the access email."""
    if not value:
        return None
    return bleach.clean(str(value), tags=[], strip=True).strip() or None


def _with_token(url, token):
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({CHECKOUT_TOKEN_PARAM: token})}"


@checkout_bp.route("/checkout", methods=["POST"])
@limiter.limit(lambda: current_app.config["CHECKOUT_RATE_LIMIT"])
def create_checkout():
    """
    Create a checkout intent for a plan.

    Body: { plan_id, email, full_name?, company_name? }

    Returns: { checkout_url, token } or { error: "..." }
    """
    data = request.get_json(silent=True) or {}
    plan_id = (data.get("plan_id") or "").strip()
    email = (data.get("email") or "").strip().lower()
    full_name = _clean(data.get("full_name"))
    company_name = _clean(data.get("company_name"))

    if not plan_id or not email:
        return jsonify({"error": "plan_id and email are required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"error": "Invalid email address"}), 400

    plan = db.session.get(Plan, plan_id)
    if plan is None or not plan.active:
        return jsonify({"error": "Plan not found"}), 404
    if not plan.cakto_plan_id:
        return jsonify({"error": "Plan is not linked to a CAKTO offer"}), 400

    existing = SubscriptionCheckout.query.filter(
        func.lower(SubscriptionCheckout.email) == email,
        SubscriptionCheckout.plan_id == plan.id,
        SubscriptionCheckout.status.in_(SubscriptionCheckout.OPEN_STATUSES),
    ).first()
    if existing:
        return jsonify({"error": "A checkout for this plan is already in progress"}), 409

    checkout = SubscriptionCheckout(
        token=secrets.token_urlsafe(24),
        email=email,
        full_name=full_name,
        company_name=company_name,
        plan_id=plan.id,
        status="created",
    )
    db.session.add(checkout)
    db.session.commit()

    checkout_url = _with_token(
        build_checkout_url(plan.cakto_plan_id), checkout.token
    )
    checkout.status = "pending"
    db.session.commit()

    logger.info(f"Checkout {checkout.id} created for {email} on plan {plan.id}")
    return jsonify({"checkout_url": checkout_url, "token": checkout.token}), 201


@checkout_bp.route("/checkout/<token>", methods=["GET"])
def checkout_status(token):
    """202 until the webhook binds a user, then 200 with the tenant ids."""
    checkout = SubscriptionCheckout.query.filter_by(token=token).first()
    if checkout is None:
        return jsonify({"error": "Checkout not found"}), 404

    body = {
        "status": checkout.status,
        "user_id": checkout.user_id,
        "company_id": checkout.company_id,
    }
    if not checkout.user_id:
        return jsonify(body), 202
    return jsonify(body), 200


@checkout_bp.route("/offers", methods=["GET"])
def list_offers():
    client = get_cakto_client()
    if not client.configured:
        return jsonify({"error": "CAKTO API not configured"}), 503

    try:
        offers = client.list_offers(status=request.args.get("status", "active"))
    except (CaktoAPIError, ValueError) as e:
        logger.error(f"Failed to list CAKTO offers: {e}")
        return jsonify({"error": "Could not load offers"}), 502
    except Exception as e:
        logger.error(f"CAKTO offers request failed: {e}", exc_info=True)
        return jsonify({"error": "Could not load offers"}), 502

    return jsonify({"offers": offers}), 200
