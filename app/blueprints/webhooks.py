"""Webhooks blueprint — /cakto/webhook

Receives CAKTO payment/subscription events.
Raw body is required for signature verification.
"""

import json
import logging

from flask import Blueprint, current_app, jsonify, request

from app.extensions import limiter
from app.services.cakto_payload import EVENT_ID_HEADER
from app.services.cakto_service import get_signature_header, verify_webhook_signature
from app.services.webhook_processor import process_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/cakto")


@webhooks_bp.route("/webhook", methods=["POST"])
@limiter.limit(lambda: current_app.config["WEBHOOK_RATE_LIMIT"])
def cakto_webhook():
    """Receive and process a CAKTO webhook delivery.

    1. Read the raw body and decode it as a JSON object (400 otherwise)
    2. Verify the HMAC signature header or embedded secret (401 otherwise)
    3. Hand off to the processor, which owns the ledger and every write
    """
    raw_body = request.get_data()

    try:
        payload = json.loads(raw_body or b"")
    except ValueError:
        logger.warning("Webhook received with invalid JSON body")
        return jsonify({"ok": False, "error": "Invalid JSON"}), 400
    if not isinstance(payload, dict):
        logger.warning("Webhook received with non-object JSON body")
        return jsonify({"ok": False, "error": "Invalid JSON"}), 400

    secret = current_app.config.get("CAKTO_WEBHOOK_SECRET")
    signature = get_signature_header(request.headers)
    if not verify_webhook_signature(secret, raw_body, signature, payload):
        logger.warning(
            f"Webhook signature verification failed "
            f"(header {'present' if signature else 'missing'})"
        )
        return jsonify({"ok": False, "error": "Invalid signature"}), 401

    result = process_event(payload, raw_body, request.headers.get(EVENT_ID_HEADER))
    return jsonify(result.body), result.status_code
