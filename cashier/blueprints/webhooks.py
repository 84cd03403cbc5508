"""Webhooks blueprint: /chip/webhooks

Receives CHIP webhook deliveries. The raw body bytes are signed, so they
are verified as received, before any decoding or JSON parsing.
"""

import json
import logging

from flask import Blueprint, jsonify, request

from cashier.errors import SignatureError, ValidationError
from cashier.extensions import limiter
from cashier.services.cashier import get_cashier
from cashier.services.webhook_service import (
    handle_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/chip")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit("120 per minute")
def chip_webhook():
    """Receive and process CHIP webhook events.

    1. Get raw body (required for signature verification)
    2. Verify X-Signature / X-Timestamp with CHIP_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (idempotent by event_id)
    4. Return 200 to acknowledge receipt
    """
    config = get_cashier().config
    raw_body = request.get_data()

    # --- Verify signature ---
    try:
        verify_webhook_signature(
            raw_body,
            request.headers.get("X-Signature"),
            request.headers.get("X-Timestamp"),
            config.webhook_secret,
            config.webhook_tolerance,
        )
    except SignatureError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 403

    # --- Parse body ---
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:  # includes UnicodeDecodeError
        payload = None
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid payload"}), 400

    # --- Process event (idempotent) ---
    try:
        success, message = handle_webhook_event(
            payload, log_payloads=config.logging_enabled
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    if success:
        return jsonify({"status": message}), 200
    logger.error(f"Webhook processing failed: {message}")
    return jsonify({"error": message}), 500
