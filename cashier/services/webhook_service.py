"""Webhook service: verification and idempotent application of CHIP events.

Responsible for:
- Verifying X-Signature / X-Timestamp (HMAC-SHA256 over "{timestamp}.{body}")
- Dispatching through EVENT_HANDLERS, an explicit event type -> handler map
- Applying each delivery as one unit: commit on success, rollback on error
- Sending the cashier.signals for host applications

Handlers are idempotent on their own: they write the payload's values over
the local row, so applying the same delivery twice changes nothing. When
the gateway supplies an ``event_id`` the delivery is also recorded in the
webhook_events table and repeats are skipped outright. Deliveries without
one are never deduplicated by body, since an identical body can be a
legitimate later update (status A -> B -> A).

Handlers only update rows that already exist locally (looked up by gateway
id); an event for an unknown purchase or subscription is a no-op.
Subscription updates are last-writer-wins; there is no ordering fence
between distinct event types for the same subscription.

A refunded purchase stays refunded if a delayed purchase.completed arrives;
a failed purchase can still move to success (CHIP allows paying a purchase
again after a failed attempt).
"""

import hashlib
import hmac
import logging
import time

from flask import current_app
from sqlalchemy.exc import IntegrityError

from cashier import signals
from cashier.errors import SignatureError, ValidationError
from cashier.extensions import db
from cashier.models.webhook_event import WebhookEvent
from cashier.services import ledger_service, subscription_service
from cashier.services.audit_service import log_billing_audit
from cashier.timeutils import parse_datetime, utcnow

logger = logging.getLogger(__name__)


def _send(signal, **kwargs):
    signal.send(current_app._get_current_object(), **kwargs)


# ──────────────────────────────────────────────
# Signature verification
# ──────────────────────────────────────────────

def compute_signature(raw_body, timestamp, secret):
    """Hex HMAC-SHA256 of "{timestamp}.{raw_body}" keyed with ``secret``.

    ``raw_body`` is signed byte for byte; a str is UTF-8 encoded first.
    """
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    message = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body, signature, timestamp, secret, tolerance=300,
                             now=None):
    """Verify a delivery's signature and freshness.

    With no ``secret`` configured verification is skipped entirely; that
    is meant for local development only.

    Raises SignatureError on a missing, stale or mismatched signature.
    The payload is never included in the error or the log.
    """
    if not secret:
        logger.warning("CHIP_WEBHOOK_SECRET not set, skipping webhook signature check")
        return

    if not signature or not timestamp:
        raise SignatureError("Missing signature headers")

    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        raise SignatureError("Malformed timestamp header")

    now = int(now if now is not None else time.time())
    if abs(now - sent_at) > tolerance:
        raise SignatureError("Timestamp outside tolerance window")

    expected = compute_signature(raw_body, timestamp, secret).encode("ascii")
    given = signature.encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected, given):
        raise SignatureError("Signature mismatch")


# ──────────────────────────────────────────────
# Event handlers
# ──────────────────────────────────────────────

def _subscription_data(payload):
    return payload.get("subscription") or payload


def _purchase(payload):
    txn = ledger_service.find_by_gateway_id(payload.get("id"))
    if txn is None:
        logger.warning(f"No local transaction for purchase {payload.get('id')}, ignoring")
    return txn


def _handle_purchase_completed(payload):
    txn = _purchase(payload)
    if txn is None:
        return
    ledger_service.mark_succeeded(txn)
    log_billing_audit(txn.owner_id, "purchase.completed", {
        "transaction_id": txn.id,
        "gateway_id": txn.gateway_id,
    })
    if txn.successful:
        _send(signals.transaction_completed, transaction=txn)


def _handle_purchase_failed(payload):
    txn = _purchase(payload)
    if txn is None:
        return
    ledger_service.mark_failed(txn)
    log_billing_audit(txn.owner_id, "purchase.failed", {
        "transaction_id": txn.id,
        "gateway_id": txn.gateway_id,
    })
    if txn.failed:
        _send(signals.transaction_failed, transaction=txn)


def _handle_purchase_refunded(payload):
    txn = _purchase(payload)
    if txn is None:
        return
    ledger_service.mark_refunded(txn)
    log_billing_audit(txn.owner_id, "purchase.refunded", {
        "transaction_id": txn.id,
        "gateway_id": txn.gateway_id,
    })
    _send(signals.transaction_refunded, transaction=txn)


def _sync_subscription(payload):
    """Write the gateway's status / quantity / billing date over the row."""
    data = _subscription_data(payload)
    sub = subscription_service.find_by_gateway_id(data.get("id"))
    if sub is None:
        logger.warning(f"No local subscription for {data.get('id')}, ignoring")
        return None

    if data.get("status"):
        sub.status = data["status"]
    if data.get("quantity") is not None:
        sub.quantity = int(data["quantity"])
        if len(sub.items) == 1:
            sub.items[0].quantity = sub.quantity
    next_billing = parse_datetime(data.get("next_billing_date"))
    if next_billing is not None:
        sub.current_period_end = next_billing
    db.session.flush()

    log_billing_audit(sub.owner_id, "subscription.synced", {
        "subscription_id": sub.id,
        "status": sub.status,
        "quantity": sub.quantity,
    })
    return sub


def _handle_subscription_created(payload):
    sub = _sync_subscription(payload)
    if sub is not None:
        _send(signals.subscription_created, subscription=sub)


def _handle_subscription_updated(payload):
    sub = _sync_subscription(payload)
    if sub is not None:
        _send(signals.subscription_updated, subscription=sub)


def _handle_subscription_cancelled(payload):
    """Grace period until next_billing_date if that is still ahead,
    otherwise ended at cancelled_at (or now)."""
    data = _subscription_data(payload)
    sub = subscription_service.find_by_gateway_id(data.get("id"))
    if sub is None:
        logger.warning(f"No local subscription for {data.get('id')}, ignoring")
        return

    now = utcnow()
    ends_at = parse_datetime(data.get("cancelled_at")) or now
    next_billing = parse_datetime(data.get("next_billing_date"))
    if next_billing is not None and next_billing > now:
        ends_at = next_billing

    sub.status = "cancelled"
    sub.ends_at = ends_at
    db.session.flush()

    log_billing_audit(sub.owner_id, "subscription.cancelled", {
        "subscription_id": sub.id,
        "ends_at": ends_at.isoformat(),
        "source": "webhook",
    })
    _send(signals.subscription_cancelled, subscription=sub)


EVENT_HANDLERS = {
    "purchase.completed": _handle_purchase_completed,
    "purchase.failed": _handle_purchase_failed,
    "purchase.refunded": _handle_purchase_refunded,
    "subscription.created": _handle_subscription_created,
    "subscription.updated": _handle_subscription_updated,
    "subscription.cancelled": _handle_subscription_cancelled,
}


# ──────────────────────────────────────────────
# Processing
# ──────────────────────────────────────────────

def delivery_key(payload):
    """Idempotency key for the delivery, or None when the gateway sent no
    event id."""
    event_id = payload.get("event_id")
    if isinstance(event_id, (str, int)) and not isinstance(event_id, bool) \
            and str(event_id):
        return f"evt:{event_id}"
    return None


def handle_webhook_event(payload, log_payloads=False):
    """Apply one verified delivery.

    Returns (success: bool, message: str). Raises ValidationError if the
    payload is not an object or its event_type is not a non-empty string.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    event_type = payload.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("Webhook missing event type")

    key = delivery_key(payload)

    if log_payloads:
        logger.info(f"CHIP webhook received: {event_type} {payload}")

    # --- Idempotency check ---
    if key and WebhookEvent.query.filter_by(delivery_key=key).first():
        logger.info(f"Duplicate webhook delivery {key}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handler = EVENT_HANDLERS.get(event_type)
    try:
        _send(signals.webhook_received, payload=payload)
        if handler:
            handler(payload)
            _send(signals.webhook_handled, event_type=event_type, payload=payload)
    except Exception as e:
        logger.error(f"Error handling {event_type}: {e}", exc_info=True)
        db.session.rollback()
        return False, "handler_failed"

    # --- Record delivery for idempotency ---
    if key:
        db.session.add(WebhookEvent(delivery_key=key, event_type=event_type))
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event committed first.
        db.session.rollback()
        logger.info(f"Webhook delivery {key} applied concurrently, skipping")
        return True, "already_processed"

    return True, "processed" if handler else "ignored"
