"""Tests for the webhooks blueprint and CHIP event handling.

Covers:
- Signature verification (missing, invalid, stale, no secret configured)
- Payload validation (bad JSON, bad bytes, missing or non-string event_type)
- purchase.completed / purchase.failed / purchase.refunded handlers
- Idempotent re-delivery (event_id dedup, reapplying a repeated body)
- subscription.updated and subscription.cancelled handlers
- Unknown event types and unknown records (accepted, no-op)
- Handler failures (500, nothing recorded)
- Signals sent to host applications
"""

import json
import time
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from cashier import signals
from cashier.errors import SignatureError
from cashier.extensions import db
from cashier.models.subscription import Subscription
from cashier.models.transaction import Transaction
from cashier.models.webhook_event import WebhookEvent
from cashier.services import invoice_service
from cashier.services.webhook_service import (
    EVENT_HANDLERS,
    compute_signature,
    delivery_key,
    verify_webhook_signature,
)
from cashier.timeutils import as_utc, utcnow

SECRET = "whsec_test_fake"


def _post(client, payload=None, raw=None, timestamp=None, signature=None,
          headers=None):
    """POST a signed delivery to /chip/webhooks."""
    body = raw if raw is not None else json.dumps(payload)
    ts = str(timestamp if timestamp is not None else int(time.time()))
    if headers is None:
        headers = {
            "X-Timestamp": ts,
            "X-Signature": signature or compute_signature(body, ts, SECRET),
        }
    return client.post(
        "/chip/webhooks",
        data=body,
        content_type="application/json",
        headers=headers,
    )


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_403(self, client):
        resp = _post(client, {"event_type": "purchase.completed"}, headers={})
        assert resp.status_code == 403
        assert resp.get_json() == {"error": "Invalid signature"}

    def test_invalid_signature_returns_403(self, client):
        resp = _post(client, {"event_type": "purchase.completed"}, signature="deadbeef")
        assert resp.status_code == 403

    def test_stale_timestamp_returns_403(self, client):
        stale = int(time.time()) - 301
        resp = _post(client, {"event_type": "purchase.completed"}, timestamp=stale)
        assert resp.status_code == 403

    def test_signature_over_different_body_returns_403(self, client):
        ts = str(int(time.time()))
        sig = compute_signature('{"event_type": "x"}', ts, SECRET)
        resp = _post(
            client,
            {"event_type": "purchase.completed"},
            headers={"X-Timestamp": ts, "X-Signature": sig},
        )
        assert resp.status_code == 403

    def test_no_secret_skips_verification(self, app, client, monkeypatch):
        cashier = app.extensions["cashier"]
        monkeypatch.setattr(cashier, "config", replace(cashier.config, webhook_secret=None))

        resp = _post(client, {"event_type": "ping"}, headers={})

        assert resp.status_code == 200

    def test_verify_rejects_malformed_timestamp(self):
        with pytest.raises(SignatureError):
            verify_webhook_signature("{}", "abc", "yesterday", SECRET)

    def test_verify_accepts_valid_signature(self):
        now = 1_700_000_000
        sig = compute_signature("{}", now, SECRET)
        verify_webhook_signature("{}", sig, str(now), SECRET, tolerance=300, now=now + 299)

    def test_verify_rejects_non_ascii_signature(self):
        now = 1_700_000_000
        with pytest.raises(SignatureError):
            verify_webhook_signature("{}", "caf\u00e9", str(now), SECRET, now=now)

    def test_non_ascii_signature_header_returns_403(self, client):
        resp = _post(client, {"event_type": "purchase.completed"}, signature="caf\u00e9")
        assert resp.status_code == 403

    def test_signature_covers_raw_bytes(self):
        now = 1_700_000_000
        body = b'{"note": "\xff"}'
        sig = compute_signature(body, now, SECRET)

        verify_webhook_signature(body, sig, str(now), SECRET, now=now)
        with pytest.raises(SignatureError):
            verify_webhook_signature(
                body.decode("utf-8", "replace"), sig, str(now), SECRET, now=now
            )


class TestPayloadValidation:
    """Tests for malformed deliveries."""

    def test_missing_event_type_returns_400(self, client):
        resp = _post(client, {"id": "pur_1"})
        assert resp.status_code == 400

    def test_non_json_body_returns_400(self, client):
        resp = _post(client, raw="not json")
        assert resp.status_code == 400

    def test_json_list_returns_400(self, client):
        resp = _post(client, raw="[1, 2]")
        assert resp.status_code == 400

    @pytest.mark.parametrize("event_type", [["purchase.completed"], {"a": 1}, 7, ""])
    def test_non_string_event_type_returns_400(self, client, event_type):
        resp = _post(client, {"event_type": event_type, "id": "pur_1"})
        assert resp.status_code == 400

    def test_signed_non_utf8_body_returns_400(self, client):
        resp = _post(client, raw=b'{"event_type": "purchase.completed", "id": "\xff"}')
        assert resp.status_code == 400


class TestPurchaseEvents:
    """Tests for purchase.* handlers."""

    def test_completed_marks_success(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123", amount=10000)

        resp = _post(client, {"event_type": "purchase.completed", "id": "pur_123"})

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "processed"}

        db.session.expire_all()
        txn = Transaction.query.filter_by(gateway_id="pur_123").one()
        assert txn.successful is True
        assert txn.processed_at is not None

        invoice = invoice_service.find_invoice("owner-1", "pur_123")
        assert invoice.status == "paid"
        assert invoice.amount_paid == 10000
        assert invoice.amount_due == 0

    def test_redelivery_without_event_id_changes_nothing(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123")
        body = json.dumps({"event_type": "purchase.completed", "id": "pur_123"})

        first = _post(client, raw=body)
        db.session.expire_all()
        processed_at = Transaction.query.filter_by(gateway_id="pur_123").one().processed_at

        second = _post(client, raw=body)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.get_json() == {"status": "processed"}
        assert WebhookEvent.query.count() == 0

        db.session.expire_all()
        txn = Transaction.query.filter_by(gateway_id="pur_123").one()
        assert txn.processed_at == processed_at

    def test_event_id_deduplicates_across_bodies(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123")

        _post(client, {"event_type": "purchase.completed", "id": "pur_123", "event_id": "evt_1"})
        resp = _post(client, {"event_id": "evt_1", "event_type": "purchase.completed", "id": "pur_123"})

        assert resp.get_json() == {"status": "already_processed"}
        assert WebhookEvent.query.count() == 1

    def test_failed_marks_failed(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_f")

        resp = _post(client, {"event_type": "purchase.failed", "id": "pur_f"})

        assert resp.status_code == 200
        db.session.expire_all()
        assert Transaction.query.filter_by(gateway_id="pur_f").one().failed is True

    def test_refunded_marks_refunded(self, client, make_charge):
        make_charge(gateway_id="pur_r")

        _post(client, {"event_type": "purchase.refunded", "id": "pur_r"})

        db.session.expire_all()
        txn = Transaction.query.filter_by(gateway_id="pur_r").one()
        assert txn.refunded is True
        assert invoice_service.to_invoice(txn).status == "void"

    def test_late_completed_does_not_undo_refund(self, client, make_charge):
        make_charge(status=Transaction.REFUNDED, gateway_id="pur_r")

        resp = _post(client, {"event_type": "purchase.completed", "id": "pur_r"})

        assert resp.status_code == 200
        db.session.expire_all()
        assert Transaction.query.filter_by(gateway_id="pur_r").one().refunded is True

    def test_unknown_purchase_is_noop(self, client):
        resp = _post(client, {"event_type": "purchase.completed", "id": "pur_nope"})

        assert resp.status_code == 200
        assert Transaction.query.count() == 0


class TestSubscriptionEvents:
    """Tests for subscription.* handlers."""

    def test_updated_overwrites_status_and_quantity(self, client, make_subscription):
        make_subscription(gateway_id="sub_gw_1", quantity=1)

        resp = _post(client, {
            "event_type": "subscription.updated",
            "id": "sub_gw_1",
            "status": "past_due",
            "quantity": 4,
        })

        assert resp.status_code == 200
        db.session.expire_all()
        sub = Subscription.query.filter_by(gateway_subscription_id="sub_gw_1").one()
        assert sub.status == "past_due"
        assert sub.quantity == 4
        assert sub.items[0].quantity == 4

    def test_status_can_return_to_an_earlier_value(self, client, make_subscription):
        make_subscription(gateway_id="sub_gw_1")
        active = json.dumps({
            "event_type": "subscription.updated",
            "id": "sub_gw_1",
            "status": "active",
        })

        first = _post(client, raw=active)
        second = _post(client, {
            "event_type": "subscription.updated",
            "id": "sub_gw_1",
            "status": "past_due",
        })
        third = _post(client, raw=active)

        assert [r.get_json() for r in (first, second, third)] == [{"status": "processed"}] * 3
        db.session.expire_all()
        sub = Subscription.query.filter_by(gateway_subscription_id="sub_gw_1").one()
        assert sub.status == "active"

    def test_nested_subscription_payload(self, client, make_subscription):
        make_subscription(gateway_id="sub_gw_1")
        next_billing = utcnow() + timedelta(days=30)

        _post(client, {
            "event_type": "subscription.updated",
            "subscription": {
                "id": "sub_gw_1",
                "status": "active",
                "next_billing_date": next_billing.isoformat(),
            },
        })

        db.session.expire_all()
        sub = Subscription.query.filter_by(gateway_subscription_id="sub_gw_1").one()
        assert abs(as_utc(sub.current_period_end) - next_billing) < timedelta(seconds=1)

    def test_cancelled_with_future_billing_date_keeps_grace(self, client, make_subscription):
        make_subscription(gateway_id="sub_gw_1")
        next_billing = utcnow() + timedelta(days=10)

        resp = _post(client, {
            "event_type": "subscription.cancelled",
            "id": "sub_gw_1",
            "next_billing_date": next_billing.isoformat(),
        })

        assert resp.status_code == 200
        db.session.expire_all()
        sub = Subscription.query.filter_by(gateway_subscription_id="sub_gw_1").one()
        assert sub.status == "cancelled"
        assert abs(as_utc(sub.ends_at) - next_billing) < timedelta(seconds=1)
        assert sub.on_grace_period() is True
        assert sub.valid() is True

    def test_cancelled_in_past_ends_subscription(self, client, make_subscription):
        make_subscription(gateway_id="sub_gw_1")
        cancelled_at = int(time.time()) - 3600

        _post(client, {
            "event_type": "subscription.cancelled",
            "id": "sub_gw_1",
            "cancelled_at": cancelled_at,
            "next_billing_date": cancelled_at - 86400,
        })

        db.session.expire_all()
        sub = Subscription.query.filter_by(gateway_subscription_id="sub_gw_1").one()
        assert sub.ended() is True
        assert int(as_utc(sub.ends_at).timestamp()) == cancelled_at

    def test_unknown_subscription_is_noop(self, client):
        resp = _post(client, {"event_type": "subscription.cancelled", "id": "sub_nope"})
        assert resp.status_code == 200


class TestUnknownAndFailingEvents:
    """Tests for unrecognised events and handler failures."""

    def test_unknown_event_is_accepted(self, client):
        resp = _post(client, {"event_type": "payout.sent", "id": "po_1"})

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ignored"}

    def test_handler_exception_returns_500(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123")
        failing = MagicMock(side_effect=RuntimeError("boom"))

        with patch.dict(EVENT_HANDLERS, {"purchase.completed": failing}):
            resp = _post(client, {"event_type": "purchase.completed", "id": "pur_123"})

        assert resp.status_code == 500
        assert WebhookEvent.query.count() == 0

        # The gateway retries; this time the real handler runs.
        retry = _post(client, {"event_type": "purchase.completed", "id": "pur_123"})
        assert retry.get_json() == {"status": "processed"}


class TestSignals:
    """Signals sent to host applications as deliveries are applied."""

    def test_completed_purchase_sends_signals(self, app, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123")
        received, completed = [], []

        def on_received(sender, payload, **extra):
            received.append((sender, payload["event_type"]))

        def on_completed(sender, transaction, **extra):
            completed.append(transaction.gateway_id)

        with signals.webhook_received.connected_to(on_received), \
                signals.transaction_completed.connected_to(on_completed):
            _post(client, {"event_type": "purchase.completed", "id": "pur_123"})

        assert received == [(app, "purchase.completed")]
        assert completed == ["pur_123"]

    def test_no_completed_signal_for_refunded_purchase(self, client, make_charge):
        make_charge(status=Transaction.REFUNDED, gateway_id="pur_r")
        completed = []

        def on_completed(sender, transaction, **extra):
            completed.append(transaction.id)

        with signals.transaction_completed.connected_to(on_completed):
            _post(client, {"event_type": "purchase.completed", "id": "pur_r"})

        assert completed == []

    @pytest.mark.parametrize("event_type, signal_name", [
        ("subscription.created", "subscription_created"),
        ("subscription.updated", "subscription_updated"),
        ("subscription.cancelled", "subscription_cancelled"),
    ])
    def test_subscription_signals(self, client, make_subscription, event_type,
                                  signal_name):
        make_subscription(gateway_id="sub_gw_1")
        seen = []

        def receiver(sender, subscription, **extra):
            seen.append(subscription.status)

        with getattr(signals, signal_name).connected_to(receiver):
            _post(client, {"event_type": event_type, "id": "sub_gw_1", "status": "active"})

        assert len(seen) == 1
        if event_type == "subscription.cancelled":
            assert seen == ["cancelled"]

    def test_failing_receiver_rolls_back_delivery(self, client, make_charge):
        make_charge(status=Transaction.PENDING, gateway_id="pur_123")

        def broken(sender, transaction, **extra):
            raise RuntimeError("receiver failed")

        with signals.transaction_completed.connected_to(broken):
            resp = _post(client, {"event_type": "purchase.completed", "id": "pur_123"})

        assert resp.status_code == 500
        db.session.expire_all()
        assert Transaction.query.filter_by(gateway_id="pur_123").one().pending is True


class TestDeliveryKey:
    """Tests for webhook_service.delivery_key."""

    def test_uses_event_id(self):
        assert delivery_key({"event_id": "evt_9"}) == "evt:evt_9"

    @pytest.mark.parametrize("event_id", [None, "", True, ["evt_1"]])
    def test_no_usable_event_id_means_no_key(self, event_id):
        assert delivery_key({"event_id": event_id, "a": 1}) is None
