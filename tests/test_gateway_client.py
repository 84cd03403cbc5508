"""Tests for the CHIP gateway client.

The HTTP session is mocked; no request leaves the process.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from cashier.errors import GatewayError
from cashier.services.gateway_client import ChipClient


def _response(status=200, body=None, content=b"x"):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.content = content if body is not None or status >= 300 else b""
    resp.text = "error body"
    resp.json.return_value = body or {}
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def chip(session):
    return ChipClient(
        api_key="chip_test_fake",
        brand_id="brand_test_fake",
        base_url="https://gate.chip-in.test/api/v1/",
        timeout=12,
        session=session,
    )


class TestTransport:
    """Tests for ChipClient._request behaviour."""

    def test_sends_bearer_auth_and_timeout(self, chip, session):
        session.request.return_value = _response(body={"id": "cli_1", "email": "a@b.c"})

        ref = chip.create_customer({"email": "a@b.c", "full_name": None})

        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == "https://gate.chip-in.test/api/v1/clients"
        assert kwargs["headers"]["Authorization"] == "Bearer chip_test_fake"
        assert kwargs["timeout"] == 12
        assert kwargs["json"] == {"email": "a@b.c"}
        assert ref.id == "cli_1"
        assert ref.email == "a@b.c"

    def test_non_2xx_raises_gateway_error(self, chip, session):
        session.request.return_value = _response(status=422)

        with pytest.raises(GatewayError) as exc:
            chip.create_customer({"email": "a@b.c"})

        assert exc.value.status_code == 422
        assert str(exc.value).startswith("[422]")

    def test_timeout_raises_gateway_error(self, chip, session):
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(GatewayError):
            chip.list_webhooks()

    def test_connection_error_raises_gateway_error(self, chip, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(GatewayError):
            chip.resume_subscription("sub_1")

    def test_empty_body_is_empty_dict(self, chip, session):
        session.request.return_value = _response(status=204)
        session.request.return_value.ok = True
        session.request.return_value.content = b""

        assert chip.delete_webhook("wh_1") is None

    def test_from_config(self, app):
        client = ChipClient.from_config(app.config)
        assert client.brand_id == "brand_test_fake"
        assert client.base_url == "https://gate.chip-in.test/api/v1"
        assert client.timeout == 30

    @patch("requests.Session.request")
    def test_default_session_is_requests(self, mock_request):
        mock_request.return_value = _response(body={"results": [{"id": "wh_1"}]})
        client = ChipClient("k", "b", "https://gate.chip-in.test/api/v1")

        assert client.list_webhooks() == [{"id": "wh_1"}]
        mock_request.assert_called_once()


class TestEndpoints:
    """Tests for request payloads and response mapping."""

    def test_create_charge_payload(self, chip, session):
        session.request.return_value = _response(
            body={"id": "pur_1", "status": "created", "checkout_url": "https://pay"}
        )

        ref = chip.create_charge(
            10000, "myr", "cli_1", metadata={"order": "A1"},
            description="Order A1", reference="txn-1",
        )

        payload = session.request.call_args[1]["json"]
        assert payload["brand_id"] == "brand_test_fake"
        assert payload["client_id"] == "cli_1"
        assert payload["reference"] == "txn-1"
        assert payload["purchase"]["currency"] == "MYR"
        assert payload["purchase"]["products"] == [{"name": "Order A1", "price": 10000}]
        assert ref.id == "pur_1"
        assert ref.checkout_url == "https://pay"

    def test_full_refund_omits_amount(self, chip, session):
        session.request.return_value = _response(body={"id": "ref_1", "status": "success"})

        ref = chip.refund("pur_1")

        url = session.request.call_args[0][1]
        assert url.endswith("/purchases/pur_1/refund")
        assert session.request.call_args[1]["json"] == {}
        assert ref.status == "success"

    def test_partial_refund_sends_amount(self, chip, session):
        session.request.return_value = _response(body={"id": "ref_1"})

        chip.refund("pur_1", 2500)

        assert session.request.call_args[1]["json"] == {"amount": 2500}

    def test_create_subscription_parses_billing_date(self, chip, session):
        session.request.return_value = _response(body={
            "id": "sub_1",
            "status": "active",
            "next_billing_date": "2026-11-19T00:00:00Z",
        })

        ref = chip.create_subscription("cli_1", "price_basic", quantity=3)

        payload = session.request.call_args[1]["json"]
        assert payload["price_id"] == "price_basic"
        assert payload["quantity"] == 3
        assert ref.next_billing_date == datetime(2026, 11, 19, tzinfo=timezone.utc)

    def test_cancel_subscription_mode(self, chip, session):
        session.request.return_value = _response(body={"id": "sub_1"})

        chip.cancel_subscription("sub_1", "immediate")

        assert session.request.call_args[0][1].endswith("/subscriptions/sub_1/cancel")
        assert session.request.call_args[1]["json"] == {"mode": "immediate"}

    def test_create_webhook(self, chip, session):
        session.request.return_value = _response(body={"id": "wh_1"})

        hook = chip.create_webhook("https://example.com/chip/webhooks", ["purchase.completed"])

        assert hook == {"id": "wh_1"}
        assert session.request.call_args[1]["json"] == {
            "callback": "https://example.com/chip/webhooks",
            "events": ["purchase.completed"],
        }

    def test_charge_with_token(self, chip, session):
        session.request.return_value = _response(body={
            "id": "pur_1",
            "status": "paid",
            "purchase": {"total": 2500, "currency": "MYR"},
        })

        ref = chip.charge_with_token("pur_1", "tok_saved")

        method, url = session.request.call_args[0]
        assert method == "POST"
        assert url.endswith("/purchases/pur_1/charge")
        assert session.request.call_args[1]["json"] == {"recurring_token": "tok_saved"}
        assert ref.amount == 2500
        assert ref.currency == "MYR"

    def test_recurring_token_is_redacted_in_logs(self, chip, session, caplog):
        session.request.return_value = _response(body={"id": "pur_1"})

        with caplog.at_level("DEBUG", logger="cashier.services.gateway_client"):
            chip.charge_with_token("pur_1", "tok_saved")

        assert "tok_saved" not in caplog.text

    def test_delete_recurring_token(self, chip, session):
        session.request.return_value = _response()

        chip.delete_recurring_token("pur_1")

        method, url = session.request.call_args[0]
        assert method == "DELETE"
        assert url.endswith("/purchases/pur_1/delete_recurring_token")
