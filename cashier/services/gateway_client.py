"""CHIP gateway client: every outbound call to the CHIP API.

Responsible for:
- Bearer-authenticated JSON requests against CHIP_API_URL
- Bounding every call with CHIP_TIMEOUT (default 30s)
- Turning transport errors, timeouts and non-2xx responses into GatewayError
- Mapping responses to small reference objects (CustomerRef, ChargeRef, ...)

Amounts cross this boundary as integer minor units. Retries/backoff and
idempotency keys belong to the transport, not to this client.
"""

import logging
from dataclasses import dataclass

import requests

from cashier.errors import GatewayError
from cashier.timeutils import parse_datetime

logger = logging.getLogger(__name__)

USER_AGENT = "cashier-chip/1.0"

SENSITIVE_KEYS = {"password", "token", "secret", "key", "authorization", "recurring_token"}


def _redact(data):
    """Copy ``data`` with sensitive values masked, for logging."""
    if isinstance(data, dict):
        return {
            k: "***REDACTED***" if str(k).lower() in SENSITIVE_KEYS else _redact(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(v) for v in data]
    return data


# ──────────────────────────────────────────────
# Response references
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class CustomerRef:
    id: str
    email: str = None
    name: str = None

    @classmethod
    def from_response(cls, data):
        return cls(
            id=data["id"],
            email=data.get("email"),
            name=data.get("full_name"),
        )


@dataclass(frozen=True)
class ChargeRef:
    id: str
    status: str = None
    checkout_url: str = None
    amount: int = None
    currency: str = None

    @classmethod
    def from_response(cls, data):
        purchase = data.get("purchase") or {}
        amount = data.get("amount", purchase.get("total"))
        return cls(
            id=data["id"],
            status=data.get("status"),
            checkout_url=data.get("checkout_url"),
            amount=int(amount) if amount is not None else None,
            currency=data.get("currency") or purchase.get("currency"),
        )


@dataclass(frozen=True)
class RefundRef:
    id: str
    status: str = None
    amount: int = None

    @classmethod
    def from_response(cls, data):
        return cls(
            id=data["id"],
            status=data.get("status"),
            amount=data.get("amount"),
        )


@dataclass(frozen=True)
class SubRef:
    id: str
    status: str = "active"
    next_billing_date: object = None  # aware datetime or None

    @classmethod
    def from_response(cls, data):
        return cls(
            id=data["id"],
            status=data.get("status") or "active",
            next_billing_date=parse_datetime(data.get("next_billing_date")),
        )


# ──────────────────────────────────────────────
# Client
# ──────────────────────────────────────────────

class ChipClient:
    """Thin CHIP API client. One instance per app; safe to share."""

    def __init__(self, api_key, brand_id, base_url, timeout=30, session=None):
        self.api_key = api_key
        self.brand_id = brand_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, app_config):
        return cls(
            api_key=app_config.get("CHIP_API_KEY"),
            brand_id=app_config.get("CHIP_BRAND_ID"),
            base_url=app_config.get("CHIP_API_URL"),
            timeout=int(app_config.get("CHIP_TIMEOUT", 30)),
        )

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _request(self, method, endpoint, json=None, params=None):
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(),
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.error(f"CHIP {method} {endpoint} timed out after {self.timeout}s")
            raise GatewayError(f"CHIP API timed out: {e}") from e
        except requests.RequestException as e:
            logger.error(f"CHIP {method} {endpoint} failed: {e}")
            raise GatewayError(f"Failed to communicate with CHIP API: {e}") from e

        logger.info(f"CHIP {method} {endpoint} -> {resp.status_code}")
        if json:
            logger.debug(f"CHIP {method} {endpoint} body: {_redact(json)}")

        if not resp.ok:
            raise GatewayError(
                f"CHIP API request failed: {resp.text[:500]}",
                status_code=resp.status_code,
            )

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError(
                "CHIP API returned a non-JSON body", status_code=resp.status_code
            ) from e

    # --- Clients (customers) ---

    def create_customer(self, profile):
        """POST /clients. ``profile`` holds email / full_name / legal_name."""
        data = {k: v for k, v in profile.items() if v is not None}
        return CustomerRef.from_response(self._request("POST", "clients", json=data))

    def update_customer(self, customer_id, profile):
        data = {k: v for k, v in profile.items() if v is not None}
        return CustomerRef.from_response(
            self._request("PUT", f"clients/{customer_id}", json=data)
        )

    # --- Purchases (charges / refunds) ---

    def create_charge(self, amount, currency, customer_ref, metadata=None,
                      description=None, reference=None):
        """POST /purchases for ``amount`` minor units."""
        payload = {
            "brand_id": self.brand_id,
            "client_id": customer_ref,
            "purchase": {
                "currency": currency.upper(),
                "products": [
                    {"name": description or "Payment", "price": int(amount)}
                ],
                "metadata": metadata or {},
            },
        }
        if reference:
            payload["reference"] = reference
        return ChargeRef.from_response(self._request("POST", "purchases", json=payload))

    def refund(self, charge_ref, amount=None):
        """POST /purchases/{id}/refund. Omitting ``amount`` refunds in full."""
        payload = {"amount": int(amount)} if amount is not None else {}
        return RefundRef.from_response(
            self._request("POST", f"purchases/{charge_ref}/refund", json=payload)
        )

    def charge_with_token(self, purchase_id, recurring_token):
        """POST /purchases/{id}/charge, paying an existing purchase with a
        saved recurring token."""
        return ChargeRef.from_response(self._request(
            "POST",
            f"purchases/{purchase_id}/charge",
            json={"recurring_token": recurring_token},
        ))

    def delete_recurring_token(self, purchase_id):
        self._request("DELETE", f"purchases/{purchase_id}/delete_recurring_token")

    # --- Subscriptions ---

    def create_subscription(self, customer_ref, plan_id, quantity=1, metadata=None):
        payload = {
            "brand_id": self.brand_id,
            "client_id": customer_ref,
            "price_id": plan_id,
            "quantity": int(quantity),
            "metadata": metadata or {},
        }
        return SubRef.from_response(self._request("POST", "subscriptions", json=payload))

    def cancel_subscription(self, sub_ref, mode):
        """``mode`` is "immediate" or "end_of_period"."""
        self._request("POST", f"subscriptions/{sub_ref}/cancel", json={"mode": mode})

    def resume_subscription(self, sub_ref):
        """Clear any scheduled cancellation."""
        self._request("POST", f"subscriptions/{sub_ref}/resume", json={})

    def update_subscription(self, sub_ref, quantity=None, plan_id=None):
        payload = {}
        if quantity is not None:
            payload["quantity"] = int(quantity)
        if plan_id is not None:
            payload["price_id"] = plan_id
        return SubRef.from_response(
            self._request("PUT", f"subscriptions/{sub_ref}", json=payload)
        )

    # --- Webhook registrations ---

    def list_webhooks(self):
        return self._request("GET", "webhooks").get("results", [])

    def create_webhook(self, url, events, title=None):
        payload = {"callback": url, "events": list(events)}
        if title:
            payload["title"] = title
        return self._request("POST", "webhooks", json=payload)

    def delete_webhook(self, webhook_id):
        self._request("DELETE", f"webhooks/{webhook_id}")
