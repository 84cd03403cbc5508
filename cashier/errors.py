"""Billing error taxonomy.

- ValidationError: bad input (e.g. refund larger than what is refundable).
  Surfaced to the caller, never retried.
- GatewayError: the CHIP API call failed (transport, timeout, non-2xx).
  Fatal on create paths, logged and swallowed on cancel/resume.
- NotFoundError: a referenced transaction/subscription/customer is absent.
- SignatureError: webhook authentication failed. Mapped to 403.
- ConflictError: a store uniqueness constraint was violated, i.e. the row
  already exists. Callers may treat it as idempotent success.
"""


class BillingError(Exception):
    """Base class for all billing errors."""


class ValidationError(BillingError, ValueError):
    pass


class GatewayError(BillingError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self):
        if self.status_code:
            return f"[{self.status_code}] {self.args[0]}"
        return self.args[0]


class NotFoundError(BillingError, LookupError):
    pass


class SignatureError(BillingError):
    pass


class ConflictError(BillingError):
    pass
