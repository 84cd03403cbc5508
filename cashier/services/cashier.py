"""Cashier: the outward billing API for one Flask app.

Coordinates gateway calls with ledger writes and owns the commit
boundaries the lower-level services leave open:
- create paths (customers, charges, subscriptions) persist nothing
  unless the gateway call succeeded
- cancel/resume commit the local change even if the gateway call failed
- concurrent first-time customer creation resolves to the winner's row

Bound to the app in create_app(); fetch it with get_cashier().
"""

import logging

from flask import current_app

from cashier.errors import ConflictError, GatewayError, NotFoundError
from cashier.extensions import db
from cashier.models.transaction import Transaction
from cashier.services import (
    customer_service,
    invoice_service,
    ledger_service,
    subscription_service,
)
from cashier.services.audit_service import log_billing_audit

logger = logging.getLogger(__name__)

# Gateway refund statuses that mean the money has already moved.
REFUND_SETTLED = {"success", "refunded", "succeeded"}


def get_cashier():
    """The Cashier bound to the current app."""
    return current_app.extensions["cashier"]


class Cashier:
    def __init__(self, config, gateway):
        self.config = config
        self.gateway = gateway

    def _commit(self):
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    # ──────────────────────────────────────────────
    # Customers
    # ──────────────────────────────────────────────

    def customer(self, owner_id):
        return customer_service.get_customer(owner_id)

    def ensure_customer(self, owner_id, email=None, name=None):
        """Return the owner's Customer with a CHIP identity, creating it if needed.

        Losing a creation race to a concurrent request is not an error:
        the winner's row is returned.
        """
        try:
            customer = customer_service.ensure_gateway_customer(
                owner_id, self.gateway, email=email, name=name
            )
            self._commit()
        except ConflictError:
            customer = customer_service.get_customer(owner_id)
            if customer is None or not customer.has_gateway_id:
                raise
            logger.info(f"Customer for owner {owner_id} created concurrently, reusing")
        except GatewayError:
            db.session.rollback()
            raise
        return customer

    def update_customer(self, owner_id, email=None, name=None):
        try:
            customer = customer_service.update_customer(
                owner_id, self.gateway, email=email, name=name
            )
        except GatewayError:
            db.session.rollback()
            raise
        self._commit()
        return customer

    def start_generic_trial(self, owner_id, days=None, email=None, name=None):
        days = self.config.trial_days if days is None else days
        customer = customer_service.start_generic_trial(
            owner_id, days, email=email, name=name
        )
        self._commit()
        return customer

    def on_generic_trial(self, owner_id):
        customer = customer_service.get_customer(owner_id)
        return bool(customer and customer.on_generic_trial())

    # ──────────────────────────────────────────────
    # Charges & refunds
    # ──────────────────────────────────────────────

    def charge(self, owner_id, amount, currency=None, description=None,
               metadata=None, email=None, name=None):
        """Charge ``amount`` minor units through CHIP.

        A pending transaction is flushed first so its id can travel as the
        gateway reference; the row is committed only once CHIP accepted the
        purchase. Confirmation arrives later via purchase.* webhooks.
        """
        customer = self.ensure_customer(owner_id, email=email, name=name)
        currency = (currency or self.config.currency).upper()

        try:
            txn = ledger_service.record_charge(
                owner_id,
                amount,
                currency,
                description=description,
                metadata=metadata,
                customer_id=customer.id,
            )
            ref = self.gateway.create_charge(
                amount,
                currency,
                customer.gateway_customer_id,
                metadata=metadata,
                description=description,
                reference=txn.id,
            )
        except Exception:
            db.session.rollback()
            raise

        txn.gateway_id = ref.id
        if ref.checkout_url:
            txn.metadata_ = {**(txn.metadata_ or {}), "checkout_url": ref.checkout_url}
        log_billing_audit(owner_id, "transaction.charged", {
            "transaction_id": txn.id,
            "gateway_id": ref.id,
            "amount": amount,
            "currency": currency,
        })
        self._commit()
        logger.info(f"Charge {txn.id} ({ref.id}) created for owner {owner_id}")
        return txn

    def refund(self, owner_id, transaction_id, amount=None):
        """Refund a successful charge, in full or in part.

        Raises NotFoundError for an unknown transaction and ValidationError
        when the amount exceeds what is left to refund.
        """
        txn = ledger_service.find_transaction_or_fail(owner_id, transaction_id)
        try:
            txn = ledger_service.lock_for_refund(txn)
            amount = ledger_service.validate_refund(txn, amount)
            if not txn.gateway_id:
                raise NotFoundError(f"Transaction {txn.id} has no gateway purchase")
            ref = self.gateway.refund(txn.gateway_id, amount)
            status = (
                Transaction.SUCCESS
                if (ref.status or "").lower() in REFUND_SETTLED
                else Transaction.PENDING
            )
            refund_txn = ledger_service.refund(
                txn, amount, gateway_id=ref.id, status=status
            )
        except Exception:
            db.session.rollback()
            raise
        self._commit()
        return refund_txn

    def charge_with_token(self, owner_id, purchase_id, recurring_token, amount=None,
                          currency=None, description=None, metadata=None):
        """Pay an existing CHIP purchase with a saved recurring token.

        If the purchase is already in the ledger that row is reused;
        otherwise a pending row is recorded from the gateway's response,
        falling back to ``amount`` / ``currency``. Either way the row stays
        pending until a purchase.* webhook confirms it.
        """
        txn = ledger_service.find_transaction(owner_id, purchase_id)
        try:
            ref = self.gateway.charge_with_token(purchase_id, recurring_token)
            if txn is None:
                customer = self.customer(owner_id)
                txn = ledger_service.record_charge(
                    owner_id,
                    ref.amount if ref.amount is not None else amount,
                    (ref.currency or currency or self.config.currency).upper(),
                    description=description,
                    metadata=metadata,
                    customer_id=customer.id if customer else None,
                )
                txn.gateway_id = ref.id or purchase_id
        except Exception:
            db.session.rollback()
            raise

        txn.metadata_ = {**(txn.metadata_ or {}), "charged_with_token": True}
        log_billing_audit(owner_id, "transaction.charged_with_token", {
            "transaction_id": txn.id,
            "gateway_id": txn.gateway_id,
            "amount": txn.amount_minor_units,
        })
        self._commit()
        logger.info(f"Token charge {txn.id} ({txn.gateway_id}) for owner {owner_id}")
        return txn

    def delete_recurring_token(self, purchase_id):
        """Forget the recurring token saved against ``purchase_id`` at CHIP."""
        self.gateway.delete_recurring_token(purchase_id)
        logger.info(f"Recurring token for purchase {purchase_id} deleted")

    def refundable_amount(self, owner_id, transaction_id):
        txn = ledger_service.find_transaction_or_fail(owner_id, transaction_id)
        return ledger_service.refundable_amount(txn)

    def transactions(self, owner_id):
        return (
            Transaction.query
            .filter_by(owner_id=owner_id)
            .order_by(Transaction.created_at.desc())
            .all()
        )

    # ──────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────

    def subscription(self, owner_id, name="default"):
        return subscription_service.find_subscription(owner_id, name)

    def _subscription_or_fail(self, owner_id, name):
        sub = subscription_service.find_subscription(owner_id, name)
        if sub is None:
            raise NotFoundError(f"No '{name}' subscription for owner {owner_id}")
        return sub

    def subscriptions(self, owner_id):
        return subscription_service.subscriptions_for(owner_id)

    def subscribed(self, owner_id, name="default", plan_id=None):
        return subscription_service.subscribed(owner_id, name, plan_id)

    def on_trial(self, owner_id, name="default", plan_id=None):
        """True during a subscription trial, or a generic trial when no
        plan is asked about."""
        if plan_id is None and name == "default" and self.on_generic_trial(owner_id):
            return True
        return subscription_service.on_trial(owner_id, name, plan_id)

    def has_active_subscription(self, owner_id):
        return subscription_service.has_active_subscription(owner_id)

    def create_subscription(self, owner_id, plan_id, name="default", quantity=1,
                            trial_days=None, trial_until=None, skip_trial=False,
                            metadata=None, email=None, customer_name=None):
        """Start a subscription.

        Trials are local-only. Paid subscriptions first ensure the owner's
        CHIP identity, then create the subscription at the gateway; the
        local row is committed only after that succeeds.
        """
        trialing = not skip_trial and (trial_days or trial_until is not None)
        if not trialing:
            self.ensure_customer(owner_id, email=email, name=customer_name)

        try:
            sub = subscription_service.create_subscription(
                owner_id,
                name,
                plan_id,
                self.gateway,
                quantity=quantity,
                trial_days=trial_days,
                trial_until=trial_until,
                skip_trial=skip_trial,
                metadata=metadata,
                email=email,
                customer_name=customer_name,
            )
        except Exception:
            db.session.rollback()
            raise
        self._commit()
        return sub

    def cancel_subscription(self, owner_id, name="default", immediately=False):
        sub = self._subscription_or_fail(owner_id, name)
        mode = (
            subscription_service.IMMEDIATE
            if immediately
            else subscription_service.END_OF_PERIOD
        )
        subscription_service.cancel(sub, self.gateway, mode)
        self._commit()
        return sub

    def resume_subscription(self, owner_id, name="default"):
        sub = self._subscription_or_fail(owner_id, name)
        subscription_service.resume(sub, self.gateway)
        self._commit()
        return sub

    def update_quantity(self, owner_id, quantity, name="default", plan_id=None):
        sub = self._subscription_or_fail(owner_id, name)
        try:
            subscription_service.update_quantity(
                sub, quantity, self.gateway, plan_id=plan_id
            )
        except Exception:
            db.session.rollback()
            raise
        self._commit()
        return sub

    def cancel_all(self, owner_id, immediately=False):
        mode = (
            subscription_service.IMMEDIATE
            if immediately
            else subscription_service.END_OF_PERIOD
        )
        cancelled = subscription_service.cancel_all(owner_id, self.gateway, mode)
        self._commit()
        return cancelled

    # ──────────────────────────────────────────────
    # Invoices
    # ──────────────────────────────────────────────

    def invoices(self, owner_id, include_pending=False):
        return invoice_service.invoices(owner_id, include_pending=include_pending)

    def find_invoice(self, owner_id, invoice_id):
        return invoice_service.find_invoice(owner_id, invoice_id)

    def find_invoice_or_fail(self, owner_id, invoice_id):
        return invoice_service.find_invoice_or_fail(owner_id, invoice_id)

    def latest_invoice(self, owner_id):
        return invoice_service.latest_invoice(owner_id)

    def upcoming_invoice(self, owner_id):
        return invoice_service.upcoming_invoice(owner_id)

    def invoices_for_period(self, owner_id, start, end):
        return invoice_service.invoices_for_period(owner_id, start, end)

    def invoices_for_year(self, owner_id, year):
        return invoice_service.invoices_for_year(owner_id, year)

    def invoice_total_for_period(self, owner_id, start, end):
        return invoice_service.invoice_total_for_period(owner_id, start, end)
