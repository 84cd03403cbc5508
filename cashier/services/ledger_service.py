"""Ledger service: appends transactions and moves their status.

Responsible for:
- Appending pending charge rows (the gateway call is the caller's job)
- Validating and appending refund rows against the refundable remainder
- Status transitions confirmed by the gateway (success / failed / refunded)

The refundable remainder of a charge is its amount minus every refund
row pointing at it that has not failed. The charge row is read FOR UPDATE
while a refund is validated, so concurrent refunds of the same charge
serialise at the database.

Functions flush but do NOT commit, the caller commits.
"""

import logging

from sqlalchemy import func, or_

from cashier.errors import NotFoundError, ValidationError
from cashier.extensions import db
from cashier.models.transaction import Transaction
from cashier.services.audit_service import log_billing_audit
from cashier.timeutils import utcnow

logger = logging.getLogger(__name__)


def _check_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer number of minor units.")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def find_transaction(owner_id, transaction_id):
    """Find one of the owner's transactions by local id or gateway id."""
    return (
        Transaction.query
        .filter(Transaction.owner_id == owner_id)
        .filter(or_(
            Transaction.id == transaction_id,
            Transaction.gateway_id == transaction_id,
        ))
        .first()
    )


def find_transaction_or_fail(owner_id, transaction_id):
    txn = find_transaction(owner_id, transaction_id)
    if txn is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return txn


def find_by_gateway_id(gateway_id):
    if not gateway_id:
        return None
    return Transaction.query.filter_by(gateway_id=gateway_id).first()


def refunded_amount(txn):
    """Sum of non-failed refunds already recorded against ``txn``."""
    total = (
        db.session.query(func.coalesce(func.sum(Transaction.amount_minor_units), 0))
        .filter(Transaction.refunded_from_id == txn.id)
        .filter(Transaction.type == Transaction.REFUND)
        .filter(Transaction.status != Transaction.FAILED)
        .scalar()
    )
    return int(total or 0)


def refundable_amount(txn):
    return txn.amount_minor_units - refunded_amount(txn)


# ──────────────────────────────────────────────
# Appends
# ──────────────────────────────────────────────

def record_charge(owner_id, amount, currency, description=None, metadata=None,
                  customer_id=None, payment_method=None):
    """Append a pending charge with a locally generated id."""
    _check_amount(amount)
    if not currency:
        raise ValidationError("Currency is required.")

    txn = Transaction(
        owner_id=owner_id,
        customer_id=customer_id,
        type=Transaction.CHARGE,
        status=Transaction.PENDING,
        currency=currency.upper(),
        amount_minor_units=amount,
        description=description,
        payment_method=payment_method,
        metadata_=dict(metadata or {}),
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def lock_for_refund(txn):
    """Re-read ``txn`` FOR UPDATE so refund checks see committed siblings."""
    return (
        Transaction.query
        .filter_by(id=txn.id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def validate_refund(txn, amount=None):
    """Return the amount a refund of ``txn`` would be for.

    ``amount`` defaults to the whole refundable remainder.
    Raises ValidationError when the charge cannot be refunded for it.
    """
    if not txn.is_charge:
        raise ValidationError("Only charges can be refunded.")
    if not txn.successful:
        raise ValidationError(
            f"Only successful charges can be refunded (status is '{txn.status}')."
        )

    remaining = refundable_amount(txn)
    if amount is None:
        amount = remaining
        if amount <= 0:
            raise ValidationError("Nothing left to refund on this charge.")
    _check_amount(amount)
    if amount > remaining:
        raise ValidationError(
            f"Refund of {amount} exceeds the refundable amount of {remaining}."
        )
    return amount


def refund(txn, amount=None, gateway_id=None, status=Transaction.PENDING):
    """Append a refund row for ``txn`` after validating the amount."""
    txn = lock_for_refund(txn)
    amount = validate_refund(txn, amount)

    refund_txn = Transaction(
        owner_id=txn.owner_id,
        customer_id=txn.customer_id,
        gateway_id=gateway_id,
        type=Transaction.REFUND,
        status=status,
        currency=txn.currency,
        amount_minor_units=amount,
        description=f"Refund for {txn.description or txn.id}",
        metadata_={"refunded_from": txn.id},
        refunded_from_id=txn.id,
        processed_at=utcnow() if status == Transaction.SUCCESS else None,
    )
    db.session.add(refund_txn)
    db.session.flush()

    log_billing_audit(txn.owner_id, "transaction.refunded", {
        "transaction_id": txn.id,
        "refund_id": refund_txn.id,
        "amount": amount,
    })
    return refund_txn


# ──────────────────────────────────────────────
# Status transitions
# ──────────────────────────────────────────────

def mark_succeeded(txn, processed_at=None):
    """Confirm ``txn``. The first confirmation time is kept on repeats.

    A refunded transaction is left refunded; a failed one may still
    succeed, since a failed CHIP purchase can be paid again.
    """
    if txn.status == Transaction.REFUNDED:
        logger.info(f"Transaction {txn.id} already refunded, ignoring success")
        return txn
    txn.status = Transaction.SUCCESS
    if txn.processed_at is None:
        txn.processed_at = processed_at or utcnow()
    db.session.flush()
    return txn


def mark_failed(txn):
    """Fail ``txn`` unless it already settled (success or refunded)."""
    if txn.status in (Transaction.SUCCESS, Transaction.REFUNDED):
        logger.info(f"Transaction {txn.id} already {txn.status}, ignoring failure")
        return txn
    txn.status = Transaction.FAILED
    db.session.flush()
    return txn


def mark_refunded(txn):
    txn.status = Transaction.REFUNDED
    db.session.flush()
    return txn
