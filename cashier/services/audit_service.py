"""Audit helpers for billing actions."""

from cashier.extensions import db
from cashier.models.audit import AuditEvent


def log_billing_audit(owner_id, action, metadata=None):
    """Log a billing-related audit event.

    Flushes only; the audit row commits (or rolls back) with the
    surrounding unit of work.
    """
    event = AuditEvent(
        owner_id=owner_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
