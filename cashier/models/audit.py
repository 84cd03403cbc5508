"""Audit event model.

Billing actions (charges, refunds, subscription changes, applied
webhooks) are recorded here for support and debugging.
"""

import uuid

from cashier.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id = db.Column(db.String(64), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.cancelled"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid clashing with SQLAlchemy's Model.metadata
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
