"""Webhook event model (idempotency table).

Every applied delivery is recorded under a delivery key: the payload's
``event_id`` when the gateway sends one, otherwise the SHA-256 of the
raw body. A redelivery with the same key is acknowledged without being
applied again.
"""

import uuid

from cashier.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    delivery_key = db.Column(
        db.String(255), unique=True, nullable=False
    )
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "purchase.completed"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<WebhookEvent {self.delivery_key[:16]} ({self.event_type})>"
