"""Customer model.

Binds a local billable owner to its CHIP client identity. Created lazily
on the first billing action. ``owner_id`` is unique, so two concurrent
first-time requests for the same owner resolve to one row and a
constraint violation for the loser.
"""

import uuid

from cashier.extensions import db
from cashier.timeutils import as_utc, utcnow


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id = db.Column(db.String(64), unique=True, nullable=False)
    gateway_customer_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # CHIP client id, null until first sync
    email = db.Column(db.String(255), nullable=True)
    name = db.Column(db.String(255), nullable=True)
    trial_ends_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # generic trial, not tied to a subscription
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def has_gateway_id(self):
        return self.gateway_customer_id is not None

    def on_generic_trial(self, now=None):
        """True while the owner-level trial has not expired."""
        if self.trial_ends_at is None:
            return False
        return as_utc(self.trial_ends_at) > (now or utcnow())

    def __repr__(self):
        return f"<Customer owner={self.owner_id} chip={self.gateway_customer_id}>"
