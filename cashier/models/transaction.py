"""Transaction model: the append-mostly money ledger.

One row per charge or refund. Amounts are integer minor units (sen,
cents) and never change after creation; only status, processed_at and
gateway_id move, driven by gateway confirmation. Refund rows point back
at their charge through refunded_from_id.
"""

import uuid

from cashier.extensions import db
from cashier.timeutils import utcnow


class Transaction(db.Model):
    __tablename__ = "transactions"

    # -- Types --
    CHARGE = "charge"
    REFUND = "refund"
    TYPES = [CHARGE, REFUND]

    # -- Statuses --
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    STATUSES = [PENDING, SUCCESS, FAILED, REFUNDED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    gateway_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # CHIP purchase / refund id, null until the gateway accepts it
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=True
    )
    type = db.Column(db.String(20), nullable=False, default=CHARGE)
    status = db.Column(db.String(20), nullable=False, default=PENDING)
    currency = db.Column(db.String(3), nullable=False, default="MYR")
    amount_minor_units = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(50), nullable=True)  # fpx | card | ewallet ...
    description = db.Column(db.String(255), nullable=True)
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    refunded_from_id = db.Column(
        db.String(36), db.ForeignKey("transactions.id"), nullable=True, index=True
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # --- Relationships ---
    customer = db.relationship("Customer")
    refunded_from = db.relationship("Transaction", remote_side=[id])

    __table_args__ = (
        db.UniqueConstraint("owner_id", "gateway_id", name="uq_transactions_owner_gateway"),
        db.Index("ix_transactions_owner_type_status", "owner_id", "type", "status"),
    )

    @property
    def is_charge(self):
        return self.type == self.CHARGE

    @property
    def is_refund(self):
        return self.type == self.REFUND

    @property
    def successful(self):
        return self.status == self.SUCCESS

    @property
    def pending(self):
        return self.status == self.PENDING

    @property
    def failed(self):
        return self.status == self.FAILED

    @property
    def refunded(self):
        return self.status == self.REFUNDED

    def __repr__(self):
        return f"<Transaction {self.type} {self.amount_minor_units} {self.currency} ({self.status})>"
