"""Subscription models.

- Subscription: one named slot ("default", "addon", ...) per owner. The
  lifecycle (trialing / active / cancelling / ended) is never stored; it is
  computed from trial_ends_at and ends_at against the clock at query time.
  ``status`` holds the last status reported by the gateway.
- SubscriptionItem: one priced line (plan + quantity) of a subscription.

Rows are never deleted: cancellation is a timestamp, not a removal.
"""

import uuid
from dataclasses import dataclass

from cashier.extensions import db
from cashier.timeutils import as_utc, utcnow


@dataclass(frozen=True)
class LocalOnly:
    """A trial subscription that has never been created at the gateway."""

    is_local = True
    gateway_id = None


@dataclass(frozen=True)
class GatewayBacked:
    """A subscription that exists at the gateway under ``gateway_id``."""

    gateway_id: str
    is_local = False


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Lifecycle states (computed, see .state) --
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    ENDED = "ended"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)  # slot, e.g. "default"
    gateway_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # null for local-only trials
    plan_id = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, default=1)
    status = db.Column(
        db.String(50), nullable=False
    )  # gateway status: trialing | active | cancelled | past_due ...
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # gateway-reported next billing boundary
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # --- Relationships ---
    items = db.relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionItem.created_at",
    )

    __table_args__ = (
        db.Index("ix_subscriptions_owner_name", "owner_id", "name"),
    )

    @property
    def gateway_ref(self):
        if self.gateway_subscription_id is None:
            return LocalOnly()
        return GatewayBacked(self.gateway_subscription_id)

    @property
    def is_local_only(self):
        return self.gateway_ref.is_local

    # --- Predicates (pure functions of stored timestamps) ---

    def on_trial(self, now=None):
        now = now or utcnow()
        return self.trial_ends_at is not None and as_utc(self.trial_ends_at) > now

    def on_grace_period(self, now=None):
        now = now or utcnow()
        return self.ends_at is not None and as_utc(self.ends_at) > now

    def cancelled(self):
        return self.ends_at is not None

    def active(self, now=None):
        return self.ends_at is None or self.on_grace_period(now)

    def ended(self, now=None):
        return self.cancelled() and not self.on_grace_period(now)

    def valid(self, now=None):
        now = now or utcnow()
        return self.active(now) or self.on_trial(now) or self.on_grace_period(now)

    def recurring(self, now=None):
        """Billed every cycle: not on trial and not cancelled."""
        return not self.on_trial(now) and not self.cancelled()

    def has_plan(self, *plan_ids):
        if self.plan_id in plan_ids:
            return True
        return any(item.plan_id in plan_ids for item in self.items)

    @property
    def state(self):
        now = utcnow()
        if self.ended(now):
            return self.ENDED
        if self.on_grace_period(now):
            return self.CANCELLING
        if self.on_trial(now):
            return self.TRIALING
        return self.ACTIVE

    def __repr__(self):
        return f"<Subscription {self.owner_id}/{self.name} ({self.status})>"


class SubscriptionItem(db.Model):
    __tablename__ = "subscription_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    plan_id = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="items")

    def __repr__(self):
        return f"<SubscriptionItem {self.plan_id} x{self.quantity}>"
