"""Subscription service: the subscription lifecycle state machine.

States are derived, never stored:

    trialing -> active -> cancelling (ends_at in the future) -> ended
    active -> ended                      (immediate cancellation)
    cancelling -> active                 (resume, while still in grace)

Trials requested at creation are local-only: no gateway call is made and
the row has no gateway subscription id (see Subscription.gateway_ref).

Cancel and resume change local state first and treat the gateway call as
best-effort; a GatewayError there is logged and reconciled later by the
subscription.* webhooks. Create and quantity changes are all-or-nothing:
the gateway must accept the change before anything is written.

Functions flush but do NOT commit, the caller commits.
"""

import logging
from datetime import timedelta

from cashier.errors import ConflictError, GatewayError, ValidationError
from cashier.extensions import db
from cashier.models.subscription import Subscription, SubscriptionItem
from cashier.services.audit_service import log_billing_audit
from cashier.services.customer_service import (
    ensure_gateway_customer,
    get_or_create_local_customer,
)
from cashier.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

END_OF_PERIOD = "end_of_period"
IMMEDIATE = "immediate"
CANCEL_MODES = (END_OF_PERIOD, IMMEDIATE)


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def subscriptions_for(owner_id):
    """All of the owner's subscriptions, newest first."""
    return (
        Subscription.query
        .filter_by(owner_id=owner_id)
        .order_by(Subscription.created_at.desc())
        .all()
    )


def find_subscription(owner_id, name="default"):
    """Resolve ``(owner_id, name)`` to a subscription.

    Returns the currently valid row if there is one, otherwise the most
    recent historical row, otherwise None.
    """
    rows = (
        Subscription.query
        .filter_by(owner_id=owner_id, name=name)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    now = utcnow()
    for sub in rows:
        if sub.valid(now):
            return sub
    return rows[0] if rows else None


def find_by_gateway_id(gateway_subscription_id):
    if not gateway_subscription_id:
        return None
    return Subscription.query.filter_by(
        gateway_subscription_id=gateway_subscription_id
    ).first()


def subscribed(owner_id, name="default", plan_id=None):
    sub = find_subscription(owner_id, name)
    if sub is None or not sub.valid():
        return False
    return sub.has_plan(plan_id) if plan_id else True


def on_trial(owner_id, name="default", plan_id=None):
    sub = find_subscription(owner_id, name)
    if sub is None or not sub.on_trial():
        return False
    return sub.has_plan(plan_id) if plan_id else True


def has_active_subscription(owner_id):
    now = utcnow()
    return any(sub.active(now) for sub in subscriptions_for(owner_id))


# ──────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────

def create_subscription(owner_id, name, plan_id, gateway, quantity=1,
                        trial_days=None, trial_until=None, skip_trial=False,
                        metadata=None, email=None, customer_name=None):
    """Create a subscription in slot ``name`` for ``owner_id``.

    With a trial (``trial_days`` or ``trial_until``) and no ``skip_trial``
    the subscription is local-only and ``trialing``; the gateway is not
    called. Otherwise the owner's CHIP identity is ensured, the gateway
    creates the subscription, and only then is the local row written.

    Raises:
        ValidationError: bad plan/quantity or a trial end in the past.
        ConflictError: the slot already holds a valid subscription.
        GatewayError: the gateway refused or could not be reached.
    """
    if not plan_id:
        raise ValidationError("A plan is required.")
    if quantity is None or int(quantity) < 1:
        raise ValidationError("Quantity must be at least 1.")
    quantity = int(quantity)

    now = utcnow()
    existing = find_subscription(owner_id, name)
    if existing is not None and existing.valid(now):
        raise ConflictError(
            f"Owner {owner_id} already has a valid '{name}' subscription"
        )

    trial_ends_at = None
    if not skip_trial:
        if trial_until is not None:
            trial_ends_at = as_utc(trial_until)
        elif trial_days:
            trial_ends_at = now + timedelta(days=int(trial_days))
    if trial_ends_at is not None and trial_ends_at <= now:
        raise ValidationError("Trial end must be in the future.")

    if trial_ends_at is not None:
        get_or_create_local_customer(owner_id, email=email, name=customer_name)
        sub = Subscription(
            owner_id=owner_id,
            name=name,
            gateway_subscription_id=None,
            plan_id=plan_id,
            quantity=quantity,
            status=Subscription.TRIALING,
            trial_ends_at=trial_ends_at,
        )
    else:
        customer = ensure_gateway_customer(
            owner_id, gateway, email=email, name=customer_name
        )
        ref = gateway.create_subscription(
            customer.gateway_customer_id, plan_id, quantity, metadata or {}
        )
        sub = Subscription(
            owner_id=owner_id,
            name=name,
            gateway_subscription_id=ref.id,
            plan_id=plan_id,
            quantity=quantity,
            status=ref.status or Subscription.ACTIVE,
            current_period_end=ref.next_billing_date,
        )

    sub.items.append(SubscriptionItem(plan_id=plan_id, quantity=quantity))
    db.session.add(sub)
    db.session.flush()

    log_billing_audit(owner_id, "subscription.created", {
        "subscription_id": sub.id,
        "name": name,
        "plan_id": plan_id,
        "local_only": sub.is_local_only,
    })
    return sub


def _end_of_period_boundary(sub, now):
    """When an end-of-period cancellation takes effect."""
    if sub.is_local_only:
        return now
    period_end = as_utc(sub.current_period_end)
    if period_end is not None and period_end > now:
        return period_end
    if sub.on_trial(now):
        return as_utc(sub.trial_ends_at)
    return now


def cancel(sub, gateway, mode=END_OF_PERIOD):
    """Cancel ``sub`` immediately or at the end of the billing period.

    Cancelling an already-ended subscription is a no-op.
    """
    if mode not in CANCEL_MODES:
        raise ValidationError(f"Unknown cancellation mode '{mode}'.")

    now = utcnow()
    if sub.ended(now):
        return sub

    sub.ends_at = now if mode == IMMEDIATE else _end_of_period_boundary(sub, now)

    ref = sub.gateway_ref
    if not ref.is_local:
        try:
            gateway.cancel_subscription(ref.gateway_id, mode)
        except GatewayError as e:
            logger.error(
                f"Gateway cancel failed for subscription {sub.id} "
                f"({ref.gateway_id}), keeping local cancellation: {e}"
            )

    db.session.flush()
    log_billing_audit(sub.owner_id, "subscription.cancelled", {
        "subscription_id": sub.id,
        "mode": mode,
        "ends_at": sub.ends_at.isoformat(),
    })
    return sub


def resume(sub, gateway):
    """Undo a scheduled cancellation while the grace period lasts.

    Raises ValidationError if the subscription has already ended.
    """
    now = utcnow()
    if not sub.cancelled():
        return sub
    if not sub.on_grace_period(now):
        raise ValidationError(
            "Subscription has ended and can no longer be resumed."
        )

    ref = sub.gateway_ref
    if not ref.is_local:
        try:
            gateway.resume_subscription(ref.gateway_id)
        except GatewayError as e:
            logger.error(
                f"Gateway resume failed for subscription {sub.id} "
                f"({ref.gateway_id}), keeping local resume: {e}"
            )

    sub.ends_at = None
    db.session.flush()
    log_billing_audit(sub.owner_id, "subscription.resumed", {
        "subscription_id": sub.id,
    })
    return sub


def _item_for(sub, plan_id):
    if plan_id is None:
        if len(sub.items) != 1:
            raise ValidationError(
                "Subscription has several items; pass the plan to change."
            )
        return sub.items[0]
    for item in sub.items:
        if item.plan_id == plan_id:
            return item
    raise ValidationError(f"Subscription has no item for plan '{plan_id}'.")


def update_quantity(sub, quantity, gateway, plan_id=None):
    """Set the quantity of one subscription item (seat-based billing)."""
    if quantity is None or int(quantity) < 1:
        raise ValidationError("Quantity must be at least 1.")
    quantity = int(quantity)
    if sub.ended():
        raise ValidationError("Cannot change the quantity of an ended subscription.")

    item = _item_for(sub, plan_id)

    ref = sub.gateway_ref
    if not ref.is_local:
        gateway.update_subscription(
            ref.gateway_id, quantity=quantity, plan_id=item.plan_id
        )

    old = item.quantity
    item.quantity = quantity
    sub.quantity = sum(i.quantity for i in sub.items)
    db.session.flush()

    log_billing_audit(sub.owner_id, "subscription.quantity_updated", {
        "subscription_id": sub.id,
        "plan_id": item.plan_id,
        "from": old,
        "to": quantity,
    })
    return sub


def increment_quantity(sub, gateway, count=1, plan_id=None):
    item = _item_for(sub, plan_id)
    return update_quantity(sub, item.quantity + count, gateway, plan_id=item.plan_id)


def decrement_quantity(sub, gateway, count=1, plan_id=None):
    item = _item_for(sub, plan_id)
    return update_quantity(
        sub, max(1, item.quantity - count), gateway, plan_id=item.plan_id
    )


def cancel_all(owner_id, gateway, mode=END_OF_PERIOD):
    """Cancel every subscription of the owner that is still running."""
    now = utcnow()
    cancelled = []
    for sub in subscriptions_for(owner_id):
        if sub.active(now) and not sub.cancelled():
            cancelled.append(cancel(sub, gateway, mode))
    return cancelled
