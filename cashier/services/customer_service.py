"""Customer service: local customer rows and their CHIP identity.

Functions flush but do NOT commit, the caller commits.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from cashier.errors import ConflictError, NotFoundError
from cashier.extensions import db
from cashier.models.customer import Customer
from cashier.services.audit_service import log_billing_audit
from cashier.timeutils import utcnow

logger = logging.getLogger(__name__)


def get_customer(owner_id):
    """Return the Customer for ``owner_id`` or None."""
    return Customer.query.filter_by(owner_id=owner_id).first()


def _flush_new(customer):
    db.session.add(customer)
    try:
        db.session.flush()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(
            f"Customer for owner {customer.owner_id} already exists"
        ) from e


def get_or_create_local_customer(owner_id, email=None, name=None):
    """Return the owner's Customer, creating a local-only row if absent.

    No gateway call is made; ``gateway_customer_id`` stays null.
    Raises ConflictError if a concurrent request created the row first.
    """
    customer = get_customer(owner_id)
    if customer:
        return customer

    customer = Customer(owner_id=owner_id, email=email, name=name)
    _flush_new(customer)
    return customer


def ensure_gateway_customer(owner_id, gateway, email=None, name=None):
    """Make sure the owner has a CHIP client identity.

    An existing identity is never re-created. The gateway is only called
    when the owner has no identity yet; a GatewayError from that call
    propagates and nothing is written.

    Raises ConflictError when a concurrent request won the race on the
    owner or gateway id uniqueness constraint.
    """
    customer = get_customer(owner_id)
    if customer and customer.has_gateway_id:
        return customer

    profile = {
        "email": email or (customer.email if customer else None),
        "full_name": name or (customer.name if customer else None),
    }
    ref = gateway.create_customer(profile)

    if customer is None:
        customer = Customer(owner_id=owner_id)
        db.session.add(customer)
    customer.gateway_customer_id = ref.id
    customer.email = ref.email or profile["email"]
    customer.name = ref.name or profile["full_name"]

    try:
        db.session.flush()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(
            f"Gateway customer for owner {owner_id} already exists"
        ) from e

    log_billing_audit(owner_id, "customer.created", {
        "gateway_customer_id": ref.id,
    })
    logger.info(f"Created CHIP client {ref.id} for owner {owner_id}")
    return customer


def update_customer(owner_id, gateway, email=None, name=None):
    """Explicitly update the owner's profile, locally and at the gateway.

    The gateway identity itself is never changed here.
    Raises NotFoundError if the owner has no customer row.
    """
    customer = get_customer(owner_id)
    if customer is None:
        raise NotFoundError(f"No customer for owner {owner_id}")

    if customer.has_gateway_id:
        gateway.update_customer(
            customer.gateway_customer_id,
            {"email": email, "full_name": name},
        )

    if email is not None:
        customer.email = email
    if name is not None:
        customer.name = name
    db.session.flush()
    return customer


def start_generic_trial(owner_id, days, email=None, name=None):
    """Put the owner on a subscription-less trial for ``days`` days."""
    customer = get_or_create_local_customer(owner_id, email=email, name=name)
    customer.trial_ends_at = utcnow() + timedelta(days=days)
    db.session.flush()
    return customer
