"""Invoice service: read-only invoice views projected from the ledger.

An Invoice is never stored. It is built on demand from one Transaction
(one line per transaction) or, for the upcoming cycle of a running
subscription, from the subscription's plans as an unsaved forecast.

Status mapping:
    success  -> paid
    pending  -> open
    failed   -> void
    refunded -> void
    anything else -> draft
"""

import calendar
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import func

from cashier.errors import NotFoundError
from cashier.extensions import db
from cashier.models.plan import Plan
from cashier.models.transaction import Transaction
from cashier.services import ledger_service, subscription_service
from cashier.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

# Fixed payment terms for projected invoices.
INVOICE_DUE_DAYS = 30

STATUS_MAP = {
    Transaction.SUCCESS: "paid",
    Transaction.PENDING: "open",
    Transaction.FAILED: "void",
    Transaction.REFUNDED: "void",
}


@dataclass
class InvoiceLine:
    id: str
    description: str
    amount: int
    currency: str
    quantity: int = 1


@dataclass
class Invoice:
    id: str
    owner_id: str
    currency: str
    status: str
    total: int
    subtotal: int
    tax: int
    amount_paid: int
    amount_due: int
    date: datetime
    due_date: datetime
    description: str = None
    gateway_id: str = None
    customer_id: str = None
    subscription_id: str = None
    transaction_id: str = None
    paid_at: datetime = None
    metadata: dict = field(default_factory=dict)
    lines: list = field(default_factory=list)

    @property
    def raw_total(self):
        """Total in minor units."""
        return self.total

    @property
    def is_forecast(self):
        return self.transaction_id is None

    @property
    def paid(self):
        return self.status == "paid"

    @property
    def open(self):
        return self.status == "open"

    @property
    def void(self):
        return self.status == "void"

    @property
    def draft(self):
        return self.status == "draft"

    def to_dict(self):
        data = asdict(self)
        for key in ("date", "due_date", "paid_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _explicit_tax(metadata, total):
    """Tax is zero unless the charge metadata carries an explicit amount."""
    tax = (metadata or {}).get("tax", 0)
    if isinstance(tax, bool) or not isinstance(tax, int) or tax < 0 or tax > total:
        return 0
    return tax


def to_invoice(txn):
    """Project one transaction into an Invoice."""
    total = txn.amount_minor_units
    metadata = dict(txn.metadata_ or {})
    tax = _explicit_tax(metadata, total)
    created_at = as_utc(txn.created_at)

    return Invoice(
        id=txn.id,
        gateway_id=txn.gateway_id,
        owner_id=txn.owner_id,
        customer_id=txn.customer_id,
        subscription_id=metadata.get("subscription_id"),
        transaction_id=txn.id,
        currency=txn.currency,
        status=STATUS_MAP.get(txn.status, "draft"),
        total=total,
        subtotal=total - tax,
        tax=tax,
        amount_paid=total if txn.status == Transaction.SUCCESS else 0,
        amount_due=total if txn.status == Transaction.PENDING else 0,
        date=created_at,
        due_date=created_at + timedelta(days=INVOICE_DUE_DAYS),
        paid_at=as_utc(txn.processed_at),
        description=txn.description,
        metadata=metadata,
        lines=[InvoiceLine(
            id=f"line_{txn.id}",
            description=txn.description or "Payment",
            amount=total,
            currency=txn.currency,
        )],
    )


# ──────────────────────────────────────────────
# Forecasts
# ──────────────────────────────────────────────

def _add_interval(start, interval, count):
    if interval == "day":
        return start + timedelta(days=count)
    if interval == "week":
        return start + timedelta(weeks=count)
    months = count * (12 if interval == "year" else 1)
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _next_billing_date(sub, plan, now):
    period_end = as_utc(sub.current_period_end)
    if period_end is not None and period_end > now:
        return period_end
    if sub.on_trial(now):
        return as_utc(sub.trial_ends_at)
    return _add_interval(now, plan.interval, plan.interval_count or 1)


def forecast_invoice(sub, now=None):
    """Build the unsaved draft invoice for ``sub``'s next cycle.

    Returns None when a plan on the subscription is not in the catalogue.
    """
    now = now or utcnow()
    priced = []
    for item in sub.items:
        plan = Plan.find(item.plan_id)
        if plan is None:
            logger.warning(
                f"No plan '{item.plan_id}' for subscription {sub.id}, skipping forecast"
            )
            return None
        priced.append((item, plan))
    if not priced:
        return None

    currency = priced[0][1].currency
    lines = [
        InvoiceLine(
            id=f"line_{item.id}",
            description=f"Subscription: {sub.name} ({plan.name})",
            amount=plan.amount_minor_units * item.quantity,
            currency=plan.currency,
            quantity=item.quantity,
        )
        for item, plan in priced
    ]
    total = sum(line.amount for line in lines)
    billing_date = _next_billing_date(sub, priced[0][1], now)

    return Invoice(
        id=f"upcoming_{sub.id}",
        owner_id=sub.owner_id,
        subscription_id=sub.id,
        currency=currency,
        status="draft",
        total=total,
        subtotal=total,
        tax=0,
        amount_paid=0,
        amount_due=total,
        date=billing_date,
        due_date=billing_date,
        description="Upcoming subscription payment",
        metadata={"subscription_id": sub.id},
        lines=lines,
    )


# ──────────────────────────────────────────────
# Owner queries
# ──────────────────────────────────────────────

def _charges(owner_id):
    return Transaction.query.filter_by(owner_id=owner_id, type=Transaction.CHARGE)


def upcoming_invoice(owner_id):
    """The owner's next invoice.

    A pending charge wins; otherwise the first running (not cancelled)
    subscription is forecast. Returns None if neither exists.
    """
    pending = (
        _charges(owner_id)
        .filter_by(status=Transaction.PENDING)
        .order_by(Transaction.created_at.desc())
        .first()
    )
    if pending is not None:
        return to_invoice(pending)

    now = utcnow()
    for sub in subscription_service.subscriptions_for(owner_id):
        if sub.active(now) and not sub.cancelled():
            return forecast_invoice(sub, now)
    return None


def invoices(owner_id, include_pending=False):
    """Invoices for the owner's charges, newest first."""
    statuses = [Transaction.SUCCESS]
    if include_pending:
        statuses.append(Transaction.PENDING)
    rows = (
        _charges(owner_id)
        .filter(Transaction.status.in_(statuses))
        .order_by(Transaction.created_at.desc())
        .all()
    )
    return [to_invoice(txn) for txn in rows]


def find_invoice(owner_id, invoice_id):
    """Find an invoice by transaction id or gateway id. Returns None on a miss."""
    txn = ledger_service.find_transaction(owner_id, invoice_id)
    return to_invoice(txn) if txn else None


def find_invoice_or_fail(owner_id, invoice_id):
    invoice = find_invoice(owner_id, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def latest_invoice(owner_id):
    txn = (
        _charges(owner_id)
        .filter_by(status=Transaction.SUCCESS)
        .order_by(Transaction.created_at.desc())
        .first()
    )
    return to_invoice(txn) if txn else None


def _paid_in_period(query, start, end):
    return (
        query
        .filter(Transaction.status == Transaction.SUCCESS)
        .filter(Transaction.created_at >= start)
        .filter(Transaction.created_at <= end)
    )


def invoices_for_period(owner_id, start, end):
    rows = (
        _paid_in_period(_charges(owner_id), start, end)
        .order_by(Transaction.created_at.desc())
        .all()
    )
    return [to_invoice(txn) for txn in rows]


def invoices_for_year(owner_id, year):
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return invoices_for_period(owner_id, start, end)


def invoice_total_for_period(owner_id, start, end):
    """Sum of paid charges in the period, in minor units."""
    query = db.session.query(
        func.coalesce(func.sum(Transaction.amount_minor_units), 0)
    ).filter(
        Transaction.owner_id == owner_id,
        Transaction.type == Transaction.CHARGE,
    )
    return int(_paid_in_period(query, start, end).scalar() or 0)
