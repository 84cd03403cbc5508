"""Shared test fixtures for the cashier test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake CHIP keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- gateway: MagicMock standing in for the CHIP client, fresh per test
- cashier: the app's Cashier, wired to the mocked gateway
- make_subscription / make_charge / make_plan: row factories
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from cashier import create_app
from cashier.extensions import db as _db
from cashier.models.customer import Customer
from cashier.models.plan import Plan
from cashier.models.subscription import Subscription, SubscriptionItem
from cashier.models.transaction import Transaction
from cashier.services.gateway_client import ChargeRef, CustomerRef, RefundRef, SubRef
from cashier.timeutils import utcnow


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing", gateway=MagicMock())
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def gateway(app):
    """A fresh mocked CHIP client with sensible default responses."""
    mock = MagicMock()
    mock.create_customer.return_value = CustomerRef(
        id="cli_test_1", email="owner@example.com", name="Owner"
    )
    mock.create_charge.return_value = ChargeRef(
        id="pur_test_1", status="created", checkout_url="https://gate.chip-in.test/p/1"
    )
    mock.refund.return_value = RefundRef(id="ref_test_1", status="success", amount=None)
    mock.create_subscription.return_value = SubRef(
        id="sub_gw_1",
        status="active",
        next_billing_date=utcnow() + timedelta(days=20),
    )
    mock.update_subscription.return_value = SubRef(id="sub_gw_1")

    cashier = app.extensions["cashier"]
    previous = cashier.gateway
    cashier.gateway = mock
    yield mock
    cashier.gateway = previous


@pytest.fixture
def cashier(app, gateway):
    """The app's Cashier, using the mocked gateway."""
    return app.extensions["cashier"]


@pytest.fixture
def make_plan(db_session):
    def _make(plan_id="basic_monthly", amount=5900, currency="MYR",
              price_id=None, interval="month"):
        plan = Plan(
            id=plan_id,
            gateway_price_id=price_id or f"price_{plan_id}",
            name=plan_id.replace("_", " ").title(),
            amount_minor_units=amount,
            currency=currency,
            interval=interval,
            interval_count=1,
        )
        _db.session.add(plan)
        _db.session.commit()
        return plan
    return _make


@pytest.fixture
def make_subscription(db_session):
    """Insert a subscription row directly, bypassing the gateway."""
    def _make(owner_id="owner-1", name="default", plan_id="basic_monthly",
              gateway_id="sub_gw_1", quantity=1, status="active",
              trial_ends_at=None, ends_at=None, current_period_end=None):
        sub = Subscription(
            owner_id=owner_id,
            name=name,
            gateway_subscription_id=gateway_id,
            plan_id=plan_id,
            quantity=quantity,
            status=status,
            trial_ends_at=trial_ends_at,
            ends_at=ends_at,
            current_period_end=current_period_end,
        )
        sub.items.append(SubscriptionItem(plan_id=plan_id, quantity=quantity))
        _db.session.add(sub)
        _db.session.commit()
        return sub
    return _make


@pytest.fixture
def make_charge(db_session):
    """Insert a charge row directly, bypassing the gateway."""
    def _make(owner_id="owner-1", amount=10000, status=Transaction.SUCCESS,
              gateway_id="pur_test_1", currency="MYR", description="Order #1",
              metadata=None, created_at=None):
        txn = Transaction(
            owner_id=owner_id,
            gateway_id=gateway_id,
            type=Transaction.CHARGE,
            status=status,
            currency=currency,
            amount_minor_units=amount,
            description=description,
            metadata_=metadata or {},
            processed_at=utcnow() if status == Transaction.SUCCESS else None,
        )
        if created_at is not None:
            txn.created_at = created_at
        _db.session.add(txn)
        _db.session.commit()
        return txn
    return _make


@pytest.fixture
def make_customer(db_session):
    def _make(owner_id="owner-1", gateway_customer_id="cli_existing"):
        customer = Customer(
            owner_id=owner_id,
            gateway_customer_id=gateway_customer_id,
            email="owner@example.com",
        )
        _db.session.add(customer)
        _db.session.commit()
        return customer
    return _make
