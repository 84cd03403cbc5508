# Models package: import all models here so Alembic can discover them.

from cashier.models.customer import Customer  # noqa: F401
from cashier.models.plan import Plan  # noqa: F401
from cashier.models.subscription import Subscription, SubscriptionItem  # noqa: F401
from cashier.models.transaction import Transaction  # noqa: F401
from cashier.models.webhook_event import WebhookEvent  # noqa: F401
from cashier.models.audit import AuditEvent  # noqa: F401
