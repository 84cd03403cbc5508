"""Billing signals for host applications.

Sent after the local state change is flushed, inside the same unit of work,
so receivers see the reconciled rows. Connect with e.g.::

    from cashier.signals import transaction_completed

    @transaction_completed.connect
    def on_paid(sender, transaction, **extra):
        ...

``sender`` is always the current Flask app.
"""

from blinker import Namespace

_signals = Namespace()

# Every verified delivery, before it is applied. Receives ``payload``.
webhook_received = _signals.signal("webhook-received")
# A delivery whose handler ran. Receives ``event_type`` and ``payload``.
webhook_handled = _signals.signal("webhook-handled")

# Receive ``transaction``.
transaction_completed = _signals.signal("transaction-completed")
transaction_failed = _signals.signal("transaction-failed")
transaction_refunded = _signals.signal("transaction-refunded")

# Receive ``subscription``.
subscription_created = _signals.signal("subscription-created")
subscription_updated = _signals.signal("subscription-updated")
subscription_cancelled = _signals.signal("subscription-cancelled")
