"""Tests for the flask CLI commands (create-plan, chip-webhooks)."""

from cashier.models.plan import Plan


class TestCreatePlan:
    """Tests for `flask create-plan`."""

    def test_creates_plan(self, app):
        runner = app.test_cli_runner()

        result = runner.invoke(args=[
            "create-plan", "--id", "basic_monthly", "--price-id", "price_basic",
            "--name", "Basic", "--amount", "5900",
        ])

        assert result.exit_code == 0, result.output
        assert "Created plan basic_monthly" in result.output
        plan = Plan.find("price_basic")
        assert plan.id == "basic_monthly"
        assert plan.amount_minor_units == 5900
        assert plan.currency == "MYR"
        assert plan.interval == "month"

    def test_existing_plan_is_left_alone(self, app, make_plan):
        make_plan(plan_id="basic_monthly", amount=5900)
        runner = app.test_cli_runner()

        result = runner.invoke(args=[
            "create-plan", "--id", "basic_monthly", "--price-id", "price_other",
            "--name", "Basic", "--amount", "100",
        ])

        assert "already exists" in result.output
        assert Plan.find("basic_monthly").amount_minor_units == 5900


class TestChipWebhooks:
    """Tests for `flask chip-webhooks`."""

    def test_list(self, app, gateway):
        gateway.list_webhooks.return_value = [
            {"id": "wh_1", "callback": "https://example.com/hook", "events": ["purchase.completed"]},
        ]

        result = app.test_cli_runner().invoke(args=["chip-webhooks", "list"])

        assert result.exit_code == 0, result.output
        assert "wh_1" in result.output
        assert "purchase.completed" in result.output

    def test_list_empty(self, app, gateway):
        gateway.list_webhooks.return_value = []

        result = app.test_cli_runner().invoke(args=["chip-webhooks", "list"])

        assert "No webhooks registered." in result.output

    def test_create_defaults_to_handled_events(self, app, gateway):
        gateway.create_webhook.return_value = {"id": "wh_new"}

        result = app.test_cli_runner().invoke(args=[
            "chip-webhooks", "create", "--url", "https://example.com/chip/webhooks",
        ])

        assert result.exit_code == 0, result.output
        assert "wh_new" in result.output
        url, events = gateway.create_webhook.call_args[0]
        assert url == "https://example.com/chip/webhooks"
        assert "purchase.completed" in events
        assert "subscription.cancelled" in events

    def test_create_with_explicit_events(self, app, gateway):
        gateway.create_webhook.return_value = {"id": "wh_new"}

        app.test_cli_runner().invoke(args=[
            "chip-webhooks", "create", "--url", "https://example.com/hook",
            "--event", "purchase.completed", "--title", "Prod",
        ])

        gateway.create_webhook.assert_called_once_with(
            "https://example.com/hook", ["purchase.completed"], title="Prod"
        )

    def test_delete(self, app, gateway):
        result = app.test_cli_runner().invoke(args=["chip-webhooks", "delete", "--id", "wh_1"])

        assert result.exit_code == 0, result.output
        gateway.delete_webhook.assert_called_once_with("wh_1")
