import os
import logging

import click
from flask import Flask, jsonify

from cashier.config import BillingConfig, config_by_name
from cashier.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from cashier.extensions import db, migrate, limiter


def create_app(config_name=None, gateway=None):
    """Application factory.

    ``gateway`` replaces the CHIP client built from config (tests pass a mock).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from cashier import models  # noqa: F401

    # --- Billing API ---
    from cashier.services.cashier import Cashier
    from cashier.services.gateway_client import ChipClient

    app.extensions["cashier"] = Cashier(
        BillingConfig.from_app_config(app.config),
        gateway or ChipClient.from_config(app.config),
    )

    # --- Register blueprints ---
    from cashier.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(ValidationError)
    def validation_error(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(SignatureError)
    def signature_error(e):
        return jsonify({"error": "Invalid signature"}), 403

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(ConflictError)
    def conflict(e):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(GatewayError)
    def gateway_error(e):
        return jsonify({"error": "Payment gateway unavailable"}), 502

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.group("chip-webhooks")
    def chip_webhooks():
        """Manage webhook registrations at CHIP."""

    @chip_webhooks.command("list")
    def list_webhooks():
        """List the webhooks registered for this brand."""
        gateway = app.extensions["cashier"].gateway
        hooks = gateway.list_webhooks()
        if not hooks:
            click.echo("No webhooks registered.")
            return
        for hook in hooks:
            events = ", ".join(hook.get("events") or [])
            click.echo(f"  {hook.get('id')}  {hook.get('callback')}  [{events}]")

    @chip_webhooks.command("create")
    @click.option("--url", required=True, help="Public callback URL")
    @click.option(
        "--event", "events", multiple=True,
        help="Event type to subscribe to (repeatable). Defaults to all handled events.",
    )
    @click.option("--title", default=None, help="Label shown in the CHIP dashboard")
    def create_webhook(url, events, title):
        """Register a webhook callback at CHIP.

        Usage:
            flask chip-webhooks create --url https://example.com/chip/webhooks
            flask chip-webhooks create --url ... --event purchase.completed
        """
        from cashier.services.webhook_service import EVENT_HANDLERS

        gateway = app.extensions["cashier"].gateway
        events = list(events) or sorted(EVENT_HANDLERS)
        hook = gateway.create_webhook(url, events, title=title)

        click.echo(f"Webhook created: {hook.get('id')}")
        if hook.get("public_key"):
            click.echo("")
            click.echo("Public key (keep alongside CHIP_WEBHOOK_SECRET):")
            click.echo(hook["public_key"])

    @chip_webhooks.command("delete")
    @click.option("--id", "webhook_id", required=True, help="Webhook id to delete")
    def delete_webhook(webhook_id):
        """Remove a webhook registration at CHIP."""
        gateway = app.extensions["cashier"].gateway
        gateway.delete_webhook(webhook_id)
        click.echo(f"Webhook deleted: {webhook_id}")

    @app.cli.command("create-plan")
    @click.option("--id", "plan_id", required=True, help="Local plan id, e.g. basic_monthly")
    @click.option("--price-id", required=True, help="CHIP price id")
    @click.option("--name", required=True, help="Display name")
    @click.option("--amount", required=True, type=int, help="Price in minor units")
    @click.option("--currency", default=None, help="ISO currency (default CASHIER_CURRENCY)")
    @click.option(
        "--interval", default="month",
        type=click.Choice(["day", "week", "month", "year"]),
    )
    @click.option("--interval-count", default=1, type=int)
    def create_plan(plan_id, price_id, name, amount, currency, interval, interval_count):
        """Add a plan to the local catalogue used for invoice forecasts.

        Usage:
            flask create-plan --id basic_monthly --price-id price_123 \\
                --name "Basic" --amount 5900
        """
        from cashier.models.plan import Plan

        if Plan.find(plan_id) or Plan.find(price_id):
            click.echo(f"Plan already exists: {plan_id}")
            return

        plan = Plan(
            id=plan_id,
            gateway_price_id=price_id,
            name=name,
            amount_minor_units=amount,
            currency=(currency or app.config["CASHIER_CURRENCY"]).upper(),
            interval=interval,
            interval_count=interval_count,
        )
        db.session.add(plan)
        db.session.commit()

        click.echo(f"Created plan {plan.id}: {amount} {plan.currency} / {interval_count} {interval}")
