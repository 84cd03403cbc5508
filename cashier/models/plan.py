"""Plan model.

Local catalogue of gateway prices. Subscriptions reference a plan by
either its local id or its CHIP price id. Only used to price forecast
invoices; the gateway stays the authority on what is actually charged.
"""

from cashier.extensions import db


class Plan(db.Model):
    __tablename__ = "plans"

    INTERVALS = ["day", "week", "month", "year"]

    id = db.Column(db.String(100), primary_key=True)  # e.g. "basic_monthly"
    gateway_price_id = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    amount_minor_units = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="MYR")
    interval = db.Column(db.String(10), nullable=False, default="month")
    interval_count = db.Column(db.Integer, nullable=False, default=1)
    active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    @classmethod
    def find(cls, plan_id):
        """Look a plan up by local id or CHIP price id."""
        if not plan_id:
            return None
        plan = db.session.get(cls, plan_id)
        if plan is None:
            plan = cls.query.filter_by(gateway_price_id=plan_id).first()
        return plan

    def __repr__(self):
        return f"<Plan {self.id} {self.amount_minor_units} {self.currency}/{self.interval}>"
