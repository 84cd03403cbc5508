import os
from dataclasses import dataclass


def _flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Some PaaS providers still hand out "postgres://" URLs, which
    # SQLAlchemy 1.4+ rejects.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- CHIP gateway ---
    CHIP_API_KEY = os.environ.get("CHIP_API_KEY")
    CHIP_BRAND_ID = os.environ.get("CHIP_BRAND_ID")
    CHIP_API_URL = os.environ.get("CHIP_API_URL", "https://gate.chip-in.asia/api/v1")
    CHIP_TIMEOUT = int(os.environ.get("CHIP_TIMEOUT", 30))  # seconds per call

    # --- Webhooks ---
    # Empty secret disables signature verification (local development only).
    CHIP_WEBHOOK_SECRET = os.environ.get("CHIP_WEBHOOK_SECRET")
    CHIP_WEBHOOK_TOLERANCE = int(os.environ.get("CHIP_WEBHOOK_TOLERANCE", 300))
    CHIP_LOGGING_ENABLED = _flag("CHIP_LOGGING_ENABLED")

    # --- Billing defaults ---
    CASHIER_CURRENCY = os.environ.get("CASHIER_CURRENCY", "MYR").upper()
    CASHIER_TRIAL_DAYS = int(os.environ.get("CASHIER_TRIAL_DAYS", 14))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    REQUIRED = [
        "SECRET_KEY",
        "DATABASE_URL",
        "CHIP_API_KEY",
        "CHIP_BRAND_ID",
    ]

    @classmethod
    def validate(cls):
        """Fail fast if required env vars are missing."""
        missing = [v for v in cls.REQUIRED if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing. In-memory SQLite, fake gateway credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CHIP_API_KEY = "chip_test_fake"
    CHIP_BRAND_ID = "brand_test_fake"
    CHIP_API_URL = "https://gate.chip-in.test/api/v1"
    CHIP_WEBHOOK_SECRET = "whsec_test_fake"
    CHIP_WEBHOOK_TOLERANCE = 300
    CHIP_LOGGING_ENABLED = False
    CASHIER_CURRENCY = "MYR"
    CASHIER_TRIAL_DAYS = 14
    RATELIMIT_ENABLED = False

    @classmethod
    def validate(cls):
        """Skip validation in test mode, everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production. Webhook signatures are mandatory here."""

    DEBUG = False
    REQUIRED = Config.REQUIRED + ["CHIP_WEBHOOK_SECRET"]


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}


@dataclass(frozen=True)
class BillingConfig:
    """Settings the billing services need, passed in explicitly.

    Built once per app from the Flask config; nothing in the services
    reads process-wide state to find these values.
    """

    currency: str = "MYR"
    trial_days: int = 14
    webhook_secret: str = None
    webhook_tolerance: int = 300
    gateway_timeout: int = 30
    logging_enabled: bool = False

    @classmethod
    def from_app_config(cls, app_config):
        return cls(
            currency=(app_config.get("CASHIER_CURRENCY") or "MYR").upper(),
            trial_days=int(app_config.get("CASHIER_TRIAL_DAYS", 14)),
            webhook_secret=app_config.get("CHIP_WEBHOOK_SECRET") or None,
            webhook_tolerance=int(app_config.get("CHIP_WEBHOOK_TOLERANCE", 300)),
            gateway_timeout=int(app_config.get("CHIP_TIMEOUT", 30)),
            logging_enabled=bool(app_config.get("CHIP_LOGGING_ENABLED", False)),
        )
