import os


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- CAKTO gateway ---
    # When CAKTO_WEBHOOK_SECRET is unset, webhook signatures are NOT checked.
    CAKTO_WEBHOOK_SECRET = os.environ.get("CAKTO_WEBHOOK_SECRET") or None
    CAKTO_API_BASE = os.environ.get("CAKTO_API_BASE", "")
    CAKTO_CLIENT_ID = os.environ.get("CAKTO_CLIENT_ID", "")
    CAKTO_CLIENT_SECRET = os.environ.get("CAKTO_CLIENT_SECRET", "")
    CAKTO_CHECKOUT_BASE_URL = os.environ.get(
        "CAKTO_CHECKOUT_BASE_URL", "https://pay.cakto.com.br"
    )
    # A completed checkout younger than this still absorbs webhook deliveries
    # that arrive under a different event id.
    CAKTO_RECENT_CHECKOUT_MINUTES = int(
        os.environ.get("CAKTO_RECENT_CHECKOUT_MINUTES", 360)
    )

    APP_PUBLIC_URL = os.environ.get("APP_PUBLIC_URL", "")

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "IdeartCloud")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    ACCESS_EMAIL_SUBJECT = os.environ.get(
        "ACCESS_EMAIL_SUBJECT", "Acesso liberado - IdeartCloud"
    )

    # --- Provisioning ---
    TEMP_PASSWORD_LENGTH = int(os.environ.get("TEMP_PASSWORD_LENGTH", 12))

    # --- Rate limits (Flask-Limiter syntax) ---
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "300 per minute")
    CHECKOUT_RATE_LIMIT = os.environ.get("CHECKOUT_RATE_LIMIT", "10 per minute")
    # Shared store when running several workers, e.g. redis://localhost:6379/0
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "APP_PUBLIC_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fixed webhook secret, no rate limits."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CAKTO_WEBHOOK_SECRET = "cakto_whsec_test"
    CAKTO_API_BASE = "https://api.cakto.test"
    CAKTO_CLIENT_ID = "client_test"
    CAKTO_CLIENT_SECRET = "client_secret_test"
    CAKTO_CHECKOUT_BASE_URL = "https://pay.cakto.com.br"
    CAKTO_RECENT_CHECKOUT_MINUTES = 360
    APP_PUBLIC_URL = "http://localhost:8080"
    MAIL_USERNAME = None
    MAIL_PASSWORD = None
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
