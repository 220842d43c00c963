import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default):
    return os.getenv(name, str(default)).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as mentorslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "mentorslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Cookie carrying the session token issued by the auth service
    AUTH_COOKIE_NAME = "mentorslot_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", False)

    # Pricing
    DEFAULT_HOURLY_RATE = int(os.getenv("DEFAULT_HOURLY_RATE", "15000"))
    CURRENCY = os.getenv("CURRENCY", "NGN")
    PLATFORM_SHARE_PERCENT = int(os.getenv("PLATFORM_SHARE_PERCENT", "30"))  # mentor gets the rest

    # Request-mode approval
    APPROVAL_WINDOW_HOURS = int(os.getenv("APPROVAL_WINDOW_HOURS", "72"))
    ENFORCE_APPROVAL_DEADLINE = _env_bool("ENFORCE_APPROVAL_DEADLINE", False)

    # Pending payments older than this are failed by `flask expire-payments`
    PAYMENT_WINDOW_MINUTES = int(os.getenv("PAYMENT_WINDOW_MINUTES", "60"))

    # Payment gateway: "paystack" or "stripe"
    PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "paystack")
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

    # Where the gateway sends the payer back; ?reference=... is appended
    PAYMENT_CALLBACK_URL = os.getenv(
        "PAYMENT_CALLBACK_URL",
        os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/") + "/mentorship/verify-payment",
    )

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", True)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    PAYSTACK_SECRET_KEY = "sk_test_paystack"
    PAYMENT_CALLBACK_URL = "http://testserver/mentorship/verify-payment"
    SMTP_HOST = None
    CREATE_TABLES = True
