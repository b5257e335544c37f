from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name, default=""):
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "insecure-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = _env_list("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "lmspay.urls"
WSGI_APPLICATION = "lmspay.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        # store calls must fail fast rather than queue behind a locked row
        "OPTIONS": {"timeout": float(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "2"))},
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "Asia/Kolkata"
STATIC_URL = "/static/"

EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "payments@localhost")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", "true")

# ---------- Payments ----------
CASHFREE_ENVIRONMENT = os.getenv("CASHFREE_ENVIRONMENT", "SANDBOX")

PAYMENTS = {
    "GATEWAY_PRIORITY": _env_list("PAYMENT_GATEWAY_PRIORITY", "cashfree,razorpay,hdfc"),
    "GATEWAYS": {
        "cashfree": {
            "ENABLED": _env_bool("CASHFREE_ENABLED", "true"),
            "APP_ID": os.getenv("CASHFREE_APP_ID", ""),
            "SECRET_KEY": os.getenv("CASHFREE_SECRET_KEY", ""),
            "API_VERSION": os.getenv("CASHFREE_API_VERSION", "2023-08-01"),
            "BASE_URL": (
                "https://api.cashfree.com/pg"
                if CASHFREE_ENVIRONMENT == "PRODUCTION"
                else "https://sandbox.cashfree.com/pg"
            ),
            "RETURN_URL": os.getenv("CASHFREE_RETURN_URL", ""),
            "NOTIFY_URL": os.getenv("CASHFREE_NOTIFY_URL", ""),
        },
        "razorpay": {
            "ENABLED": _env_bool("RAZORPAY_ENABLED", "true"),
            "KEY_ID": os.getenv("RAZORPAY_KEY_ID", ""),
            "KEY_SECRET": os.getenv("RAZORPAY_KEY_SECRET", ""),
            "WEBHOOK_SECRET": os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            "BASE_URL": os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
        },
        "hdfc": {
            "ENABLED": _env_bool("HDFC_ENABLED", "false"),
            "BASE_URL": os.getenv("HDFC_BASE_URL", "https://smartgateway.hdfcbank.com"),
            "MERCHANT_ID": os.getenv("HDFC_MERCHANT_ID", ""),
            "API_KEY": os.getenv("HDFC_API_KEY", ""),
            "CLIENT_ID": os.getenv("HDFC_CLIENT_ID", os.getenv("HDFC_MERCHANT_ID", "")),
            "RESELLER_ID": os.getenv("HDFC_RESELLER_ID", "hdfc_reseller"),
            "RETURN_URL": os.getenv("HDFC_RETURN_URL", ""),
            "PRIVATE_KEY_PATH": os.getenv("HDFC_PRIVATE_KEY_PATH", ""),
            "KEY_UUID": os.getenv("HDFC_KEY_UUID", ""),
            "WEBHOOK_BASIC_USER": os.getenv("HDFC_WEBHOOK_BASIC_USER", ""),
            "WEBHOOK_BASIC_PASS": os.getenv("HDFC_WEBHOOK_BASIC_PASS", ""),
        },
    },
    "GATEWAY_TIMEOUT_SECONDS": float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10")),
    "RETRY_BACKOFF_BASE_SECONDS": int(os.getenv("PAYMENT_RETRY_BACKOFF_BASE_SECONDS", "60")),
    "RETRY_BACKOFF_CAP_SECONDS": int(os.getenv("PAYMENT_RETRY_BACKOFF_CAP_SECONDS", "3600")),
    "MAX_ATTEMPTS": int(os.getenv("PAYMENT_MAX_ATTEMPTS", "5")),
    "SCHEDULER_INTERVAL_SECONDS": int(os.getenv("PAYMENT_SCHEDULER_INTERVAL_SECONDS", "60")),
    "PENDING_POLL_AFTER_SECONDS": int(os.getenv("PAYMENT_PENDING_POLL_AFTER_SECONDS", "900")),
    "ABANDON_AFTER_SECONDS": int(os.getenv("PAYMENT_ABANDON_AFTER_SECONDS", "86400")),
    "INSTALLMENT_MAX_DEBIT_FAILURES": int(os.getenv("INSTALLMENT_MAX_DEBIT_FAILURES", "3")),
    "WEBHOOK_TOLERANCE_SECONDS": int(os.getenv("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", "0")) or None,
    "UNKNOWN_EVENT_REDELIVERY_SECONDS": int(os.getenv("PAYMENT_UNKNOWN_EVENT_REDELIVERY_SECONDS", "3600")),
    "ADMIN_EMAILS": os.getenv("PAYMENTS_ADMIN_EMAILS", ""),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "loggers": {
        "payments": {
            "handlers": ["console"],
            "level": os.getenv("PAYMENTS_LOG_LEVEL", "INFO"),
            "propagate": True,
        },
    },
}
