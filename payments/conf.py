from django.conf import settings

DEFAULTS = {
    "GATEWAY_PRIORITY": [],
    "GATEWAYS": {},
    "GATEWAY_TIMEOUT_SECONDS": 10,
    "RETRY_BACKOFF_BASE_SECONDS": 60,
    "RETRY_BACKOFF_CAP_SECONDS": 3600,
    "MAX_ATTEMPTS": 5,
    "SCHEDULER_INTERVAL_SECONDS": 60,
    "PENDING_POLL_AFTER_SECONDS": 900,
    "ABANDON_AFTER_SECONDS": 86400,
    "INSTALLMENT_MAX_DEBIT_FAILURES": 3,
    "WEBHOOK_TOLERANCE_SECONDS": None,
    "UNKNOWN_EVENT_REDELIVERY_SECONDS": 3600,
    "ADMIN_EMAILS": "",
}


def payments_setting(name):
    """Read ``settings.PAYMENTS[name]`` at call time so override_settings works."""
    return getattr(settings, "PAYMENTS", {}).get(name, DEFAULTS[name])
