import hashlib, json, re
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from .conf import payments_setting

HUNDRED = Decimal(100)


def to_major_units(amount: int) -> Decimal:
    """500000 (paise) -> Decimal('5000.00')."""
    return (Decimal(int(amount)) / HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    return int((Decimal(str(value)) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def amount_str(amount: int) -> str:
    # "5000" rather than "5000.00"; some gateways reject trailing zeros
    s = format(to_major_units(amount), "f")
    return s[:-3] if s.endswith(".00") else s


def sanitize_ref(ref: str, limit=20) -> str:
    return (re.sub(r"[^A-Za-z0-9]", "", ref or ""))[:limit]


def attempt_reference(order_id: str, attempt: int) -> str:
    """Merchant-side reference for one gateway attempt; never reused across attempts."""
    return f"{order_id}-a{attempt}"


def payload_event_id(payload) -> str:
    """Stable id for providers that send none: sha256 of the canonical JSON body."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def retry_backoff(attempt: int) -> timedelta:
    base = payments_setting("RETRY_BACKOFF_BASE_SECONDS")
    cap = payments_setting("RETRY_BACKOFF_CAP_SECONDS")
    return timedelta(seconds=min(base * (2 ** max(attempt - 1, 0)), cap))
