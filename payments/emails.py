import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives

from .conf import payments_setting
from .utils import to_major_units

logger = logging.getLogger(__name__)

SUBJECTS = {
    "payment_confirmed": "Payment received: {order_id} – {currency} {amount}",
    "payment_failed": "Payment failed: {order_id} – {currency} {amount}",
    "payment_abandoned": "Payment expired: {order_id} – {currency} {amount}",
    "refund_confirmed": "Refund processed: {order_id} – {currency} {refund_amount}",
    "refund_failed": "Refund failed: {order_id} – {currency} {refund_amount}",
    "superseded_capture": "Payment captured on an earlier attempt: {order_id} – {currency} {amount}",
}

# operator-facing only; the payer gets no copy
ADMIN_ONLY_EVENTS = {"superseded_capture"}


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    raw = payments_setting("ADMIN_EMAILS") or getattr(settings, "ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def _context(order, refund=None) -> dict:
    return {
        "order_id": order.pk,
        "amount": to_major_units(order.amount),
        "currency": order.currency,
        "status": order.status,
        "payer_id": order.payer_id,
        "subject_ref": order.subject_ref,
        "gateway": order.gateway_name or "",
        "gateway_order_ref": order.gateway_order_ref or "",
        "refund_amount": to_major_units(refund.amount) if refund else "",
        "refund_reason": getattr(refund, "reason", "") if refund else "",
        "failure_reason": order.failure_reason,
    }


def _body(event: str, context: dict) -> str:
    lines = [f"{k.replace('_', ' ').capitalize()}: {v}" for k, v in context.items() if v not in ("", None)]
    return f"Event: {event}\n" + "\n".join(lines) + "\n"


class NotificationSink:
    """Fire-and-forget side channel for state transitions.

    Never raises: a delivery failure is logged and dropped so it can't roll
    back or retry the payment transition that triggered it.
    """

    def notify(self, event: str, order, refund=None) -> None:
        try:
            self.deliver(event, order, refund)
        except Exception:
            logger.exception("Notification %s crashed for order=%s", event, getattr(order, "pk", None))

    def deliver(self, event: str, order, refund=None) -> None:
        context = _context(order, refund)
        subject = SUBJECTS.get(event, event).format(**context)
        text = _body(event, context)
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)

        # Payer receipt
        try:
            if order.payer_email and event not in ADMIN_ONLY_EVENTS:
                msg = EmailMultiAlternatives(subject, text, from_email, [order.payer_email])
                msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send %s to %s", event, order.payer_email)

        # Admin notification
        try:
            admins = _admin_recipients()
            if admins:
                msg = EmailMultiAlternatives(f"[payments] {subject}", text, from_email, admins)
                msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send %s admin notification for %s", event, order.pk)
