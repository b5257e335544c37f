import hashlib, hmac, logging

from requests.auth import HTTPBasicAuth

from ..utils import payload_event_id
from .base import (
    COMMON_HEADERS, EventKind, GatewayClient, GatewayEvent, GatewayOrder, GatewayStatus,
    RefundOutcome, RefundResult, classify_failure, header_value, parse_json_body,
)
from ..errors import GatewayRejected, GatewayTransient

logger = logging.getLogger(__name__)

REFUND_STATUS_MAP = {
    "processed": RefundOutcome.CONFIRMED,
    "pending": RefundOutcome.PENDING,
    "failed": RefundOutcome.FAILED,
}

# error_reason values Razorpay reports for a payment that must not be retried on the same instrument
HARD_FAILURE_CODES = frozenset({
    "PAYMENT_RISK_CHECK_FAILED", "CARD_EXPIRED", "CARD_STOLEN", "CARD_LOST", "INVALID_CARD_NUMBER",
    "INVALID_VPA", "ACCOUNT_BLOCKED", "ACCOUNT_CLOSED", "ACCOUNT_FROZEN", "CARD_NOT_ENROLLED",
})


class RazorpayClient(GatewayClient):
    """Razorpay Orders API. Amounts go over the wire in minor units as-is."""

    name = "razorpay"
    required_credentials = ("KEY_ID", "KEY_SECRET", "BASE_URL")

    def _auth_kwargs(self) -> dict:
        return {
            "headers": dict(COMMON_HEADERS),
            "auth": HTTPBasicAuth(self.config["KEY_ID"], self.config["KEY_SECRET"]),
        }

    def create_order(self, amount, currency, reference, **customer) -> GatewayOrder:
        payload = {
            "amount": int(amount),
            "currency": currency or "INR",
            "receipt": reference[:40],
            "payment_capture": 1,
            "notes": {
                "payer_id": customer.get("payer_id") or "",
                "reference": reference,
                "instrument": customer.get("payment_instrument_ref") or "",
            },
        }
        data = self._request("POST", "/orders", json=payload)
        order_id = self._require_id(data, "order")
        logger.info("Razorpay order created: %s for %s", order_id, reference)
        # checkout is opened client-side with the order id and our key id
        return GatewayOrder(gateway_order_ref=order_id, session_token=order_id, raw=data)

    def _require_id(self, data, entity) -> str:
        entity_id = (data or {}).get("id")
        if not entity_id:
            raise GatewayTransient(f"Razorpay returned a {entity} without an id", gateway=self.name)
        return str(entity_id)

    def _order_payments(self, gateway_order_ref) -> list:
        return self._request("GET", f"/orders/{gateway_order_ref}/payments").get("items") or []

    def fetch_status(self, gateway_order_ref) -> GatewayStatus:
        data = self._request("GET", f"/orders/{gateway_order_ref}")
        status = str(data.get("status") or "").lower()
        if status == "paid":
            return GatewayStatus.PAID
        if status != "attempted":
            return GatewayStatus.PENDING
        payments = sorted(self._order_payments(gateway_order_ref), key=lambda p: p.get("created_at") or 0)
        if not payments:
            return GatewayStatus.PENDING
        latest = payments[-1]
        p_status = str(latest.get("status") or "").lower()
        if p_status in ("captured", "authorized"):
            return GatewayStatus.PAID
        if p_status == "failed":
            return classify_failure(HARD_FAILURE_CODES, latest.get("error_reason"))
        return GatewayStatus.PENDING

    def verify_signature(self, raw_payload, signature_header, headers=None) -> bool:
        secret = self.config.get("WEBHOOK_SECRET")
        if not (secret and signature_header):
            return False
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip())

    def parse_webhook(self, raw_payload, headers=None) -> GatewayEvent:
        payload = parse_json_body(raw_payload)
        event = str(payload.get("event") or "").lower()
        body = payload.get("payload") or {}
        event_id = header_value(headers, "x-razorpay-event-id") or payload_event_id(payload)

        if event.startswith("refund."):
            refund = (body.get("refund") or {}).get("entity") or {}
            if event == "refund.processed":
                refund_status = RefundOutcome.CONFIRMED
            elif event == "refund.failed":
                refund_status = RefundOutcome.FAILED
            else:
                refund_status = REFUND_STATUS_MAP.get(str(refund.get("status") or ""), RefundOutcome.PENDING)
            payment = (body.get("payment") or {}).get("entity") or {}
            return GatewayEvent(
                event_id=event_id,
                kind=EventKind.REFUND,
                gateway_order_ref=str(payment.get("order_id") or ""),
                gateway_refund_ref=str(refund.get("id") or ""),
                refund_status=refund_status,
                payload=payload,
            )

        payment = (body.get("payment") or {}).get("entity") or {}
        order = (body.get("order") or {}).get("entity") or {}
        if event in ("payment.captured", "order.paid"):
            status = GatewayStatus.PAID
        elif event == "payment.failed":
            status = classify_failure(HARD_FAILURE_CODES, payment.get("error_reason"))
        else:
            status = GatewayStatus.PENDING
        return GatewayEvent(
            event_id=event_id,
            kind=EventKind.ORDER,
            gateway_order_ref=str(order.get("id") or payment.get("order_id") or ""),
            status=status,
            reason=payment.get("error_description") or payment.get("error_reason") or "",
            payload=payload,
        )

    def submit_refund(self, gateway_order_ref, amount, reference) -> RefundResult:
        captured = [p for p in self._order_payments(gateway_order_ref) if p.get("status") == "captured"]
        if not captured:
            raise GatewayRejected(f"No captured payment for {gateway_order_ref}", gateway=self.name)
        payment_id = self._require_id(captured[0], "payment")
        data = self._request(
            "POST", f"/payments/{payment_id}/refund",
            json={"amount": int(amount), "receipt": reference[:40], "speed": "normal"},
        )
        refund_id = self._require_id(data, "refund")
        logger.info("Razorpay refund created: %s for payment %s", refund_id, payment_id)
        return RefundResult(
            gateway_refund_ref=refund_id,
            status=REFUND_STATUS_MAP.get(str(data.get("status") or ""), RefundOutcome.PENDING),
            raw=data,
        )

    def fetch_refund_status(self, gateway_order_ref, gateway_refund_ref) -> RefundOutcome:
        data = self._request("GET", f"/refunds/{gateway_refund_ref}")
        return REFUND_STATUS_MAP.get(str(data.get("status") or ""), RefundOutcome.PENDING)
