import base64, hashlib, hmac, logging, time

from ..conf import payments_setting
from ..utils import payload_event_id, to_major_units
from .base import (
    COMMON_HEADERS, EventKind, GatewayClient, GatewayEvent, GatewayOrder, GatewayStatus,
    RefundOutcome, RefundResult, classify_failure, header_value, parse_json_body,
)

logger = logging.getLogger(__name__)

REFUND_STATUS_MAP = {
    "SUCCESS": RefundOutcome.CONFIRMED,
    "PENDING": RefundOutcome.PENDING,
    "ONHOLD": RefundOutcome.PENDING,
    "CANCELLED": RefundOutcome.FAILED,
    "FAILED": RefundOutcome.FAILED,
}

# error_details.error_code / error_reason values Cashfree reports for an instrument it will not accept again
HARD_FAILURE_CODES = frozenset({
    "CARD_EXPIRED", "CARD_BLOCKED", "CARD_RESTRICTED", "INVALID_CARD", "INVALID_VPA", "INVALID_ACCOUNT",
    "ACCOUNT_BLOCKED", "ACCOUNT_CLOSED", "RISK_REJECTED", "FRAUD_DETECTED", "PAYMENT_DECLINED_PERMANENTLY",
})


class CashfreeClient(GatewayClient):
    """Cashfree PG (API version 2023-08-01)."""

    name = "cashfree"
    required_credentials = ("APP_ID", "SECRET_KEY", "BASE_URL")

    def _headers(self) -> dict:
        return {
            **COMMON_HEADERS,
            "x-client-id": self.config["APP_ID"],
            "x-client-secret": self.config["SECRET_KEY"],
            "x-api-version": self.config.get("API_VERSION") or "2023-08-01",
        }

    def _auth_kwargs(self) -> dict:
        return {"headers": self._headers()}

    def create_order(self, amount, currency, reference, **customer) -> GatewayOrder:
        payload = {
            "order_id": reference,
            "order_amount": float(to_major_units(amount)),
            "order_currency": currency or "INR",
            "customer_details": {
                "customer_id": customer.get("payer_id") or f"customer_{reference}",
                "customer_email": customer.get("payer_email") or None,
                "customer_phone": customer.get("payer_phone") or "9999999999",
            },
            "order_meta": {
                "return_url": self.config.get("RETURN_URL") or None,
                "notify_url": self.config.get("NOTIFY_URL") or None,
            },
        }
        data = self._request("POST", "/orders", json=payload)
        logger.info("Cashfree order created: %s (cf_order_id=%s)", reference, data.get("cf_order_id"))
        return GatewayOrder(
            gateway_order_ref=data.get("order_id") or reference,
            session_token=data.get("payment_session_id") or "",
            raw=data,
        )

    def fetch_status(self, gateway_order_ref) -> GatewayStatus:
        data = self._request("GET", f"/orders/{gateway_order_ref}")
        status = str(data.get("order_status") or "").upper()
        if status == "PAID":
            return GatewayStatus.PAID
        if status == "EXPIRED":
            return GatewayStatus.TRANSIENT_FAILURE
        if status in ("TERMINATED", "TERMINATION_REQUESTED"):
            return GatewayStatus.HARD_FAILURE
        # ACTIVE: the order is open, but the latest payment attempt may have failed
        payments = self._request("GET", f"/orders/{gateway_order_ref}/payments").get("items") or []
        if payments:
            latest = payments[0]
            p_status = str(latest.get("payment_status") or "").upper()
            if p_status == "SUCCESS":
                return GatewayStatus.PAID
            if p_status == "FAILED":
                err = latest.get("error_details") or {}
                return classify_failure(HARD_FAILURE_CODES, err.get("error_code"), err.get("error_reason"))
        return GatewayStatus.PENDING

    def verify_signature(self, raw_payload, signature_header, headers=None) -> bool:
        secret = self.config.get("SECRET_KEY")
        timestamp = header_value(headers, "x-webhook-timestamp")
        if not (secret and signature_header and timestamp):
            return False
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        expected = base64.b64encode(
            hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + raw_payload, hashlib.sha256).digest()
        ).decode("utf-8")
        if not hmac.compare_digest(expected, signature_header.strip()):
            return False
        tolerance = payments_setting("WEBHOOK_TOLERANCE_SECONDS")
        if tolerance:
            try:
                sent_at = int(timestamp) / 1000.0  # Cashfree sends epoch millis
            except ValueError:
                return False
            if abs(time.time() - sent_at) > tolerance:
                logger.warning("Cashfree webhook outside tolerance window: ts=%s", timestamp)
                return False
        return True

    def parse_webhook(self, raw_payload, headers=None) -> GatewayEvent:
        payload = parse_json_body(raw_payload)
        event_type = str(payload.get("type") or "").upper()
        data = payload.get("data") or {}
        event_id = header_value(headers, "x-idempotency-key") or payload_event_id(payload)

        if event_type.startswith("REFUND"):
            refund = data.get("refund") or {}
            return GatewayEvent(
                event_id=event_id,
                kind=EventKind.REFUND,
                gateway_order_ref=str(refund.get("order_id") or ""),
                gateway_refund_ref=str(refund.get("refund_id") or ""),
                refund_status=REFUND_STATUS_MAP.get(str(refund.get("refund_status") or "").upper(), RefundOutcome.PENDING),
                reason=refund.get("status_description") or "",
                payload=payload,
            )

        order = data.get("order") or {}
        payment = data.get("payment") or {}
        err = data.get("error_details") or {}
        p_status = str(payment.get("payment_status") or "").upper()
        if event_type.startswith("PAYMENT_SUCCESS") or p_status == "SUCCESS":
            status = GatewayStatus.PAID
        elif event_type.startswith("PAYMENT_FAILED") or p_status == "FAILED":
            status = classify_failure(HARD_FAILURE_CODES, err.get("error_code"), err.get("error_reason"))
        else:
            # PAYMENT_PENDING, PAYMENT_USER_DROPPED: the session is still usable
            status = GatewayStatus.PENDING
        return GatewayEvent(
            event_id=event_id,
            kind=EventKind.ORDER,
            gateway_order_ref=str(order.get("order_id") or ""),
            status=status,
            reason=err.get("error_reason") or payment.get("payment_message") or "",
            payload=payload,
        )

    def submit_refund(self, gateway_order_ref, amount, reference) -> RefundResult:
        payload = {
            "refund_amount": float(to_major_units(amount)),
            "refund_id": reference,
            "refund_note": "LMS refund",
        }
        data = self._request("POST", f"/orders/{gateway_order_ref}/refunds", json=payload)
        return RefundResult(
            gateway_refund_ref=data.get("refund_id") or reference,
            status=REFUND_STATUS_MAP.get(str(data.get("refund_status") or "").upper(), RefundOutcome.PENDING),
            raw=data,
        )

    def fetch_refund_status(self, gateway_order_ref, gateway_refund_ref) -> RefundOutcome:
        data = self._request("GET", f"/orders/{gateway_order_ref}/refunds/{gateway_refund_ref}")
        return REFUND_STATUS_MAP.get(str(data.get("refund_status") or "").upper(), RefundOutcome.PENDING)
