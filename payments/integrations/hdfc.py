import base64, hmac, logging
from datetime import datetime, timedelta, timezone

import jwt

from ..errors import GatewayUnavailable
from ..utils import amount_str, payload_event_id, sanitize_ref
from .base import (
    EventKind, GatewayClient, GatewayEvent, GatewayOrder, GatewayStatus,
    RefundOutcome, RefundResult, classify_failure, parse_json_body,
)

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"NEW", "CREATED", "STARTED", "PENDING", "PENDING_VBV", "AUTHORIZING"}
FAILED_STATUSES = {"AUTHENTICATION_FAILED", "AUTHORIZATION_FAILED", "AUTO_REFUNDED", "FAILED"}
SUCCESS_STATUSES = {"CHARGED", "SUCCESS", "SUCCESSFUL", "PAID", "CAPTURED", "COMPLETED", "SETTLED"}
SUCCESS_EVENTS = {"ORDER_CHARGED", "ORDER_SUCCEEDED", "PAYMENT_SUCCESS", "PAYMENT_CAPTURED", "ORDER_PAID"}
REFUND_STATUS_MAP = {
    "SUCCESS": RefundOutcome.CONFIRMED,
    "PENDING": RefundOutcome.PENDING,
    "MANUAL_REVIEW": RefundOutcome.PENDING,
    "FAILURE": RefundOutcome.FAILED,
    "FAILED": RefundOutcome.FAILED,
}

# txn_detail.error_code values SmartGateway reports for a declined instrument
HARD_FAILURE_CODES = frozenset({
    "CARD_EXPIRED", "INVALID_CARD", "CARD_BLOCKED", "RISK_DECLINED", "FRAUD_SUSPECTED",
    "INVALID_VPA", "ACCOUNT_BLOCKED", "ACCOUNT_CLOSED",
})


def _norm_status(data: dict) -> str:
    s = (
        (data or {}).get("status")
        or ((data or {}).get("result") or {}).get("status")
        or ((data or {}).get("order") or {}).get("status")
        or ((data or {}).get("payment") or {}).get("status")
        or ((data or {}).get("transaction") or {}).get("status")
        or ""
    )
    return str(s).upper()


def hdfc_order_ref(reference: str) -> str:
    """HDFC order ids are <21 alnum chars; keep the attempt suffix when truncating."""
    base, sep, attempt = reference.rpartition("-a")
    if not sep or not attempt.isdigit():
        return sanitize_ref(reference)
    suffix = f"A{attempt}"
    return sanitize_ref(base, limit=20 - len(suffix)) + suffix


class HdfcClient(GatewayClient):
    """HDFC SmartGateway. Authenticates with the API key (Basic) or, when a
    merchant private key is configured, with an RS256 Bearer JWT."""

    name = "hdfc"
    required_credentials = ("MERCHANT_ID", "API_KEY", "BASE_URL")

    def _jwt_auth_header(self) -> str:
        try:
            with open(self.config["PRIVATE_KEY_PATH"]) as fh:
                private_key = fh.read()
        except OSError as e:
            logger.error("HDFC private key unreadable at %s: %s", self.config["PRIVATE_KEY_PATH"], e)
            raise GatewayUnavailable(f"hdfc private key unreadable: {e}", gateway=self.name)
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.config.get("CLIENT_ID"),
            "aud": self.base_url,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=5)).timestamp()),
            "key_uuid": self.config.get("KEY_UUID"),
            "payment_page_client_id": self.config.get("CLIENT_ID"),
        }
        try:
            token = jwt.encode(payload, private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            logger.error("HDFC JWT signing failed: %s", e)
            raise GatewayUnavailable(f"hdfc could not sign auth token: {e}", gateway=self.name)
        return "Bearer " + token

    def _authorization(self) -> str:
        if self.config.get("PRIVATE_KEY_PATH"):
            return self._jwt_auth_header()
        raw = self.config["API_KEY"] + ":"
        return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    def _headers(self, customer_id: str = "") -> dict:
        return {
            "Authorization": self._authorization(),
            "Content-Type": "application/json",
            "x-merchantid": self.config["MERCHANT_ID"],
            "x-customerid": customer_id or self.config["MERCHANT_ID"],
            "x-resellerid": self.config.get("RESELLER_ID") or "hdfc_reseller",
        }

    def create_order(self, amount, currency, reference, **customer) -> GatewayOrder:
        order_id = hdfc_order_ref(reference)
        customer_id = customer.get("payer_id") or order_id
        payload = {
            "order_id": order_id,
            "amount": amount_str(amount),
            "currency": currency or "INR",
            "customer_id": customer_id,
            "customer_email": customer.get("payer_email") or "",
            "customer_phone": customer.get("payer_phone") or "",
            "payment_page_client_id": self.config.get("CLIENT_ID") or self.config["MERCHANT_ID"],
            "action": "paymentPage",
            "return_url": self.config.get("RETURN_URL") or "",
            "description": customer.get("description") or "Complete your payment",
        }
        data = self._request("POST", "/session", json=payload, headers=self._headers(customer_id))
        links = data.get("payment_links") or {}
        logger.info("HDFC session created: %s (bank id %s)", order_id, data.get("id"))
        return GatewayOrder(
            gateway_order_ref=order_id,
            session_token=links.get("web") or links.get("mobile") or "",
            raw=data,
        )

    def fetch_status(self, gateway_order_ref) -> GatewayStatus:
        data = self._request("GET", f"/orders/{gateway_order_ref}", headers=self._headers())
        return self._map_status(_norm_status(data), data)

    def _map_status(self, status: str, data: dict) -> GatewayStatus:
        if status in SUCCESS_STATUSES:
            return GatewayStatus.PAID
        if status == "JUSPAY_DECLINED":
            return GatewayStatus.HARD_FAILURE
        if status in FAILED_STATUSES:
            txn = (data or {}).get("txn_detail") or {}
            return classify_failure(HARD_FAILURE_CODES, txn.get("error_code"))
        return GatewayStatus.PENDING

    def verify_signature(self, raw_payload, signature_header, headers=None) -> bool:
        """SmartGateway authenticates webhooks with HTTP Basic credentials: either
        dedicated webhook creds or Merchant ID / API key."""
        auth = signature_header or ""
        if not auth.startswith("Basic "):
            return False
        try:
            raw = base64.b64decode(auth.split(" ", 1)[1]).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return False
        username, _, password = raw.partition(":")
        pairs = [
            (self.config.get("WEBHOOK_BASIC_USER"), self.config.get("WEBHOOK_BASIC_PASS") or ""),
            (self.config.get("MERCHANT_ID"), self.config.get("API_KEY") or ""),
        ]
        for user, pwd in pairs:
            if user and hmac.compare_digest(username, user) and hmac.compare_digest(password, pwd):
                return True
        return False

    def parse_webhook(self, raw_payload, headers=None) -> GatewayEvent:
        payload = parse_json_body(raw_payload)
        event = str(payload.get("event_name") or payload.get("event") or "").upper()
        content = payload.get("content") or payload
        order = content.get("order") or {}
        order_ref = str(order.get("order_id") or content.get("order_id") or "")
        event_id = str(payload.get("id") or "") or payload_event_id(payload)

        if "REFUND" in event:
            refunds = order.get("refunds") or []
            latest = refunds[-1] if refunds else {}
            return GatewayEvent(
                event_id=event_id,
                kind=EventKind.REFUND,
                gateway_order_ref=order_ref,
                gateway_refund_ref=str(latest.get("unique_request_id") or ""),
                refund_status=REFUND_STATUS_MAP.get(str(latest.get("status") or "").upper(), RefundOutcome.PENDING),
                reason=latest.get("error_message") or "",
                payload=payload,
            )

        status = _norm_status(content)
        if event in SUCCESS_EVENTS:
            mapped = GatewayStatus.PAID
        elif event in ("ORDER_FAILED", "TXN_FAILED") and status not in FAILED_STATUSES | {"JUSPAY_DECLINED"}:
            mapped = GatewayStatus.TRANSIENT_FAILURE
        else:
            mapped = self._map_status(status, order)
        return GatewayEvent(
            event_id=event_id,
            kind=EventKind.ORDER,
            gateway_order_ref=order_ref,
            status=mapped,
            reason=str((order.get("txn_detail") or {}).get("error_message") or ""),
            payload=payload,
        )

    def submit_refund(self, gateway_order_ref, amount, reference) -> RefundResult:
        unique_request_id = sanitize_ref(reference, limit=32)
        payload = {
            "order_id": gateway_order_ref,
            "amount": amount_str(amount),
            "unique_request_id": unique_request_id,
        }
        data = self._request("POST", "/refunds", json=payload, headers=self._headers())
        return RefundResult(
            gateway_refund_ref=unique_request_id,
            status=self._refund_outcome(data, unique_request_id),
            raw=data,
        )

    def fetch_refund_status(self, gateway_order_ref, gateway_refund_ref) -> RefundOutcome:
        data = self._request("GET", f"/orders/{gateway_order_ref}", headers=self._headers())
        return self._refund_outcome(data, gateway_refund_ref)

    def _refund_outcome(self, data: dict, unique_request_id: str) -> RefundOutcome:
        for refund in (data or {}).get("refunds") or []:
            if refund.get("unique_request_id") == unique_request_id:
                return REFUND_STATUS_MAP.get(str(refund.get("status") or "").upper(), RefundOutcome.PENDING)
        return RefundOutcome.PENDING
