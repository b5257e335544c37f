import base64, hashlib, hmac, json, tempfile, time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import jwt
import requests
from django.conf import settings
from django.test import SimpleTestCase, override_settings

from payments.conf import payments_setting
from payments.errors import GatewayRejected, GatewayTransient, GatewayUnavailable
from payments.integrations import EventKind, GatewayRegistry, GatewayStatus, RefundOutcome
from payments.integrations.cashfree import CashfreeClient
from payments.integrations.hdfc import HdfcClient, hdfc_order_ref
from payments.integrations.razorpay import RazorpayClient
from payments.utils import amount_str, payload_event_id, retry_backoff


def fake_response(status_code=200, body=None):
    resp = Mock(status_code=status_code, text=json.dumps(body or {}))
    resp.json.return_value = body or {}
    return resp


def gateway_config(name, **overrides):
    return {**settings.PAYMENTS["GATEWAYS"][name], **overrides}


class ErrorClassificationTests(SimpleTestCase):
    def setUp(self):
        self.client = CashfreeClient(gateway_config("cashfree"))

    def _fetch_with(self, **request_kwargs):
        with patch("payments.integrations.base.requests.request", **request_kwargs) as request:
            self.client.fetch_status("ORD1-a1")
        return request

    def test_server_errors_and_throttling_are_transient(self):
        for status in (500, 502, 503, 429):
            with self.subTest(status=status), self.assertRaises(GatewayTransient):
                self._fetch_with(return_value=fake_response(status, {"message": "busy"}))

    def test_network_failures_are_transient(self):
        for error in (requests.Timeout("read timed out"), requests.ConnectionError("reset")):
            with self.subTest(error=error), self.assertRaises(GatewayTransient):
                self._fetch_with(side_effect=error)

    def test_refused_credentials_are_unavailable(self):
        for status in (401, 403):
            with self.subTest(status=status), self.assertRaises(GatewayUnavailable):
                self._fetch_with(return_value=fake_response(status, {"message": "auth failed"}))

    def test_other_client_errors_are_rejections(self):
        with self.assertRaises(GatewayRejected):
            self._fetch_with(return_value=fake_response(400, {"message": "order_id invalid"}))

    def test_every_call_carries_a_timeout(self):
        with patch("payments.integrations.base.requests.request",
                   return_value=fake_response(200, {"order_status": "PAID"})) as request:
            self.client.fetch_status("ORD1-a1")

        self.assertEqual(request.call_args.kwargs["timeout"], payments_setting("GATEWAY_TIMEOUT_SECONDS"))

    def test_disabled_gateway_never_calls_out(self):
        hdfc = HdfcClient(gateway_config("hdfc"))

        with patch("payments.integrations.base.requests.request") as request:
            with self.assertRaises(GatewayUnavailable):
                hdfc.fetch_status("ORD1A1")
        request.assert_not_called()


class CashfreeClientTests(SimpleTestCase):
    def setUp(self):
        self.client = CashfreeClient(gateway_config("cashfree"))

    def test_create_order(self):
        body = {"order_id": "ORD1-a1", "cf_order_id": 99, "payment_session_id": "session_abc"}
        with patch("payments.integrations.base.requests.request", return_value=fake_response(200, body)) as request:
            opened = self.client.create_order(500000, "INR", "ORD1-a1", payer_id="stu-1")

        self.assertEqual((opened.gateway_order_ref, opened.session_token), ("ORD1-a1", "session_abc"))
        method, url = request.call_args.args
        self.assertEqual((method, url), ("POST", "https://sandbox.cashfree.test/pg/orders"))
        self.assertEqual(request.call_args.kwargs["headers"]["x-client-id"], "cf-app")
        self.assertEqual(request.call_args.kwargs["json"]["order_amount"], 5000.0)

    def test_active_order_with_failed_payment(self):
        responses = [
            fake_response(200, {"order_status": "ACTIVE"}),
            fake_response(200, [{"payment_status": "FAILED", "error_details": {"error_reason": "bank timeout"}}]),
        ]
        with patch("payments.integrations.base.requests.request", side_effect=responses):
            self.assertEqual(self.client.fetch_status("ORD1-a1"), GatewayStatus.TRANSIENT_FAILURE)

    def test_signature(self):
        raw = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
        ts = str(int(time.time() * 1000))
        sig = base64.b64encode(hmac.new(b"cf-secret", ts.encode() + raw, hashlib.sha256).digest()).decode()

        self.assertTrue(self.client.verify_signature(raw, sig, {"X-Webhook-Timestamp": ts}))
        self.assertFalse(self.client.verify_signature(raw + b" ", sig, {"X-Webhook-Timestamp": ts}))
        self.assertFalse(self.client.verify_signature(raw, sig, {}))
        self.assertFalse(self.client.verify_signature(raw, "", {"X-Webhook-Timestamp": ts}))

    def test_signature_outside_tolerance_window(self):
        raw = b"{}"
        ts = str(int((time.time() - 3600) * 1000))
        sig = base64.b64encode(hmac.new(b"cf-secret", ts.encode() + raw, hashlib.sha256).digest()).decode()

        self.assertTrue(self.client.verify_signature(raw, sig, {"x-webhook-timestamp": ts}))
        with override_settings(PAYMENTS={**settings.PAYMENTS, "WEBHOOK_TOLERANCE_SECONDS": 300}):
            self.assertFalse(self.client.verify_signature(raw, sig, {"x-webhook-timestamp": ts}))

    def test_parse_payment_events(self):
        success = json.dumps({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {"order": {"order_id": "ORD1-a1"}, "payment": {"payment_status": "SUCCESS"}},
        })
        event = self.client.parse_webhook(success, {"x-idempotency-key": "idem-1"})
        self.assertEqual((event.event_id, event.kind, event.gateway_order_ref, event.status),
                         ("idem-1", EventKind.ORDER, "ORD1-a1", GatewayStatus.PAID))

        failed = {
            "type": "PAYMENT_FAILED_WEBHOOK",
            "data": {"order": {"order_id": "ORD1-a1"}, "error_details": {"error_code": "CARD_EXPIRED", "error_reason": "Card expired"}},
        }
        event = self.client.parse_webhook(json.dumps(failed))
        self.assertEqual(event.status, GatewayStatus.HARD_FAILURE)
        self.assertEqual(event.event_id, payload_event_id(failed))

    def test_parse_refund_event(self):
        body = json.dumps({
            "type": "REFUND_STATUS_WEBHOOK",
            "data": {"refund": {"order_id": "ORD1-a1", "refund_id": "RF1", "refund_status": "SUCCESS"}},
        })
        event = self.client.parse_webhook(body)
        self.assertEqual((event.kind, event.gateway_refund_ref, event.refund_status),
                         (EventKind.REFUND, "RF1", RefundOutcome.CONFIRMED))

    def test_provider_network_error_is_transient(self):
        failed = json.dumps({
            "type": "PAYMENT_FAILED_WEBHOOK",
            "data": {
                "order": {"order_id": "ORD1-a1"},
                "payment": {"payment_status": "FAILED", "payment_message": "Connection lost while contacting bank"},
                "error_details": {"error_code": "BANK_NETWORK_ERROR", "error_reason": "Connection lost, please retry"},
            },
        })
        self.assertEqual(self.client.parse_webhook(failed).status, GatewayStatus.TRANSIENT_FAILURE)

    def test_malformed_body_is_rejected(self):
        with self.assertRaises(GatewayRejected):
            self.client.parse_webhook(b"not json")


class RazorpayClientTests(SimpleTestCase):
    def setUp(self):
        self.client = RazorpayClient(gateway_config("razorpay"))

    def test_create_order_sends_minor_units_with_basic_auth(self):
        with patch("payments.integrations.base.requests.request",
                   return_value=fake_response(200, {"id": "order_Rz1", "status": "created"})) as request:
            opened = self.client.create_order(500000, "INR", "ORD1-a1")

        self.assertEqual(opened.gateway_order_ref, "order_Rz1")
        self.assertEqual(request.call_args.kwargs["json"]["amount"], 500000)
        auth = request.call_args.kwargs["auth"]
        self.assertEqual((auth.username, auth.password), ("rzp_test", "rzp-secret"))

    def test_signature(self):
        raw = b'{"event":"payment.captured"}'
        sig = hmac.new(b"rzp-whsec", raw, hashlib.sha256).hexdigest()

        self.assertTrue(self.client.verify_signature(raw, sig))
        self.assertFalse(self.client.verify_signature(raw, sig.upper()))
        self.assertFalse(self.client.verify_signature(b"{}", sig))

    def test_parse_captured_payment(self):
        body = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_Rz1", "status": "captured"}}},
        })
        event = self.client.parse_webhook(body, {"X-Razorpay-Event-Id": "evt_rzp_1"})
        self.assertEqual((event.event_id, event.gateway_order_ref, event.status),
                         ("evt_rzp_1", "order_Rz1", GatewayStatus.PAID))

    def test_failed_payment_is_classified_by_error_reason_only(self):
        def failed(reason, description):
            return json.dumps({"event": "payment.failed", "payload": {"payment": {"entity": {
                "id": "pay_1", "order_id": "order_Rz1", "status": "failed",
                "error_code": "GATEWAY_ERROR", "error_reason": reason, "error_description": description,
            }}}})

        network = self.client.parse_webhook(failed("network_error", "Connection lost while contacting bank, please retry"))
        risk = self.client.parse_webhook(failed("payment_risk_check_failed", "Payment blocked"))

        self.assertEqual(network.status, GatewayStatus.TRANSIENT_FAILURE)
        self.assertEqual(risk.status, GatewayStatus.HARD_FAILURE)

    def test_response_without_id_is_transient(self):
        with patch("payments.integrations.base.requests.request", return_value=fake_response(200, {"status": "created"})):
            with self.assertRaises(GatewayTransient):
                self.client.create_order(500000, "INR", "ORD1-a1")

        responses = [
            fake_response(200, {"items": [{"id": "pay_1", "status": "captured"}]}),
            fake_response(200, {"status": "pending"}),
        ]
        with patch("payments.integrations.base.requests.request", side_effect=responses):
            with self.assertRaises(GatewayTransient):
                self.client.submit_refund("order_Rz1", 1000, "RF1")

    def test_refund_without_captured_payment_is_rejected(self):
        with patch("payments.integrations.base.requests.request",
                   return_value=fake_response(200, {"items": [{"id": "pay_1", "status": "failed"}]})):
            with self.assertRaises(GatewayRejected):
                self.client.submit_refund("order_Rz1", 1000, "RF1")


class HdfcClientTests(SimpleTestCase):
    def setUp(self):
        self.client = HdfcClient(gateway_config("hdfc", ENABLED=True))

    def test_order_ref_keeps_attempt_suffix(self):
        ref = hdfc_order_ref("ENROLMENT-2026-BATCH-0042-a12")
        self.assertLessEqual(len(ref), 20)
        self.assertTrue(ref.endswith("A12"))
        self.assertTrue(ref.isalnum())

    def test_webhook_basic_auth(self):
        def basic(user, pwd):
            return "Basic " + base64.b64encode(f"{user}:{pwd}".encode()).decode()

        self.assertTrue(self.client.verify_signature(b"{}", basic("hook", "hook-pass")))
        self.assertTrue(self.client.verify_signature(b"{}", basic("MID1", "hdfc-key")))
        self.assertFalse(self.client.verify_signature(b"{}", basic("hook", "wrong")))
        self.assertFalse(self.client.verify_signature(b"{}", "Bearer abc"))

    def test_parse_charged_and_refund_events(self):
        charged = json.dumps({"id": "evt_h1", "event_name": "ORDER_CHARGED",
                              "content": {"order": {"order_id": "ORD1A1", "status": "CHARGED"}}})
        event = self.client.parse_webhook(charged)
        self.assertEqual((event.event_id, event.gateway_order_ref, event.status), ("evt_h1", "ORD1A1", GatewayStatus.PAID))

        refunded = json.dumps({"id": "evt_h2", "event_name": "ORDER_REFUNDED", "content": {"order": {
            "order_id": "ORD1A1", "refunds": [{"unique_request_id": "RF1", "status": "SUCCESS"}]}}})
        event = self.client.parse_webhook(refunded)
        self.assertEqual((event.kind, event.gateway_refund_ref, event.refund_status),
                         (EventKind.REFUND, "RF1", RefundOutcome.CONFIRMED))

    def test_basic_auth_header_by_default(self):
        with patch("payments.integrations.base.requests.request",
                   return_value=fake_response(200, {"status": "CHARGED"})) as request:
            self.assertEqual(self.client.fetch_status("ORD1A1"), GatewayStatus.PAID)

        headers = request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Basic " + base64.b64encode(b"hdfc-key:").decode())
        self.assertEqual(headers["x-merchantid"], "MID1")

    def test_jwt_header_signs_with_private_key(self):
        with tempfile.NamedTemporaryFile("w", delete=False) as tmp:
            tmp.write("dummykey")
        client = HdfcClient(gateway_config("hdfc", ENABLED=True, PRIVATE_KEY_PATH=tmp.name, KEY_UUID="uuid"))
        fixed_now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        with patch("jwt.encode", return_value="tok") as encode, \
                patch("payments.integrations.hdfc.datetime") as mock_dt:
            mock_dt.now.return_value = fixed_now
            header = client._authorization()

        encode.assert_called_once_with(
            {
                "iss": "hdfcmaster",
                "aud": "https://smartgateway.hdfc.test",
                "iat": int(fixed_now.timestamp()),
                "exp": int((fixed_now + timedelta(minutes=5)).timestamp()),
                "key_uuid": "uuid",
                "payment_page_client_id": "hdfcmaster",
            },
            "dummykey",
            algorithm="RS256",
        )
        self.assertEqual(header, "Bearer tok")

    def test_unreadable_private_key_is_unavailable(self):
        client = HdfcClient(gateway_config("hdfc", ENABLED=True, PRIVATE_KEY_PATH="/nonexistent/key.pem"))

        with patch("payments.integrations.base.requests.request") as request:
            with self.assertLogs("payments.integrations.hdfc", level="ERROR"):
                with self.assertRaises(GatewayUnavailable):
                    client.fetch_status("ORD1A1")
        request.assert_not_called()

    def test_signing_failure_is_unavailable(self):
        with tempfile.NamedTemporaryFile("w", delete=False) as tmp:
            tmp.write("not a pem key")
        client = HdfcClient(gateway_config("hdfc", ENABLED=True, PRIVATE_KEY_PATH=tmp.name))

        with patch("jwt.encode", side_effect=jwt.InvalidKeyError("bad key")):
            with self.assertLogs("payments.integrations.hdfc", level="ERROR"):
                with self.assertRaises(GatewayUnavailable):
                    client.submit_refund("ORD1A1", 1000, "RF1")

    def test_failed_status_uses_txn_error_code(self):
        declined = {"status": "AUTHORIZATION_FAILED", "txn_detail": {"error_code": "RISK_DECLINED"}}
        dropped = {"status": "AUTHORIZATION_FAILED",
                   "txn_detail": {"error_code": "GW_TIMEOUT", "error_message": "Connection lost at bank"}}

        with patch("payments.integrations.base.requests.request", side_effect=[
            fake_response(200, declined), fake_response(200, dropped),
        ]):
            self.assertEqual(self.client.fetch_status("ORD1A1"), GatewayStatus.HARD_FAILURE)
            self.assertEqual(self.client.fetch_status("ORD1A1"), GatewayStatus.TRANSIENT_FAILURE)


class RegistryTests(SimpleTestCase):
    def test_usable_gateways_follow_priority_and_skip_disabled(self):
        registry = GatewayRegistry.from_settings()

        self.assertEqual(registry.list_usable(), ["cashfree", "razorpay"])
        self.assertEqual(registry.candidates("razorpay"), ["razorpay", "cashfree"])
        self.assertEqual(registry.candidates("hdfc"), ["cashfree", "razorpay"])
        self.assertFalse(registry.status()["hdfc"]["configured"])

    def test_unknown_gateway(self):
        with self.assertRaises(GatewayUnavailable):
            GatewayRegistry.from_settings().get("paypal")

    def test_priority_comes_from_settings(self):
        with override_settings(PAYMENTS={**settings.PAYMENTS, "GATEWAY_PRIORITY": ["razorpay", "cashfree"]}):
            self.assertEqual(GatewayRegistry.from_settings().list_usable(), ["razorpay", "cashfree"])


class UtilsTests(SimpleTestCase):
    def test_backoff_doubles_up_to_cap(self):
        self.assertEqual(retry_backoff(1), timedelta(seconds=60))
        self.assertEqual(retry_backoff(2), timedelta(seconds=120))
        self.assertEqual(retry_backoff(5), timedelta(seconds=600))

    def test_event_id_ignores_key_order(self):
        self.assertEqual(payload_event_id({"a": 1, "b": 2}), payload_event_id({"b": 2, "a": 1}))
        self.assertNotEqual(payload_event_id({"a": 1}), payload_event_id({"a": 2}))

    def test_amount_str(self):
        self.assertEqual(amount_str(500000), "5000")
        self.assertEqual(amount_str(12345), "123.45")
