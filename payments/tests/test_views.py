import json
from datetime import timedelta
from unittest.mock import patch

from django.core import mail
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from payments.errors import GatewayRejected, GatewayTransient
from payments.integrations import GatewayRegistry, GatewayStatus
from payments.installments import create_plan
from payments.models import InstallmentPlan, OrphanWebhookEvent, PaymentOrder
from payments.states import OrderStatus

from .fakes import FakeGateway, make_order, make_registry, order_event


class PaymentViewsTests(TestCase):
    def setUp(self):
        self.x = FakeGateway("x")
        self.y = FakeGateway("y")
        patcher = patch.object(GatewayRegistry, "from_settings", return_value=make_registry(self.x, self.y))
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, url, payload, **extra):
        body = payload if isinstance(payload, bytes) else json.dumps(payload)
        return self.client.post(url, data=body, content_type="application/json", **extra)

    def test_create_order(self):
        resp = self._post(reverse("payments:create_order"), {
            "order_id": "ORD1", "amount": 500000, "payer_id": "stu-1", "subject_ref": "course-101",
            "payer_email": "stu1@lms.test",
        })

        self.assertEqual(resp.status_code, 201)
        data = resp.json()["order"]
        self.assertEqual((data["id"], data["status"], data["gateway"]), ("ORD1", "pending", "x"))
        self.assertEqual(data["session_token"], "session-ORD1-a1")

    def test_create_order_validation(self):
        resp = self._post(reverse("payments:create_order"), {"order_id": "ORD1"})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post(reverse("payments:create_order"), data="nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_create_order_when_every_gateway_is_down(self):
        self.x.fail_with = GatewayTransient("down", gateway="x")
        self.y.fail_with = GatewayTransient("down", gateway="y")

        resp = self._post(reverse("payments:create_order"), {
            "order_id": "ORD1", "amount": 500000, "payer_id": "stu-1", "subject_ref": "course-101",
        })

        self.assertEqual(resp.status_code, 503)
        self.assertFalse(PaymentOrder.objects.exists())

    def test_create_order_rejected_by_gateway(self):
        self.x.fail_with = GatewayRejected("amount too large", gateway="x")

        resp = self._post(reverse("payments:create_order"), {
            "order_id": "ORD1", "amount": 500000, "payer_id": "stu-1", "subject_ref": "course-101",
        })

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.y.created, [])

    def test_order_status_with_refresh(self):
        make_order()
        self.x.status = GatewayStatus.PAID

        resp = self.client.get(reverse("payments:order_status", args=["ORD1"]))
        self.assertEqual(resp.json()["order"]["status"], "pending")
        self.assertEqual(self.x.polled, [])

        resp = self.client.get(reverse("payments:order_status", args=["ORD1"]), {"refresh": "1"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["status"], "succeeded")

    def test_order_status_unknown(self):
        resp = self.client.get(reverse("payments:order_status", args=["missing"]))
        self.assertEqual(resp.status_code, 404)

    def test_webhook_statuses(self):
        order = make_order(gateway="y")
        url = reverse("gateway_webhook", args=["y"])
        sig = {"HTTP_X_WEBHOOK_SIGNATURE": "valid"}

        resp = self._post(url, order_event("evt-1", order.gateway_order_ref), **sig)
        self.assertEqual((resp.status_code, resp.json()["outcome"]), (200, "applied"))
        self.assertEqual(len(mail.outbox), 2)

        resp = self._post(url, order_event("evt-1", order.gateway_order_ref), **sig)
        self.assertEqual((resp.status_code, resp.json()["outcome"]), (200, "already_processed"))
        self.assertEqual(len(mail.outbox), 2)

        resp = self._post(url, order_event("evt-2", "y-unknown"), **sig)
        self.assertEqual((resp.status_code, resp.json()["outcome"]), (409, "unknown_order"))

        OrphanWebhookEvent.objects.filter(event_id="evt-2").update(received_at=timezone.now() - timedelta(hours=2))
        resp = self._post(url, order_event("evt-2", "y-unknown"), **sig)
        self.assertEqual(resp.status_code, 202)

        resp = self._post(url, order_event("evt-3", order.gateway_order_ref), HTTP_X_WEBHOOK_SIGNATURE="forged")
        self.assertEqual(resp.status_code, 401)

        resp = self._post(reverse("gateway_webhook", args=["paypal"]), order_event("evt-4", "r"), **sig)
        self.assertEqual(resp.status_code, 404)

    def test_webhook_under_app_prefix(self):
        order = make_order(gateway="x")

        resp = self._post(reverse("payments:webhook", args=["x"]), order_event("evt-1", order.gateway_order_ref),
                          HTTP_X_WEBHOOK_SIGNATURE="valid")

        self.assertEqual(resp.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.SUCCEEDED)

    def test_refund(self):
        make_order(status=OrderStatus.SUCCEEDED)
        url = reverse("payments:refund", args=["ORD1"])

        resp = self._post(url, {"amount": 100000, "reason": "duplicate enrolment"})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["refund"]["status"], "submitted")

        resp = self._post(url, {"amount": 100000})
        self.assertEqual(resp.status_code, 400)

        resp = self._post(url, {})
        self.assertEqual(resp.status_code, 400)

    def test_get_on_create_is_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:create_order")).status_code, 405)


class InstallmentPlanViewsTests(TestCase):
    def setUp(self):
        self.x = FakeGateway("x")
        patcher = patch.object(GatewayRegistry, "from_settings", return_value=make_registry(self.x))
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json")

    def test_create_plan(self):
        resp = self._post(reverse("payments:create_plan"), {
            "payer_id": "stu-1", "subject_ref": "batch-7", "total_amount": 300000, "number_of_installments": 3,
            "down_payment": 60000, "start_date": "2026-01-15T00:00:00", "late_fee": 5000,
        })

        self.assertEqual(resp.status_code, 201)
        plan = resp.json()["plan"]
        self.assertEqual([t["sequence"] for t in plan["tranches"]], [0, 1, 2, 3])
        self.assertEqual([t["amount"] for t in plan["tranches"]], [60000, 80000, 80000, 80000])
        self.assertEqual(InstallmentPlan.objects.get().late_fee, 5000)

    def test_create_plan_validation(self):
        base = {"payer_id": "stu-1", "subject_ref": "batch-7", "total_amount": 300000, "number_of_installments": 3}

        self.assertEqual(self._post(reverse("payments:create_plan"), {"payer_id": "stu-1"}).status_code, 400)
        self.assertEqual(self._post(reverse("payments:create_plan"), {**base, "number_of_installments": 30}).status_code, 400)
        self.assertEqual(self._post(reverse("payments:create_plan"), {**base, "interest_rate": "lots"}).status_code, 400)
        self.assertEqual(self._post(reverse("payments:create_plan"), {**base, "start_date": "someday"}).status_code, 400)
        self.assertFalse(InstallmentPlan.objects.exists())

    def test_plan_detail_flags_overdue_tranches(self):
        plan = create_plan(
            payer_id="stu-1", subject_ref="batch-7", total_amount=300000, number_of_installments=3,
            start_date=timezone.now() - timedelta(days=10), late_fee=5000,
        )

        with self.assertLogs("payments.installments", level="WARNING"):
            resp = self.client.get(reverse("payments:plan_detail", args=[plan.pk]))

        self.assertEqual(resp.status_code, 200)
        data = resp.json()["plan"]
        self.assertEqual(data["missed_installments"], 1)
        self.assertEqual((data["tranches"][0]["status"], data["tranches"][0]["amount_due"]), ("overdue", 105000))
        self.assertEqual(self.client.get(reverse("payments:plan_detail", args=[plan.pk + 1])).status_code, 404)

    def test_pay_tranche(self):
        plan = create_plan(
            payer_id="stu-1", subject_ref="batch-7", total_amount=300000, number_of_installments=3,
            start_date=timezone.now(),
        )
        url = reverse("payments:pay_tranche", args=[plan.pk, 1])

        resp = self._post(url, {})
        self.assertEqual(resp.status_code, 201)
        order = resp.json()["order"]
        self.assertEqual((order["id"], order["amount"], order["status"]), (f"INST{plan.pk}-1-1", 100000, "pending"))

        self.assertEqual(self._post(url, {}).status_code, 409)
        self.assertEqual(self._post(reverse("payments:pay_tranche", args=[plan.pk, 9]), {}).status_code, 404)
        self.assertEqual(self.x.created, [f"INST{plan.pk}-1-1-a1"])
