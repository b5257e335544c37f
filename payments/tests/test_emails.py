from unittest.mock import patch

from django.core import mail
from django.test import TestCase, override_settings

from payments.emails import NotificationSink, _admin_recipients

from .fakes import make_order


class NotificationSinkTests(TestCase):
    def test_payer_and_admin_messages(self):
        order = make_order()

        NotificationSink().notify("payment_confirmed", order)

        self.assertEqual(len(mail.outbox), 2)
        self.assertIn("ORD1", mail.outbox[0].subject)
        self.assertIn("5000.00", mail.outbox[0].subject)
        self.assertTrue(mail.outbox[1].subject.startswith("[payments] "))

    def test_superseded_capture_goes_to_admins_only(self):
        order = make_order()

        NotificationSink().notify("superseded_capture", order)

        self.assertEqual(len(mail.outbox), 1)
        self.assertTrue(mail.outbox[0].subject.startswith("[payments] Payment captured on an earlier attempt"))
        self.assertNotIn("stu1@lms.test", mail.outbox[0].to)

    def test_delivery_crash_is_logged_not_raised(self):
        order = make_order()

        with patch.object(NotificationSink, "deliver", side_effect=RuntimeError("smtp down")):
            with self.assertLogs("payments.emails", level="ERROR"):
                NotificationSink().notify("payment_failed", order)

    @override_settings(PAYMENTS={"ADMIN_EMAILS": "ops@lms.test, OPS@lms.test ,fin@lms.test"})
    def test_admin_recipients_are_deduplicated(self):
        self.assertEqual(_admin_recipients(), ["ops@lms.test", "fin@lms.test"])
