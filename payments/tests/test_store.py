from unittest.mock import patch

from django.db import OperationalError
from django.test import TestCase

from payments.errors import Conflict, InvalidTransition
from payments.models import PaymentOrder
from payments.states import OrderStatus, can_transition
from payments.store import OrderStore

from .fakes import make_order


class OrderStoreTests(TestCase):
    def setUp(self):
        self.store = OrderStore()
        self.order = make_order()

    def test_transition_bumps_version_and_stamps_completion(self):
        self.assertTrue(self.store.transition(self.order, OrderStatus.SUCCEEDED))

        fresh = PaymentOrder.objects.get(pk=self.order.pk)
        self.assertEqual((fresh.status, fresh.version), (OrderStatus.SUCCEEDED, 1))
        self.assertIsNotNone(fresh.completed_at)

    def test_stale_writer_updates_nothing(self):
        stale = PaymentOrder.objects.get(pk=self.order.pk)
        self.store.transition(self.order, OrderStatus.TRANSIENT_FAILED)

        self.assertFalse(self.store.transition(stale, OrderStatus.SUCCEEDED))
        self.assertEqual(PaymentOrder.objects.get(pk=self.order.pk).status, OrderStatus.TRANSIENT_FAILED)

    def test_invalid_transition_raises(self):
        self.store.transition(self.order, OrderStatus.HARD_FAILED)

        with self.assertRaises(InvalidTransition):
            self.store.transition(self.order, OrderStatus.SUCCEEDED)

    def test_lock_timeout_surfaces_as_conflict(self):
        with patch("django.db.models.query.QuerySet.update", side_effect=OperationalError("database is locked")):
            with self.assertRaises(Conflict):
                self.store.transition(self.order, OrderStatus.SUCCEEDED)

    def test_terminal_states_have_no_exits(self):
        for status in (OrderStatus.HARD_FAILED, OrderStatus.REFUNDED, OrderStatus.ABANDONED):
            for target in OrderStatus:
                self.assertFalse(can_transition(status, target))
