import logging

from django.db import transaction

from .emails import NotificationSink
from .errors import Conflict, GatewayError, InvalidTransition, RefundExceedsBalance, RefundNotAllowed
from .integrations import GatewayRegistry, RefundOutcome
from .states import OrderStatus, RefundStatus
from .store import OrderStore

logger = logging.getLogger(__name__)


def settle_refund(store, refund, outcome: RefundOutcome) -> bool:
    """Apply a confirmed/failed refund to the refund row and its order.

    Must run inside ``transaction.atomic()``; returns False when either
    conditional write loses a race, and the caller rolls back.
    """
    target = RefundStatus.CONFIRMED if outcome == RefundOutcome.CONFIRMED else RefundStatus.FAILED
    if not store.refund_transition(refund, target):
        return False
    order = store.get(refund.payment_order_id)
    if order.status != OrderStatus.REFUND_REQUESTED:
        logger.warning("Refund %s settled while order %s is %s", refund.pk, order.pk, order.status)
        return True
    if target == RefundStatus.CONFIRMED and store.confirmed_refund_total(order) >= order.amount:
        order_target = OrderStatus.REFUNDED
    else:
        # partial refund or failure: the order can take another refund
        order_target = OrderStatus.SUCCEEDED
    return store.transition(order, order_target)


class RefundCoordinator:
    def __init__(self, registry=None, store=None, notifier=None):
        self.registry = registry or GatewayRegistry.from_settings()
        self.store = store or OrderStore()
        self.notifier = notifier or NotificationSink()

    def request_refund(self, payment_order_id, amount, reason=""):
        amount = int(amount)
        if amount <= 0:
            raise RefundNotAllowed("Refund amount must be positive")

        with transaction.atomic():
            order = self.store.get(payment_order_id)
            if order is None:
                raise RefundNotAllowed(f"Unknown order {payment_order_id}")
            if order.status != OrderStatus.SUCCEEDED:
                raise RefundNotAllowed(f"Order {order.pk} is {order.status}; only succeeded orders can be refunded")
            refundable = order.amount - self.store.confirmed_refund_total(order)
            if amount > refundable:
                raise RefundExceedsBalance(f"Refund {amount} exceeds refundable balance {refundable}")
            # one refund in flight per order: the claim is the order's own status
            if not self.store.transition(order, OrderStatus.REFUND_REQUESTED):
                raise Conflict(f"Order {order.pk} changed while requesting refund")
            refund = self.store.create_refund(order, amount, reason)

        try:
            client = self.registry.get(order.gateway_name)
            result = client.submit_refund(order.gateway_order_ref, amount, f"RF{refund.pk.hex[:20]}")
        except GatewayError as e:
            # no automatic retry: a human re-initiates to rule out a double refund
            logger.error("Refund %s for order %s failed at %s: %s", refund.pk, order.pk, order.gateway_name, e)
            self.fail_unsubmitted(refund, str(e))
            return refund
        except Exception as e:
            logger.exception("Refund %s for order %s crashed before submission", refund.pk, order.pk)
            self.fail_unsubmitted(refund, f"Submission crashed: {e}")
            raise

        # the gateway holds the refund now; record the ref before anything else can fail
        self.store.refund_transition(refund, RefundStatus.SUBMITTED, gateway_refund_ref=result.gateway_refund_ref)
        logger.info("Refund %s submitted to %s as %s", refund.pk, order.gateway_name, refund.gateway_refund_ref)
        if result.status == RefundOutcome.PENDING:
            return refund

        with transaction.atomic():
            if not settle_refund(self.store, refund, result.status):
                raise Conflict(f"Refund {refund.pk} changed while settling")
        self._notify_settled(refund)
        return refund

    def poll_refund(self, refund) -> bool:
        """Ask the gateway about a submitted refund; True when it settled."""
        order = refund.payment_order
        outcome = self.registry.get(order.gateway_name).fetch_refund_status(
            order.gateway_order_ref, refund.gateway_refund_ref
        )
        if outcome == RefundOutcome.PENDING:
            return False
        try:
            with transaction.atomic():
                if not settle_refund(self.store, refund, outcome):
                    raise Conflict(f"Refund {refund.pk} changed while polling")
        except InvalidTransition as e:
            logger.warning("Refund %s poll result rejected: %s", refund.pk, e)
            return False
        self._notify_settled(refund)
        return True

    def fail_unsubmitted(self, refund, reason) -> bool:
        """Fail a refund the gateway never accepted and free its order for another refund."""
        with transaction.atomic():
            if not self.store.refund_transition(refund, RefundStatus.FAILED, failure_reason=reason[:255]):
                return False
            order = self.store.get(refund.payment_order_id)
            if order.status == OrderStatus.REFUND_REQUESTED:
                self.store.transition(order, OrderStatus.SUCCEEDED)
        self.notifier.notify("refund_failed", order, refund)
        return True

    def _notify_settled(self, refund):
        order = self.store.get(refund.payment_order_id)
        event = "refund_confirmed" if refund.status == RefundStatus.CONFIRMED else "refund_failed"
        self.notifier.notify(event, order, refund)
