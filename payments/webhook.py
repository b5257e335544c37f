"""Verify, de-duplicate and apply gateway-pushed events.

The ``(gateway_name, event_id)`` ledger row is written in the same
transaction as the order update it caused, so a crash in between leaves
neither and the provider's redelivery applies the event exactly once.
"""
import enum, logging
from dataclasses import dataclass
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from .conf import payments_setting
from .emails import NotificationSink
from .errors import Conflict, InvalidSignature, InvalidTransition
from .installments import on_order_settled
from .integrations import EventKind, GatewayRegistry, GatewayStatus, RefundOutcome
from .refunds import settle_refund
from .states import ACTIVE_STATUSES, OrderStatus, RefundStatus, can_transition
from .store import OrderStore

logger = logging.getLogger(__name__)

STATUS_TARGETS = {
    GatewayStatus.PAID: OrderStatus.SUCCEEDED,
    GatewayStatus.PENDING: OrderStatus.PENDING,
    GatewayStatus.TRANSIENT_FAILURE: OrderStatus.TRANSIENT_FAILED,
    GatewayStatus.HARD_FAILURE: OrderStatus.HARD_FAILED,
}

NOTIFY_EVENTS = {
    OrderStatus.SUCCEEDED: "payment_confirmed",
    OrderStatus.HARD_FAILED: "payment_failed",
    OrderStatus.ABANDONED: "payment_abandoned",
}


class Outcome(enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    UNKNOWN_ORDER = "unknown_order"
    NO_CHANGE = "no_change"
    REJECTED = "rejected"


@dataclass
class ReconciliationResult:
    outcome: Outcome
    event_id: str = ""
    order: object = None
    refund: object = None
    redeliver: bool = False  # unknown ref still inside the window where the provider should resend


class _LostRace(Exception):
    pass


def _within_redelivery(orphan) -> bool:
    window = timedelta(seconds=payments_setting("UNKNOWN_EVENT_REDELIVERY_SECONDS"))
    return orphan.received_at >= timezone.now() - window


def decide(order, target) -> Outcome:
    """What an externally observed ``target`` status means for ``order`` right now."""
    if order.status == target:
        return Outcome.NO_CHANGE
    if target == OrderStatus.SUCCEEDED and order.status in (OrderStatus.REFUND_REQUESTED, OrderStatus.REFUNDED):
        # late PAID for money we already counted
        return Outcome.NO_CHANGE
    if order.status not in ACTIVE_STATUSES or target == OrderStatus.PENDING or not can_transition(order.status, target):
        logger.warning(
            "Rejected out-of-order transition for order %s: %s -> %s (attempt %s)",
            order.pk, order.status, target, order.attempt,
        )
        return Outcome.REJECTED
    return Outcome.APPLIED


class WebhookReconciler:

    def __init__(self, registry=None, store=None, notifier=None):
        self.registry = registry or GatewayRegistry.from_settings()
        self.store = store or OrderStore()
        self.notifier = notifier or NotificationSink()

    def handle(self, gateway_name, raw_payload, signature_header, headers=None) -> ReconciliationResult:
        client = self.registry.get(gateway_name)
        if not client.verify_signature(raw_payload, signature_header, headers):
            logger.error("Invalid %s webhook signature; event dropped", gateway_name)
            raise InvalidSignature(f"Invalid {gateway_name} webhook signature")

        event = client.parse_webhook(raw_payload, headers)
        if self.store.has_event(gateway_name, event.event_id):
            logger.info("Duplicate %s webhook %s ignored", gateway_name, event.event_id)
            return ReconciliationResult(Outcome.ALREADY_PROCESSED, event.event_id)

        if event.kind == EventKind.REFUND:
            return self._handle_refund(gateway_name, event)
        return self._handle_order(gateway_name, event)

    # ---------- order events ----------
    def _handle_order(self, gateway_name, event):
        target = STATUS_TARGETS[event.status]
        for _ in range(2):
            order = self.store.find_by_gateway_ref(gateway_name, event.gateway_order_ref)
            if order is None:
                return self._orphan(gateway_name, event)
            outcome = decide(order, target)
            try:
                with transaction.atomic():
                    if outcome == Outcome.APPLIED:
                        if not self._transition(order, target, event.reason, event.payload):
                            raise _LostRace()
                    self.store.record_event(gateway_name, event.event_id, event.kind.value, event.gateway_order_ref)
            except _LostRace:
                logger.info("Lost race on order %s applying %s; re-reading", order.pk, event.event_id)
                continue
            except IntegrityError:
                return ReconciliationResult(Outcome.ALREADY_PROCESSED, event.event_id, order)
            if outcome == Outcome.APPLIED:
                self._notify(order, target)
            return ReconciliationResult(outcome, event.event_id, order)
        raise Conflict(f"Order for {gateway_name} ref {event.gateway_order_ref} kept changing")

    def _orphan(self, gateway_name, event):
        attempt = self.store.find_attempt(gateway_name, event.gateway_order_ref)
        if attempt is None:
            # not ledgered: a redelivery after the order row exists still applies
            orphan = self.store.record_orphan(gateway_name, event.event_id, event.gateway_order_ref, "unknown_order", event.payload)
            return ReconciliationResult(Outcome.UNKNOWN_ORDER, event.event_id, redeliver=_within_redelivery(orphan))

        if event.status == GatewayStatus.PAID:
            return self._superseded_capture(gateway_name, event, attempt)

        logger.warning(
            "%s event %s (%s) for superseded attempt %s of order %s",
            gateway_name, event.event_id, event.status, attempt.attempt, attempt.order_id,
        )
        try:
            with transaction.atomic():
                self.store.record_orphan(gateway_name, event.event_id, event.gateway_order_ref, "superseded_attempt", event.payload)
                self.store.record_event(gateway_name, event.event_id, event.kind.value, event.gateway_order_ref)
        except IntegrityError:
            return ReconciliationResult(Outcome.ALREADY_PROCESSED, event.event_id, attempt.order)
        return ReconciliationResult(Outcome.REJECTED, event.event_id, attempt.order)

    def _superseded_capture(self, gateway_name, event, attempt):
        """The provider captured money on an attempt the order has moved past.

        A still-active order is settled onto that attempt; otherwise the event is
        kept as an orphan. Operators hear about it either way, since the payer may
        also pay the newer attempt.
        """
        for _ in range(2):
            order = self.store.get(attempt.order_id)
            applied = order.is_active
            try:
                with transaction.atomic():
                    if applied:
                        captured_on = {"gateway_name": attempt.gateway_name, "gateway_order_ref": attempt.gateway_order_ref}
                        if not self._transition(order, OrderStatus.SUCCEEDED, payload=event.payload, **captured_on):
                            raise _LostRace()
                    else:
                        self.store.record_orphan(
                            gateway_name, event.event_id, event.gateway_order_ref, "superseded_attempt", event.payload
                        )
                    self.store.record_event(gateway_name, event.event_id, event.kind.value, event.gateway_order_ref)
            except _LostRace:
                continue
            except IntegrityError:
                return ReconciliationResult(Outcome.ALREADY_PROCESSED, event.event_id, order)
            logger.warning(
                "Order %s (%s) paid on superseded attempt %s at %s ref %s",
                order.pk, order.status, attempt.attempt, gateway_name, event.gateway_order_ref,
            )
            if applied:
                self._notify(order, OrderStatus.SUCCEEDED)
            self.notifier.notify("superseded_capture", order)
            return ReconciliationResult(Outcome.APPLIED if applied else Outcome.REJECTED, event.event_id, order)
        raise Conflict(f"Order {attempt.order_id} kept changing")

    def _transition(self, order, target, reason="", payload=None, **changes) -> bool:
        if payload:
            changes["last_status_payload"] = payload
        if target in (OrderStatus.TRANSIENT_FAILED, OrderStatus.HARD_FAILED, OrderStatus.ABANDONED):
            changes["failure_reason"] = (reason or "")[:255]
        if not self.store.transition(order, target, **changes):
            return False
        on_order_settled(self.store, order, target)
        return True

    def _notify(self, order, target):
        event = NOTIFY_EVENTS.get(target)
        if event:
            self.notifier.notify(event, order)

    # ---------- polling ----------
    def apply_poll(self, order, status: GatewayStatus, payload=None) -> ReconciliationResult:
        """Apply a status fetched from the gateway; no ledger entry."""
        return self.apply_target(order, STATUS_TARGETS[status], payload=payload)

    def apply_target(self, order, target, reason="", payload=None) -> ReconciliationResult:
        for _ in range(2):
            outcome = decide(order, target)
            if outcome != Outcome.APPLIED:
                return ReconciliationResult(outcome, order=order)
            with transaction.atomic():
                applied = self._transition(order, target, reason, payload)
            if applied:
                self._notify(order, target)
                return ReconciliationResult(Outcome.APPLIED, order=order)
            order = self.store.get(order.pk)
        raise Conflict(f"Order {order.pk} kept changing")

    # ---------- refund events ----------
    def _handle_refund(self, gateway_name, event):
        for _ in range(2):
            refund = self.store.find_refund_by_ref(gateway_name, event.gateway_refund_ref)
            if refund is None:
                orphan = self.store.record_orphan(gateway_name, event.event_id, event.gateway_refund_ref, "unknown_refund", event.payload)
                return ReconciliationResult(Outcome.UNKNOWN_ORDER, event.event_id, redeliver=_within_redelivery(orphan))

            outcome = Outcome.APPLIED
            target = {RefundOutcome.CONFIRMED: RefundStatus.CONFIRMED, RefundOutcome.FAILED: RefundStatus.FAILED}.get(event.refund_status)
            if target is None or refund.status == target:
                outcome = Outcome.NO_CHANGE
            elif refund.status != RefundStatus.SUBMITTED:
                logger.warning("Rejected refund event %s: refund %s is %s", event.event_id, refund.pk, refund.status)
                outcome = Outcome.REJECTED
            try:
                with transaction.atomic():
                    if outcome == Outcome.APPLIED and not settle_refund(self.store, refund, event.refund_status):
                        raise _LostRace()
                    self.store.record_event(gateway_name, event.event_id, event.kind.value, event.gateway_refund_ref)
            except _LostRace:
                continue
            except InvalidTransition as e:
                logger.warning("Rejected refund event %s: %s", event.event_id, e)
                self.store.record_event(gateway_name, event.event_id, event.kind.value, event.gateway_refund_ref)
                return ReconciliationResult(Outcome.REJECTED, event.event_id, refund=refund)
            except IntegrityError:
                return ReconciliationResult(Outcome.ALREADY_PROCESSED, event.event_id, refund=refund)
            order = self.store.get(refund.payment_order_id)
            if outcome == Outcome.APPLIED:
                kind = "refund_confirmed" if refund.status == RefundStatus.CONFIRMED else "refund_failed"
                self.notifier.notify(kind, order, refund)
            return ReconciliationResult(outcome, event.event_id, order, refund)
        raise Conflict(f"Refund for {gateway_name} ref {event.gateway_refund_ref} kept changing")
