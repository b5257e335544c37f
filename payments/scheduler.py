import logging, threading
from dataclasses import dataclass, field
from datetime import timedelta

from django.db import close_old_connections, transaction
from django.utils import timezone

from .conf import payments_setting
from .emails import NotificationSink
from .errors import PaymentError, TrancheNotPayable
from .installments import mark_overdue, on_order_settled
from .integrations import GatewayRegistry
from .refunds import RefundCoordinator
from .services import PaymentOrchestrator
from .states import OrderStatus
from .store import OrderStore
from .utils import retry_backoff
from .webhook import Outcome, WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    retried: list = field(default_factory=list)
    exhausted: list = field(default_factory=list)
    debits_started: list = field(default_factory=list)
    debits_failed: list = field(default_factory=list)
    overdue: list = field(default_factory=list)
    polled: list = field(default_factory=list)
    abandoned: list = field(default_factory=list)
    expired: list = field(default_factory=list)
    refunds_settled: list = field(default_factory=list)
    refunds_failed: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    def summary(self) -> str:
        return ", ".join(f"{name}={len(value)}" for name, value in self.__dict__.items())


class ReconciliationScheduler:
    """Periodic sweeps that drive orders which no webhook will move.

    Every write goes through the store's conditional update, so two schedulers
    (or a scheduler and a webhook) racing on one row cost a lost update at
    worst, never a double transition.
    """

    def __init__(self, registry=None, store=None, notifier=None):
        self.registry = registry or GatewayRegistry.from_settings()
        self.store = store or OrderStore()
        self.notifier = notifier or NotificationSink()
        self.orchestrator = PaymentOrchestrator(self.registry, self.store, self.notifier)
        self.reconciler = WebhookReconciler(self.registry, self.store, self.notifier)
        self.refunds = RefundCoordinator(self.registry, self.store, self.notifier)

    def tick(self, now=None) -> TickReport:
        now = now or timezone.now()
        report = TickReport()
        self.retry_sweep(now, report)
        self.installment_sweep(now, report)
        self.pending_sweep(now, report)
        self.refund_sweep(now, report)
        logger.info("Scheduler tick at %s: %s", now.isoformat(), report.summary())
        return report

    def run_forever(self, interval=None, stop_event=None):
        interval = interval or payments_setting("SCHEDULER_INTERVAL_SECONDS")
        stop_event = stop_event or threading.Event()
        logger.info("Payment scheduler started (every %ss)", interval)
        while not stop_event.is_set():
            close_old_connections()
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(interval)
        logger.info("Payment scheduler stopped")

    def _failed(self, report, key, e):
        report.errors.append((key, str(e)))
        if isinstance(e, PaymentError):
            logger.warning("Scheduler: %s failed: %s", key, e)
        else:
            logger.exception("Scheduler: %s crashed", key)

    # ---------- retries ----------
    def retry_sweep(self, now, report):
        max_attempts = payments_setting("MAX_ATTEMPTS")
        for order in self.store.retry_candidates():
            try:
                if order.attempt >= max_attempts:
                    self._exhaust(order, now, report)
                elif order.last_transition_at <= now - retry_backoff(order.attempt):
                    self.orchestrator.retry_order(order, now=now)
                    report.retried.append(order.pk)
            except Exception as e:
                self._failed(report, order.pk, e)

    def _exhaust(self, order, now, report):
        with transaction.atomic():
            failed = self.store.transition(
                order, OrderStatus.HARD_FAILED, now=now,
                failure_reason=f"Retry limit reached after {order.attempt} attempts",
            )
            if failed:
                on_order_settled(self.store, order, OrderStatus.HARD_FAILED, now)
        if failed:
            logger.warning("Order %s hit the retry ceiling at attempt %s", order.pk, order.attempt)
            report.exhausted.append(order.pk)
            self.notifier.notify("payment_failed", order)

    # ---------- installments ----------
    def installment_sweep(self, now, report):
        for tranche in self.store.due_tranches(now):
            try:
                order = self.orchestrator.pay_tranche(tranche)
            except TrancheNotPayable:
                continue
            except Exception as e:
                report.debits_failed.append(tranche.pk)
                self._failed(report, f"tranche {tranche.pk} ({tranche.status})", e)
                continue
            report.debits_started.append(order.pk)
        report.overdue.extend(t.pk for t in mark_overdue(self.store, self.store.overdue_candidates(now), now))

    # ---------- stale pending orders ----------
    def pending_sweep(self, now, report):
        poll_before = now - timedelta(seconds=payments_setting("PENDING_POLL_AFTER_SECONDS"))
        abandon_before = now - timedelta(seconds=payments_setting("ABANDON_AFTER_SECONDS"))
        for order in self.store.stale_pending(poll_before):
            try:
                if not order.gateway_name:
                    # a retry claimed it and died before assigning a gateway
                    self.reconciler.apply_target(order, OrderStatus.TRANSIENT_FAILED, "Retry interrupted")
                    continue
                client = self.registry.get(order.gateway_name)
                result = self.reconciler.apply_poll(order, client.fetch_status(order.gateway_order_ref))
                if result.outcome == Outcome.APPLIED:
                    report.polled.append(order.pk)
                elif order.status == OrderStatus.PENDING and order.last_transition_at <= abandon_before:
                    result = self.reconciler.apply_target(order, OrderStatus.ABANDONED, "No payment before expiry")
                    if result.outcome == Outcome.APPLIED:
                        report.abandoned.append(order.pk)
            except Exception as e:
                self._failed(report, order.pk, e)
                if order.status == OrderStatus.PENDING and order.last_transition_at <= abandon_before:
                    self._expire_unreachable(order, report)

    def _expire_unreachable(self, order, report):
        # the owning gateway cannot say whether it was paid; hand over to the retry/ceiling path
        try:
            result = self.reconciler.apply_target(
                order, OrderStatus.TRANSIENT_FAILED, f"{order.gateway_name} unreachable past expiry"
            )
        except Exception as e:
            self._failed(report, order.pk, e)
            return
        if result.outcome == Outcome.APPLIED:
            logger.warning("Order %s expired while %s was unreachable; queued for retry", order.pk, order.gateway_name)
            report.expired.append(order.pk)

    # ---------- refunds ----------
    def refund_sweep(self, now, report):
        before = now - timedelta(seconds=payments_setting("PENDING_POLL_AFTER_SECONDS"))
        for refund in self.store.stale_requested_refunds(before):
            try:
                if self.refunds.fail_unsubmitted(refund, "Never submitted to the gateway"):
                    logger.warning("Refund %s for order %s was never submitted; failed", refund.pk, refund.payment_order_id)
                    report.refunds_failed.append(refund.pk)
            except Exception as e:
                self._failed(report, refund.pk, e)
        for refund in self.store.submitted_refunds(before):
            try:
                if self.refunds.poll_refund(refund):
                    report.refunds_settled.append(refund.pk)
            except Exception as e:
                self._failed(report, refund.pk, e)
