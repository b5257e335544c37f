import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from .conf import payments_setting
from .emails import NotificationSink
from .errors import (
    Conflict, GatewayRejected, GatewayTransient, GatewayUnavailable, NoGatewayAvailable, TrancheNotPayable,
)
from .installments import PAYABLE_TRANCHE_STATUSES, on_order_settled, refresh_plan, tranche_order_id
from .integrations import GatewayRegistry
from .states import OrderStatus
from .store import OrderStore
from .utils import attempt_reference

logger = logging.getLogger(__name__)


class PaymentOrchestrator:
    """Creates orders and (re)assigns them to a gateway with failover.

    Failover policy depends only on the error kind: ``GatewayTransient`` moves
    on to the next candidate, ``GatewayRejected`` stops immediately, and a
    client reporting ``GatewayUnavailable`` is skipped like an unconfigured one.
    """

    def __init__(self, registry=None, store=None, notifier=None):
        self.registry = registry or GatewayRegistry.from_settings()
        self.store = store or OrderStore()
        self.notifier = notifier or NotificationSink()

    def _open_with_failover(self, amount, currency, reference, preferred=None, **customer):
        candidates = self.registry.candidates(preferred)
        if preferred and preferred not in candidates:
            logger.info("Preferred gateway %s not usable; using %s", preferred, candidates)
        errors = []
        for name in candidates:
            client = self.registry.get(name)
            try:
                logger.info("Creating %s order %s with gateway %s", currency, reference, name)
                return name, client.create_order(amount, currency, reference, **customer)
            except GatewayTransient as e:
                logger.warning("Gateway %s transient failure for %s: %s", name, reference, e)
                errors.append(f"{name}: {e}")
            except GatewayUnavailable as e:
                logger.warning("Gateway %s unavailable for %s: %s", name, reference, e)
                errors.append(f"{name}: {e}")
            except GatewayRejected:
                logger.warning("Gateway %s rejected %s; not failing over", name, reference)
                raise
        raise NoGatewayAvailable("; ".join(errors) or "No payment gateway configured")

    def create_order(self, order_id, amount, currency, payer_id, subject_ref,
                     preferred_gateway=None, payer_email="", tranche=None, payment_instrument_ref=""):
        if amount is None or int(amount) <= 0:
            raise ValueError("Amount must be a positive number of minor units")
        existing = self.store.get(order_id)
        if existing is not None:
            return existing

        name, opened = self._open_with_failover(
            amount, currency, attempt_reference(order_id, 1), preferred_gateway,
            payer_id=payer_id, payer_email=payer_email, payment_instrument_ref=payment_instrument_ref,
        )
        try:
            with transaction.atomic():
                order = self.store.insert_order(
                    id=order_id,
                    amount=int(amount),
                    currency=currency,
                    payer_id=payer_id,
                    payer_email=payer_email or "",
                    subject_ref=subject_ref,
                    gateway_name=name,
                    gateway_order_ref=opened.gateway_order_ref,
                    session_token=opened.session_token,
                    status=OrderStatus.PENDING,
                    attempt=1,
                    tranche=tranche,
                )
                self.store.record_attempt(order)
        except IntegrityError:
            # lost an idempotency race; the provider order we just opened is never handed out
            existing = self.store.get(order_id)
            if existing is None:
                raise Conflict(f"Could not persist order {order_id}")
            logger.warning("Order %s created concurrently; dropping %s ref %s", order_id, name, opened.gateway_order_ref)
            return existing
        logger.info("Order %s pending on %s (%s)", order.pk, name, order.gateway_order_ref)
        return order

    def retry_order(self, order, now=None):
        """Re-drive a ``transient_failed`` order with attempt+1 and a fresh gateway ref."""
        now = now or timezone.now()
        claimed = self.store.transition(
            order, OrderStatus.PENDING, now=now,
            attempt=order.attempt + 1, gateway_name=None, gateway_order_ref=None, session_token="",
        )
        if not claimed:
            raise Conflict(f"Order {order.pk} changed before retry")

        reference = attempt_reference(order.pk, order.attempt)
        try:
            name, opened = self._open_with_failover(
                order.amount, order.currency, reference, None,
                payer_id=order.payer_id, payer_email=order.payer_email,
            )
        except NoGatewayAvailable as e:
            self.store.transition(order, OrderStatus.TRANSIENT_FAILED, now=now, failure_reason=str(e)[:255])
            logger.warning("Retry %s of order %s found no gateway", order.attempt, order.pk)
            raise
        except GatewayRejected as e:
            with transaction.atomic():
                failed = self.store.transition(order, OrderStatus.HARD_FAILED, now=now, failure_reason=str(e)[:255])
                if failed:
                    on_order_settled(self.store, order, OrderStatus.HARD_FAILED, now)
            if failed:
                self.notifier.notify("payment_failed", order)
            raise

        with transaction.atomic():
            assigned = self.store.update_if_current(
                order,
                gateway_name=name,
                gateway_order_ref=opened.gateway_order_ref,
                session_token=opened.session_token,
            )
            if not assigned:
                raise Conflict(f"Order {order.pk} changed while assigning attempt {order.attempt}")
            self.store.record_attempt(order)
        logger.info("Order %s retried: attempt %s on %s (%s)", order.pk, order.attempt, name, order.gateway_order_ref)
        return order

    def pay_tranche(self, tranche, preferred_gateway=None):
        """Open an order for one installment tranche, claiming the tranche first.

        Manual and auto-debit payments share this path; an overdue tranche is
        charged its late fee. On any failure the claim is released, and for
        auto-debit plans the failure counts toward the tranche's missed limit.
        """
        plan = tranche.plan
        if plan.status != "active" or tranche.status not in PAYABLE_TRANCHE_STATUSES:
            raise TrancheNotPayable(f"Tranche {tranche.sequence} of plan {plan.pk} is {tranche.status} (plan {plan.status})")
        if self.store.has_active_order(tranche) or not self.store.claim_tranche(tranche):
            raise TrancheNotPayable(f"Tranche {tranche.sequence} of plan {plan.pk} already has a payment in flight")

        try:
            order = self.create_order(
                tranche_order_id(tranche),
                tranche.amount_due,
                plan.currency,
                plan.payer_id,
                plan.subject_ref,
                preferred_gateway=preferred_gateway or plan.preferred_gateway or None,
                payer_email=plan.payer_email,
                tranche=tranche,
                payment_instrument_ref=plan.payment_instrument_ref if plan.auto_debit else "",
            )
        except Exception:
            status = self.store.release_tranche(
                tranche, failed=plan.auto_debit, max_failures=payments_setting("INSTALLMENT_MAX_DEBIT_FAILURES")
            )
            refresh_plan(plan)
            logger.warning("Tranche %s of plan %s released as %s after a failed payment", tranche.sequence, plan.pk, status)
            raise
        logger.info("Plan %s tranche %s opened as order %s", plan.pk, tranche.sequence, order.pk)
        return order
