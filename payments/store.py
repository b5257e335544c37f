"""OrderStore: the only code that writes payment rows.

Every status change is a conditional UPDATE keyed on the row's id *and* the
status/version the caller read, so a concurrent writer makes the update match
zero rows instead of silently overwriting it.
"""
import logging

from django.db import OperationalError
from django.db.models import F, Sum
from django.utils import timezone

from .errors import Conflict, InvalidTransition
from .models import (
    InstallmentTranche, OrderAttempt, OrphanWebhookEvent, PaymentOrder, RefundRequest, WebhookEvent,
)
from .states import ACTIVE_STATUSES, OrderStatus, RefundStatus, can_transition, can_transition_refund

logger = logging.getLogger(__name__)


class OrderStore:

    # ---------- orders ----------
    def get(self, order_id) -> PaymentOrder | None:
        return PaymentOrder.objects.filter(pk=order_id).first()

    def find_by_gateway_ref(self, gateway_name, gateway_order_ref) -> PaymentOrder | None:
        if not gateway_order_ref:
            return None
        return PaymentOrder.objects.filter(
            gateway_name=gateway_name, gateway_order_ref=gateway_order_ref
        ).first()

    def find_attempt(self, gateway_name, gateway_order_ref) -> OrderAttempt | None:
        if not gateway_order_ref:
            return None
        return OrderAttempt.objects.filter(
            gateway_name=gateway_name, gateway_order_ref=gateway_order_ref
        ).select_related("order").first()

    def insert_order(self, **fields) -> PaymentOrder:
        fields.setdefault("last_transition_at", timezone.now())
        return PaymentOrder.objects.create(**fields)

    def update_if_current(self, order: PaymentOrder, **changes) -> bool:
        """Compare-and-swap on (status, version). Updates ``order`` in place on success."""
        try:
            rows = PaymentOrder.objects.filter(
                pk=order.pk, status=order.status, version=order.version
            ).update(version=F("version") + 1, **changes)
        except OperationalError as e:
            raise Conflict(f"Store unavailable for order {order.pk}: {e}")
        if rows != 1:
            return False
        for k, v in changes.items():
            setattr(order, k, v)
        order.version += 1
        return True

    def transition(self, order: PaymentOrder, target, now=None, **changes) -> bool:
        if not can_transition(order.status, target):
            raise InvalidTransition(order.status, target)
        now = now or timezone.now()
        if target == OrderStatus.SUCCEEDED and order.completed_at is None:
            changes.setdefault("completed_at", now)
        ok = self.update_if_current(order, status=target, last_transition_at=now, **changes)
        if ok:
            logger.info("Order %s -> %s (attempt %s)", order.pk, target, order.attempt)
        return ok

    def record_attempt(self, order: PaymentOrder) -> OrderAttempt:
        return OrderAttempt.objects.create(
            order=order,
            attempt=order.attempt,
            gateway_name=order.gateway_name,
            gateway_order_ref=order.gateway_order_ref,
        )

    def retry_candidates(self):
        return PaymentOrder.objects.filter(status=OrderStatus.TRANSIENT_FAILED).order_by("last_transition_at")

    def stale_pending(self, before):
        return PaymentOrder.objects.filter(
            status=OrderStatus.PENDING, last_transition_at__lte=before
        ).order_by("last_transition_at")

    # ---------- ledger ----------
    def has_event(self, gateway_name, event_id) -> bool:
        return WebhookEvent.objects.filter(gateway_name=gateway_name, event_id=event_id).exists()

    def record_event(self, gateway_name, event_id, kind, gateway_ref="") -> WebhookEvent:
        # unique (gateway_name, event_id): a concurrent duplicate raises IntegrityError
        return WebhookEvent.objects.create(
            gateway_name=gateway_name, event_id=event_id, kind=kind, gateway_ref=gateway_ref or ""
        )

    def record_orphan(self, gateway_name, event_id, gateway_ref, reason, payload=None) -> OrphanWebhookEvent:
        orphan, created = OrphanWebhookEvent.objects.get_or_create(
            gateway_name=gateway_name,
            event_id=event_id,
            defaults={"gateway_ref": gateway_ref or "", "reason": reason, "payload": payload},
        )
        if created:
            logger.warning("Orphan webhook %s:%s ref=%s (%s)", gateway_name, event_id, gateway_ref, reason)
        return orphan

    # ---------- refunds ----------
    def get_refund(self, refund_id) -> RefundRequest | None:
        return RefundRequest.objects.filter(pk=refund_id).select_related("payment_order").first()

    def find_refund_by_ref(self, gateway_name, gateway_refund_ref) -> RefundRequest | None:
        if not gateway_refund_ref:
            return None
        return RefundRequest.objects.filter(
            payment_order__gateway_name=gateway_name, gateway_refund_ref=gateway_refund_ref
        ).select_related("payment_order").first()

    def create_refund(self, order: PaymentOrder, amount: int, reason: str) -> RefundRequest:
        return RefundRequest.objects.create(payment_order=order, amount=amount, reason=reason or "")

    def confirmed_refund_total(self, order: PaymentOrder) -> int:
        total = RefundRequest.objects.filter(
            payment_order=order, status=RefundStatus.CONFIRMED
        ).aggregate(total=Sum("amount"))["total"]
        return int(total or 0)

    def refund_transition(self, refund: RefundRequest, target, **changes) -> bool:
        if not can_transition_refund(refund.status, target):
            raise InvalidTransition(refund.status, target)
        now = timezone.now()
        try:
            rows = RefundRequest.objects.filter(pk=refund.pk, status=refund.status).update(
                status=target, updated_at=now, **changes
            )
        except OperationalError as e:
            raise Conflict(f"Store unavailable for refund {refund.pk}: {e}")
        if rows != 1:
            return False
        for k, v in changes.items():
            setattr(refund, k, v)
        refund.status = target
        refund.updated_at = now
        logger.info("Refund %s -> %s", refund.pk, target)
        return True

    def stale_requested_refunds(self, before):
        """Refunds claimed but never handed to a gateway (the submitting process died)."""
        return RefundRequest.objects.filter(
            status=RefundStatus.REQUESTED, updated_at__lte=before
        ).select_related("payment_order").order_by("updated_at")

    def submitted_refunds(self, before):
        return RefundRequest.objects.filter(
            status=RefundStatus.SUBMITTED, updated_at__lte=before
        ).select_related("payment_order").order_by("updated_at")

    # ---------- installment tranches ----------
    def due_tranches(self, now):
        return InstallmentTranche.objects.filter(
            status="pending",
            due_date__lte=now,
            plan__auto_debit=True,
            plan__status="active",
        ).select_related("plan").order_by("due_date")

    def has_active_order(self, tranche) -> bool:
        return PaymentOrder.objects.filter(tranche=tranche, status__in=ACTIVE_STATUSES).exists()

    def overdue_candidates(self, now, plan=None):
        """Unpaid manual-plan tranches past their due date; the grace period is applied by the caller."""
        qs = InstallmentTranche.objects.filter(
            status="pending",
            due_date__lte=now,
            plan__auto_debit=False,
            plan__status="active",
        )
        if plan is not None:
            qs = qs.filter(plan=plan)
        return qs.select_related("plan").order_by("due_date")

    def mark_tranche_overdue(self, tranche, late_fee) -> bool:
        rows = InstallmentTranche.objects.filter(pk=tranche.pk, status="pending").update(
            status="overdue", late_fee=late_fee
        )
        if rows == 1:
            tranche.status, tranche.late_fee = "overdue", late_fee
        return rows == 1

    def claim_tranche(self, tranche) -> bool:
        rows = InstallmentTranche.objects.filter(
            pk=tranche.pk, status__in=("pending", "overdue")
        ).update(status="debiting")
        if rows == 1:
            tranche.status = "debiting"
        return rows == 1

    def release_tranche(self, tranche, failed=False, max_failures=None) -> str:
        """Hand a claimed tranche back; counts a debit failure when ``failed``."""
        failures = tranche.debit_failures + (1 if failed else 0)
        status = "missed" if (max_failures and failures >= max_failures) else "pending"
        InstallmentTranche.objects.filter(pk=tranche.pk, status="debiting").update(
            status=status, debit_failures=failures
        )
        tranche.status, tranche.debit_failures = status, failures
        return status

    def mark_tranche_paid(self, tranche_id, now=None) -> bool:
        rows = InstallmentTranche.objects.filter(
            pk=tranche_id, status__in=("pending", "debiting", "overdue")
        ).update(status="paid", paid_at=now or timezone.now())
        return rows == 1
