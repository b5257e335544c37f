import uuid

from django.db import models
from django.db.models import Q

from .states import ACTIVE_STATUSES, OrderStatus, RefundStatus


class InstallmentPlan(models.Model):
    FREQUENCY_CHOICES = [
        ("weekly", "Weekly"),
        ("biweekly", "Biweekly"),
        ("monthly", "Monthly"),
    ]
    STATUS_CHOICES = [
        ("active", "Active"),
        ("completed", "Completed"),
        ("defaulted", "Defaulted"),
        ("cancelled", "Cancelled"),
    ]

    payer_id = models.CharField(max_length=64, db_index=True)
    payer_email = models.EmailField(blank=True, default="")
    subject_ref = models.CharField(max_length=128)  # course/batch being paid for
    total_amount = models.PositiveBigIntegerField()  # minor units
    currency = models.CharField(max_length=8, default="INR")
    number_of_installments = models.PositiveSmallIntegerField()
    frequency = models.CharField(max_length=16, choices=FREQUENCY_CHOICES, default="monthly")
    start_date = models.DateTimeField()
    down_payment = models.PositiveBigIntegerField(default=0)  # minor units, due as tranche 0
    interest_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0)  # annual %, reducing balance
    grace_period_days = models.PositiveSmallIntegerField(default=3)
    late_fee = models.PositiveBigIntegerField(default=0)  # minor units, added to an overdue tranche

    auto_debit = models.BooleanField(default=False)
    payment_instrument_ref = models.CharField(max_length=128, blank=True, default="")
    preferred_gateway = models.CharField(max_length=32, blank=True, default="")

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="active", db_index=True)
    next_due_date = models.DateTimeField(blank=True, null=True)
    missed_installments = models.PositiveSmallIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["auto_debit", "next_due_date"], name="plan_autodebit_due_idx")]

    def __str__(self):
        return f"Plan#{self.pk} {self.payer_id} {self.subject_ref} ({self.status})"


class InstallmentTranche(models.Model):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("debiting", "Debiting"),
        ("paid", "Paid"),
        ("overdue", "Overdue"),
        ("missed", "Missed"),
    ]

    plan = models.ForeignKey(InstallmentPlan, on_delete=models.CASCADE, related_name="tranches")
    sequence = models.PositiveSmallIntegerField()
    amount = models.PositiveBigIntegerField()
    due_date = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="pending", db_index=True)
    debit_failures = models.PositiveSmallIntegerField(default=0)
    late_fee = models.PositiveBigIntegerField(default=0)
    paid_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["plan", "sequence"]
        constraints = [
            models.UniqueConstraint(fields=["plan", "sequence"], name="tranche_plan_sequence_uniq"),
        ]

    def __str__(self):
        return f"Plan#{self.plan_id} tranche {self.sequence} ({self.status})"

    @property
    def amount_due(self) -> int:
        return self.amount + self.late_fee


class PaymentOrder(models.Model):
    id = models.CharField(max_length=64, primary_key=True)  # caller-assigned idempotency key
    amount = models.PositiveBigIntegerField()  # minor units
    currency = models.CharField(max_length=8, default="INR")
    payer_id = models.CharField(max_length=64, db_index=True)
    payer_email = models.EmailField(blank=True, default="")
    subject_ref = models.CharField(max_length=128)

    gateway_name = models.CharField(max_length=32, blank=True, null=True)
    gateway_order_ref = models.CharField(max_length=128, blank=True, null=True, db_index=True)
    session_token = models.TextField(blank=True, default="")

    status = models.CharField(
        max_length=24, choices=OrderStatus.choices, default=OrderStatus.PENDING, db_index=True
    )
    attempt = models.PositiveIntegerField(default=1)
    version = models.PositiveIntegerField(default=0)

    tranche = models.ForeignKey(
        InstallmentTranche, on_delete=models.PROTECT, related_name="orders", blank=True, null=True
    )
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    last_status_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    last_transition_at = models.DateTimeField()
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["tranche"],
                condition=Q(status__in=ACTIVE_STATUSES),
                name="one_active_order_per_tranche",
            ),
        ]

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __str__(self):
        return f"{self.id} ({self.status}, attempt {self.attempt})"


class OrderAttempt(models.Model):
    """Append-only history of gateway assignments for an order."""

    order = models.ForeignKey(PaymentOrder, on_delete=models.PROTECT, related_name="attempts")
    attempt = models.PositiveIntegerField()
    gateway_name = models.CharField(max_length=32)
    gateway_order_ref = models.CharField(max_length=128, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["order", "attempt"]
        constraints = [
            models.UniqueConstraint(fields=["order", "attempt"], name="attempt_order_number_uniq"),
        ]


class RefundRequest(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_order = models.ForeignKey(PaymentOrder, on_delete=models.PROTECT, related_name="refunds")
    amount = models.PositiveBigIntegerField()
    status = models.CharField(
        max_length=16, choices=RefundStatus.choices, default=RefundStatus.REQUESTED, db_index=True
    )
    gateway_refund_ref = models.CharField(max_length=128, blank=True, null=True, db_index=True)
    reason = models.CharField(max_length=500, blank=True, default="")
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Refund {self.id} of {self.payment_order_id} ({self.status})"


class WebhookEvent(models.Model):
    """Idempotency ledger: one row per applied (gateway, event id)."""

    gateway_name = models.CharField(max_length=32)
    event_id = models.CharField(max_length=128)
    kind = models.CharField(max_length=16, default="order")
    gateway_ref = models.CharField(max_length=128, blank=True, default="")
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["gateway_name", "event_id"], name="webhook_event_uniq"),
        ]

    def __str__(self):
        return f"{self.gateway_name}:{self.event_id}"


class OrphanWebhookEvent(models.Model):
    REASON_CHOICES = [
        ("unknown_order", "Unknown order"),
        ("unknown_refund", "Unknown refund"),
        ("superseded_attempt", "Superseded attempt"),
    ]

    gateway_name = models.CharField(max_length=32)
    event_id = models.CharField(max_length=128)
    gateway_ref = models.CharField(max_length=128, blank=True, default="")
    reason = models.CharField(max_length=32, choices=REASON_CHOICES)
    payload = models.JSONField(blank=True, null=True)
    received_at = models.DateTimeField(auto_now_add=True)
    resolved = models.BooleanField(default=False)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["gateway_name", "event_id"], name="orphan_event_uniq"),
        ]

    def __str__(self):
        return f"orphan {self.gateway_name}:{self.event_id} ({self.reason})"
