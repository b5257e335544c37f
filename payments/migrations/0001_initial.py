import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="InstallmentPlan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("payer_id", models.CharField(db_index=True, max_length=64)),
                ("payer_email", models.EmailField(blank=True, default="", max_length=254)),
                ("subject_ref", models.CharField(max_length=128)),
                ("total_amount", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="INR", max_length=8)),
                ("number_of_installments", models.PositiveSmallIntegerField()),
                ("frequency", models.CharField(choices=[("weekly", "Weekly"), ("biweekly", "Biweekly"), ("monthly", "Monthly")], default="monthly", max_length=16)),
                ("start_date", models.DateTimeField()),
                ("auto_debit", models.BooleanField(default=False)),
                ("payment_instrument_ref", models.CharField(blank=True, default="", max_length=128)),
                ("preferred_gateway", models.CharField(blank=True, default="", max_length=32)),
                ("status", models.CharField(choices=[("active", "Active"), ("completed", "Completed"), ("defaulted", "Defaulted"), ("cancelled", "Cancelled")], db_index=True, default="active", max_length=16)),
                ("next_due_date", models.DateTimeField(blank=True, null=True)),
                ("missed_installments", models.PositiveSmallIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.AddIndex(
            model_name="installmentplan",
            index=models.Index(fields=["auto_debit", "next_due_date"], name="plan_autodebit_due_idx"),
        ),
        migrations.CreateModel(
            name="InstallmentTranche",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("sequence", models.PositiveSmallIntegerField()),
                ("amount", models.PositiveBigIntegerField()),
                ("due_date", models.DateTimeField(db_index=True)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("debiting", "Debiting"), ("paid", "Paid"), ("missed", "Missed")], db_index=True, default="pending", max_length=16)),
                ("debit_failures", models.PositiveSmallIntegerField(default=0)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="tranches", to="payments.installmentplan")),
            ],
            options={
                "ordering": ["plan", "sequence"],
            },
        ),
        migrations.AddConstraint(
            model_name="installmenttranche",
            constraint=models.UniqueConstraint(fields=("plan", "sequence"), name="tranche_plan_sequence_uniq"),
        ),
        migrations.CreateModel(
            name="PaymentOrder",
            fields=[
                ("id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("amount", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="INR", max_length=8)),
                ("payer_id", models.CharField(db_index=True, max_length=64)),
                ("payer_email", models.EmailField(blank=True, default="", max_length=254)),
                ("subject_ref", models.CharField(max_length=128)),
                ("gateway_name", models.CharField(blank=True, max_length=32, null=True)),
                ("gateway_order_ref", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("session_token", models.TextField(blank=True, default="")),
                ("status", models.CharField(choices=[("pending", "Pending"), ("succeeded", "Succeeded"), ("transient_failed", "Transient failure"), ("hard_failed", "Hard failure"), ("refund_requested", "Refund requested"), ("refunded", "Refunded"), ("abandoned", "Abandoned")], db_index=True, default="pending", max_length=24)),
                ("attempt", models.PositiveIntegerField(default=1)),
                ("version", models.PositiveIntegerField(default=0)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("last_status_payload", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_transition_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("tranche", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="orders", to="payments.installmenttranche")),
            ],
        ),
        migrations.AddConstraint(
            model_name="paymentorder",
            constraint=models.UniqueConstraint(condition=models.Q(("status__in", ("pending", "transient_failed"))), fields=("tranche",), name="one_active_order_per_tranche"),
        ),
        migrations.CreateModel(
            name="OrderAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempt", models.PositiveIntegerField()),
                ("gateway_name", models.CharField(max_length=32)),
                ("gateway_order_ref", models.CharField(db_index=True, max_length=128)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="attempts", to="payments.paymentorder")),
            ],
            options={
                "ordering": ["order", "attempt"],
            },
        ),
        migrations.AddConstraint(
            model_name="orderattempt",
            constraint=models.UniqueConstraint(fields=("order", "attempt"), name="attempt_order_number_uniq"),
        ),
        migrations.CreateModel(
            name="RefundRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.PositiveBigIntegerField()),
                ("status", models.CharField(choices=[("requested", "Requested"), ("submitted", "Submitted"), ("confirmed", "Confirmed"), ("failed", "Failed")], db_index=True, default="requested", max_length=16)),
                ("gateway_refund_ref", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("reason", models.CharField(blank=True, default="", max_length=500)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payment_order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="refunds", to="payments.paymentorder")),
            ],
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway_name", models.CharField(max_length=32)),
                ("event_id", models.CharField(max_length=128)),
                ("kind", models.CharField(default="order", max_length=16)),
                ("gateway_ref", models.CharField(blank=True, default="", max_length=128)),
                ("processed_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.AddConstraint(
            model_name="webhookevent",
            constraint=models.UniqueConstraint(fields=("gateway_name", "event_id"), name="webhook_event_uniq"),
        ),
        migrations.CreateModel(
            name="OrphanWebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway_name", models.CharField(max_length=32)),
                ("event_id", models.CharField(max_length=128)),
                ("gateway_ref", models.CharField(blank=True, default="", max_length=128)),
                ("reason", models.CharField(choices=[("unknown_order", "Unknown order"), ("unknown_refund", "Unknown refund"), ("superseded_attempt", "Superseded attempt")], max_length=32)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("received_at", models.DateTimeField(auto_now_add=True)),
                ("resolved", models.BooleanField(default=False)),
            ],
        ),
        migrations.AddConstraint(
            model_name="orphanwebhookevent",
            constraint=models.UniqueConstraint(fields=("gateway_name", "event_id"), name="orphan_event_uniq"),
        ),
    ]
