from django.contrib import admin
from .models import (
    InstallmentPlan, InstallmentTranche, OrderAttempt, OrphanWebhookEvent, PaymentOrder, RefundRequest, WebhookEvent,
)


class OrderAttemptInline(admin.TabularInline):
    model = OrderAttempt
    extra = 0
    can_delete = False
    readonly_fields = ("attempt", "gateway_name", "gateway_order_ref", "created_at")


@admin.register(PaymentOrder)
class PaymentOrderAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "amount", "currency", "gateway_name", "attempt", "payer_id", "created_at", "last_transition_at")
    search_fields = ("id", "gateway_order_ref", "payer_id", "payer_email", "subject_ref")
    list_filter = ("status", "gateway_name", "currency", "created_at")
    readonly_fields = ("version", "created_at", "last_transition_at", "completed_at", "last_status_payload")
    inlines = [OrderAttemptInline]


@admin.register(RefundRequest)
class RefundRequestAdmin(admin.ModelAdmin):
    list_display = ("id", "payment_order", "amount", "status", "gateway_refund_ref", "created_at")
    search_fields = ("payment_order__id", "gateway_refund_ref")
    list_filter = ("status", "created_at")


class InstallmentTrancheInline(admin.TabularInline):
    model = InstallmentTranche
    extra = 0
    readonly_fields = ("late_fee", "paid_at")


@admin.register(InstallmentPlan)
class InstallmentPlanAdmin(admin.ModelAdmin):
    list_display = ("id", "payer_id", "subject_ref", "total_amount", "down_payment", "interest_rate", "number_of_installments", "frequency", "status", "missed_installments", "next_due_date")
    search_fields = ("payer_id", "payer_email", "subject_ref")
    list_filter = ("status", "frequency", "auto_debit")
    inlines = [InstallmentTrancheInline]


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ("gateway_name", "event_id", "kind", "gateway_ref", "processed_at")
    search_fields = ("event_id", "gateway_ref")
    list_filter = ("gateway_name", "kind")


@admin.register(OrphanWebhookEvent)
class OrphanWebhookEventAdmin(admin.ModelAdmin):
    list_display = ("gateway_name", "event_id", "gateway_ref", "reason", "resolved", "received_at")
    search_fields = ("event_id", "gateway_ref")
    list_filter = ("gateway_name", "reason", "resolved")
    readonly_fields = ("payload",)
