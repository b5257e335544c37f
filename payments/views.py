import json, logging

from django.http import HttpResponseBadRequest, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .errors import (
    Conflict, GatewayError, GatewayRejected, GatewayUnavailable, InvalidSignature, NoGatewayAvailable,
    RefundNotAllowed, TrancheNotPayable,
)
from .installments import create_plan, mark_overdue
from .integrations import GatewayRegistry
from .models import InstallmentPlan, InstallmentTranche
from .refunds import RefundCoordinator
from .services import PaymentOrchestrator
from .store import OrderStore
from .webhook import Outcome, WebhookReconciler

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADERS = {
    "cashfree": "x-webhook-signature",
    "razorpay": "x-razorpay-signature",
    "hdfc": "authorization",
}


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _order_json(order) -> dict:
    return {
        "id": order.pk,
        "amount": order.amount,
        "currency": order.currency,
        "status": order.status,
        "attempt": order.attempt,
        "gateway": order.gateway_name,
        "gateway_order_ref": order.gateway_order_ref,
        "session_token": order.session_token,
        "failure_reason": order.failure_reason,
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
    }


def _refund_json(refund) -> dict:
    return {
        "id": str(refund.pk),
        "order_id": refund.payment_order_id,
        "amount": refund.amount,
        "status": refund.status,
        "gateway_refund_ref": refund.gateway_refund_ref,
        "failure_reason": refund.failure_reason,
    }


@csrf_exempt
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if not body:
        return HttpResponseBadRequest("Invalid JSON body")
    required = ["order_id", "amount", "payer_id", "subject_ref"]
    missing = [k for k in required if not body.get(k)]
    if missing:
        return HttpResponseBadRequest(f"Missing fields: {', '.join(missing)}")

    try:
        order = PaymentOrchestrator().create_order(
            str(body["order_id"]),
            int(body["amount"]),
            body.get("currency", "INR"),
            str(body["payer_id"]),
            str(body["subject_ref"]),
            preferred_gateway=body.get("preferred_gateway") or None,
            payer_email=body.get("payer_email", ""),
        )
    except NoGatewayAvailable as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=503)
    except (GatewayRejected, ValueError, TypeError) as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    except Conflict as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=409)
    return JsonResponse({"ok": True, "order": _order_json(order)}, status=201)


@require_GET
def order_status_view(request, order_id: str):
    store = OrderStore()
    order = store.get(order_id)
    if order is None:
        return JsonResponse({"ok": False, "error": "Unknown order"}, status=404)

    if request.GET.get("refresh") == "1" and order.is_active and order.gateway_name:
        registry = GatewayRegistry.from_settings()
        try:
            status = registry.get(order.gateway_name).fetch_status(order.gateway_order_ref)
            order = WebhookReconciler(registry, store).apply_poll(order, status).order
        except (GatewayError, Conflict) as e:
            # the stored state is still an answer
            logger.warning("Status refresh for %s failed: %s", order_id, e)
    return JsonResponse({"ok": True, "order": _order_json(order)})


@csrf_exempt
@require_POST
def gateway_webhook_view(request, gateway_name: str):
    header = WEBHOOK_SIGNATURE_HEADERS.get(gateway_name, "x-webhook-signature")
    try:
        result = WebhookReconciler().handle(
            gateway_name, request.body, request.headers.get(header, ""), dict(request.headers)
        )
    except GatewayUnavailable:
        return JsonResponse({"ok": False, "error": "Unknown gateway"}, status=404)
    except InvalidSignature:
        return JsonResponse({"ok": False, "error": "Invalid signature"}, status=401)
    except GatewayRejected as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    except Conflict as e:
        # provider redelivers on non-2xx
        return JsonResponse({"ok": False, "error": str(e)}, status=503)

    if result.outcome == Outcome.UNKNOWN_ORDER and result.redeliver:
        # the order row may not be committed yet; a non-2xx makes the provider resend
        return JsonResponse({"ok": False, "outcome": result.outcome.value, "event_id": result.event_id}, status=409)
    status = 202 if result.outcome == Outcome.UNKNOWN_ORDER else 200
    return JsonResponse({"ok": True, "outcome": result.outcome.value, "event_id": result.event_id}, status=status)


@csrf_exempt
@require_POST
def refund_view(request, order_id: str):
    body = _json_body(request)
    if not body or not body.get("amount"):
        return HttpResponseBadRequest("amount is required")
    try:
        refund = RefundCoordinator().request_refund(order_id, int(body["amount"]), body.get("reason", ""))
    except RefundNotAllowed as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    except (ValueError, TypeError):
        return HttpResponseBadRequest("amount must be an integer")
    except Conflict as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=409)
    return JsonResponse({"ok": True, "refund": _refund_json(refund)}, status=201)


def _plan_json(plan) -> dict:
    return {
        "id": plan.pk,
        "payer_id": plan.payer_id,
        "subject_ref": plan.subject_ref,
        "total_amount": plan.total_amount,
        "down_payment": plan.down_payment,
        "interest_rate": str(plan.interest_rate),
        "currency": plan.currency,
        "frequency": plan.frequency,
        "auto_debit": plan.auto_debit,
        "status": plan.status,
        "missed_installments": plan.missed_installments,
        "next_due_date": plan.next_due_date.isoformat() if plan.next_due_date else None,
        "tranches": [
            {
                "sequence": t.sequence,
                "amount": t.amount,
                "late_fee": t.late_fee,
                "amount_due": t.amount_due,
                "due_date": t.due_date.isoformat(),
                "status": t.status,
            }
            for t in plan.tranches.all()
        ],
    }


@csrf_exempt
@require_POST
def create_plan_view(request):
    body = _json_body(request)
    if not body:
        return HttpResponseBadRequest("Invalid JSON body")
    required = ["payer_id", "subject_ref", "total_amount", "number_of_installments"]
    missing = [k for k in required if not body.get(k)]
    if missing:
        return HttpResponseBadRequest(f"Missing fields: {', '.join(missing)}")

    start_date = timezone.now()
    if body.get("start_date"):
        start_date = parse_datetime(str(body["start_date"]))
        if start_date is None:
            return HttpResponseBadRequest("start_date must be an ISO 8601 datetime")
        if timezone.is_naive(start_date):
            start_date = timezone.make_aware(start_date)
    try:
        plan = create_plan(
            payer_id=str(body["payer_id"]),
            subject_ref=str(body["subject_ref"]),
            total_amount=int(body["total_amount"]),
            number_of_installments=int(body["number_of_installments"]),
            start_date=start_date,
            frequency=body.get("frequency", "monthly"),
            currency=body.get("currency", "INR"),
            auto_debit=bool(body.get("auto_debit", False)),
            payment_instrument_ref=body.get("payment_instrument_ref", ""),
            preferred_gateway=body.get("preferred_gateway", ""),
            payer_email=body.get("payer_email", ""),
            down_payment=int(body.get("down_payment") or 0),
            interest_rate=body.get("interest_rate") or 0,
            grace_period_days=int(body.get("grace_period_days", 3)),
            late_fee=int(body.get("late_fee") or 0),
        )
    except (ValueError, TypeError, ArithmeticError) as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    return JsonResponse({"ok": True, "plan": _plan_json(plan)}, status=201)


@require_GET
def plan_detail_view(request, plan_id: int):
    plan = InstallmentPlan.objects.filter(pk=plan_id).first()
    if plan is None:
        return JsonResponse({"ok": False, "error": "Unknown installment plan"}, status=404)
    store = OrderStore()
    if mark_overdue(store, store.overdue_candidates(timezone.now(), plan=plan)):
        plan.refresh_from_db()
    return JsonResponse({"ok": True, "plan": _plan_json(plan)})


@csrf_exempt
@require_POST
def pay_tranche_view(request, plan_id: int, sequence: int):
    tranche = InstallmentTranche.objects.filter(plan_id=plan_id, sequence=sequence).select_related("plan").first()
    if tranche is None:
        return JsonResponse({"ok": False, "error": "Unknown installment"}, status=404)
    body = _json_body(request) or {}
    try:
        order = PaymentOrchestrator().pay_tranche(tranche, preferred_gateway=body.get("preferred_gateway") or None)
    except TrancheNotPayable as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=409)
    except NoGatewayAvailable as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=503)
    except GatewayRejected as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=400)
    except Conflict as e:
        return JsonResponse({"ok": False, "error": str(e)}, status=409)
    return JsonResponse({"ok": True, "order": _order_json(order)}, status=201)
