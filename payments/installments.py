import calendar, logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from django.db import transaction
from django.utils import timezone

from .conf import payments_setting
from .models import InstallmentPlan, InstallmentTranche
from .states import OrderStatus

logger = logging.getLogger(__name__)

DEFAULT_AFTER_MISSED = 3
# tranche statuses that can still be settled by a payment
OPEN_TRANCHE_STATUSES = ("pending", "debiting", "overdue")
PAYABLE_TRANCHE_STATUSES = ("pending", "overdue")


def _add_months(dt, months):
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def due_date_for(start, frequency, index):
    if frequency == "weekly":
        return start + timedelta(days=7 * index)
    if frequency == "biweekly":
        return start + timedelta(days=14 * index)
    return _add_months(start, index)


def split_amount(total: int, parts: int) -> list:
    """Equal tranches in minor units; the remainder goes on the last one."""
    base = total // parts
    amounts = [base] * parts
    amounts[-1] += total - base * parts
    return amounts


def calculate_emi(principal: int, annual_rate, installments: int) -> int:
    """Reducing-balance EMI in minor units at ``annual_rate`` percent a year."""
    rate = Decimal(str(annual_rate)) / Decimal(1200)
    if rate == 0:
        return -(-int(principal) // installments)
    factor = (1 + rate) ** installments
    emi = Decimal(int(principal)) * rate * factor / (factor - 1)
    return int(emi.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def installment_amounts(principal: int, annual_rate, installments: int) -> list:
    if Decimal(str(annual_rate)) == 0:
        return split_amount(principal, installments)
    return [calculate_emi(principal, annual_rate, installments)] * installments


@transaction.atomic
def create_plan(*, payer_id, subject_ref, total_amount, number_of_installments, start_date,
                frequency="monthly", currency="INR", auto_debit=False, payment_instrument_ref="",
                preferred_gateway="", payer_email="", down_payment=0, interest_rate=0,
                grace_period_days=3, late_fee=0) -> InstallmentPlan:
    total_amount, number_of_installments = int(total_amount), int(number_of_installments)
    down_payment, late_fee = int(down_payment or 0), int(late_fee or 0)
    interest_rate = Decimal(str(interest_rate or 0))
    if not 2 <= number_of_installments <= 24:
        raise ValueError("number_of_installments must be between 2 and 24")
    if frequency not in dict(InstallmentPlan.FREQUENCY_CHOICES):
        raise ValueError(f"Unknown frequency {frequency!r}")
    if not 0 <= down_payment < total_amount:
        raise ValueError("down_payment must be less than total_amount")
    financed = total_amount - down_payment
    if financed < number_of_installments:
        raise ValueError("total_amount too small for the number of installments")
    if not Decimal(0) <= interest_rate < Decimal(100):
        raise ValueError("interest_rate must be between 0 and 100")
    if late_fee < 0 or int(grace_period_days) < 0:
        raise ValueError("late_fee and grace_period_days cannot be negative")
    if auto_debit and not payment_instrument_ref:
        raise ValueError("auto_debit requires a payment_instrument_ref")

    plan = InstallmentPlan.objects.create(
        payer_id=payer_id,
        payer_email=payer_email or "",
        subject_ref=subject_ref,
        total_amount=total_amount,
        currency=currency,
        number_of_installments=number_of_installments,
        frequency=frequency,
        start_date=start_date,
        down_payment=down_payment,
        interest_rate=interest_rate,
        grace_period_days=int(grace_period_days),
        late_fee=late_fee,
        auto_debit=auto_debit,
        payment_instrument_ref=payment_instrument_ref or "",
        preferred_gateway=preferred_gateway or "",
        next_due_date=start_date,
    )
    tranches = [
        InstallmentTranche(plan=plan, sequence=i + 1, amount=amount, due_date=due_date_for(start_date, frequency, i))
        for i, amount in enumerate(installment_amounts(financed, interest_rate, number_of_installments))
    ]
    if down_payment:
        tranches.insert(0, InstallmentTranche(plan=plan, sequence=0, amount=down_payment, due_date=start_date))
    InstallmentTranche.objects.bulk_create(tranches)
    logger.info("Installment plan %s created for %s: %s tranches", plan.pk, payer_id, len(tranches))
    return plan


def refresh_plan(plan: InstallmentPlan) -> InstallmentPlan:
    tranches = list(plan.tranches.all())
    open_dates = [t.due_date for t in tranches if t.status in OPEN_TRANCHE_STATUSES]
    missed = sum(1 for t in tranches if t.status in ("missed", "overdue"))
    status = plan.status
    if tranches and all(t.status == "paid" for t in tranches):
        status = "completed"
    elif missed >= DEFAULT_AFTER_MISSED:
        status = "defaulted"
    InstallmentPlan.objects.filter(pk=plan.pk).update(
        next_due_date=min(open_dates) if open_dates else None,
        missed_installments=missed,
        status=status,
        updated_at=timezone.now(),
    )
    plan.next_due_date = min(open_dates) if open_dates else None
    plan.missed_installments = missed
    if status != plan.status:
        logger.info("Installment plan %s -> %s", plan.pk, status)
    plan.status = status
    return plan


def tranche_order_id(tranche: InstallmentTranche) -> str:
    # deterministic per try: two sweeps racing on the same tranche collide on the primary key
    return f"INST{tranche.plan_id}-{tranche.sequence}-{tranche.orders.count() + 1}"


def mark_overdue(store, tranches, now=None) -> list:
    """Flag manual-plan tranches still unpaid after the plan's grace period.

    An overdue tranche carries the plan's late fee and counts as missed until it
    is paid. Returns the tranches flagged by this call.
    """
    now = now or timezone.now()
    flagged, plans = [], {}
    for tranche in tranches:
        plan = tranche.plan
        if tranche.due_date + timedelta(days=plan.grace_period_days) >= now:
            continue
        if store.mark_tranche_overdue(tranche, plan.late_fee):
            logger.warning("Tranche %s of plan %s overdue since %s", tranche.sequence, plan.pk, tranche.due_date.date())
            flagged.append(tranche)
            plans[plan.pk] = plan
    for plan in plans.values():
        refresh_plan(plan)
    return flagged


def on_order_settled(store, order, target, now=None):
    """Carry an order's terminal outcome over to the tranche it pays for."""
    if not order.tranche_id:
        return
    tranche = InstallmentTranche.objects.select_related("plan").get(pk=order.tranche_id)
    if target == OrderStatus.SUCCEEDED:
        store.mark_tranche_paid(tranche.pk, now)
    elif target in (OrderStatus.HARD_FAILED, OrderStatus.ABANDONED) and tranche.status == "debiting":
        # an abandoned manual checkout is not a debit failure
        status = store.release_tranche(
            tranche, failed=tranche.plan.auto_debit, max_failures=payments_setting("INSTALLMENT_MAX_DEBIT_FAILURES")
        )
        if status == "missed":
            logger.warning("Tranche %s of plan %s missed after %s debit failures", tranche.sequence, tranche.plan_id, tranche.debit_failures)
    else:
        return
    refresh_plan(tranche.plan)
