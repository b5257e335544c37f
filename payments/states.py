from django.db import models


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    TRANSIENT_FAILED = "transient_failed", "Transient failure"
    HARD_FAILED = "hard_failed", "Hard failure"
    REFUND_REQUESTED = "refund_requested", "Refund requested"
    REFUNDED = "refunded", "Refunded"
    ABANDONED = "abandoned", "Abandoned"


class RefundStatus(models.TextChoices):
    REQUESTED = "requested", "Requested"
    SUBMITTED = "submitted", "Submitted"
    CONFIRMED = "confirmed", "Confirmed"
    FAILED = "failed", "Failed"


# source -> allowed targets; anything else is an out-of-order delivery
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {
        OrderStatus.SUCCEEDED,
        OrderStatus.TRANSIENT_FAILED,
        OrderStatus.HARD_FAILED,
        OrderStatus.ABANDONED,
    },
    OrderStatus.TRANSIENT_FAILED: {
        OrderStatus.PENDING,
        OrderStatus.HARD_FAILED,
        OrderStatus.SUCCEEDED,
    },
    OrderStatus.SUCCEEDED: {OrderStatus.REFUND_REQUESTED},
    OrderStatus.REFUND_REQUESTED: {OrderStatus.REFUNDED, OrderStatus.SUCCEEDED},
    OrderStatus.HARD_FAILED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.ABANDONED: set(),
}

# an order in one of these still owns a live gateway attempt
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.TRANSIENT_FAILED)

REFUND_TRANSITIONS = {
    RefundStatus.REQUESTED: {RefundStatus.SUBMITTED, RefundStatus.FAILED},
    RefundStatus.SUBMITTED: {RefundStatus.CONFIRMED, RefundStatus.FAILED},
    RefundStatus.CONFIRMED: set(),
    RefundStatus.FAILED: set(),
}


def can_transition(source, target) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def can_transition_refund(source, target) -> bool:
    return target in REFUND_TRANSITIONS.get(source, set())
