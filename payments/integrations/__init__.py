from .base import (
    EventKind, GatewayClient, GatewayEvent, GatewayOrder, GatewayStatus, RefundOutcome, RefundResult,
)
from .registry import GatewayRegistry

__all__ = [
    "EventKind", "GatewayClient", "GatewayEvent", "GatewayOrder", "GatewayRegistry",
    "GatewayStatus", "RefundOutcome", "RefundResult",
]
