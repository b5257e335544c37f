import logging

from django.utils.module_loading import import_string

from ..conf import payments_setting
from ..errors import GatewayUnavailable
from .cashfree import CashfreeClient
from .hdfc import HdfcClient
from .razorpay import RazorpayClient

logger = logging.getLogger(__name__)

GATEWAY_CLASSES = {
    CashfreeClient.name: CashfreeClient,
    RazorpayClient.name: RazorpayClient,
    HdfcClient.name: HdfcClient,
}


class GatewayRegistry:
    """Ordered set of gateway clients. Built per call; holds no process-wide state."""

    def __init__(self, clients, priority=None):
        self._clients = {c.name: c for c in clients}
        self.priority = list(priority) if priority is not None else [c.name for c in clients]

    @classmethod
    def from_settings(cls):
        configs = payments_setting("GATEWAYS")
        clients = []
        for name, config in configs.items():
            klass = import_string(config["CLASS"]) if config.get("CLASS") else GATEWAY_CLASSES.get(name)
            if klass is None:
                logger.warning("No client class for configured gateway %r", name)
                continue
            client = klass(config)
            client.name = name
            clients.append(client)
        return cls(clients, priority=payments_setting("GATEWAY_PRIORITY"))

    def is_usable(self, name) -> bool:
        client = self._clients.get(name)
        return client is not None and client.is_configured()

    def list_usable(self) -> list:
        return [name for name in self.priority if self.is_usable(name)]

    def get(self, name):
        client = self._clients.get(name)
        if client is None:
            raise GatewayUnavailable(f"Unknown gateway {name!r}", gateway=name)
        return client

    def candidates(self, preferred=None) -> list:
        """Preferred gateway first (if usable), then the rest in priority order."""
        usable = self.list_usable()
        if preferred and preferred in usable:
            return [preferred] + [n for n in usable if n != preferred]
        return usable

    def status(self) -> dict:
        return {
            name: {"configured": self.is_usable(name), "priority": i}
            for i, name in enumerate(self.priority)
        }
