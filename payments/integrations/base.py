import enum, json, logging
from dataclasses import dataclass, field

import requests
from requests import RequestException

from ..conf import payments_setting
from ..errors import GatewayRejected, GatewayTransient, GatewayUnavailable

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class GatewayStatus(enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    TRANSIENT_FAILURE = "transient_failure"
    HARD_FAILURE = "hard_failure"


class RefundOutcome(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class EventKind(enum.Enum):
    ORDER = "order"
    REFUND = "refund"


@dataclass
class GatewayOrder:
    gateway_order_ref: str
    session_token: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    gateway_refund_ref: str
    status: RefundOutcome = RefundOutcome.PENDING
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayEvent:
    event_id: str
    kind: EventKind
    gateway_order_ref: str = ""
    gateway_refund_ref: str = ""
    status: GatewayStatus | None = None
    refund_status: RefundOutcome | None = None
    reason: str = ""
    payload: dict = field(default_factory=dict)


def classify_failure(hard_codes, *codes) -> GatewayStatus:
    """Map a provider-reported failure onto hard/transient.

    Only an exact match on one of the provider's structured error codes is a
    hard failure; free-text messages are never inspected.
    """
    for code in codes:
        if code and str(code).strip().upper() in hard_codes:
            return GatewayStatus.HARD_FAILURE
    return GatewayStatus.TRANSIENT_FAILURE


def parse_json_body(raw_payload) -> dict:
    if isinstance(raw_payload, (bytes, bytearray)):
        raw_payload = raw_payload.decode("utf-8")
    try:
        data = json.loads(raw_payload)
    except ValueError as e:
        raise GatewayRejected(f"Webhook body is not JSON: {e}")
    if not isinstance(data, dict):
        raise GatewayRejected("Webhook body must be a JSON object")
    return data


class GatewayClient:
    """One external payment provider behind the normalized contract.

    Subclasses set ``name`` and implement the provider calls; ``_request``
    does the HTTP and maps every failure onto the gateway error taxonomy.
    """

    name = ""
    required_credentials = ()

    def __init__(self, config: dict | None = None):
        self.config = dict(config or {})

    def is_configured(self) -> bool:
        if not self.config.get("ENABLED", True):
            return False
        return all(self.config.get(k) for k in self.required_credentials)

    @property
    def base_url(self) -> str:
        return (self.config.get("BASE_URL") or "").rstrip("/")

    def _timeout(self):
        return payments_setting("GATEWAY_TIMEOUT_SECONDS")

    def _auth_kwargs(self) -> dict:
        return {}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.is_configured():
            raise GatewayUnavailable(f"{self.name} is not configured", gateway=self.name)
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", self._timeout())
        for k, v in self._auth_kwargs().items():
            kwargs.setdefault(k, v)
        try:
            resp = requests.request(method, url, **kwargs)
        except requests.Timeout as e:
            raise GatewayTransient(f"{self.name} timed out: {e}", gateway=self.name)
        except RequestException as e:
            raise GatewayTransient(f"{self.name} request failed: {e}", gateway=self.name)

        try: data = resp.json()
        except ValueError: data = {"raw": resp.text}

        if 200 <= resp.status_code < 300:
            return data if isinstance(data, dict) else {"items": data}
        detail = json.dumps(data)[:800]
        logger.warning("%s %s %s -> HTTP %s: %s", self.name, method, path, resp.status_code, detail)
        if resp.status_code in (401, 403):
            raise GatewayUnavailable(f"{self.name} refused credentials (HTTP {resp.status_code})", gateway=self.name)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayTransient(f"{self.name} HTTP {resp.status_code}", gateway=self.name)
        raise GatewayRejected(f"{self.name} rejected request (HTTP {resp.status_code}): {detail}", gateway=self.name)

    # ---------- contract ----------
    def create_order(self, amount: int, currency: str, reference: str, **customer) -> GatewayOrder:
        raise NotImplementedError

    def fetch_status(self, gateway_order_ref: str) -> GatewayStatus:
        raise NotImplementedError

    def verify_signature(self, raw_payload, signature_header, headers=None) -> bool:
        raise NotImplementedError

    def parse_webhook(self, raw_payload, headers=None) -> GatewayEvent:
        raise NotImplementedError

    def submit_refund(self, gateway_order_ref: str, amount: int, reference: str) -> RefundResult:
        raise NotImplementedError

    def fetch_refund_status(self, gateway_order_ref: str, gateway_refund_ref: str) -> RefundOutcome:
        raise NotImplementedError


def header_value(headers, name: str) -> str:
    """Case-insensitive header lookup over a plain dict or Django's request.headers."""
    if not headers:
        return ""
    wanted = name.lower()
    for k, v in headers.items():
        if k.lower() == wanted:
            return v or ""
    return ""
