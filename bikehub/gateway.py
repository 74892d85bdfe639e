import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional, Protocol

import requests

logger = logging.getLogger(__name__)


class GatewayStatus(str, Enum):
    OPEN = "open"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: str) -> "GatewayStatus":
        raw = (raw or "").strip().lower()
        aliases = {"complete": cls.PAID, "completed": cls.PAID, "succeeded": cls.PAID, "canceled": cls.FAILED}
        if raw in aliases:
            return aliases[raw]
        return cls(raw)


@dataclass
class CheckoutSessionInfo:
    session_id: str
    url: str


@dataclass
class SessionStatus:
    status: GatewayStatus
    transaction_id: Optional[str] = None


class GatewayError(Exception):
    pass


class PaymentGateway(Protocol):
    def create_checkout_session(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> CheckoutSessionInfo:
        ...

    def get_session_status(self, session_id: str) -> SessionStatus:
        ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeCheckoutGateway:
    """Hosted checkout sessions over the Stripe REST API."""

    def __init__(self, api_key: str, base_url: str, success_url: str, cancel_url: str, timeout: int = 15):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def create_checkout_session(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> CheckoutSessionInfo:
        form = {
            "mode": "payment",
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency.lower(),
            "line_items[0][price_data][unit_amount]": str(to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": metadata.get("description", "Bike rental"),
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        try:
            r = requests.post(
                f"{self.base_url}/v1/checkout/sessions",
                headers=self._headers(),
                data=form,
                timeout=self.timeout,
            )
            r.raise_for_status()
            body = r.json()
        except requests.RequestException as e:
            logger.exception("Checkout session creation failed")
            raise GatewayError("checkout session creation failed") from e
        return CheckoutSessionInfo(session_id=body["id"], url=body["url"])

    def get_session_status(self, session_id: str) -> SessionStatus:
        try:
            r = requests.get(
                f"{self.base_url}/v1/checkout/sessions/{session_id}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            r.raise_for_status()
            body = r.json()
        except requests.RequestException as e:
            logger.exception("Checkout session lookup failed for %s", session_id)
            raise GatewayError("checkout session lookup failed") from e

        if body.get("payment_status") == "paid":
            return SessionStatus(GatewayStatus.PAID, body.get("payment_intent"))
        if body.get("status") == "expired":
            return SessionStatus(GatewayStatus.EXPIRED)
        return SessionStatus(GatewayStatus.OPEN)
