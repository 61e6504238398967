from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol

from cvpay.errors import GatewayUnavailable, ValidationError
from cvpay.gateway.outcomes import DirectFlow, EmbeddedFlow, GatewayOutcome, RedirectFlow
from cvpay.observability.logging import log
from cvpay.remote.client import PaymentServiceClient
from cvpay.settings import settings
from cvpay.store.models import PaymentSession, thaw
from cvpay.core.validation import normalize_phone, personal_info

MODE_REDIRECT = "redirect"
MODE_DIRECT = "direct"
MODE_EMBEDDED = "embedded"


class PaymentGateway(ABC):
    name: str = "base"

    @abstractmethod
    async def initiate(self, session: PaymentSession) -> GatewayOutcome:
        """Start a charge for the session's frozen payload."""
        raise NotImplementedError


class RedirectGateway(PaymentGateway):
    """Server-initiated payment: the service either pushes a mobile-money prompt or hands back a hosted page."""

    name = MODE_REDIRECT

    def __init__(self, client: PaymentServiceClient, *, amount: Optional[int] = None, payment_method: Optional[str] = None):
        self._client = client
        self._amount = amount
        self._payment_method = payment_method

    async def initiate(self, session: PaymentSession) -> GatewayOutcome:
        data = await self._client.initiate_payment(
            reference=session.reference,
            phone_number=session.phoneNumber,
            cv_data=thaw(session.payload) if session.payload is not None else {},
            amount=self._amount,
            payment_method=self._payment_method,
        )
        transaction_id = str(data["transactionId"])
        log(
            event="gateway_initiated",
            reference=session.reference,
            transactionId=transaction_id,
            useGateway=bool(data.get("useGateway")),
        )
        if data.get("useGateway"):
            return RedirectFlow(transactionId=transaction_id, paymentUrl=str(data["paymentUrl"]))
        return DirectFlow(transactionId=transaction_id)


class WidgetBridge(Protocol):
    """Whatever actually renders the payment widget (the browser, in production)."""

    available: bool

    def open(self, config: Dict[str, Any], flow: EmbeddedFlow) -> None:
        ...


class BrowserWidgetBridge:
    """
    Hands the widget config to the browser and keeps the open flow so widget
    callbacks posted back over HTTP reach the right session.
    """

    def __init__(self, public_key: Optional[str] = None):
        self.public_key = settings.GATEWAY_PUBLIC_KEY if public_key is None else public_key
        self.opened: List[Dict[str, Any]] = []

    @property
    def available(self) -> bool:
        return bool(self.public_key)

    def open(self, config: Dict[str, Any], flow: EmbeddedFlow) -> None:
        self.opened.append(config)
        log(event="widget_opened", reference=flow.reference, currency=config.get("currency"), amount=config.get("amount"))


class EmbeddedGateway(PaymentGateway):
    name = MODE_EMBEDDED

    def __init__(
        self,
        bridge: Optional[WidgetBridge],
        *,
        public_key: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        channels: Optional[List[str]] = None,
    ):
        self._bridge = bridge
        self._public_key = public_key
        self._amount = settings.PAYMENT_AMOUNT if amount is None else amount
        self._currency = currency or settings.PAYMENT_CURRENCY
        self._channels = channels or [c.strip() for c in settings.PAYMENT_CHANNELS.split(",") if c.strip()]

    def widget_config(self, session: PaymentSession) -> Dict[str, Any]:
        if session.payload is None:
            raise ValidationError("payload", "CV data is missing.")
        info = personal_info(session.payload)
        names = str(info.get("fullName") or "").split()
        key = self._public_key or getattr(self._bridge, "public_key", "") or settings.GATEWAY_PUBLIC_KEY
        return {
            "key": key,
            "reference": session.reference,
            "email": str(info.get("email") or ""),
            "amount": self._amount,
            "currency": self._currency,
            "channels": list(self._channels),
            "customer": {
                "firstName": names[0] if names else "Customer",
                "lastName": " ".join(names[1:]),
                "phone": "".join(ch for ch in normalize_phone(session.phoneNumber) if ch.isdigit()),
            },
        }

    async def initiate(self, session: PaymentSession) -> GatewayOutcome:
        if self._bridge is None or not getattr(self._bridge, "available", False):
            raise GatewayUnavailable(reference=session.reference)
        return EmbeddedFlow(config=self.widget_config(session), reference=session.reference, opener=self._bridge.open)


def build_gateway(
    mode: Optional[str],
    client: PaymentServiceClient,
    bridge: Optional[WidgetBridge] = None,
) -> PaymentGateway:
    mode = (mode or settings.GATEWAY_MODE or MODE_REDIRECT).lower()
    if mode == MODE_EMBEDDED:
        return EmbeddedGateway(bridge)
    if mode == MODE_REDIRECT:
        return RedirectGateway(client)
    raise ValueError(f"Unknown GATEWAY_MODE: {mode}")
