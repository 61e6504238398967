from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from cvpay.observability.logging import log

WidgetCallback = Callable[..., Awaitable[None]]

# Widget event names as posted by the browser
EVENT_SUCCESS = "success"
EVENT_PENDING = "pending"
EVENT_CLOSE = "close"
WIDGET_EVENTS = (EVENT_SUCCESS, EVENT_PENDING, EVENT_CLOSE)


@dataclass
class RedirectFlow:
    """Hosted gateway page; the pending record must be durable before navigating."""
    transactionId: str
    paymentUrl: str


@dataclass
class DirectFlow:
    """Mobile-money push accepted without a hosted page; confirmation arrives via status polling."""
    transactionId: str


@dataclass
class EmbeddedFlow:
    """
    Callback-driven widget session.

    The caller attaches on_success/on_pending/on_close, then opens the widget.
    At most one terminal callback (success or close) is delivered; pending may
    precede it any number of times. Anything after a terminal event is dropped.
    """
    config: Dict[str, Any]
    reference: str
    opener: Optional[Callable[[Dict[str, Any], "EmbeddedFlow"], None]] = None
    _on_success: Optional[WidgetCallback] = field(default=None, repr=False)
    _on_pending: Optional[WidgetCallback] = field(default=None, repr=False)
    _on_close: Optional[WidgetCallback] = field(default=None, repr=False)
    _terminal_fired: bool = field(default=False, repr=False)

    @property
    def attached(self) -> bool:
        return None not in (self._on_success, self._on_pending, self._on_close)

    @property
    def finished(self) -> bool:
        return self._terminal_fired

    def attach(self, on_success: WidgetCallback, on_pending: WidgetCallback, on_close: WidgetCallback) -> None:
        self._on_success = on_success
        self._on_pending = on_pending
        self._on_close = on_close

    def open(self) -> None:
        if not self.attached:
            raise RuntimeError("EmbeddedFlow.open() called before attach()")
        if self.opener is not None:
            self.opener(self.config, self)

    async def success(self, response: Optional[Dict[str, Any]] = None) -> None:
        if self._claim_terminal(EVENT_SUCCESS):
            await self._on_success(response or {})

    async def pending(self) -> None:
        if self._terminal_fired:
            log(event="widget_event_after_terminal", reference=self.reference, widgetEvent=EVENT_PENDING)
            return
        await self._on_pending()

    async def close(self) -> None:
        if self._claim_terminal(EVENT_CLOSE):
            await self._on_close()

    async def dispatch(self, event: str, response: Optional[Dict[str, Any]] = None) -> None:
        if event == EVENT_SUCCESS:
            await self.success(response)
        elif event == EVENT_PENDING:
            await self.pending()
        elif event == EVENT_CLOSE:
            await self.close()
        else:
            raise ValueError(f"Unknown widget event: {event}")

    def _claim_terminal(self, event: str) -> bool:
        if not self.attached:
            raise RuntimeError("Widget event received before callbacks were attached")
        if self._terminal_fired:
            log(event="widget_event_after_terminal", reference=self.reference, widgetEvent=event)
            return False
        self._terminal_fired = True
        return True


GatewayOutcome = Union[RedirectFlow, DirectFlow, EmbeddedFlow]
