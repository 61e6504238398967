from typing import Dict, Optional

import httpx

from cvpay.core.engine import PaymentLifecycleEngine
from cvpay.delivery.artifact import ArtifactDelivery
from cvpay.gateway.adapter import BrowserWidgetBridge, WidgetBridge, build_gateway
from cvpay.observability.logging import log
from cvpay.remote.client import PaymentServiceClient, build_http_client


class EngineRegistry:
    """One PaymentLifecycleEngine per browser context, sharing a single HTTP client."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, *, mode: Optional[str] = None, bridge: Optional[WidgetBridge] = None):
        self._http = http
        self._owns_http = http is None
        self.mode = mode
        self.bridge = bridge if bridge is not None else BrowserWidgetBridge()
        self._engines: Dict[str, PaymentLifecycleEngine] = {}

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = build_http_client()
        return self._http

    def _build(self, context_id: str) -> PaymentLifecycleEngine:
        client = PaymentServiceClient(self.http)
        return PaymentLifecycleEngine(
            context_id,
            client=client,
            gateway=build_gateway(self.mode, client, self.bridge),
            delivery=ArtifactDelivery(self.http),
        )

    def get(self, context_id: str) -> PaymentLifecycleEngine:
        engine = self._engines.get(context_id)
        if engine is None:
            engine = self._build(context_id)
            self._engines[context_id] = engine
        return engine

    def release(self, context_id: str) -> bool:
        """Forget the engine for a context once nothing is in flight; the next request starts fresh."""
        engine = self._engines.get(context_id)
        if engine is None or engine.is_active:
            return False
        del self._engines[context_id]
        return True

    def __len__(self) -> int:
        return len(self._engines)

    async def reload(self, context_id: str) -> PaymentLifecycleEngine:
        """Page load: tear down the old engine (state stays durable) and resume in a fresh one."""
        old = self._engines.pop(context_id, None)
        if old is not None:
            await old.aclose()
        engine = self.get(context_id)
        await engine.resume()
        log(event="context_loaded", contextId=context_id, state=engine.state)
        return engine

    async def aclose(self) -> None:
        for engine in list(self._engines.values()):
            await engine.aclose()
        self._engines.clear()
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None


registry = EngineRegistry()


def get_registry() -> EngineRegistry:
    return registry
