from fastapi import APIRouter, Depends

from cvpay.api.auth import require_api_key
from cvpay.api.engines import EngineRegistry, get_registry
from cvpay.api.schemas import CheckoutRequest, CheckoutSnapshot, WidgetEvent, WidgetEventRequest
from cvpay.core.engine import PaymentLifecycleEngine

router = APIRouter(prefix="/api/checkout", dependencies=[Depends(require_api_key)])


def checkout_engine(context_id: str, registry: EngineRegistry = Depends(get_registry)):
    """
    Engine for the request's context. Once the request is done and nothing is
    in flight the registry lets go of it, so finished or never-used contexts
    do not accumulate.
    """
    engine = registry.get(context_id)
    try:
        yield engine
    finally:
        registry.release(context_id)


def _snapshot(engine: PaymentLifecycleEngine) -> CheckoutSnapshot:
    s = engine.session
    out = CheckoutSnapshot(
        contextId=engine.context_id,
        state=engine.state,
        active=engine.is_active,
        notices=engine.drain_notices(),
    )
    if s is not None:
        out.reference = s.reference
        out.transactionId = s.transactionId
        out.sessionState = s.state
        out.paymentUrl = s.paymentUrl
        out.artifactUrl = s.artifactUrl
        out.widget = s.extras.get("widget") if engine.is_active else None
        out.deliveryStatus = s.deliveryStatus
        out.error = str(s.error) if s.error is not None else None
    return out


@router.post("/{context_id}/download", response_model=CheckoutSnapshot)
async def start_download(body: CheckoutRequest, engine: PaymentLifecycleEngine = Depends(checkout_engine)):
    """Start (or restart) a payment for the submitted CV snapshot."""
    await engine.initiate(body.cvData)
    return _snapshot(engine)


@router.post("/{context_id}/load", response_model=CheckoutSnapshot)
async def load_context(context_id: str, registry: EngineRegistry = Depends(get_registry)):
    """Called on every page load; resumes a payment left pending by a redirect or reload."""
    engine = await registry.reload(context_id)
    try:
        return _snapshot(engine)
    finally:
        registry.release(context_id)


@router.get("/{context_id}", response_model=CheckoutSnapshot)
async def get_checkout(engine: PaymentLifecycleEngine = Depends(checkout_engine)):
    return _snapshot(engine)


@router.post("/{context_id}/cancel", response_model=CheckoutSnapshot)
async def cancel_checkout(engine: PaymentLifecycleEngine = Depends(checkout_engine)):
    engine.cancel(reason="user")
    return _snapshot(engine)


@router.post("/{context_id}/dismiss", response_model=CheckoutSnapshot)
async def dismiss_checkout(engine: PaymentLifecycleEngine = Depends(checkout_engine)):
    engine.dismiss()
    return _snapshot(engine)


@router.post("/{context_id}/widget/{event}", response_model=CheckoutSnapshot)
async def widget_callback(
    event: WidgetEvent,
    body: WidgetEventRequest = WidgetEventRequest(),
    engine: PaymentLifecycleEngine = Depends(checkout_engine),
):
    """Embedded widget callbacks (onSuccess / onConfirmationPending / onClose) relayed by the browser."""
    await engine.widget_event(event, body.response)
    return _snapshot(engine)
