from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from cvpay.api.routes import router
from cvpay.api.admin_routes import router as admin_router
from cvpay.api import engines
from cvpay.api.schemas import ErrorResponse
from cvpay.errors import (
    DeliveryError,
    GatewayUnavailable,
    InitiationError,
    NetworkError,
    PaymentError,
    StorageUnavailable,
    ValidationError,
)
from cvpay.observability.logging import log
from cvpay.settings import settings

ERROR_STATUS = {
    ValidationError: 422,
    GatewayUnavailable: 503,
    StorageUnavailable: 503,
    InitiationError: 502,
    NetworkError: 502,
    DeliveryError: 502,
}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    log(event="boot", gatewayMode=settings.GATEWAY_MODE, apiBaseUrl=settings.API_BASE_URL)
    yield
    # Stops every poll loop; pending records stay in Redis for the next boot
    await engines.registry.aclose()


app = FastAPI(title="CV Payment API", lifespan=lifespan)

origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    body = ErrorResponse(
        errorType=type(exc).__name__,
        message=str(exc),
        field=getattr(exc, "field", None),
        reference=exc.reference,
    )
    log(event="request_failed", path=request.url.path, errorType=body.errorType, statusCode=status_code)
    return JSONResponse(status_code=status_code, content=body.model_dump())
