"""
Remote Payment Service Client
-----------------------------
Async wrapper over the payment backend's HTTP surface:

    POST /api/initiate-payment
    GET  /api/payment-status/{transactionId}
    GET  /api/payment/verify/{reference}
    POST /api/payment/generate-cv

Status and verify calls are read-only on the server side and safe to repeat.
Transport failures surface as NetworkError so the poll loop can retry them on
its next tick; rejected initiations surface as InitiationError.
"""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx

from cvpay.errors import InitiationError, NetworkError
from cvpay.observability.logging import log
from cvpay.settings import settings
from cvpay.store.models import StatusResult, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING


def build_http_client(base_url: Optional[str] = None, timeout: Optional[float] = None, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url or settings.API_BASE_URL,
        timeout=timeout or settings.HTTP_TIMEOUT_SEC,
        **kwargs,
    )


def _server_message(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or fallback)
    return fallback


class PaymentServiceClient:
    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def _get_json(self, path: str) -> Dict[str, Any]:
        start = time.time()
        try:
            resp = await self._http.get(path)
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {str(e)[:200]}") from e

        elapsed_ms = int((time.time() - start) * 1000)
        if not (200 <= resp.status_code < 300):
            log(event="payment_query_non2xx", path=path, statusCode=resp.status_code, elapsedMs=elapsed_ms)
            raise NetworkError(f"non_2xx:{resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise NetworkError("invalid_json") from e
        if not isinstance(data, dict):
            raise NetworkError("invalid_json")
        return data

    async def initiate_payment(
        self,
        *,
        reference: str,
        phone_number: str,
        cv_data: Dict[str, Any],
        amount: Optional[int] = None,
        payment_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Returns the decoded `{transactionId, useGateway, paymentUrl?}` body.
        The reference doubles as the idempotency key so a retried initiation
        cannot open a second charge.
        """
        body = {
            "phoneNumber": phone_number,
            "paymentMethod": payment_method or settings.PAYMENT_METHOD,
            "amount": int(amount if amount is not None else settings.PAYMENT_AMOUNT),
            "cvData": cv_data,
        }
        headers = {"Idempotency-Key": reference}
        try:
            resp = await self._http.post("/api/initiate-payment", json=body, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {str(e)[:200]}", reference=reference) from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not (200 <= resp.status_code < 300):
            raise InitiationError(
                _server_message(data, f"Payment initiation failed ({resp.status_code})"),
                status_code=resp.status_code,
                reference=reference,
            )
        if not isinstance(data, dict):
            raise InitiationError("Malformed response from payment service", status_code=resp.status_code, reference=reference)
        if data.get("error") or not data.get("transactionId"):
            raise InitiationError(
                _server_message(data, "Payment service did not return a transaction id"),
                status_code=resp.status_code,
                reference=reference,
            )
        if data.get("useGateway") and not data.get("paymentUrl"):
            raise InitiationError("Gateway payment requested without a payment URL", status_code=resp.status_code, reference=reference)
        return data

    async def payment_status(self, transaction_id: str) -> StatusResult:
        data = await self._get_json(f"/api/payment-status/{transaction_id}")
        status = str(data.get("status") or "").lower()
        if status == STATUS_COMPLETED:
            return StatusResult(status=STATUS_COMPLETED, artifactUrl=data.get("pdfUrl"))
        if status == STATUS_FAILED:
            return StatusResult(status=STATUS_FAILED)
        return StatusResult(status=STATUS_PENDING)

    async def verify_payment(self, reference: str) -> StatusResult:
        data = await self._get_json(f"/api/payment/verify/{reference}")
        status = str(data.get("status") or "").lower()
        if data.get("success") and status == "successful":
            return StatusResult(status=STATUS_COMPLETED, artifactUrl=data.get("pdfUrl"))
        if status == STATUS_FAILED:
            return StatusResult(status=STATUS_FAILED)
        return StatusResult(status=STATUS_PENDING)

    async def generate_cv(self, reference: str, cv_data: Dict[str, Any]) -> Optional[str]:
        """Ask the service to render the paid CV; returns the artifact URL or None if not ready."""
        try:
            resp = await self._http.post("/api/payment/generate-cv", json={"reference": reference, "cvData": cv_data})
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {str(e)[:200]}", reference=reference) from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if 200 <= resp.status_code < 300 and isinstance(data, dict) and data.get("success") and data.get("pdfUrl"):
            return str(data["pdfUrl"])
        log(
            event="generate_cv_unsuccessful",
            reference=reference,
            statusCode=resp.status_code,
            message=_server_message(data, "")[:300],
        )
        return None
