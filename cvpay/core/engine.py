"""
Payment Lifecycle Engine
------------------------
One engine per browser context. It owns the single active PaymentSession and
drives it from initiation to a terminal state:

    Idle -> Initiating -> AwaitingGatewayRedirect | AwaitingConfirmation
         -> Confirmed | Failed | TimedOut | Cancelled

Every transition runs on the event loop between awaits, so two transitions are
never evaluated at once. Each session carries a generation number; callbacks
and HTTP responses that belong to an older generation (cancelled, superseded)
are discarded on arrival.

The durable pending record (cvpay.store.pending_repo) is written before control
leaves the application and cleared on every terminal transition; a fresh engine
for the same context calls resume() to pick the payment back up.
"""
from __future__ import annotations

import asyncio
import secrets
import string
from collections import deque
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional

from redis.exceptions import RedisError

from cvpay.core import state_machine as sm
from cvpay.core.poller import StatusPoller
from cvpay.core.validation import normalize_phone, personal_info, validate_payload
from cvpay.delivery.artifact import ArtifactDelivery, suggested_filename
from cvpay.errors import DeliveryError, NetworkError, PaymentError, PaymentFailed, PaymentTimedOut, StorageUnavailable
from cvpay.gateway.adapter import MODE_DIRECT, MODE_EMBEDDED, MODE_REDIRECT, PaymentGateway
from cvpay.gateway.outcomes import DirectFlow, EmbeddedFlow, RedirectFlow
from cvpay.observability.logging import log
import cvpay.observability.metrics as metrics
from cvpay.remote.client import PaymentServiceClient
from cvpay.settings import settings
from cvpay.store.models import (
    PaymentSession,
    StatusResult,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    freeze,
    thaw,
)
from cvpay.store.pending_repo import clear_pending, load_pending, save_pending
from cvpay.utils.time import deadline_ms, now_ms

Notify = Callable[[str, str], None]

_REFERENCE_ALPHABET = string.digits + string.ascii_lowercase

EMBEDDED_TIMEOUT_NOTICE = "Payment confirmation taking longer than expected. Please contact support if charged."


def new_reference(prefix: Optional[str] = None) -> str:
    """CV-<epoch ms>-<6 random base36 chars>; unique per initiation."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix or settings.REFERENCE_PREFIX}-{now_ms()}-{suffix}"


def _log_navigation(url: str) -> None:
    log(event="navigate_to_gateway", paymentUrl=url)


class PaymentLifecycleEngine:
    def __init__(
        self,
        context_id: str,
        *,
        client: PaymentServiceClient,
        gateway: PaymentGateway,
        delivery: Optional[ArtifactDelivery] = None,
        notify: Optional[Notify] = None,
        navigate: Optional[Callable[[str], None]] = None,
        poll_interval_sec: Optional[float] = None,
        redirect_timeout_sec: Optional[float] = None,
        confirm_timeout_sec: Optional[float] = None,
        widget_timeout_sec: Optional[float] = None,
    ):
        self.context_id = context_id
        self._client = client
        self._gateway = gateway
        self._delivery = delivery
        self._notify_hook = notify
        self._navigate = navigate or _log_navigation

        self.poll_interval_sec = float(poll_interval_sec or settings.POLL_INTERVAL_SEC)
        self.redirect_timeout_sec = float(redirect_timeout_sec or settings.REDIRECT_POLL_TIMEOUT_SEC)
        self.confirm_timeout_sec = float(confirm_timeout_sec or settings.EMBEDDED_CONFIRM_TIMEOUT_SEC)
        self.widget_timeout_sec = float(widget_timeout_sec or settings.EMBEDDED_WIDGET_TIMEOUT_SEC)

        # Current session, or the last one to reach a terminal state
        self.session: Optional[PaymentSession] = None
        self.notices: Deque[Dict[str, Any]] = deque(maxlen=50)

        self._generation = 0
        self._poller: Optional[StatusPoller] = None
        self._flow: Optional[EmbeddedFlow] = None
        self._widget_timer: Optional[asyncio.TimerHandle] = None
        self._settled: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self.session is not None and not self.session.is_terminal

    @property
    def state(self) -> str:
        """Idle unless a session is in flight; terminal sessions stay readable via .session."""
        return self.session.state if self.is_active else sm.IDLE

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    def drain_notices(self) -> list:
        out = list(self.notices)
        self.notices.clear()
        return out

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def initiate(self, payload: Mapping[str, Any]) -> PaymentSession:
        """
        Start a payment for a snapshot of the CV form.
        Raises ValidationError before any network call; GatewayUnavailable,
        InitiationError and NetworkError leave the engine Idle, as does
        StorageUnavailable when a redirect cannot be made durable.
        """
        validate_payload(payload)

        if self.is_active:
            self.cancel(reason="superseded")

        self._generation += 1
        gen = self._generation
        frozen = freeze(payload)
        session = PaymentSession(
            reference=new_reference(),
            contextId=self.context_id,
            payload=frozen,
            phoneNumber=normalize_phone(str(personal_info(frozen).get("phone") or "")),
            mode=self._gateway.name,
            createdAtMs=now_ms(),
            generation=gen,
        )
        self.session = session
        self._settled = asyncio.Event()
        self._set_state(session, sm.INITIATING)

        try:
            outcome = await self._gateway.initiate(session)
        except PaymentError as e:
            if self._is_current(gen):
                self._abort_to_idle(session, e)
            raise

        if not self._is_current(gen):
            log(event="initiation_discarded", reference=session.reference, reason="cancelled_while_initiating")
            return session

        if isinstance(outcome, RedirectFlow):
            session.transactionId = outcome.transactionId
            session.paymentUrl = outcome.paymentUrl
            session.mode = MODE_REDIRECT
            # Must be durable before control leaves the application
            try:
                save_pending(session.to_pending_record(now_ms()))
            except RedisError as e:
                log(event="pending_record_save_failed", reference=session.reference, error=str(e)[:200])
                err = StorageUnavailable(reference=session.reference)
                self._abort_to_idle(session, err)
                raise err from e
            metrics.increment("initiated")
            self._set_state(session, sm.AWAITING_GATEWAY_REDIRECT)
            self._notify("info", "Redirecting to the payment page...")
            self._navigate(outcome.paymentUrl)
        elif isinstance(outcome, DirectFlow):
            session.transactionId = outcome.transactionId
            session.mode = MODE_DIRECT
            self._persist_in_page(session)
            metrics.increment("initiated")
            self._set_state(session, sm.AWAITING_CONFIRMATION)
            self._notify("info", "Payment request sent to your phone. Waiting for confirmation...")
            self._start_polling(session, self._status_query(session), self.redirect_timeout_sec)
        elif isinstance(outcome, EmbeddedFlow):
            session.mode = MODE_EMBEDDED
            session.extras["widget"] = outcome.config
            self._persist_in_page(session)
            metrics.increment("initiated")
            outcome.attach(
                on_success=partial(self._widget_success, gen),
                on_pending=partial(self._widget_pending, gen),
                on_close=partial(self._widget_close, gen),
            )
            self._flow = outcome
            self._arm_widget_timer(gen)
            outcome.open()
        else:
            raise TypeError(f"Unsupported gateway outcome: {type(outcome).__name__}")
        return session

    async def resume(self) -> Optional[PaymentSession]:
        """
        Page-load hook. If the durable register holds a pending payment, query
        its status exactly once; resolve on completed/failed, otherwise resume
        polling with a fresh deadline.
        """
        if self.is_active:
            return self.session

        record = load_pending(self.context_id)
        if record is None:
            return None

        self._generation += 1
        gen = self._generation
        session = PaymentSession(
            reference=record.reference,
            contextId=self.context_id,
            transactionId=record.transactionId,
            phoneNumber=record.phoneNumber,
            mode=record.mode or (MODE_REDIRECT if record.transactionId else MODE_EMBEDDED),
            createdAtMs=record.savedAtMs or now_ms(),
            generation=gen,
        )
        # Reconstructed, not transitioned: the session was already in flight before the reload
        session.state = sm.AWAITING_GATEWAY_REDIRECT if session.mode == MODE_REDIRECT else sm.AWAITING_CONFIRMATION
        self.session = session
        self._settled = asyncio.Event()
        log(
            event="payment_session_resumed",
            contextId=self.context_id,
            reference=session.reference,
            transactionId=session.transactionId,
            state=session.state,
        )
        self._notify("info", "Checking payment status...")

        query = self._status_query(session)
        try:
            result = await query()
        except NetworkError as e:
            log(event="resume_status_check_failed", reference=session.reference, error=str(e)[:200])
            result = StatusResult(status=STATUS_PENDING)

        if not self._is_current(gen):
            return session
        await self._apply_status(gen, result)
        if session.is_terminal or not self._is_current(gen):
            return session

        if session.state == sm.AWAITING_GATEWAY_REDIRECT:
            self._set_state(session, sm.AWAITING_CONFIRMATION)
        self._notify("info", "Payment pending. Waiting for confirmation...")
        timeout = self.redirect_timeout_sec if session.transactionId else self.confirm_timeout_sec
        self._start_polling(session, query, timeout)
        return session

    async def check_status(self) -> Optional[PaymentSession]:
        """
        One explicit status query. Terminal sessions answer from memory, so
        repeating the call after Confirmed yields the same artifactUrl with no
        network traffic and no second delivery.
        """
        session = self.session
        if session is None or session.is_terminal:
            return session
        gen = session.generation
        result = await self._status_query(session)()
        await self._apply_status(gen, result)
        return session

    def cancel(self, reason: str = "user") -> Optional[PaymentSession]:
        """Stop timers synchronously, clear the durable record, mark the session Cancelled."""
        self._generation += 1
        session = self.session
        if session is None or session.is_terminal:
            self._stop_timers()
            self._clear_record()
            return None
        log(event="payment_cancelled", reference=session.reference, reason=reason, fromState=session.state)
        self._set_state(session, sm.CANCELLED)
        metrics.increment("cancelled")
        self._settle()
        return session

    def dismiss(self) -> None:
        """Forget the last outcome (and any pending record) so the page starts clean."""
        if self.is_active:
            self.cancel(reason="dismissed")
        else:
            self._clear_record()
        self.session = None

    async def widget_event(self, event: str, response: Optional[Dict[str, Any]] = None) -> Optional[PaymentSession]:
        flow = self._flow
        if flow is None:
            log(event="widget_event_without_flow", contextId=self.context_id, widgetEvent=event)
            return self.session
        await flow.dispatch(event, response)
        return self.session

    async def wait_for_resolution(self, timeout: Optional[float] = None) -> Optional[PaymentSession]:
        """Wait until the session is terminal and, when Confirmed, delivery has been attempted."""
        if self.session is None or self._settled is None:
            return self.session
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.session

    async def aclose(self) -> None:
        """Component teardown: stop timers and in-flight polls, keep state and the durable record."""
        self._generation += 1
        poller = self._poller
        self._poller = None
        self._cancel_widget_timer()
        if poller is not None:
            await poller.aclose()

    # ------------------------------------------------------------------
    # Embedded widget callbacks
    # ------------------------------------------------------------------
    async def _widget_success(self, gen: int, response: Dict[str, Any]) -> None:
        session = self._live_session(gen, "widget_success")
        if session is None:
            return
        self._cancel_widget_timer()
        self._stop_poller()
        if session.state == sm.INITIATING:
            self._set_state(session, sm.AWAITING_CONFIRMATION)
        self._notify("success", "Payment successful! Generating your CV...")

        url = await self._generate(session)
        if not self._is_current(gen) or session.is_terminal:
            return
        if url:
            await self._confirm(session, url)
            return
        # Paid but not rendered yet: keep confirming through verify until the URL shows up
        self._notify("info", "Payment received. Waiting for your CV to be ready...")
        self._start_polling(session, self._status_query(session), self.confirm_timeout_sec)

    async def _widget_pending(self, gen: int) -> None:
        session = self._live_session(gen, "widget_pending")
        if session is None:
            return
        self._cancel_widget_timer()
        if session.state == sm.INITIATING:
            self._set_state(session, sm.AWAITING_CONFIRMATION)
        if self.polling:
            return
        self._notify("info", "Payment is being confirmed. This may take a few moments...")
        self._start_polling(session, self._status_query(session), self.confirm_timeout_sec)

    async def _widget_close(self, gen: int) -> None:
        session = self._live_session(gen, "widget_close")
        if session is None:
            return
        if session.state != sm.INITIATING:
            # Charge may still land; confirmation keeps running
            log(event="widget_closed_while_confirming", reference=session.reference, state=session.state)
            return
        self._notify("warning", "Payment window closed. No charge was made.")
        self._set_state(session, sm.CANCELLED)
        metrics.increment("cancelled")
        self._settle()

    def _arm_widget_timer(self, gen: int) -> None:
        self._cancel_widget_timer()
        loop = asyncio.get_running_loop()
        self.session.deadlineMs = deadline_ms(self.widget_timeout_sec)
        self._widget_timer = loop.call_later(self.widget_timeout_sec, partial(self._on_deadline, gen))

    def _cancel_widget_timer(self) -> None:
        if self._widget_timer is not None:
            self._widget_timer.cancel()
            self._widget_timer = None

    # ------------------------------------------------------------------
    # Status handling
    # ------------------------------------------------------------------
    def _status_query(self, session: PaymentSession) -> Callable[[], Awaitable[StatusResult]]:
        if session.transactionId:
            return partial(self._client.payment_status, session.transactionId)
        return partial(self._client.verify_payment, session.reference)

    def _start_polling(self, session: PaymentSession, query, timeout_sec: float) -> None:
        self._stop_poller()
        gen = session.generation
        session.deadlineMs = deadline_ms(timeout_sec)
        self._poller = StatusPoller(
            query,
            partial(self._apply_status, gen),
            partial(self._on_deadline, gen),
            interval_sec=self.poll_interval_sec,
            timeout_sec=timeout_sec,
            name=f"{session.mode}:{session.reference}",
        )
        self._poller.start()

    async def _apply_status(self, gen: int, result: StatusResult) -> None:
        session = self._live_session(gen, f"status_{result.status}")
        if session is None:
            return

        if result.status == STATUS_COMPLETED:
            url = result.artifactUrl
            if not url and session.payload is not None:
                url = await self._generate(session)
                if not self._is_current(gen) or session.is_terminal:
                    return
            if url:
                await self._confirm(session, url)
            else:
                log(event="completed_without_artifact", reference=session.reference)
        elif result.status == STATUS_FAILED:
            self._fail(session)
        else:
            log(event="payment_still_pending", reference=session.reference, transactionId=session.transactionId)

    def _on_deadline(self, gen: int) -> None:
        session = self._live_session(gen, "deadline")
        if session is None:
            return
        message = EMBEDDED_TIMEOUT_NOTICE if session.mode == MODE_EMBEDDED else PaymentTimedOut.user_message
        session.error = PaymentTimedOut(message, reference=session.reference)
        self._set_state(session, sm.TIMED_OUT)
        metrics.increment("timed_out")
        self._notify("warning", message)
        self._settle()

    async def _generate(self, session: PaymentSession) -> Optional[str]:
        if session.payload is None:
            return None
        try:
            return await self._client.generate_cv(session.reference, thaw(session.payload))
        except NetworkError as e:
            log(event="generate_cv_failed", reference=session.reference, error=str(e)[:200])
            return None

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    async def _confirm(self, session: PaymentSession, url: str) -> None:
        session.artifactUrl = url
        self._set_state(session, sm.CONFIRMED)
        metrics.increment("confirmed")
        metrics.record_confirm_latency(max(0, now_ms() - int(session.createdAtMs or 0)))
        self._notify("success", "Payment confirmed! Downloading your CV...")
        try:
            await self._deliver(session)
        finally:
            self._settle()

    def _fail(self, session: PaymentSession) -> None:
        session.error = PaymentFailed(reference=session.reference)
        self._set_state(session, sm.FAILED)
        metrics.increment("failed")
        metrics.record_failed_payment(session.reference)
        self._notify("error", PaymentFailed.user_message)
        self._settle()

    async def _deliver(self, session: PaymentSession) -> None:
        if self._delivery is None or session.deliveryStatus != "none":
            return
        session.deliveryStatus = "started"
        filename = suggested_filename(session.full_name, session.reference)
        try:
            path = await self._delivery.deliver(session.artifactUrl, filename)
        except DeliveryError as e:
            # Money is captured; the session stays Confirmed
            session.deliveryStatus = "failed"
            session.error = e
            metrics.increment("delivery_failed")
            self._notify(
                "error",
                f"Payment successful but CV download failed. Please contact support with reference: {session.reference}",
            )
            return
        session.deliveryStatus = "saved"
        session.savedPath = str(path)
        metrics.increment("delivery_saved")

    def _abort_to_idle(self, session: PaymentSession, error: PaymentError) -> None:
        self._stop_timers()
        metrics.increment("initiation_failed")
        session.error = error
        session.state = sm.IDLE
        self.session = None
        log(
            event="initiation_aborted",
            reference=session.reference,
            errorType=type(error).__name__,
            error=str(error)[:300],
        )
        self._notify("error", str(error))
        self._settle()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_state(self, session: PaymentSession, target: str) -> None:
        if not sm.can_transition(session.state, target):
            raise RuntimeError(f"Illegal payment transition {session.state} -> {target}")
        previous = session.state
        session.state = target
        log(
            event="payment_state_changed",
            contextId=self.context_id,
            reference=session.reference,
            transactionId=session.transactionId,
            fromState=previous,
            toState=target,
        )
        if sm.is_terminal(target):
            self._stop_timers()
            self._flow = None
            self._clear_record()

    def _persist_in_page(self, session: PaymentSession) -> None:
        """
        Direct and embedded flows never leave the page, so a failed write only
        costs reload resumption; confirmation carries on in memory.
        """
        try:
            save_pending(session.to_pending_record(now_ms()))
        except RedisError as e:
            log(event="pending_record_save_failed", reference=session.reference, error=str(e)[:200])
            self._notify("warning", "Keep this page open until your payment is confirmed.")

    def _clear_record(self) -> None:
        # Terminal transitions must finish (settle, deliver) even when Redis is down
        try:
            clear_pending(self.context_id)
        except RedisError as e:
            log(event="pending_record_clear_failed", contextId=self.context_id, error=str(e)[:200])

    def _settle(self) -> None:
        if self._settled is not None:
            self._settled.set()

    def _is_current(self, gen: int) -> bool:
        return gen == self._generation

    def _live_session(self, gen: int, what: str) -> Optional[PaymentSession]:
        session = self.session
        if not self._is_current(gen) or session is None or session.generation != gen:
            log(event="stale_event_discarded", contextId=self.context_id, what=what, generation=gen)
            return None
        if session.is_terminal:
            log(event="duplicate_event_ignored", reference=session.reference, what=what, state=session.state)
            return None
        return session

    def _stop_poller(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    def _stop_timers(self) -> None:
        self._stop_poller()
        self._cancel_widget_timer()

    def _notify(self, level: str, message: str) -> None:
        self.notices.append({"level": level, "message": message, "ts": now_ms()})
        log(event="user_notice", contextId=self.context_id, level=level, notice=message)
        if self._notify_hook is not None:
            self._notify_hook(level, message)
