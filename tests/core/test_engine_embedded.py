import asyncio
import json

import pytest

from cvpay.core import state_machine as sm
from cvpay.core.engine import EMBEDDED_TIMEOUT_NOTICE
from cvpay.errors import GatewayUnavailable, PaymentTimedOut
from cvpay.gateway.adapter import BrowserWidgetBridge
from cvpay.settings import settings

PENDING_KEY = f"{settings.PENDING_KEY_PREFIX}ctx-1"


@pytest.fixture
def bridge():
    return BrowserWidgetBridge(public_key="pk_test_123")


def test_unavailable_widget_fails_fast(fake_service, fake_redis, http_client, build_engine, jane):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=BrowserWidgetBridge(public_key=""))
            with pytest.raises(GatewayUnavailable):
                await engine.initiate(jane)
            return engine

    engine = asyncio.run(scenario())

    assert engine.state == sm.IDLE
    assert fake_service.calls == []
    assert fake_redis.get(PENDING_KEY) is None
    assert engine.notices[-1]["message"] == GatewayUnavailable.user_message
    assert fake_redis.get("metrics:payment:initiated") is None
    assert fake_redis.get("metrics:payment:initiation_failed") == "1"


def test_widget_opens_with_payer_config(fake_service, fake_redis, http_client, build_engine, jane, bridge):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            state = engine.state
            await engine.aclose()
            return session, state

    session, state = asyncio.run(scenario())

    assert state == sm.INITIATING
    assert session.transactionId is None
    config = bridge.opened[0]
    assert config["key"] == "pk_test_123"
    assert config["reference"] == session.reference
    assert config["email"] == "jane@x.com"
    assert config["amount"] == settings.PAYMENT_AMOUNT
    assert config["currency"] == settings.PAYMENT_CURRENCY
    assert config["customer"] == {"firstName": "Jane", "lastName": "Mwape", "phone": "0977123456"}
    assert json.loads(fake_redis.get(PENDING_KEY))["mode"] == "embedded"
    assert fake_service.calls == []


def test_widget_success_generates_and_delivers(fake_service, fake_redis, http_client, build_engine, jane, bridge, download_dir):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            await engine.widget_event("success", {"reference": session.reference, "status": "success"})
            return session

    session = asyncio.run(scenario())

    assert session.state == sm.CONFIRMED
    assert session.artifactUrl == "/f/generated.pdf"
    assert fake_service.last_json("/api/payment/generate-cv")["reference"] == session.reference
    assert (download_dir / "CV_Jane_Mwape.pdf").read_bytes() == b"%PDF-1.4 generated"
    assert fake_redis.get(PENDING_KEY) is None


def test_widget_pending_confirms_through_verify(fake_service, http_client, build_engine, jane, bridge):
    fake_service.verify = [
        (200, {"success": False, "status": "pending"}),
        (200, {"success": True, "status": "successful", "pdfUrl": "/f/T1.pdf"}),
    ]

    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            await engine.widget_event("pending")
            assert session.state == sm.AWAITING_CONFIRMATION
            assert engine.polling
            await engine.wait_for_resolution(timeout=2)
            return session

    session = asyncio.run(scenario())

    assert session.state == sm.CONFIRMED
    assert session.artifactUrl == "/f/T1.pdf"
    assert fake_service.count(f"/api/payment/verify/{session.reference}") == 2
    assert fake_service.count("/api/payment/generate-cv") == 0


def test_verified_without_url_falls_back_to_generate(fake_service, http_client, build_engine, jane, bridge):
    fake_service.verify = [(200, {"success": True, "status": "successful"})]

    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            await engine.widget_event("pending")
            await engine.wait_for_resolution(timeout=2)
            return session

    session = asyncio.run(scenario())
    assert session.artifactUrl == "/f/generated.pdf"


def test_widget_close_before_payment_cancels(fake_service, fake_redis, http_client, build_engine, jane, bridge):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            await engine.widget_event("close")
            # Late success from the same widget is dropped
            await engine.widget_event("success", {})
            return engine, session

    engine, session = asyncio.run(scenario())

    assert session.state == sm.CANCELLED
    assert session.artifactUrl is None
    assert fake_redis.get(PENDING_KEY) is None
    assert fake_service.count("/api/payment/generate-cv") == 0
    assert any(n["level"] == "warning" for n in engine.notices)


def test_pending_then_success_stops_verify_polling(fake_service, http_client, build_engine, jane, bridge):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            session = await engine.initiate(jane)
            await engine.widget_event("pending")
            await asyncio.sleep(0.05)
            await engine.widget_event("success", {"status": "success"})
            verify_calls = fake_service.count("/api/payment/verify/")
            await asyncio.sleep(0.05)
            return engine, session, verify_calls

    engine, session, verify_calls = asyncio.run(scenario())

    assert session.state == sm.CONFIRMED
    assert engine.polling is False
    assert fake_service.count("/api/payment/verify/") <= verify_calls + 1
    assert fake_service.count("/f/generated.pdf") == 1


def test_widget_left_open_times_out(fake_service, http_client, build_engine, jane, bridge):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge, widget_timeout_sec=0.05)
            session = await engine.initiate(jane)
            await engine.wait_for_resolution(timeout=2)
            return session

    session = asyncio.run(scenario())

    assert session.state == sm.TIMED_OUT
    assert isinstance(session.error, PaymentTimedOut)


def test_embedded_resume_uses_verify(fake_service, fake_redis, http_client, build_engine, bridge):
    fake_redis.set(PENDING_KEY, json.dumps({"reference": "CV-9-zzz", "mode": "embedded"}))
    fake_service.verify = [(200, {"success": True, "status": "successful", "pdfUrl": "/f/T2.pdf"})]

    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge)
            return engine, await engine.resume()

    engine, session = asyncio.run(scenario())

    assert session.state == sm.CONFIRMED
    assert fake_service.count("/api/payment/verify/CV-9-zzz") == 1
    assert engine.polling is False


def test_slow_widget_confirmation_has_its_own_notice(fake_service, http_client, build_engine, jane, bridge):
    async def scenario():
        async with http_client() as http:
            engine = build_engine(http, mode="embedded", bridge=bridge, confirm_timeout_sec=0.05)
            session = await engine.initiate(jane)
            await engine.widget_event("pending")
            await engine.wait_for_resolution(timeout=2)
            return engine, session

    engine, session = asyncio.run(scenario())

    assert session.state == sm.TIMED_OUT
    assert str(session.error) == EMBEDDED_TIMEOUT_NOTICE
    assert engine.notices[-1]["level"] == "warning"
    assert engine.notices[-1]["message"] == EMBEDDED_TIMEOUT_NOTICE
