import json
from unittest.mock import patch

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cvpay.core.engine import PaymentLifecycleEngine
from cvpay.delivery.artifact import ArtifactDelivery
from cvpay.gateway.adapter import build_gateway
from cvpay.remote.client import PaymentServiceClient

BASE_URL = "http://payments.test"


class FakeRedis:
    """Just enough of the Redis string/list API for the pending register and metrics."""

    def __init__(self):
        self.kv = {}
        self.lists = {}
        # Command names that raise as if the server went away
        self.failing = set()

    def _check(self, command):
        if command in self.failing:
            raise RedisConnectionError(f"{command}: connection refused")

    def get(self, key):
        return self.kv.get(key)

    def set(self, key, value, **kwargs):
        self._check("set")
        self.kv[key] = value if isinstance(value, str) else str(value)
        return True

    def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            if self.kv.pop(key, None) is not None:
                removed += 1
            if self.lists.pop(key, None) is not None:
                removed += 1
        return removed

    def incr(self, key, amount=1):
        value = int(self.kv.get(key) or 0) + int(amount)
        self.kv[key] = str(value)
        return value

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for v in values:
            items.insert(0, str(v))
        return len(items)

    def _slice(self, items, start, end):
        stop = len(items) if end == -1 else end + 1
        return items[start:stop]

    def ltrim(self, key, start, end):
        self.lists[key] = self._slice(self.lists.get(key, []), start, end)
        return True

    def lrange(self, key, start, end):
        return self._slice(self.lists.get(key, []), start, end)


@pytest.fixture(autouse=True)
def fake_redis():
    fake = FakeRedis()
    with patch("cvpay.store.redis_conn.Redis") as mock_redis_cls:
        mock_redis_cls.from_url.return_value = fake
        yield fake


class FakePaymentService:
    """
    Scripted stand-in for the remote payment backend.
    Response queues pop one entry per call and keep repeating the last one;
    an exception instance in a queue is raised from the transport.
    """

    def __init__(self):
        self.initiate_response = (200, {"transactionId": "T1", "useGateway": False})
        self.status = {}
        self.verify = [(200, {"success": False, "status": "pending"})]
        self.generate = [(200, {"success": True, "pdfUrl": "/f/generated.pdf"})]
        self.files = {
            "/f/T1.pdf": b"%PDF-1.4 T1",
            "/f/T2.pdf": b"%PDF-1.4 T2",
            "/f/generated.pdf": b"%PDF-1.4 generated",
        }
        self.calls = []
        self.requests = []

    def count(self, prefix: str) -> int:
        return sum(1 for _, path in self.calls if path.startswith(prefix))

    def _next(self, queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        self.requests.append(request)

        if path == "/api/initiate-payment":
            code, body = self.initiate_response
            return httpx.Response(code, json=body)
        if path.startswith("/api/payment-status/"):
            tid = path.rsplit("/", 1)[1]
            code, body = self._next(self.status.setdefault(tid, [(200, {"status": "pending"})]))
            return httpx.Response(code, json=body)
        if path.startswith("/api/payment/verify/"):
            code, body = self._next(self.verify)
            return httpx.Response(code, json=body)
        if path == "/api/payment/generate-cv":
            code, body = self._next(self.generate)
            return httpx.Response(code, json=body)
        if path in self.files:
            return httpx.Response(200, content=self.files[path])
        return httpx.Response(404, json={"error": "not found"})

    def last_json(self, path: str) -> dict:
        for request in reversed(self.requests):
            if request.url.path == path:
                return json.loads(request.content)
        raise AssertionError(f"no request to {path}")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_service():
    return FakePaymentService()


@pytest.fixture
def http_client(fake_service):
    def _make() -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=fake_service.transport())
    return _make


@pytest.fixture
def download_dir(tmp_path):
    return tmp_path / "downloads"


@pytest.fixture
def build_engine(download_dir):
    def _build(http, *, mode="redirect", bridge=None, context_id="ctx-1", navigate=None, **timing):
        client = PaymentServiceClient(http)
        options = dict(
            poll_interval_sec=0.01,
            redirect_timeout_sec=2.0,
            confirm_timeout_sec=2.0,
            widget_timeout_sec=2.0,
        )
        options.update(timing)
        return PaymentLifecycleEngine(
            context_id,
            client=client,
            gateway=build_gateway(mode, client, bridge),
            delivery=ArtifactDelivery(http, download_dir=str(download_dir)),
            navigate=navigate,
            **options,
        )
    return _build


@pytest.fixture
def jane():
    return {
        "personalInfo": {
            "fullName": "Jane Mwape",
            "email": "jane@x.com",
            "phone": "0977123456",
        },
        "skills": ["Nursing", "First aid"],
        "education": [{"institution": "UNZA", "year": "2019"}],
    }
