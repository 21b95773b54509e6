import gzip
import json

import brotli
import httpx
import pytest

from fintrack.bend.client import BendClient
from fintrack.bend.device import DeviceProfile
from fintrack.bend.transport import Transport
from fintrack.core.rate_limit import RateLimiter

BASE_URL = "https://bend.test"


def _envelope(data=None, error=None) -> dict:
    return {
        "meta": {"request_id": "req", "timestamp": "2025-08-01T00:00:00Z", "uri": "/"},
        "data": data,
        "error": error,
    }


def _response(status: int = 200, payload=None, *, body: bytes | None = None, encoding: str | None = None, headers=None):
    if body is None:
        body = json.dumps(payload if payload is not None else _envelope()).encode("utf-8")
    hdrs = dict(headers or {})
    if encoding == "gzip":
        body = gzip.compress(body)
        hdrs["Content-Encoding"] = "gzip"
    elif encoding == "br":
        body = brotli.compress(body)
        hdrs["Content-Encoding"] = "br"
    # stream= keeps httpx from decoding the body before the transport sees it
    return httpx.Response(status, headers=hdrs, stream=httpx.ByteStream(body))


class FakeServer:
    """Records requests and answers them from a queue or a handler."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.queue: list[httpx.Response] = []
        self.handler = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        if not self.queue:
            raise AssertionError(f"unexpected request: {request.method} {request.url}")
        return self.queue.pop(0)

    def reply(self, status: int = 200, payload=None, **kwargs) -> None:
        self.queue.append(_response(status, payload, **kwargs))

    def reply_data(self, data, **kwargs) -> None:
        self.reply(200, _envelope(data=data), **kwargs)

    def json_body(self, i: int = -1):
        return json.loads(self.requests[i].content)


@pytest.fixture
def envelope():
    return _envelope


@pytest.fixture
def make_response():
    return _response


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def device():
    return DeviceProfile(device_id="dev-ambient", device_type="Web", device_location="Default")


@pytest.fixture
def make_transport(server, device):
    def _make(**kwargs) -> Transport:
        http = httpx.Client(transport=httpx.MockTransport(server))
        opts = {"base_url": BASE_URL, "device": device, "rate_limiter": RateLimiter(0), "http": http}
        opts.update(kwargs)
        return Transport(**opts)

    return _make


@pytest.fixture
def client(make_transport):
    c = BendClient(make_transport())
    yield c
    c.close()
