from __future__ import annotations

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Any

import brotli
import httpx

from .. import __version__
from ..core.rate_limit import RateLimiter
from ..errors import APIError, TransportError
from .device import DeviceProfile, generate_request_id
from .session import Session

http_logger = logging.getLogger("fintrack.http")

MARBLE_COOKIE = "marble-cookie"
BINARY_PLACEHOLDER = "[binary/compressed response]"
ERROR_BODY_LIMIT = 200
LOG_BODY_LIMIT = 1000
TEXT_SAMPLE_BYTES = 1000
MAX_CONTROL_RATIO = 0.1


@dataclass(frozen=True)
class ApiResponse:
    status_code: int
    data: Any
    meta: dict[str, Any]
    marble_cookie: str | None = None


def is_text_content(body: bytes) -> bool:
    """
    False for bodies that are not UTF-8 or where more than 10% of the first
    1000 bytes are control characters (tab/CR/LF excluded).
    """
    if not body:
        return True
    try:
        body.decode("utf-8")
    except UnicodeDecodeError:
        return False

    sample = body[:TEXT_SAMPLE_BYTES]
    control = sum(1 for b in sample if (b < 32 and b not in (9, 10, 13)) or b == 127)
    return control / len(sample) <= MAX_CONTROL_RATIO


def error_message_from_body(body: bytes) -> str:
    try:
        envelope = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        envelope = None

    if isinstance(envelope, dict) and envelope.get("error") is not None:
        return _describe_error(envelope["error"])

    if not is_text_content(body):
        return BINARY_PLACEHOLDER

    text = body.decode("utf-8")
    if len(text) > ERROR_BODY_LIMIT:
        text = text[:ERROR_BODY_LIMIT] + "..."
    return text


def _describe_error(err: Any) -> str:
    if isinstance(err, str):
        return err
    if isinstance(err, dict):
        for key in ("message", "detail", "error"):
            v = err.get(key)
            if isinstance(v, str) and v:
                return v
    return json.dumps(err, ensure_ascii=False)


def decompress_body(raw: bytes, content_encoding: str | None) -> bytes:
    encoding = (content_encoding or "").lower()
    try:
        if "gzip" in encoding:
            return gzip.decompress(raw)
        if "br" in encoding:
            return brotli.decompress(raw)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        raise TransportError(f"Failed to decompress {encoding} response: {e}") from e
    return raw


def extract_cookie(headers: httpx.Headers, name: str = MARBLE_COOKIE) -> str | None:
    for raw in headers.get_list("set-cookie"):
        jar = SimpleCookie()
        try:
            jar.load(raw)
        except CookieError:
            continue
        morsel = jar.get(name)
        if morsel is not None and morsel.value:
            return morsel.value
    return None


def _mask_authorization(value: str) -> str:
    if len(value) > 10:
        return value[:10] + "..."
    return "[REDACTED]"


class Transport:
    """
    Authenticated JSON-over-HTTPS exchange with the Bend API.

    Builds headers (content negotiation, device identity, per-request
    correlation id, authorization and marble cookie), waits on the rate
    limiter, decompresses the body itself and classifies failures:
    TransportError for anything below HTTP, APIError for non-2xx statuses and
    for 2xx envelopes that carry an error. Nothing is retried here.
    """

    def __init__(
        self,
        *,
        base_url: str,
        device: DeviceProfile,
        rate_limiter: RateLimiter,
        timeout: float = 30.0,
        origin: str | None = None,
        log_http: bool = False,
        http: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.device = device
        self.origin = origin or self.base_url
        self.log_http = log_http
        self._limiter = rate_limiter
        self._http = http or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._http.close()
        self._limiter.close()

    def build_headers(self, *, session: Session | None, device: DeviceProfile) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate, br",
            "Origin": self.origin,
            "User-Agent": f"fintrack/{__version__}",
            "X-Device-Hash": device.device_id,
            "X-Device-Type": device.device_type,
            "X-Device-Location": device.device_location,
            "X-Request-ID": generate_request_id(),
        }

        if session is not None:
            if session.access_token:
                token_type = session.token_type or "Bearer"
                headers["Authorization"] = f"{token_type} {session.access_token}"
            if session.marble_cookie:
                headers["Cookie"] = f"{MARBLE_COOKIE}={session.marble_cookie}"

        return headers

    def _device_for(self, session: Session | None, device: DeviceProfile | None) -> DeviceProfile:
        if device is not None:
            return device
        if session is not None and session.device_hash:
            return self.device.with_device_id(session.device_hash)
        return self.device

    def build_request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: Any = None,
        session: Session | None = None,
        device: DeviceProfile | None = None,
    ) -> httpx.Request:
        headers = self.build_headers(session=session, device=self._device_for(session, device))
        content = None if body is None else json.dumps(body).encode("utf-8")
        return httpx.Request(
            method,
            self.base_url + path,
            params=params,
            headers=headers,
            content=content,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: Any = None,
        session: Session | None = None,
        device: DeviceProfile | None = None,
    ) -> ApiResponse:
        req = self.build_request(method, path, body=body, params=params, session=session, device=device)
        self._log_request(req)

        self._limiter.acquire()

        try:
            resp = self._http.send(req, stream=True)
            try:
                raw = b"".join(resp.iter_raw())
            finally:
                resp.close()
        except httpx.TimeoutException as e:
            raise TransportError(f"HTTP request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request failed: {method} {path}: {e}") from e

        body_bytes = decompress_body(raw, resp.headers.get("Content-Encoding"))
        self._log_response(resp, body_bytes)

        if not 200 <= resp.status_code < 300:
            raise APIError(resp.status_code, error_message_from_body(body_bytes))

        try:
            envelope = json.loads(body_bytes) if body_bytes else {}
        except (ValueError, UnicodeDecodeError) as e:
            raise TransportError(f"Failed to decode response from {path}: {e}") from e
        if not isinstance(envelope, dict):
            raise TransportError(f"Unexpected response shape from {path}: {type(envelope).__name__}")

        if envelope.get("error") is not None:
            raise APIError(resp.status_code, _describe_error(envelope["error"]))

        return ApiResponse(
            status_code=resp.status_code,
            data=envelope.get("data"),
            meta=envelope.get("meta") or {},
            marble_cookie=extract_cookie(resp.headers),
        )

    def _log_request(self, req: httpx.Request) -> None:
        if not self.log_http:
            return
        lines = ["=== HTTP REQUEST ===", f"Method: {req.method}", f"URL: {req.url}", "Headers:"]
        for raw_name, raw_value in req.headers.raw:
            name, value = raw_name.decode("latin-1"), raw_value.decode("latin-1")
            if name.lower() == "authorization":
                value = _mask_authorization(value)
            lines.append(f"  {name}: {value}")
        if req.content:
            lines.append(f"Body: {req.content.decode('utf-8', errors='replace')}")
        http_logger.info("\n".join(lines))

    def _log_response(self, resp: httpx.Response, body: bytes) -> None:
        if not self.log_http:
            return
        lines = ["=== HTTP RESPONSE ===", f"Status: {resp.status_code} {resp.reason_phrase}", "Headers:"]
        for raw_name, raw_value in resp.headers.raw:
            name, value = raw_name.decode("latin-1"), raw_value.decode("latin-1")
            lines.append(f"  {name}: {value}")
        if body:
            text = body.decode("utf-8", errors="replace")
            if len(text) > LOG_BODY_LIMIT:
                lines.append(f"Body (truncated): {text[:LOG_BODY_LIMIT]}...")
            else:
                lines.append(f"Body: {text}")
        http_logger.info("\n".join(lines))
