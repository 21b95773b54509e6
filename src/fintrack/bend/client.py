from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from ..core.rate_limit import RateLimiter
from ..errors import SessionError, TransportError
from .device import DeviceProfile
from .models import (
    Account,
    AccountsData,
    OTPVerifyData,
    TokenData,
    TransactionsPage,
    UserInfo,
    UserMeData,
)
from .session import Session
from .transactions import TransactionFilters, build_query_params
from .transport import ApiResponse, Transport

logger = logging.getLogger(__name__)

USER_ME_PATH = "/api/v2/users/me"
REFRESH_PATH = "/api/v1/auth/tokens/refresh"
OTP_SEND_PATH = "/api/v1/auth/otp/send"
OTP_VERIFY_PATH = "/api/v1/auth/otp/verify"
TRANSACTIONS_PATH = "/api/v3/users/{user_id}/transactions"
ACCOUNTS_PATH = "/api/v1/aa/data"


@dataclass(frozen=True)
class OTPVerification:
    refresh_token: str
    marble_cookie: str | None = None


def parse_expires_at(value: str) -> datetime:
    if not value:
        raise SessionError("Refresh response did not include expires_at")
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise SessionError(f"Failed to parse expires_at {value!r}: {e}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _validate(model: type[BaseModel], data: Any, path: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TransportError(f"Unexpected response payload from {path}: {e}") from e


class BendClient:
    def __init__(self, transport: Transport, session: Session | None = None):
        self.transport = transport
        self.session = session

    @classmethod
    def create(
        cls,
        *,
        base_url: str,
        device: DeviceProfile,
        rate_limit_seconds: float = 1.0,
        timeout: float = 30.0,
        origin: str | None = None,
        log_http: bool = False,
        http: httpx.Client | None = None,
    ) -> "BendClient":
        transport = Transport(
            base_url=base_url,
            device=device,
            rate_limiter=RateLimiter(rate_limit_seconds),
            timeout=timeout,
            origin=origin,
            log_http=log_http,
            http=http,
        )
        return cls(transport)

    @property
    def device(self) -> DeviceProfile:
        return self.transport.device

    def close(self) -> None:
        self.transport.close()

    def __enter__(self) -> "BendClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _require_session(self) -> Session:
        if self.session is None:
            raise SessionError("No session available. Run 'fintrack bend login' first")
        return self.session

    def _call(self, method: str, path: str, **kwargs: Any) -> ApiResponse:
        resp = self.transport.request(method, path, session=self.session, **kwargs)
        if resp.marble_cookie and self.session is not None:
            self.session = self.session.model_copy(update={"marble_cookie": resp.marble_cookie})
        return resp

    def check_session(self) -> UserInfo:
        session = self._require_session()
        if session.is_expired():
            raise SessionError("Session expired")

        resp = self._call("GET", USER_ME_PATH)
        return _validate(UserMeData, resp.data, USER_ME_PATH).user

    def get_user_id(self) -> str:
        return self.check_session().uuid

    def refresh_session(self, session: Session | None = None) -> Session:
        """
        Exchange the session's refresh token for a new access token. The
        server rotates the refresh token, so the returned session replaces the
        old one entirely. The held session only changes on success.
        """
        current = session if session is not None else self.session
        if current is None or not current.refresh_token:
            raise SessionError("No refresh token available")

        resp = self.transport.request(
            "POST",
            REFRESH_PATH,
            body={"refresh_token": current.refresh_token},
            session=current,
        )
        tokens = _validate(TokenData, resp.data, REFRESH_PATH)
        expires_at = parse_expires_at(tokens.expires_at)

        update: dict[str, Any] = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "token_type": tokens.token_type,
            "expires_at": expires_at,
        }
        if resp.marble_cookie:
            update["marble_cookie"] = resp.marble_cookie

        refreshed = current.model_copy(update=update)
        self.session = refreshed
        logger.info("Session refreshed, expires at %s", expires_at.isoformat())
        return refreshed

    def initialize_from_refresh_token(self, refresh_token: str, device_hash: str | None = None) -> Session:
        session = Session.from_refresh_token(refresh_token, device_hash or self.device.device_id)
        return self.refresh_session(session)

    def request_otp(self, phone: str, channel: str, request_id: str, device: DeviceProfile) -> None:
        self.transport.request(
            "POST",
            OTP_SEND_PATH,
            params={"phone_number": phone, "channel": channel, "request_id": request_id},
            device=device,
        )

    def verify_otp(
        self,
        phone: str,
        code: str,
        request_id: str,
        device: DeviceProfile,
        channel: str = "sms",
    ) -> OTPVerification:
        resp = self.transport.request(
            "POST",
            OTP_VERIFY_PATH,
            params={"phone_number": phone, "channel": channel, "request_id": request_id},
            body={"otp": code},
            device=device,
        )
        data = _validate(OTPVerifyData, resp.data, OTP_VERIFY_PATH)
        return OTPVerification(refresh_token=data.refresh_token, marble_cookie=resp.marble_cookie)

    def transactions_page(self, user_id: str, filters: TransactionFilters) -> TransactionsPage:
        self._require_session()
        path = TRANSACTIONS_PATH.format(user_id=user_id)
        resp = self._call("GET", path, params=build_query_params(filters))
        return _validate(TransactionsPage, resp.data or {}, path)

    def get_accounts(self) -> list[Account]:
        self._require_session()
        resp = self._call("GET", ACCOUNTS_PATH)
        return _validate(AccountsData, resp.data or {}, ACCOUNTS_PATH).accounts
