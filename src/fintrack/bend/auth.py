from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ..errors import FintrackError, SessionError, SessionNotFoundError
from .client import BendClient, OTPVerification
from .device import DeviceProfile, generate_device_id, generate_request_id
from .session import Session, SessionStore

logger = logging.getLogger(__name__)

LOGIN_HINT = "Run 'fintrack bend login' to re-authenticate"


def login_with_refresh_token(client: BendClient, store: SessionStore, refresh_token: str) -> Session:
    """
    Refresh-token bootstrap. The session is persisted only once the refresh
    call succeeded; on failure nothing is written and the error propagates.
    """
    if not refresh_token:
        raise SessionError("Refresh token required for authentication")

    session = client.initialize_from_refresh_token(refresh_token)
    store.save(session)
    return session


@dataclass(frozen=True)
class OTPExchange:
    """
    Identity of one OTP exchange. The server pairs "send" and "verify" by
    device id and request id, so both are fixed before the first call and
    reused unchanged for the second.
    """

    phone: str
    request_id: str
    device: DeviceProfile
    channel: str = "sms"

    @classmethod
    def start(cls, phone: str, base_device: DeviceProfile, channel: str = "sms") -> "OTPExchange":
        phone = (phone or "").strip()
        if not phone:
            raise SessionError("Phone number is required")
        return cls(
            phone=phone,
            request_id=generate_request_id(),
            device=base_device.with_device_id(generate_device_id()),
            channel=channel,
        )


@dataclass(frozen=True)
class OTPLoginResult:
    session: Session
    exchange: OTPExchange
    verification: OTPVerification


def request_otp(client: BendClient, exchange: OTPExchange) -> None:
    client.request_otp(exchange.phone, exchange.channel, exchange.request_id, exchange.device)


def verify_otp(client: BendClient, exchange: OTPExchange, code: str) -> OTPVerification:
    code = (code or "").strip()
    if not code:
        raise SessionError("OTP code is required")
    return client.verify_otp(exchange.phone, code, exchange.request_id, exchange.device, channel=exchange.channel)


def login_with_otp(
    client: BendClient,
    store: SessionStore,
    exchange: OTPExchange,
    read_code: Callable[[], str],
) -> OTPLoginResult:
    """
    OTP bootstrap: send code -> verify code -> refresh-token bootstrap.

    The exchange's device identity is passed explicitly to every call; the
    client's own device profile is never touched.
    """
    request_otp(client, exchange)
    logger.info("OTP requested for %s (request_id=%s)", exchange.phone, exchange.request_id)

    verification = verify_otp(client, exchange, read_code())

    session = client.initialize_from_refresh_token(
        verification.refresh_token,
        device_hash=exchange.device.device_id,
    )
    if verification.marble_cookie and not session.marble_cookie:
        session = session.model_copy(update={"marble_cookie": verification.marble_cookie})
        client.session = session

    store.save(session)
    return OTPLoginResult(session=session, exchange=exchange, verification=verification)


def ensure_session(client: BendClient, store: SessionStore) -> Session:
    """
    Load the stored session into the client, refreshing it when it is no
    longer valid and a refresh token is available. A failed refresh is not
    retried and is reported with the next manual step.
    """
    try:
        session = store.load()
    except SessionNotFoundError as e:
        raise SessionError("No session found. Run 'fintrack bend login' first") from e

    if session.is_valid():
        client.session = session
        return session

    if not session.refresh_token:
        raise SessionError(f"Session expired. {LOGIN_HINT}")

    logger.info("Session expired, attempting to refresh")
    try:
        refreshed = client.refresh_session(session)
    except FintrackError as e:
        raise SessionError(f"Session refresh failed. {LOGIN_HINT}: {e}") from e

    store.save(refreshed)
    return refreshed
