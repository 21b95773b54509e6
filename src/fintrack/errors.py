from __future__ import annotations


class FintrackError(Exception):
    """Base class for every failure raised by fintrack."""


class TransportError(FintrackError):
    """Connection, timeout, decompression or decode failure. Never retried."""


class APIError(FintrackError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API request failed with status {status_code}: {message}")


class SessionError(FintrackError):
    """Missing, expired or unusable session. Recoverable by logging in again."""


class SessionNotFoundError(SessionError):
    pass


class SessionDecodeError(SessionError):
    pass


class ConfigError(FintrackError):
    pass
