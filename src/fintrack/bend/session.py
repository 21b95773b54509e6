from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, ValidationError, field_validator

from ..errors import SessionDecodeError, SessionNotFoundError

VALIDITY_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Session(BaseModel):
    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    token_type: str = ""
    marble_cookie: str = ""
    device_hash: str = ""

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_refresh_token(cls, refresh_token: str, device_hash: str) -> "Session":
        return cls(refresh_token=refresh_token, device_hash=device_hash, token_type="Bearer")

    def is_valid(self, now: datetime | None = None) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        now = now or _utcnow()
        return now + VALIDITY_BUFFER < self.expires_at

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        return (now or _utcnow()) >= self.expires_at

    def time_remaining(self, now: datetime | None = None) -> timedelta | None:
        if self.expires_at is None:
            return None
        return self.expires_at - (now or _utcnow())


@dataclass(frozen=True)
class SessionInfo:
    exists: bool
    valid: bool
    expires_at: datetime | None = None
    time_remaining: timedelta | None = None
    has_refresh_token: bool = False


class SessionStore:
    """
    Single session record stored as JSON with owner-only permissions:

      ~/.config/fintrack/session.json

    Writes go to a temp file that replaces the target, so the previous record
    stays on disk until the new one is fully written. Writers serialize on an
    advisory lock file next to the session; readers do not lock, and a
    read-refresh-save done by two processes can still overwrite each other.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def save(self, session: Session) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = session.model_dump_json(indent=2)

        with self._write_lock():
            tmp = self.path.with_name(self.path.name + ".tmp")
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, 0o600)
                tmp.replace(self.path)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
        return self.path

    def load(self) -> Session:
        if not self.path.exists():
            raise SessionNotFoundError(f"Session file does not exist: {self.path}")
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            raise SessionDecodeError(f"Failed to read session file {self.path}: {e}") from e
        try:
            return Session.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            raise SessionDecodeError(f"Failed to parse session file {self.path}: {e}") from e

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def describe(self, now: datetime | None = None) -> SessionInfo:
        try:
            session = self.load()
        except SessionNotFoundError:
            return SessionInfo(exists=False, valid=False)
        except SessionDecodeError:
            return SessionInfo(exists=True, valid=False)

        now = now or _utcnow()
        valid = session.is_valid(now)
        return SessionInfo(
            exists=True,
            valid=valid,
            expires_at=session.expires_at,
            time_remaining=session.time_remaining(now) if valid else None,
            has_refresh_token=bool(session.refresh_token),
        )
