import os
import stat
from datetime import datetime, timedelta, timezone

import pytest

from fintrack.bend.session import Session, SessionStore
from fintrack.errors import SessionDecodeError, SessionNotFoundError

NOW = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)


def _session(**kw) -> Session:
    base = dict(
        access_token="acc",
        refresh_token="ref",
        expires_at=NOW + timedelta(hours=1),
        token_type="Bearer",
        marble_cookie="mc",
        device_hash="d1",
    )
    base.update(kw)
    return Session(**base)


def test_validity_uses_five_minute_buffer():
    assert _session(expires_at=NOW + timedelta(minutes=6)).is_valid(NOW)
    assert not _session(expires_at=NOW + timedelta(minutes=5)).is_valid(NOW)
    assert not _session(expires_at=NOW + timedelta(minutes=4)).is_valid(NOW)
    assert not _session(expires_at=NOW - timedelta(hours=1)).is_valid(NOW)


def test_session_without_access_token_is_never_valid():
    assert not _session(access_token="", expires_at=NOW + timedelta(days=1)).is_valid(NOW)
    assert not Session.from_refresh_token("abc", "d1").is_valid(NOW)


def test_from_refresh_token_defaults():
    s = Session.from_refresh_token("abc", "d1")
    assert s.refresh_token == "abc"
    assert s.device_hash == "d1"
    assert s.token_type == "Bearer"
    assert s.access_token == ""


def test_save_then_load_round_trip(tmp_path):
    store = SessionStore(tmp_path / "nested" / "dir" / "session.json")
    s = _session()
    store.save(s)
    assert store.load() == s


def test_save_is_owner_only(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session())
    mode = stat.S_IMODE(os.stat(store.path).st_mode)
    assert mode == 0o600


def test_save_overwrites_rotated_refresh_token(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session(refresh_token="old"))
    store.save(_session(refresh_token="new"))
    assert store.load().refresh_token == "new"
    assert "old" not in store.path.read_text(encoding="utf-8")
    assert not store.path.with_name("session.json.tmp").exists()


def test_load_missing_raises_not_found(tmp_path):
    with pytest.raises(SessionNotFoundError):
        SessionStore(tmp_path / "missing.json").load()


def test_load_garbage_raises_decode_error(tmp_path):
    p = tmp_path / "session.json"
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(SessionDecodeError):
        SessionStore(p).load()


def test_save_to_unwritable_path_raises_oserror(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(OSError):
        SessionStore(blocker / "session.json").save(_session())


def test_describe_missing_file(tmp_path):
    info = SessionStore(tmp_path / "missing.json").describe()
    assert info.exists is False
    assert info.valid is False


def test_describe_valid_session(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session())
    info = store.describe(now=NOW)
    assert info.exists and info.valid
    assert info.has_refresh_token
    assert info.expires_at == NOW + timedelta(hours=1)
    assert info.time_remaining == timedelta(hours=1)


def test_describe_expired_session_keeps_refresh_flag(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session(expires_at=NOW - timedelta(minutes=1), refresh_token=""))
    info = store.describe(now=NOW)
    assert info.exists
    assert not info.valid
    assert info.time_remaining is None
    assert not info.has_refresh_token


def test_delete_is_idempotent(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session())
    store.delete()
    store.delete()
    assert not store.path.exists()


def test_non_utf8_file_is_decode_error(tmp_path):
    p = tmp_path / "session.json"
    p.write_bytes(b"\xff\xfe\x00garbage")
    with pytest.raises(SessionDecodeError):
        SessionStore(p).load()


def test_describe_corrupt_file_reports_invalid(tmp_path):
    p = tmp_path / "session.json"
    p.write_bytes(b"\xff\xfe\x00garbage")
    info = SessionStore(p).describe(now=NOW)
    assert info.exists
    assert not info.valid
    assert not info.has_refresh_token

    p.write_text('{"expires_at": "never"}', encoding="utf-8")
    assert SessionStore(p).describe(now=NOW).exists


def test_failed_write_removes_temp_file_and_keeps_previous(tmp_path, monkeypatch):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session(refresh_token="old"))

    def broken_fsync(fd):
        raise OSError("disk full")

    monkeypatch.setattr(os, "fsync", broken_fsync)
    with pytest.raises(OSError, match="disk full"):
        store.save(_session(refresh_token="new"))

    assert not store.path.with_name("session.json.tmp").exists()
    assert store.load().refresh_token == "old"
