import os
import stat
from pathlib import Path

import pytest
import yaml

from fintrack.config import (
    find_config_file,
    get_config_value,
    init_local_config,
    load_settings,
    parse_duration,
    read_config_file,
    resolve_device_id,
    update_config_file,
    validate_config_key,
    validate_config_value,
)
from fintrack.errors import ConfigError


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    for key in list(os.environ):
        if key.startswith("FINTRACK_"):
            monkeypatch.delenv(key)
    return work


def _write(path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


def test_parse_duration():
    assert parse_duration(2) == 2.0
    assert parse_duration("1.5") == 1.5
    assert parse_duration("500ms") == 0.5
    assert parse_duration("2m") == 120.0
    assert parse_duration("1h") == 3600.0
    with pytest.raises(ValueError):
        parse_duration("fast")


def test_defaults_without_config_file():
    s = load_settings()
    assert s.config_file is None
    assert s.bend.rate_limit == 1.0
    assert s.bend.timeout == 30.0
    assert s.bend.device_type == "Web"
    assert s.bend.session_file.name == "session.json"
    assert s.bend.session_file.is_absolute()


def test_yaml_values_and_relative_session_file(tmp_path):
    cfg = tmp_path / "cfg" / "config.yaml"
    _write(
        cfg,
        {
            "bend": {
                "base_url": "https://api.bend.test",
                "rate_limit": "500ms",
                "timeout": "10s",
                "session_file": "state/session.json",
                "refresh_token": "from-file",
            },
            "log_level": "DEBUG",
        },
    )

    s = load_settings(cfg)
    assert s.config_file == cfg
    assert s.bend.base_url == "https://api.bend.test"
    assert s.bend.rate_limit == 0.5
    assert s.bend.timeout == 10.0
    assert s.bend.session_file == cfg.parent / "state" / "session.json"
    assert s.bend.refresh_token == "from-file"
    assert s.log_level == "DEBUG"


def test_environment_overrides_file(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    _write(cfg, {"bend": {"base_url": "https://file.test", "rate_limit": 3}})
    monkeypatch.setenv("FINTRACK_BEND__BASE_URL", "https://env.test")

    s = load_settings(cfg)
    assert s.bend.base_url == "https://env.test"
    assert s.bend.rate_limit == 3.0


def test_config_file_from_env_var(tmp_path, monkeypatch):
    cfg = tmp_path / "elsewhere.yaml"
    _write(cfg, {"bend": {"origin": "https://app.bend.test"}})
    monkeypatch.setenv("FINTRACK_CONFIG", str(cfg))

    assert find_config_file() == cfg
    assert load_settings().bend.origin == "https://app.bend.test"


def test_local_config_dir_is_searched(isolated_env):
    cfg = isolated_env / ".fintrack" / "config.yaml"
    _write(cfg, {"log_http": True})
    assert find_config_file() == cfg.relative_to(isolated_env)
    assert load_settings().log_http is True


def test_invalid_values_are_config_errors(tmp_path):
    cfg = tmp_path / "config.yaml"
    _write(cfg, {"bend": {"rate_limit": "fast"}})
    with pytest.raises(ConfigError):
        load_settings(cfg)

    _write(cfg, {"bend": {"timeout": 0}})
    with pytest.raises(ConfigError):
        load_settings(cfg)


def test_non_mapping_file_is_config_error(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        read_config_file(cfg)

    cfg.write_text("bend: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        read_config_file(cfg)


def test_update_config_file_merges_and_restricts_permissions(tmp_path):
    cfg = tmp_path / "config.yaml"
    _write(cfg, {"bend": {"base_url": "https://keep.test"}, "log_level": "INFO"})

    update_config_file(cfg, {"bend.device_hash": "dev-1", "bend.refresh_token": "rt-1"})

    data = yaml.safe_load(cfg.read_text(encoding="utf-8"))
    assert data == {
        "bend": {"base_url": "https://keep.test", "device_hash": "dev-1", "refresh_token": "rt-1"},
        "log_level": "INFO",
    }
    assert stat.S_IMODE(cfg.stat().st_mode) == 0o600


def test_update_config_file_creates_global_file(tmp_path):
    path = update_config_file(None, {"bend.refresh_token": "rt"})
    assert path == tmp_path / "home" / ".config" / "fintrack" / "config.yaml"
    assert yaml.safe_load(path.read_text(encoding="utf-8")) == {"bend": {"refresh_token": "rt"}}


def test_device_id_resolution(tmp_path):
    assert resolve_device_id("configured") == "configured"

    first = resolve_device_id(None)
    assert (tmp_path / "home" / ".config" / "fintrack" / "device_hash").read_text() == first
    assert resolve_device_id(None) == first


def test_device_profile_uses_configured_identity(tmp_path):
    cfg = tmp_path / "config.yaml"
    _write(cfg, {"bend": {"device_hash": "dh-1", "device_location": "Mumbai"}})
    profile = load_settings(cfg).device_profile()
    assert profile.device_id == "dh-1"
    assert profile.device_type == "Web"
    assert profile.device_location == "Mumbai"


def test_base_url_must_be_http(tmp_path):
    cfg = tmp_path / "config.yaml"
    _write(cfg, {"bend": {"base_url": "bend.example.com"}})
    with pytest.raises(ConfigError, match="HTTP/HTTPS"):
        load_settings(cfg)


def test_config_key_validation(caplog):
    validate_config_key("bend.base_url")
    with pytest.raises(ConfigError, match="empty"):
        validate_config_key("")
    with pytest.raises(ConfigError, match="invalid character"):
        validate_config_key("bend base_url")

    validate_config_key("bend.something_new")
    assert "Unknown configuration key 'bend.something_new'" in caplog.text


@pytest.mark.parametrize(
    "key,value",
    [
        ("bend.base_url", "ftp://bend.test"),
        ("bend.timeout", "60"),
        ("bend.rate_limit", "2"),
        ("bend.device_type", "Desktop"),
    ],
)
def test_config_value_rejected(key, value):
    with pytest.raises(ConfigError):
        validate_config_value(key, value)


def test_config_value_accepted():
    validate_config_value("bend.base_url", "https://bend.test")
    validate_config_value("bend.timeout", "60s")
    validate_config_value("bend.rate_limit", "500ms")
    validate_config_value("bend.device_type", "CLI")
    validate_config_value("bend.device_location", "anything")


def test_get_config_value():
    data = {"bend": {"timeout": 30.0, "refresh_token": None}}
    assert get_config_value(data, "bend.timeout") == 30.0
    assert get_config_value(data, "bend") == {"timeout": 30.0, "refresh_token": None}
    with pytest.raises(ConfigError, match="not found"):
        get_config_value(data, "bend.refresh_token")
    with pytest.raises(ConfigError):
        get_config_value(data, "bend.timeout.unit")


def test_init_local_config_creates_loadable_config(isolated_env):
    result = init_local_config(isolated_env)

    assert result.config_created and result.ignore_created
    assert result.config_file == isolated_env.resolve() / ".fintrack" / "config.yaml"
    assert "*.csv" in result.ignore_file.read_text(encoding="utf-8")

    s = load_settings(result.config_file)
    assert s.bend.rate_limit == 1.0
    assert s.bend.timeout == 30.0
    assert s.bend.session_file == isolated_env.resolve() / ".fintrack" / "session.json"
    assert find_config_file() == Path(".fintrack") / "config.yaml"


def test_init_refuses_existing_dir_without_force(isolated_env):
    init_local_config(isolated_env)
    cfg = isolated_env / ".fintrack" / "config.yaml"
    cfg.write_text("log_level: DEBUG\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="--force"):
        init_local_config(isolated_env)
    assert cfg.read_text(encoding="utf-8") == "log_level: DEBUG\n"

    result = init_local_config(isolated_env, force=True)
    assert result.config_created
    assert "base_url" in cfg.read_text(encoding="utf-8")


def test_init_missing_directory(tmp_path):
    with pytest.raises(ConfigError, match="does not exist"):
        init_local_config(tmp_path / "nope")
