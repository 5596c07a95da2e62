import json
import os
import stat

import pytest

from chatsync import cli
from chatsync.config import (
    AppConfig,
    PollConfig,
    ServerConfig,
    config_path,
    load_config,
    save_config,
    validate_config,
)


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "absent.json")
    assert cfg == AppConfig()
    assert cfg.poll.message_interval_s == 5.0
    assert cfg.poll.directory_interval_s == 15.0
    assert cfg.server.port == 5050


def test_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.json"
    cfg = AppConfig(
        api_base_url="https://chat.example.com",
        user_id="u1",
        poll=PollConfig(message_interval_s=2.5, fetch_attempts=3),
        server=ServerConfig(port=6000),
    )
    save_config(cfg, path)
    assert load_config(path) == cfg
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_invalid_json_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_config(path) == AppConfig()
    assert "Invalid JSON" in caplog.text


def test_unknown_keys_are_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"user_id": "u9", "legacy": 1, "poll": {"message_limit": 20, "old": True}}))
    cfg = load_config(path)
    assert cfg.user_id == "u9"
    assert cfg.poll.message_limit == 20


def test_env_override(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    monkeypatch.setenv("CHATSYNC_CONFIG", str(path))
    assert config_path() == path
    save_config(AppConfig(user_id="env-user"))
    assert load_config().user_id == "env-user"


def test_validate_config_reports_problems():
    assert validate_config(AppConfig(user_id="u1")) == []
    problems = validate_config(
        AppConfig(
            api_base_url="ftp://nope",
            poll=PollConfig(message_interval_s=0, message_limit=500, fetch_attempts=0),
        )
    )
    assert len(problems) == 5


def test_check_config_exit_code(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setenv("CHATSYNC_CONFIG", str(path))

    with pytest.raises(SystemExit) as info:
        cli.main(["check-config"])
    assert info.value.code == 1

    save_config(AppConfig(user_id="u1"))
    with pytest.raises(SystemExit) as info:
        cli.main(["check-config"])
    assert info.value.code == 0
