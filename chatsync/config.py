from __future__ import annotations

"""Configuration handling for chatsync.

Settings live in a JSON file, ``~/.config/chatsync/config.json`` unless the
``CHATSYNC_CONFIG`` environment variable points elsewhere.  A missing or
unreadable file yields the defaults, so the client and the reference server
both start without any setup.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
import json
import logging
import os

CFG_PATH = Path.home() / ".config" / "chatsync" / "config.json"


def config_path() -> Path:
    override = os.getenv("CHATSYNC_CONFIG")
    return Path(override).expanduser() if override else CFG_PATH


@dataclass
class PollConfig:
    message_interval_s: float = 5.0
    directory_interval_s: float = 15.0
    message_limit: int = 100
    fetch_attempts: int = 2
    retry_base_delay_s: float = 0.5


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5050
    database_url: str = "sqlite+aiosqlite:///chatsync.db"


@dataclass
class AppConfig:
    api_base_url: str = "http://127.0.0.1:5050"
    user_id: str = ""
    request_timeout_s: float = 10.0
    poll: PollConfig = field(default_factory=PollConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _known(cls: type, data: dict) -> dict:
    names = getattr(cls, "__dataclass_fields__", {})
    unknown = set(data) - set(names)
    if unknown:
        logging.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)))
    return {k: v for k, v in data.items() if k in names}


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError:
        logging.warning("Invalid JSON in %s, using defaults", path)
        return AppConfig()
    if not isinstance(data, dict):
        logging.warning("Config in %s is not an object, using defaults", path)
        return AppConfig()
    top = _known(AppConfig, {k: v for k, v in data.items() if k not in ("poll", "server")})
    return AppConfig(
        poll=PollConfig(**_known(PollConfig, data.get("poll") or {})),
        server=ServerConfig(**_known(ServerConfig, data.get("server") or {})),
        **top,
    )


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2))
    try:
        path.chmod(0o600)
    except OSError as exc:  # pragma: no cover - platform dependent
        logging.warning("Unable to set permissions on %s: %s", path, exc)
    return path


def validate_config(cfg: AppConfig) -> list[str]:
    """Return human readable problems with ``cfg``; empty when usable."""

    problems: list[str] = []
    if not cfg.api_base_url.startswith(("http://", "https://")):
        problems.append(f"api_base_url must be an http(s) URL, got {cfg.api_base_url!r}")
    if not cfg.user_id:
        problems.append("user_id is not set")
    if cfg.request_timeout_s <= 0:
        problems.append("request_timeout_s must be positive")
    if cfg.poll.message_interval_s <= 0 or cfg.poll.directory_interval_s <= 0:
        problems.append("poll intervals must be positive")
    if not 1 <= cfg.poll.message_limit <= 100:
        problems.append("poll.message_limit must be between 1 and 100")
    if cfg.poll.fetch_attempts < 1:
        problems.append("poll.fetch_attempts must be at least 1")
    return problems
