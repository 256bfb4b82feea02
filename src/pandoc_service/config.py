"""Service configuration.

Values come from the dataclass defaults, then ``PANDOC_*`` environment
variables, then an optional JSON file (``PANDOC_CONFIG``), later sources
winning. Example JSON file::

    {
      "server": {"host": "0.0.0.0", "port": 8443,
                 "root_ca": "/etc/pandoc/ca.pem", "cert_subject": "CN=client"},
      "command_timeout": "2m",
      "notifications": {"msteams": {"webhooks": ["https://..."]}}
    }
"""

import json
import os
import re
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: object) -> float:
    """Parse seconds (``30``, ``"1.5"``) or unit strings (``"500ms"``, ``"1m30s"``)."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text) or not text:
                raise ConfigError(f"invalid duration {value!r}") from None
    if seconds < 0:
        raise ConfigError(f"invalid duration {value!r}")
    return seconds


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"invalid boolean {value!r}")


def _parse_list(value: object) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [v.strip() for v in str(value).split(",") if v.strip()]


@dataclass(frozen=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8000
    graceful_timeout: float = 10.0
    # Server identity; TLS is enabled when both are set.
    tls_cert: str = ""
    tls_key: str = ""
    # Client authorization (see pandoc_service.tls).
    root_ca: str = ""
    cert_subject: str = ""

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert and self.tls_key)


@dataclass(frozen=True)
class TelegramSettings:
    api_token: str = ""
    chat_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DiscordSettings:
    bot_token: str = ""
    oauth_token: str = ""
    channel_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EmailSettings:
    sender: str = ""
    server: str = ""
    port: int = 25
    username: str = ""
    password: str = ""
    recipients: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MailgunSettings:
    api_key: str = ""
    domain: str = ""
    sender_address: str = ""
    recipients: list[str] = field(default_factory=list)
    europe: bool = True


@dataclass(frozen=True)
class MSTeamsSettings:
    webhooks: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NotificationSettings:
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    discord: DiscordSettings = field(default_factory=DiscordSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    mailgun: MailgunSettings = field(default_factory=MailgunSettings)
    msteams: MSTeamsSettings = field(default_factory=MSTeamsSettings)
    # Per-delivery timeout for a single notification.
    timeout: float = 10.0


@dataclass(frozen=True)
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    pandoc_path: str = "/usr/local/bin/pandoc"
    pandoc_data_dir: str = "/.pandoc"
    command_timeout: float = 60.0
    # Parent directory for conversion workspaces; empty means the system temp dir.
    temp_dir: str = ""
    max_resources: int = 1000
    max_request_bytes: int = 50 * 1024 * 1024
    debug: bool = False
    json_logs: bool = False
    cloudflare: bool = False

    def validate(self) -> "Settings":
        srv = self.server
        if srv.cert_subject and not srv.root_ca:
            raise ConfigError("cert_subject requires root_ca to be configured")
        if srv.root_ca and not srv.tls_enabled:
            raise ConfigError("root_ca requires tls_cert and tls_key to be configured")
        if bool(srv.tls_cert) != bool(srv.tls_key):
            raise ConfigError("tls_cert and tls_key must be configured together")
        if self.command_timeout <= 0:
            raise ConfigError("command_timeout must be positive")
        if self.max_resources < 0 or self.max_request_bytes <= 0:
            raise ConfigError("resource limits must be positive")
        return self


# environment variable -> (section, key); section None means top level
ENV_VARS: dict[str, tuple[str | None, str]] = {
    "PANDOC_HOST": ("server", "host"),
    "PANDOC_PORT": ("server", "port"),
    "PANDOC_GRACEFUL_TIMEOUT": ("server", "graceful_timeout"),
    "PANDOC_TLS_CERT": ("server", "tls_cert"),
    "PANDOC_TLS_KEY": ("server", "tls_key"),
    "PANDOC_ROOT_CA": ("server", "root_ca"),
    "PANDOC_CERT_SUBJECT": ("server", "cert_subject"),
    "PANDOC_PATH": (None, "pandoc_path"),
    "PANDOC_DATA_DIR": (None, "pandoc_data_dir"),
    "PANDOC_COMMAND_TIMEOUT": (None, "command_timeout"),
    "PANDOC_TEMP_DIR": (None, "temp_dir"),
    "PANDOC_MAX_RESOURCES": (None, "max_resources"),
    "PANDOC_MAX_REQUEST_BYTES": (None, "max_request_bytes"),
    "PANDOC_DEBUG": (None, "debug"),
    "PANDOC_JSON_LOGS": (None, "json_logs"),
    "PANDOC_CLOUDFLARE": (None, "cloudflare"),
    "PANDOC_NOTIFY_TIMEOUT": ("notifications", "timeout"),
    "PANDOC_TELEGRAM_API_TOKEN": ("notifications.telegram", "api_token"),
    "PANDOC_TELEGRAM_CHAT_IDS": ("notifications.telegram", "chat_ids"),
    "PANDOC_DISCORD_BOT_TOKEN": ("notifications.discord", "bot_token"),
    "PANDOC_DISCORD_OAUTH_TOKEN": ("notifications.discord", "oauth_token"),
    "PANDOC_DISCORD_CHANNEL_IDS": ("notifications.discord", "channel_ids"),
    "PANDOC_EMAIL_SENDER": ("notifications.email", "sender"),
    "PANDOC_EMAIL_SERVER": ("notifications.email", "server"),
    "PANDOC_EMAIL_PORT": ("notifications.email", "port"),
    "PANDOC_EMAIL_USERNAME": ("notifications.email", "username"),
    "PANDOC_EMAIL_PASSWORD": ("notifications.email", "password"),
    "PANDOC_EMAIL_RECIPIENTS": ("notifications.email", "recipients"),
    "PANDOC_MAILGUN_API_KEY": ("notifications.mailgun", "api_key"),
    "PANDOC_MAILGUN_DOMAIN": ("notifications.mailgun", "domain"),
    "PANDOC_MAILGUN_SENDER_ADDRESS": ("notifications.mailgun", "sender_address"),
    "PANDOC_MAILGUN_RECIPIENTS": ("notifications.mailgun", "recipients"),
    "PANDOC_MSTEAMS_WEBHOOKS": ("notifications.msteams", "webhooks"),
}

_DURATION_KEYS = {"graceful_timeout", "command_timeout", "timeout"}


def _coerce(name: str, current: Any, value: Any) -> Any:
    if name in _DURATION_KEYS:
        return parse_duration(value)
    if isinstance(current, bool):
        return parse_bool(value)
    if isinstance(current, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"invalid integer for {name}: {value!r}") from None
    if isinstance(current, list):
        return _parse_list(value)
    if isinstance(value, (dict, list)):
        raise ConfigError(f"invalid value for {name}: {value!r}")
    return str(value)


def _merge(obj: Any, data: Mapping[str, Any], prefix: str = "") -> Any:
    """Return a copy of dataclass ``obj`` with ``data`` merged in recursively."""
    known = {f.name for f in fields(obj)}
    changes: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"unknown configuration key {prefix}{key}")
        current = getattr(obj, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"configuration key {prefix}{key} must be an object")
            changes[key] = _merge(current, value, f"{prefix}{key}.")
        else:
            changes[key] = _coerce(key, current, value)
    return replace(obj, **changes)


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for var, (section, key) in ENV_VARS.items():
        value = environ.get(var)
        if value is None:
            continue
        node = tree
        if section:
            for part in section.split("."):
                node = node.setdefault(part, {})
        node[key] = value
    return tree


def load_settings(config_file: str | os.PathLike | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Build validated settings from defaults, environment and an optional JSON file."""
    env = os.environ if environ is None else environ
    settings = _merge(Settings(), _env_overrides(env))

    path = config_file or env.get("PANDOC_CONFIG")
    if path:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"could not read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")
        settings = _merge(settings, data)

    return settings.validate()
