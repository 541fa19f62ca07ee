# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for relay settings, accounts and routing tables.

Settings come from an INI file (default: ``config.ini``, overridden by the
``TELL_RELAY_CONFIG`` environment variable) with ``TELL_RELAY_*``
environment variables as fallbacks for the global options. The parsed
result is validated once into :class:`RelayConfig`; nothing downstream
inspects raw configuration values.

Example:
    Configuration file format (config.ini)::

        [relay]
        broker_url = https://www.clawtell.com/api
        state_dir = ~/.tell-relay
        default_consumer = main
        consumers = main, helper

        [delivery]
        policy = allowlist
        allowlist = bob, carol

        [forward]
        channel = telegram
        to = 123456789

        [telegram]
        bot_token = 12345:abcdef

        [account default]
        name = alice
        api_key = ct_live_xxx
        mode = stream
        route.alice.consumer = main
        route.helper-bot.consumer = helper
        route.helper-bot.forward = false
        route.helper-bot.api_key = ct_live_yyy

    Loading it::

        config = load_relay_config("/etc/tell-relay/config.ini")
        for account in config.enabled_accounts():
            ...
"""

from __future__ import annotations

import configparser
import os
import re
import shutil
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .logger import get_logger
from .models import DEFAULT_ROUTE_KEY, RouteEntry, TransportMode, strip_identity_prefix

logger = get_logger(__name__)

ENV_PREFIX = "TELL_RELAY_"
DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_BROKER_URL = "https://www.clawtell.com/api"
DEFAULT_STATE_DIR = "~/.tell-relay"
DEFAULT_CONSUMER = "main"
ACCOUNT_SECTION_PREFIX = "account "
ROUTE_KEY_PREFIX = "route."
ROUTE_FIELDS = {"consumer", "forward", "api_key", "forward_channel", "forward_to", "forward_account"}
IDENTITY_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_bool(value: Any, default: bool | None = None) -> bool | None:
    """Normalise INI/env style booleans."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


def parse_list(value: str | None) -> List[str]:
    """Split a comma or whitespace separated option into a list."""
    if not value:
        return []
    return [item for item in re.split(r"[,\s]+", value.strip()) if item]


def is_valid_identity(name: str) -> bool:
    """Return ``True`` when ``name`` is an acceptable route identity."""
    return name == DEFAULT_ROUTE_KEY or bool(IDENTITY_RE.match(name))


class DeliveryPolicyConfig(BaseModel):
    """Sender filtering settings shared by every account.

    Attributes:
        policy: ``everyone``, ``allowlist`` or ``blocklist``. Unknown values
            are kept as-is and allow every sender.
        allowlist: Senders accepted in ``allowlist`` mode.
        blocklist: Senders rejected in ``everyone``/``blocklist`` mode.
        auto_reply_allowlist: Senders a consumer may answer without a human.
    """

    model_config = ConfigDict(extra="forbid")

    policy: str = "everyone"
    allowlist: List[str] = Field(default_factory=list)
    blocklist: List[str] = Field(default_factory=list)
    auto_reply_allowlist: List[str] = Field(default_factory=list)

    @field_validator("allowlist", "blocklist", "auto_reply_allowlist")
    @classmethod
    def _normalise_names(cls, value: List[str]) -> List[str]:
        return [strip_identity_prefix(name).lower() for name in value if name]


class ForwardTarget(BaseModel):
    """Explicit human channel used for forwards."""

    model_config = ConfigDict(extra="forbid")

    channel: Annotated[str, Field(min_length=1)]
    to: Annotated[str, Field(min_length=1)]
    account_id: str = "default"


class AccountConfig(BaseModel):
    """One broker account and the identities it serves.

    Attributes:
        account_id: Local identifier (section suffix in the INI file).
        enabled: Disabled accounts are parsed but never started.
        name: Primary identity of the account (required in legacy mode).
        api_key: Bearer credential for the broker account.
        mode: Acquisition mode; see :class:`~tell_relay.models.TransportMode`.
        poll_interval: Seconds between poll cycles.
        poll_limit: Maximum messages fetched per poll.
        poll_wait: Server-side long-poll wait in seconds.
        stream_url: Override for the stream endpoint URL.
        routes: Routing table keyed by recipient identity.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")]
    enabled: bool = True
    name: Optional[str] = None
    api_key: Annotated[str, Field(min_length=1)]
    mode: TransportMode = TransportMode.STREAM
    poll_interval: Annotated[float, Field(default=30.0, gt=0)]
    poll_limit: Annotated[int, Field(default=50, ge=1, le=500)]
    poll_wait: Annotated[int, Field(default=5, ge=0, le=60)]
    stream_url: Optional[str] = None
    routes: Dict[str, RouteEntry] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _normalise_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        name = strip_identity_prefix(value).lower()
        if not IDENTITY_RE.match(name):
            raise ValueError(f"invalid identity name {value!r}")
        return name

    @field_validator("routes")
    @classmethod
    def _check_route_names(cls, value: Dict[str, RouteEntry]) -> Dict[str, RouteEntry]:
        for name in value:
            if not is_valid_identity(name):
                raise ValueError(f"invalid route name {name!r}")
        return value


class RelayConfig(BaseModel):
    """Complete, validated relay configuration."""

    model_config = ConfigDict(extra="forbid")

    broker_url: str = DEFAULT_BROKER_URL
    state_dir: Path = Path(DEFAULT_STATE_DIR).expanduser()
    default_consumer: Annotated[str, Field(min_length=1)] = DEFAULT_CONSUMER
    consumers: List[str] = Field(default_factory=list)
    sessions_dir: Optional[Path] = None
    gateway_url: Optional[str] = None
    gateway_token: Optional[str] = None
    dispatch_timeout: Annotated[float, Field(default=120.0, gt=0)]
    log_delivery_activity: bool = False
    delivery: DeliveryPolicyConfig = Field(default_factory=DeliveryPolicyConfig)
    forward: Optional[ForwardTarget] = None
    telegram_bot_tokens: Dict[str, str] = Field(default_factory=dict)
    api_host: str = "127.0.0.1"
    api_port: Annotated[int, Field(default=8790, ge=1, le=65535)]
    api_token: Optional[str] = None
    accounts: List[AccountConfig] = Field(default_factory=list)

    def enabled_accounts(self) -> List[AccountConfig]:
        """Accounts that should get a delivery loop."""
        return [account for account in self.accounts if account.enabled]

    def get_account(self, account_id: str) -> AccountConfig:
        for account in self.accounts:
            if account.account_id == account_id:
                return account
        raise ConfigError(f"Unknown account: {account_id}")

    def known_consumers(self) -> List[str]:
        """Configured consumer names, always including the default one."""
        names = list(self.consumers)
        if self.default_consumer not in names:
            names.insert(0, self.default_consumer)
        return names

    def account_dir(self, account_id: str) -> Path:
        return self.state_dir / "accounts" / account_id

    def queue_path(self, account_id: str) -> Path:
        """Location of the durable retry queue for one account."""
        return self.account_dir(account_id) / "inbox-queue.json"


class RelayConfigLoader:
    """Load relay settings from an INI file with environment fallbacks."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None, environ: Dict[str, str] | None = None):
        """Initialize with the path to the config file.

        Args:
            config_path: INI file path; defaults to ``TELL_RELAY_CONFIG`` or
                ``config.ini``.
            environ: Environment mapping, ``os.environ`` when omitted.
        """
        self.environ = dict(os.environ if environ is None else environ)
        self.config_path = Path(config_path or self.environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
        self.config = configparser.ConfigParser(interpolation=None)

    def load_config(self, required: bool = True) -> None:
        """Read the configuration file.

        Raises:
            ConfigError: If the file is missing and ``required`` is set.
        """
        if not self.config_path.exists():
            if required:
                raise ConfigError(f"Config file not found: {self.config_path}")
            logger.info("Config file %s not found, using environment only", self.config_path)
            return
        try:
            self.config.read(self.config_path)
        except configparser.Error as exc:
            raise ConfigError(f"Cannot parse {self.config_path}: {exc}") from exc

    # ------------------------------------------------------------------ helpers
    def _get(self, section: str, option: str, env: str | None = None, fallback: str | None = None) -> str | None:
        if self.config.has_option(section, option):
            value = self.config.get(section, option).strip()
            return value if value else fallback
        if env and self.environ.get(f"{ENV_PREFIX}{env}"):
            return self.environ[f"{ENV_PREFIX}{env}"]
        return fallback

    def _section_values(self, section: str) -> Dict[str, Any]:
        if not self.config.has_section(section):
            return {}
        return {key: value for key, value in self.config.items(section)}

    # ------------------------------------------------------------------ parsers
    def parse_routes(self, section: str) -> Dict[str, Dict[str, Any]]:
        """Parse ``route.<name>.<field>`` keys of an account section.

        Returns:
            Raw route dictionaries keyed by identity, ``forward`` defaulting
            to true.
        """
        routes: Dict[str, Dict[str, Any]] = {}
        for key, value in self.config.items(section):
            if not key.startswith(ROUTE_KEY_PREFIX):
                continue
            parts = key.split(".", 2)
            if len(parts) != 3:
                logger.warning("Invalid route key format: %s (in [%s])", key, section)
                continue
            _, name, field = parts
            name = strip_identity_prefix(name).lower()
            if field not in ROUTE_FIELDS:
                logger.warning("Unknown route field: %s (in [%s])", field, section)
                continue
            entry = routes.setdefault(name, {})
            if field == "forward":
                entry["forward"] = parse_bool(value, default=True)
            else:
                entry[field] = value.strip() or None
        return routes

    def parse_account(self, section: str, default_consumer: str) -> Dict[str, Any]:
        """Parse one ``[account <id>]`` section into raw account settings."""
        account_id = section[len(ACCOUNT_SECTION_PREFIX):].strip()
        values = {key: value for key, value in self.config.items(section) if not key.startswith(ROUTE_KEY_PREFIX)}
        routes = self.parse_routes(section)
        for entry in routes.values():
            if not entry.get("consumer"):
                entry["consumer"] = default_consumer

        data: Dict[str, Any] = {
            "account_id": account_id,
            "enabled": parse_bool(values.pop("enabled", None), default=True),
            "name": values.pop("name", None) or None,
            "api_key": values.pop("api_key", None) or self.environ.get(f"{ENV_PREFIX}API_KEY_{account_id.upper()}"),
        }
        mode = values.pop("mode", None)
        poll_account = parse_bool(values.pop("poll_account", None))
        if mode:
            data["mode"] = mode.strip().lower()
        elif poll_account is False or (poll_account is None and not routes):
            data["mode"] = TransportMode.LEGACY
        for option in ("poll_interval", "poll_limit", "poll_wait", "stream_url"):
            if option in values:
                data[option] = values.pop(option)
        for unknown in values:
            logger.warning("Unknown option %s in [%s]", unknown, section)

        if not routes and data["name"] and data.get("mode", TransportMode.STREAM) == TransportMode.LEGACY:
            # Single-identity accounts route their own name to the default consumer.
            name = strip_identity_prefix(data["name"]).lower()
            routes = {name: {"consumer": default_consumer, "forward": True}}
        data["routes"] = routes
        return data

    def parse(self) -> RelayConfig:
        """Build and validate the complete :class:`RelayConfig`.

        Raises:
            ConfigError: If any value fails validation.
        """
        default_consumer = self._get("relay", "default_consumer", "DEFAULT_CONSUMER", DEFAULT_CONSUMER)
        data: Dict[str, Any] = {
            "broker_url": self._get("relay", "broker_url", "BROKER_URL", DEFAULT_BROKER_URL),
            "state_dir": Path(self._get("relay", "state_dir", "STATE_DIR", DEFAULT_STATE_DIR)).expanduser(),
            "default_consumer": default_consumer,
            "consumers": parse_list(self._get("relay", "consumers", "CONSUMERS")),
            "gateway_url": self._get("relay", "gateway_url", "GATEWAY_URL"),
            "gateway_token": self._get("relay", "gateway_token", "GATEWAY_TOKEN"),
            "log_delivery_activity": parse_bool(
                self._get("relay", "log_delivery_activity", "LOG_DELIVERY_ACTIVITY"), default=False
            ),
            "api_host": self._get("server", "host", "HOST", "127.0.0.1"),
            "api_token": self._get("server", "api_token", "API_TOKEN"),
        }
        sessions_dir = self._get("relay", "sessions_dir", "SESSIONS_DIR")
        if sessions_dir:
            data["sessions_dir"] = Path(sessions_dir).expanduser()
        dispatch_timeout = self._get("relay", "dispatch_timeout", "DISPATCH_TIMEOUT")
        if dispatch_timeout:
            data["dispatch_timeout"] = dispatch_timeout
        port = self._get("server", "port", "PORT")
        if port:
            data["api_port"] = port

        data["delivery"] = {
            "policy": (self._get("delivery", "policy", "DELIVERY_POLICY", "everyone") or "everyone").lower(),
            "allowlist": parse_list(self._get("delivery", "allowlist")),
            "blocklist": parse_list(self._get("delivery", "blocklist")),
            "auto_reply_allowlist": parse_list(self._get("delivery", "auto_reply_allowlist")),
        }

        forward = self._section_values("forward")
        if forward.get("channel") and forward.get("to"):
            data["forward"] = {
                "channel": forward["channel"].strip().lower(),
                "to": forward["to"].strip(),
                "account_id": (forward.get("account") or "default").strip(),
            }

        tokens: Dict[str, str] = {}
        for key, value in self._section_values("telegram").items():
            if key == "bot_token" and value.strip():
                tokens["default"] = value.strip()
            elif key.startswith("account.") and key.endswith(".bot_token") and value.strip():
                tokens[key[len("account."):-len(".bot_token")]] = value.strip()
        if "default" not in tokens and self.environ.get(f"{ENV_PREFIX}TELEGRAM_BOT_TOKEN"):
            tokens["default"] = self.environ[f"{ENV_PREFIX}TELEGRAM_BOT_TOKEN"]
        data["telegram_bot_tokens"] = tokens

        accounts = [
            self.parse_account(section, default_consumer)
            for section in self.config.sections()
            if section.startswith(ACCOUNT_SECTION_PREFIX)
        ]
        if not accounts and self.environ.get(f"{ENV_PREFIX}API_KEY"):
            # Single account configured entirely through the environment.
            name = self.environ.get(f"{ENV_PREFIX}NAME")
            accounts.append(
                {
                    "account_id": "default",
                    "name": name,
                    "api_key": self.environ[f"{ENV_PREFIX}API_KEY"],
                    "mode": self.environ.get(f"{ENV_PREFIX}MODE", TransportMode.LEGACY),
                    "routes": {
                        strip_identity_prefix(name).lower(): {"consumer": default_consumer, "forward": True}
                    }
                    if name
                    else {},
                }
            )
        data["accounts"] = accounts

        try:
            config = RelayConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration in {self.config_path}: {exc}") from exc
        for account in config.accounts:
            if account.mode == TransportMode.LEGACY and not account.name:
                raise ConfigError(f"Account {account.account_id!r} uses legacy mode but has no name")
        logger.info("Loaded %d account(s) from %s", len(config.accounts), self.config_path)
        return config


def load_relay_config(
    config_path: str | os.PathLike[str] | None = None,
    environ: Dict[str, str] | None = None,
    required: bool = False,
) -> RelayConfig:
    """Convenience function to load and validate the relay configuration."""
    loader = RelayConfigLoader(config_path, environ=environ)
    loader.load_config(required=required)
    return loader.parse()


# ---------------------------------------------------------------- route editing
def _account_section(parser: configparser.ConfigParser, account_id: str) -> str:
    section = f"{ACCOUNT_SECTION_PREFIX}{account_id}"
    if not parser.has_section(section):
        raise ConfigError(f"Account section [{section}] not found")
    return section


def _write_with_backup(parser: configparser.ConfigParser, config_path: Path) -> None:
    if config_path.exists():
        shutil.copyfile(config_path, config_path.with_name(config_path.name + ".bak"))
    tmp_path = config_path.with_name(config_path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        parser.write(fh)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, config_path)


def read_config_file(config_path: str | os.PathLike[str]) -> configparser.ConfigParser:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    return parser


def set_route(config_path: str | os.PathLike[str], account_id: str, name: str, entry: RouteEntry) -> bool:
    """Add or replace one route in the config file.

    The previous file is kept as ``<config>.bak``.

    Returns:
        ``True`` when an existing route was replaced.
    """
    name = strip_identity_prefix(name).lower()
    if not is_valid_identity(name):
        raise ConfigError(f"Invalid route name {name!r}")
    path = Path(config_path)
    parser = read_config_file(path)
    section = _account_section(parser, account_id)
    prefix = f"{ROUTE_KEY_PREFIX}{name}."
    existed = any(key.startswith(prefix) for key in parser.options(section))
    for key in [key for key in parser.options(section) if key.startswith(prefix)]:
        parser.remove_option(section, key)
    parser.set(section, f"{prefix}consumer", entry.consumer)
    parser.set(section, f"{prefix}forward", "true" if entry.forward else "false")
    for field in ("api_key", "forward_channel", "forward_to", "forward_account"):
        value = getattr(entry, field)
        if value:
            parser.set(section, f"{prefix}{field}", value)
    _write_with_backup(parser, path)
    return existed


def remove_route(config_path: str | os.PathLike[str], account_id: str, name: str) -> bool:
    """Remove one route from the config file.

    Returns:
        ``True`` when the route existed and was removed.
    """
    name = strip_identity_prefix(name).lower()
    path = Path(config_path)
    parser = read_config_file(path)
    section = _account_section(parser, account_id)
    prefix = f"{ROUTE_KEY_PREFIX}{name}."
    keys = [key for key in parser.options(section) if key.startswith(prefix)]
    if not keys:
        return False
    for key in keys:
        parser.remove_option(section, key)
    _write_with_backup(parser, path)
    return True
