"""Tests for relay configuration loading from config.ini."""

import os
import stat

import pytest

from tell_relay.config_loader import (
    RelayConfigLoader,
    load_relay_config,
    parse_bool,
    parse_list,
    remove_route,
    set_route,
)
from tell_relay.errors import ConfigError
from tell_relay.models import RouteEntry, TransportMode

CONFIG = """
[relay]
broker_url = https://broker.test/api
state_dir = {state_dir}
default_consumer = main
consumers = main, helper

[delivery]
policy = allowlist
allowlist = tell/Bob, carol
auto_reply_allowlist = bob

[forward]
channel = Telegram
to = 12345

[telegram]
bot_token = 111:aaa
account.work.bot_token = 222:bbb

[account default]
name = alice
api_key = key-default
mode = stream
route.alice.consumer = main
route.helper-bot.consumer = helper
route.helper-bot.forward = false
route.helper-bot.api_key = key-helper
route._default.consumer = main

[account legacy]
name = tell/old-name
api_key = key-legacy
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(CONFIG.format(state_dir=tmp_path / "state"))
    return path


def test_parse_full_config(config_file, tmp_path):
    config = load_relay_config(config_file, environ={})

    assert config.broker_url == "https://broker.test/api"
    assert config.state_dir == tmp_path / "state"
    assert config.known_consumers() == ["main", "helper"]
    assert config.delivery.policy == "allowlist"
    assert config.delivery.allowlist == ["bob", "carol"]
    assert config.delivery.auto_reply_allowlist == ["bob"]
    assert config.forward.channel == "telegram"
    assert config.forward.to == "12345"
    assert config.telegram_bot_tokens == {"default": "111:aaa", "work": "222:bbb"}

    default = config.get_account("default")
    assert default.mode == TransportMode.STREAM
    assert set(default.routes) == {"alice", "helper-bot", "_default"}
    helper = default.routes["helper-bot"]
    assert helper.consumer == "helper"
    assert helper.forward is False
    assert helper.api_key == "key-helper"
    assert default.routes["alice"].forward is True


def test_account_without_routes_defaults_to_legacy_with_synthesized_route(config_file):
    config = load_relay_config(config_file, environ={})
    legacy = config.get_account("legacy")
    assert legacy.mode == TransportMode.LEGACY
    assert legacy.name == "old-name"
    assert legacy.routes == {"old-name": RouteEntry(consumer="main", forward=True)}


def test_queue_path_is_per_account(config_file, tmp_path):
    config = load_relay_config(config_file, environ={})
    assert config.queue_path("default") == tmp_path / "state" / "accounts" / "default" / "inbox-queue.json"


def test_route_without_consumer_uses_default(tmp_path):
    path = tmp_path / "c.ini"
    path.write_text("[account a]\napi_key = k\nroute.bob.forward = no\n")
    config = load_relay_config(path, environ={})
    route = config.get_account("a").routes["bob"]
    assert route.consumer == "main"
    assert route.forward is False


def test_invalid_route_field_is_ignored(tmp_path):
    path = tmp_path / "c.ini"
    path.write_text("[account a]\napi_key = k\nroute.bob.consumer = main\nroute.bob.color = red\nroute.bad = x\n")
    config = load_relay_config(path, environ={})
    assert config.get_account("a").routes["bob"].consumer == "main"


def test_legacy_account_requires_name(tmp_path):
    path = tmp_path / "c.ini"
    path.write_text("[account a]\napi_key = k\nmode = legacy\n")
    with pytest.raises(ConfigError):
        load_relay_config(path, environ={})


def test_invalid_mode_is_config_error(tmp_path):
    path = tmp_path / "c.ini"
    path.write_text("[account a]\napi_key = k\nname = alice\nmode = carrier-pigeon\n")
    with pytest.raises(ConfigError):
        load_relay_config(path, environ={})


def test_missing_file_required(tmp_path):
    loader = RelayConfigLoader(tmp_path / "nope.ini", environ={})
    with pytest.raises(ConfigError):
        loader.load_config(required=True)


def test_environment_only_account(tmp_path):
    environ = {
        "TELL_RELAY_API_KEY": "env-key",
        "TELL_RELAY_NAME": "alice",
        "TELL_RELAY_BROKER_URL": "https://env.test/api",
        "TELL_RELAY_STATE_DIR": str(tmp_path),
    }
    config = load_relay_config(tmp_path / "missing.ini", environ=environ)
    assert config.broker_url == "https://env.test/api"
    [account] = config.accounts
    assert account.account_id == "default"
    assert account.mode == TransportMode.LEGACY
    assert account.routes["alice"].consumer == "main"


def test_file_value_wins_over_environment(config_file):
    config = load_relay_config(config_file, environ={"TELL_RELAY_BROKER_URL": "https://env.test"})
    assert config.broker_url == "https://broker.test/api"


def test_parse_helpers():
    assert parse_bool("yes") is True
    assert parse_bool("off") is False
    assert parse_bool("maybe", default=True) is True
    assert parse_bool(None) is None
    assert parse_list("a, b  c") == ["a", "b", "c"]
    assert parse_list(None) == []


class TestRouteEditing:
    def test_set_route_adds_and_backs_up(self, config_file):
        original = config_file.read_text()
        existed = set_route(config_file, "default", "tell/New-Bot", RouteEntry(consumer="helper", forward=False))

        assert existed is False
        assert (config_file.parent / "config.ini.bak").read_text() == original
        assert stat.S_IMODE(os.stat(config_file).st_mode) == 0o600
        route = load_relay_config(config_file, environ={}).get_account("default").routes["new-bot"]
        assert route.consumer == "helper"
        assert route.forward is False

    def test_set_route_replaces_existing(self, config_file):
        existed = set_route(config_file, "default", "helper-bot", RouteEntry(consumer="main"))
        assert existed is True
        route = load_relay_config(config_file, environ={}).get_account("default").routes["helper-bot"]
        assert route.consumer == "main"
        assert route.forward is True
        assert route.api_key is None

    def test_set_route_rejects_bad_name(self, config_file):
        with pytest.raises(ConfigError):
            set_route(config_file, "default", "-bad", RouteEntry(consumer="main"))

    def test_set_route_unknown_account(self, config_file):
        with pytest.raises(ConfigError):
            set_route(config_file, "nope", "bob", RouteEntry(consumer="main"))

    def test_remove_route(self, config_file):
        assert remove_route(config_file, "default", "helper-bot") is True
        assert remove_route(config_file, "default", "helper-bot") is False
        routes = load_relay_config(config_file, environ={}).get_account("default").routes
        assert "helper-bot" not in routes
