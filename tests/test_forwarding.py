import json
import re

import pytest
from aioresponses import aioresponses

from tell_relay.config_loader import ForwardTarget
from tell_relay.errors import RelayError
from tell_relay.forwarding import (
    Forwarder,
    ForwardResult,
    TelegramForwarder,
    read_session_context,
    render_dead_letter_alert,
    render_message,
)
from tell_relay.host import LocalConsumerHost
from tell_relay.models import DeliveryContext, Message, QueuedMessage, RouteEntry


def write_sessions(sessions_dir, consumer, delivery_context):
    path = sessions_dir / consumer / "sessions" / "sessions.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({f"agent:{consumer}:main": {"deliveryContext": delivery_context}}))


class TestRendering:
    def test_with_subject(self):
        msg = Message.model_validate({"id": "m1", "from": "bob", "to_name": "alice", "subject": "Hi", "body": "hello"})
        assert render_message(msg) == "**Message from tell/bob** (to: alice)\n**Subject:** Hi\n\nhello"

    def test_without_subject(self):
        msg = Message.model_validate({"id": "m1", "from": "bob", "to_name": "alice", "body": "hello"})
        assert render_message(msg) == "**Message from tell/bob** (to: alice)\n\nhello"

    def test_dead_letter_alert(self):
        entry = QueuedMessage.model_validate(
            {
                "id": "m1",
                "from": "bob",
                "toName": "helper-bot",
                "consumer": "helper",
                "rawBody": "please help",
                "accountId": "default",
                "apiKey": "k",
                "replyApiKey": "k",
                "attempts": 10,
                "lastError": "consumer helper did not answer",
            }
        )
        text = render_dead_letter_alert(entry)
        assert "Undeliverable message from tell/bob" in text
        assert "failed 10 times" in text
        assert text.endswith("please help")


class TestContextResolution:
    @pytest.mark.asyncio
    async def test_route_target_wins(self, tmp_path):
        write_sessions(tmp_path, "main", {"channel": "discord", "to": "chan"})
        forwarder = Forwarder(global_target=ForwardTarget(channel="slack", to="#ops"), sessions_dir=tmp_path)
        route = RouteEntry(consumer="main", forward_channel="Telegram", forward_to="42", forward_account="work")
        assert await forwarder.resolve_context("main", route) == DeliveryContext("telegram", "42", "work")

    @pytest.mark.asyncio
    async def test_global_target_before_session(self, tmp_path):
        write_sessions(tmp_path, "main", {"channel": "discord", "to": "chan"})
        forwarder = Forwarder(global_target=ForwardTarget(channel="slack", to="#ops"), sessions_dir=tmp_path)
        assert await forwarder.resolve_context("main", RouteEntry(consumer="main")) == DeliveryContext(
            "slack", "#ops", "default"
        )

    @pytest.mark.asyncio
    async def test_session_context(self, tmp_path):
        write_sessions(tmp_path, "main", {"channel": "telegram", "to": "telegram:99", "accountId": "work"})
        forwarder = Forwarder(sessions_dir=tmp_path)
        assert await forwarder.resolve_context("main") == DeliveryContext("telegram", "telegram:99", "work")

    def test_session_context_missing_or_incomplete(self, tmp_path):
        assert read_session_context(tmp_path, "main") is None
        write_sessions(tmp_path, "helper", {"channel": "telegram"})
        assert read_session_context(tmp_path, "helper") is None


class RecordingHost(LocalConsumerHost):
    def __init__(self):
        super().__init__()
        self.sent = []

        async def record(context, text):
            self.sent.append((context, text))

        self.register_channel("discord", record)
        self.register_channel("telegram", record)


@pytest.mark.asyncio
async def test_no_context_is_skipped():
    forwarder = Forwarder()
    assert await forwarder.forward("text", "main") == ForwardResult.SKIPPED


@pytest.mark.asyncio
async def test_host_channel_sender_is_used():
    host = RecordingHost()
    forwarder = Forwarder(global_target=ForwardTarget(channel="discord", to="chan"), host=host)
    assert await forwarder.forward("text", "main") == ForwardResult.SENT
    assert host.sent == [(DeliveryContext("discord", "chan", "default"), "text")]


@pytest.mark.asyncio
async def test_telegram_without_token_goes_through_host():
    host = RecordingHost()
    forwarder = Forwarder(
        global_target=ForwardTarget(channel="telegram", to="42"), telegram=TelegramForwarder({}), host=host
    )
    assert await forwarder.forward("text", "main") == ForwardResult.SENT
    assert len(host.sent) == 1


@pytest.mark.asyncio
async def test_host_telegram_sender_preferred_over_bot_api():
    host = RecordingHost()
    telegram = TelegramForwarder({"default": "T0K"}, api_url="https://tg.test")
    forwarder = Forwarder(global_target=ForwardTarget(channel="telegram", to="42"), telegram=telegram, host=host)
    with aioresponses() as m:
        assert await forwarder.forward("hello", "main") == ForwardResult.SENT
        assert m.requests == {}
    assert host.sent == [(DeliveryContext("telegram", "42", "default"), "hello")]


@pytest.mark.asyncio
async def test_bot_api_used_when_host_has_no_telegram_sender():
    host = LocalConsumerHost()
    telegram = TelegramForwarder({"default": "T0K"}, api_url="https://tg.test")
    forwarder = Forwarder(global_target=ForwardTarget(channel="telegram", to="42"), telegram=telegram, host=host)
    with aioresponses() as m:
        m.post("https://tg.test/botT0K/sendMessage", payload={"ok": True})
        assert await forwarder.forward("hello", "main") == ForwardResult.SENT
        assert len(m.requests) == 1


@pytest.mark.asyncio
async def test_unsupported_channel_is_failure():
    forwarder = Forwarder(global_target=ForwardTarget(channel="fax", to="1"), host=LocalConsumerHost())
    assert await forwarder.forward("text", "main") == ForwardResult.FAILED


@pytest.mark.asyncio
async def test_telegram_bot_api():
    telegram = TelegramForwarder({"default": "T0K"}, api_url="https://tg.test")
    forwarder = Forwarder(global_target=ForwardTarget(channel="telegram", to="telegram:42"), telegram=telegram)
    with aioresponses() as m:
        m.post("https://tg.test/botT0K/sendMessage", payload={"ok": True})
        assert await forwarder.forward("hello", "main") == ForwardResult.SENT
        (key, calls), = m.requests.items()
        assert calls[0].kwargs["json"] == {"chat_id": "42", "text": "hello"}


@pytest.mark.asyncio
async def test_telegram_api_error_is_reported_not_raised():
    telegram = TelegramForwarder({"default": "T0K"}, api_url="https://tg.test")
    forwarder = Forwarder(global_target=ForwardTarget(channel="telegram", to="42"), telegram=telegram)
    with aioresponses() as m:
        m.post(re.compile(r"^https://tg\.test/.*$"), status=400, payload={"ok": False, "description": "chat not found"})
        assert await forwarder.forward("hello", "main") == ForwardResult.FAILED


@pytest.mark.asyncio
async def test_telegram_send_raises_on_api_error():
    telegram = TelegramForwarder({"work": "W"}, api_url="https://tg.test")
    assert telegram.token_for("work") == "W"
    assert telegram.token_for("other") is None
    with pytest.raises(RelayError):
        await telegram.send(DeliveryContext("telegram", "1", "other"), "x")
